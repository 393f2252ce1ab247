"""Rollup work publisher for multi-host deployments.

Instead of recomputing locally, ingestion hosts publish the dirty bucket
keys to a Kinesis stream. The partition key is the bucket key, so every
update for one bucket lands on the same shard and is consumed by one
aggregation worker at a time.
"""
import base64
import json
import logging
import os
from typing import Any, Dict, Iterable, Optional

from herotrack.shared.models import Granularity, RollupKey
from herotrack.shared.utils.clock import parse_timestamp

logger = logging.getLogger(__name__)

EVENT_TYPE = "rollup.bucket.dirty"

# Kinesis put_records limit
MAX_RECORDS_PER_CALL = 500


def key_to_payload(key: RollupKey) -> Dict[str, Any]:
    return {"event_type": EVENT_TYPE, "source": "ingestion-service", "key": key.to_dict()}


def payload_to_key(payload: Dict[str, Any]) -> RollupKey:
    """Decode a published record back into a bucket key.

    Raises:
        ValueError: If the payload is not a dirty-bucket record
    """
    if payload.get("event_type") != EVENT_TYPE:
        raise ValueError(f"Unexpected event type: {payload.get('event_type')}")
    key = payload["key"]
    return RollupKey(
        classroom_scope=key["classroom_scope"],
        lesson_id=key.get("lesson_id"),
        granularity=Granularity(key["granularity"]),
        bucket_start=parse_timestamp(key["bucket_start"]),
    )


class RollupWorkPublisher:
    """Publishes dirty rollup buckets to a Kinesis stream.

    Failure Handling:
        - Publishing failure never fails the ingest that triggered it
        - Buckets that could not be published are recomputed by the stale sweep
    """

    def __init__(
        self,
        stream_name: str = "herotrack-rollup-work",
        enabled: bool = True,
        region: Optional[str] = None,
    ):
        """Initialize publisher.

        Args:
            stream_name: Kinesis stream name
            enabled: Whether publishing is enabled (disable for local dev)
            region: AWS region (defaults to AWS_REGION env var)
        """
        self.stream_name = stream_name
        self.enabled = enabled
        self.region = region or os.getenv("AWS_REGION", "us-east-1")
        self._kinesis_client = None

        logger.info(
            "ROLLUP_PUBLISHER_INITIALIZED",
            extra={
                "stream_name": stream_name,
                "enabled": enabled,
                "region": self.region,
            }
        )

    @property
    def kinesis_client(self):
        """Lazy initialization of Kinesis client."""
        if self._kinesis_client is None and self.enabled:
            import boto3
            self._kinesis_client = boto3.client("kinesis", region_name=self.region)
        return self._kinesis_client

    def publish_keys(self, keys: Iterable[RollupKey]) -> int:
        """Publish dirty bucket keys.

        Args:
            keys: Buckets to recompute

        Returns:
            Number of successfully published keys
        """
        keys = list(keys)
        if not self.enabled or not keys:
            return 0

        published = 0
        for offset in range(0, len(keys), MAX_RECORDS_PER_CALL):
            chunk = keys[offset:offset + MAX_RECORDS_PER_CALL]
            records = [
                {
                    "Data": json.dumps(key_to_payload(key)),
                    "PartitionKey": key.partition_key(),
                }
                for key in chunk
            ]
            try:
                response = self.kinesis_client.put_records(
                    StreamName=self.stream_name,
                    Records=records,
                )
            except Exception as e:
                logger.error(
                    "ROLLUP_PUBLISH_FAILED",
                    extra={
                        "error": str(e),
                        "error_type": type(e).__name__,
                        "key_count": len(chunk),
                    }
                )
                continue

            failed_count = response.get("FailedRecordCount", 0)
            published += len(chunk) - failed_count
            if failed_count:
                logger.warning(
                    "ROLLUP_PUBLISH_PARTIAL",
                    extra={"total": len(chunk), "failed": failed_count}
                )

        logger.info(
            "ROLLUP_KEYS_PUBLISHED",
            extra={"total": len(keys), "published": published}
        )
        return published


def decode_kinesis_record(record: Dict[str, Any]) -> RollupKey:
    """Decode one record of a Kinesis consumer event.

    Raises:
        KeyError, ValueError, TypeError: If the record is not a dirty-bucket record
    """
    payload = json.loads(base64.b64decode(record["kinesis"]["data"]))
    return payload_to_key(payload)
