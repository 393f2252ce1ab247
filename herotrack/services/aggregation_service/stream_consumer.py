"""Consumer side of the rollup work stream.

Aggregation hosts attach ``lambda_handler`` to the Kinesis stream that
ingestion hosts publish dirty buckets to. Each bucket in the batch is
recomputed before the handler returns. Records whose recompute failed are
reported back as ``batchItemFailures`` so Kinesis redelivers them;
records that cannot be decoded are dropped, since redelivery cannot fix
them.
"""
import logging
from typing import Any, Dict, List, Set

from herotrack.shared.models import RollupKey

from .engine import AggregationEngine
from .kinesis_publisher import decode_kinesis_record

logger = logging.getLogger(__name__)


def process_kinesis_records(
    engine: AggregationEngine,
    records: List[Dict[str, Any]],
) -> Dict[str, List[Dict[str, str]]]:
    """Recompute the buckets named by a batch of stream records.

    A bucket named more than once in the batch is recomputed once.

    Returns:
        Partial-batch response listing the sequence numbers to retry
    """
    failures: List[Dict[str, str]] = []
    done: Set[RollupKey] = set()
    dropped = 0

    for record in records:
        try:
            key = decode_kinesis_record(record)
        except (KeyError, ValueError, TypeError) as e:
            dropped += 1
            logger.warning(
                "ROLLUP_RECORD_UNDECODABLE",
                extra={"error": str(e), "error_type": type(e).__name__}
            )
            continue

        if key in done:
            continue
        try:
            engine.recompute_now(key)
        except Exception as e:
            logger.error(
                "ROLLUP_STREAM_RECOMPUTE_FAILED",
                extra={"bucket": key.partition_key(), "error": str(e)}
            )
            failures.append({"itemIdentifier": record["kinesis"].get("sequenceNumber", "")})
            continue
        done.add(key)

    logger.info(
        "ROLLUP_STREAM_BATCH_PROCESSED",
        extra={
            "records": len(records),
            "buckets_recomputed": len(done),
            "dropped": dropped,
            "failed": len(failures),
        }
    )
    return {"batchItemFailures": failures}


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, List[Dict[str, str]]]:
    """Kinesis event source entry point."""
    from herotrack.services.pipeline import get_pipeline

    return process_kinesis_records(get_pipeline().aggregation, event.get("Records", []))
