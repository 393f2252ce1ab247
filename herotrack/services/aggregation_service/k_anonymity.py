"""Small-group suppression for rollup reads.

A bucket's statistics are released to a dashboard only when at least k
distinct subjects contributed to it. Below that, the reader gets the
bucket key and a suppression marker, so a single student's scores cannot
be read back out of a small group.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from herotrack.shared.models import RollupRecord

logger = logging.getLogger(__name__)

# Minimum group size for k-anonymity
K_ANONYMITY_THRESHOLD = 5


@dataclass(frozen=True)
class ReleaseDecision:
    """Whether one bucket's statistics may leave the service.

    Attributes:
        bucket: Partition key of the rollup
        distinct_subjects: Subjects that contributed to the bucket
        released: False when the statistics must be withheld
        reason: Explanation when withheld
    """
    bucket: str
    distinct_subjects: int
    released: bool
    reason: Optional[str] = None

    def apply(self, statistics: Dict[str, Any]) -> Dict[str, Any]:
        """Response fragment for the bucket's statistics block."""
        if not self.released:
            return {"suppressed": True, "reason": self.reason}
        view = dict(statistics)
        view["suppressed"] = False
        return view


class KAnonymityEnforcer:
    """Decides, per rollup, whether its statistics can be shown."""

    def __init__(self, k_threshold: int = K_ANONYMITY_THRESHOLD):
        if k_threshold < 1:
            raise ValueError("k_threshold must be at least 1")
        self.k_threshold = k_threshold
        self.suppressed = 0
        self._lock = threading.Lock()

        logger.info(
            "K_ANONYMITY_ENFORCER_INITIALIZED",
            extra={"k_threshold": k_threshold}
        )

    def decide(self, record: RollupRecord) -> ReleaseDecision:
        bucket = record.key.partition_key()
        group_size = record.distinct_subjects

        if group_size >= self.k_threshold:
            return ReleaseDecision(bucket=bucket, distinct_subjects=group_size, released=True)

        with self._lock:
            self.suppressed += 1
        logger.warning(
            "K_ANONYMITY_SUPPRESSED",
            extra={
                "bucket": bucket,
                "group_size": group_size,
                "k_threshold": self.k_threshold,
            }
        )
        return ReleaseDecision(
            bucket=bucket,
            distinct_subjects=group_size,
            released=False,
            reason=(
                f"{group_size} contributing subjects, "
                f"below the k-anonymity threshold of {self.k_threshold}"
            ),
        )

    def release(self, record: RollupRecord, statistics: Dict[str, Any]) -> Dict[str, Any]:
        """Statistics to show for ``record``, or a suppression marker.

        Args:
            record: Rollup being read
            statistics: The view of it the caller wants to show (all
                categories or one category)
        """
        return self.decide(record).apply(statistics)
