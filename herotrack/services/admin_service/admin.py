"""Operator operations on the server pipeline.

Not part of the normal request flow: retention and rebuild triggers are
invoked by operators, and every call is attributed to an operator id in
the audit trail.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from herotrack.services.aggregation_service.engine import RebuildSummary
from herotrack.services.retention_service.executor import RetentionSummary
from herotrack.services.retention_service.policy import RetentionPolicy

logger = logging.getLogger(__name__)


class AdminService:
    """Administrative interface over a Pipeline."""

    def __init__(self, pipeline):
        self.pipeline = pipeline

    def trigger_retention(self, policy_name: Optional[str], actor_id: str) -> RetentionSummary:
        """Run retention now, for one policy or all of them.

        Raises:
            ValueError: If the policy is unknown
        """
        logger.info(
            "ADMIN_RETENTION_TRIGGERED",
            extra={"policy": policy_name, "actor_id": actor_id}
        )
        return self.pipeline.retention.run(policy_name, actor_id=actor_id)

    def trigger_aggregation_rebuild(
        self,
        classroom_scope: str,
        start: datetime,
        end: datetime,
        actor_id: str,
    ) -> RebuildSummary:
        """Recompute a classroom's rollups over a time range.

        Raises:
            ValueError: If the range is empty or outside the rebuild horizon
        """
        logger.info(
            "ADMIN_REBUILD_TRIGGERED",
            extra={"classroom_scope": classroom_scope, "actor_id": actor_id}
        )
        return self.pipeline.aggregation.rebuild(classroom_scope, start, end, actor_id=actor_id)

    def update_retention_policy(
        self,
        name: str,
        active_days: int,
        archive_days: int,
        actor_id: str,
    ) -> RetentionPolicy:
        """Change a policy's horizons. Audited.

        Raises:
            ValueError: If the policy is unknown or the horizons are invalid
        """
        current = self.pipeline.retention.config.policy(name)
        if current is None:
            raise ValueError(f"Unknown retention policy: {name}")
        policy = RetentionPolicy(
            name=current.name,
            table=current.table,
            timestamp_column=current.timestamp_column,
            active_days=active_days,
            archive_days=archive_days,
        )
        self.pipeline.retention.update_policy(policy, actor_id=actor_id)
        return policy

    def health(self) -> Dict[str, Any]:
        return self.pipeline.health()
