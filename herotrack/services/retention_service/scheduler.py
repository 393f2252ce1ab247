"""Background scheduling for retention runs and the aggregation sweep.

Uses APScheduler's BackgroundScheduler: retention runs on a crontab
schedule (weekly by default) and the stale-rollup sweep runs on a fixed
interval. Each job allows a single running instance and coalesces missed
runs.
"""
import logging
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from herotrack.services.aggregation_service.engine import AggregationEngine

from .executor import RetentionExecutor

logger = logging.getLogger(__name__)

RETENTION_JOB_ID = "retention-run"
SWEEP_JOB_ID = "aggregation-sweep"


def cron_trigger(expression: str) -> CronTrigger:
    """Trigger for a five-field crontab expression (UTC).

    Raises:
        ValueError: If the expression does not have five fields
    """
    parts = expression.split()
    if len(parts) != 5:
        raise ValueError(f"Invalid cron expression: {expression}")
    return CronTrigger(
        minute=parts[0],
        hour=parts[1],
        day=parts[2],
        month=parts[3],
        day_of_week=parts[4],
        timezone="UTC",
    )


class PipelineScheduler:
    """Owns the scheduled jobs of the server pipeline."""

    def __init__(
        self,
        executor: RetentionExecutor,
        engine: Optional[AggregationEngine] = None,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        """Initialize scheduler.

        Args:
            executor: Retention executor run on the crontab schedule
            engine: Aggregation engine swept on an interval (optional)
            scheduler: APScheduler instance (injected for testing)
        """
        self.executor = executor
        self.engine = engine
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._running = False

        config = executor.config
        self._scheduler.add_job(
            self._run_retention,
            trigger=cron_trigger(config.schedule),
            id=RETENTION_JOB_ID,
            name="Retention run",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        if engine is not None:
            self._scheduler.add_job(
                self._run_sweep,
                trigger=IntervalTrigger(seconds=config.sweep_interval_seconds),
                id=SWEEP_JOB_ID,
                name="Aggregation sweep",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )

    @property
    def is_running(self) -> bool:
        return self._running

    def _run_retention(self) -> None:
        summary = self.executor.run()
        logger.info(
            "SCHEDULED_RETENTION_FINISHED",
            extra={"run_id": summary.run_id, "status": summary.status.value}
        )

    def _run_sweep(self) -> None:
        self.engine.sweep()

    def start(self) -> None:
        if self._running:
            return
        self._scheduler.start()
        self._running = True
        logger.info("PIPELINE_SCHEDULER_STARTED", extra={"jobs": self.job_ids()})

    def shutdown(self, wait: bool = False) -> None:
        if not self._running:
            return
        self._scheduler.shutdown(wait=wait)
        self._running = False
        logger.info("PIPELINE_SCHEDULER_STOPPED")

    def job_ids(self) -> List[str]:
        return [job.id for job in self._scheduler.get_jobs()]

    def stats(self) -> Dict[str, Any]:
        jobs = []
        for job in self._scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run_time": next_run.isoformat() if next_run else None,
            })
        return {"is_running": self._running, "jobs": jobs}
