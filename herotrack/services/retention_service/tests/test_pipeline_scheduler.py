"""Tests for scheduled retention and aggregation sweeps."""
from unittest.mock import MagicMock

import pytest
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from herotrack.services.retention_service.executor import RunStatus
from herotrack.services.retention_service.policy import RetentionConfig
from herotrack.services.retention_service.scheduler import (
    RETENTION_JOB_ID,
    SWEEP_JOB_ID,
    PipelineScheduler,
    cron_trigger,
)


@pytest.fixture
def executor():
    executor = MagicMock()
    executor.config = RetentionConfig(schedule="0 3 * * sun", sweep_interval_seconds=120)
    executor.run.return_value.status = RunStatus.COMPLETED
    return executor


class TestCronTrigger:
    def test_five_fields(self):
        assert isinstance(cron_trigger("0 3 * * sun"), CronTrigger)

    def test_rejects_other_shapes(self):
        with pytest.raises(ValueError):
            cron_trigger("@weekly")


class TestPipelineScheduler:
    def test_registers_both_jobs(self, executor):
        scheduler = PipelineScheduler(executor, engine=MagicMock(), scheduler=BackgroundScheduler())

        assert sorted(scheduler.job_ids()) == sorted([RETENTION_JOB_ID, SWEEP_JOB_ID])

    def test_sweep_job_only_with_engine(self, executor):
        scheduler = PipelineScheduler(executor, scheduler=BackgroundScheduler())

        assert scheduler.job_ids() == [RETENTION_JOB_ID]

    def test_job_options(self, executor):
        backend = MagicMock()

        PipelineScheduler(executor, engine=MagicMock(), scheduler=backend)

        retention, sweep = backend.add_job.call_args_list
        assert isinstance(retention[1]["trigger"], CronTrigger)
        assert retention[1]["max_instances"] == 1
        assert retention[1]["coalesce"] is True
        assert isinstance(sweep[1]["trigger"], IntervalTrigger)

    def test_jobs_call_executor_and_engine(self, executor):
        engine = MagicMock()
        scheduler = PipelineScheduler(executor, engine=engine, scheduler=MagicMock())

        scheduler._run_retention()
        scheduler._run_sweep()

        executor.run.assert_called_once_with()
        engine.sweep.assert_called_once_with()

    def test_start_and_shutdown(self, executor):
        backend = MagicMock()
        scheduler = PipelineScheduler(executor, scheduler=backend)

        scheduler.start()
        scheduler.start()
        assert scheduler.is_running
        scheduler.shutdown()

        backend.start.assert_called_once_with()
        backend.shutdown.assert_called_once_with(wait=False)
        assert not scheduler.is_running
