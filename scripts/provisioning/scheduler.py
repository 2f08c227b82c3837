"""APScheduler-based resume sweeps over failed user environments."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Sequence

from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.blocking import BlockingScheduler

from scripts.provisioning.config import ProvisioningConfig
from scripts.provisioning.errors import EnvironmentUnavailableError
from scripts.provisioning.models import RunMode, RunSummary
from scripts.provisioning.orchestrator import Orchestrator

logger = logging.getLogger("provisioning.scheduler")


class ResumeSweep:
    """One scheduled job: a Resume run, stopping the scheduler when done."""

    def __init__(
        self,
        scheduler: BlockingScheduler,
        orchestrator: Orchestrator,
        targets: Optional[Sequence[int]],
        max_concurrency: int,
        max_sweeps: int,
    ) -> None:
        self.scheduler = scheduler
        self.orchestrator = orchestrator
        self.targets = targets
        self.max_concurrency = max_concurrency
        self.max_sweeps = max_sweeps
        self.sweeps = 0
        self.last_summary: Optional[RunSummary] = None

    def __call__(self) -> None:
        self.sweeps += 1
        try:
            summary = self.orchestrator.run(
                targets=self.targets,
                max_concurrency=self.max_concurrency,
                mode=RunMode.RESUME,
            )
        except EnvironmentUnavailableError:
            self.scheduler.shutdown(wait=False)
            raise
        self.last_summary = summary

        if not summary.failed:
            logger.info("Resume sweep %d left no failed users, stopping", self.sweeps)
            self.scheduler.shutdown(wait=False)
        elif self.sweeps >= self.max_sweeps:
            logger.error(
                "Resume sweep %d/%d still has failed users: %s",
                self.sweeps,
                self.max_sweeps,
                summary.failed_user_numbers,
            )
            self.scheduler.shutdown(wait=False)
        else:
            logger.warning(
                "Resume sweep %d/%d left %d failed users, retrying later",
                self.sweeps,
                self.max_sweeps,
                summary.failed,
            )


def _on_job_error(event) -> None:
    """Log job execution errors."""
    logger.error(
        "Job %s raised an exception: %s",
        event.job_id,
        event.exception,
    )


def start_scheduler(
    config: ProvisioningConfig,
    orchestrator: Orchestrator,
    targets: Optional[Sequence[int]] = None,
    max_concurrency: Optional[int] = None,
    scheduler: Optional[BlockingScheduler] = None,
) -> ResumeSweep:
    """Run Resume sweeps on an interval until clean or out of attempts."""
    scheduler = scheduler or BlockingScheduler()
    scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)
    sched = config.scheduler

    sweep = ResumeSweep(
        scheduler,
        orchestrator,
        targets,
        max_concurrency or config.orchestrator.max_parallel,
        sched.max_resume_sweeps,
    )
    scheduler.add_job(
        sweep,
        "interval",
        minutes=sched.resume_interval_min,
        id="resume_sweep",
        next_run_time=datetime.now(),
        max_instances=1,
        misfire_grace_time=sched.misfire_grace_time,
    )

    logger.info("Starting scheduler with jobs: %s",
                [j.id for j in scheduler.get_jobs()])
    scheduler.start()
    return sweep
