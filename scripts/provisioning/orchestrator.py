"""Bounded-concurrency, resumable provisioning runs over registered users.

Users are admitted in ascending user-number order into a fixed-size thread
pool. The admission loop blocks on a semaphore while every slot is busy and
admits the next queued user as soon as any job finishes. A failing job is
recorded and the run carries on with the remaining users.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Iterable, Optional

from scripts.provisioning.base_adapter import ProvisioningAdapter
from scripts.provisioning.config import ProvisioningConfig
from scripts.provisioning.errors import EnvironmentUnavailableError
from scripts.provisioning.models import IndexTable, JobState, RunMode, RunSummary
from scripts.provisioning.registry import descriptor_path, load_descriptor, load_index
from scripts.provisioning.reporting import render_summary, summarize, write_summary
from scripts.provisioning.status_store import StatusStore

logger = logging.getLogger("provisioning.orchestrator")

OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"


class Orchestrator:
    def __init__(
        self,
        config: ProvisioningConfig,
        adapter: ProvisioningAdapter,
        store: Optional[StatusStore] = None,
    ) -> None:
        self.config = config
        self.adapter = adapter
        self.directory = config.user_env_dir
        self.store = store or StatusStore(config.log_dir)

    # ------------------------------------------------------------------
    # Candidate selection
    # ------------------------------------------------------------------

    def select_candidates(
        self,
        index: IndexTable,
        targets: Optional[Iterable[int]],
        mode: RunMode,
    ) -> tuple[list[int], list[int]]:
        """Return (users to schedule, users skipped by the resume filter)."""
        registered = set(index.user_numbers())
        if targets is None:
            chosen = sorted(registered)
        else:
            wanted = sorted(set(targets))
            unknown = [n for n in wanted if n not in registered]
            if unknown:
                logger.warning("Ignoring unregistered users: %s", unknown)
            chosen = [n for n in wanted if n in registered]

        if mode is not RunMode.RESUME:
            return chosen, []

        threshold = self.config.orchestrator.stale_running_after_s
        now = datetime.now(timezone.utc)
        keep: list[int] = []
        skipped: list[int] = []
        for user_number in chosen:
            status = self.store.get_status(user_number)
            if status.state in (JobState.NOT_STARTED, JobState.FAILED):
                keep.append(user_number)
            elif self.store.is_stale(status, threshold, now):
                logger.warning(
                    "User %02d has been running since %s, retrying as orphaned",
                    user_number,
                    status.last_attempt_time.isoformat(),
                    extra={"user_number": user_number, "state": status.state.value},
                )
                keep.append(user_number)
            else:
                skipped.append(user_number)
        return keep, skipped

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        targets: Optional[Iterable[int]] = None,
        max_concurrency: Optional[int] = None,
        mode: RunMode = RunMode.NORMAL,
        dry_run: bool = False,
    ) -> RunSummary:
        """Provision the selected users and return the resulting summary.

        Raises EnvironmentUnavailableError before scheduling anything when no
        descriptors are registered, or when explicit targets match none of them.
        """
        if max_concurrency is None:
            max_concurrency = self.config.orchestrator.max_parallel
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")

        index = load_index(self.directory)
        if not len(index):
            raise EnvironmentUnavailableError(
                f"No registered user environments in {self.directory}"
            )
        if targets is not None:
            targets = sorted(set(targets))
            if not set(targets) & set(index.user_numbers()):
                raise EnvironmentUnavailableError(
                    f"None of the requested users {targets} are registered in {self.directory}"
                )

        candidates, skipped = self.select_candidates(index, targets, mode)
        selected = sorted(candidates + skipped)
        run_id = str(uuid.uuid4())
        logger.info(
            "Selected %d users (%d skipped by resume filter), max %d parallel",
            len(candidates),
            len(skipped),
            max_concurrency,
            extra={"mode": mode.value, "run_id": run_id, "records": len(candidates)},
        )

        if dry_run:
            for user_number in candidates:
                logger.info(
                    "Would provision user %02d",
                    user_number,
                    extra={"user_number": user_number, "run_id": run_id},
                )
            summary = summarize(index, self.store, selected)
            summary.skipped = len(skipped)
            summary.dry_run = True
            return summary

        self.store.ensure_dir()
        self.store.append_progress(
            "INFO",
            f"Multi-user setup started for {len(candidates)} users (mode: {mode.value})",
        )
        outcomes = self._run_pool(candidates, max_concurrency, mode, run_id)
        self.store.append_progress(
            "INFO",
            f"Multi-user setup completed: {outcomes[OUTCOME_COMPLETED]} succeeded, "
            f"{outcomes[OUTCOME_FAILED]} failed",
        )

        summary = summarize(index, self.store, selected)
        summary.skipped = len(skipped) + outcomes[OUTCOME_SKIPPED]
        write_summary(
            self.store.summary_path,
            render_summary(summary, index, self.store, selected),
        )
        logger.info(
            "Run finished: %d completed, %d failed",
            summary.completed,
            summary.failed,
            extra={"mode": mode.value, "run_id": run_id},
        )
        return summary

    def _run_pool(
        self,
        candidates: list[int],
        max_concurrency: int,
        mode: RunMode,
        run_id: str,
    ) -> Counter:
        outcomes: Counter = Counter()
        slots = threading.BoundedSemaphore(max_concurrency)

        with ThreadPoolExecutor(
            max_workers=max_concurrency, thread_name_prefix="provision"
        ) as executor:
            futures = {}
            for user_number in candidates:
                slots.acquire()  # blocks while the pool is saturated
                future = executor.submit(self._run_job, user_number, mode, run_id)
                future.add_done_callback(lambda _f: slots.release())
                futures[future] = user_number

            for future in as_completed(futures):
                user_number = futures[future]
                try:
                    outcomes[future.result()] += 1
                except Exception as exc:
                    logger.error(
                        "Job for user %02d crashed outside the adapter: %s",
                        user_number,
                        exc,
                        exc_info=True,
                        extra={"user_number": user_number, "run_id": run_id},
                    )
                    outcomes[OUTCOME_FAILED] += 1
        return outcomes

    def _run_job(self, user_number: int, mode: RunMode, run_id: str) -> str:
        """Per-user flow: load descriptor, mark running, invoke adapter, record."""
        store = self.store

        if mode is RunMode.NORMAL and store.get_status(user_number).state is JobState.COMPLETED:
            store.append_progress("INFO", "Already completed, skipping", user_number)
            return OUTCOME_SKIPPED

        try:
            descriptor = load_descriptor(self.directory, user_number)
        except (OSError, ValueError) as exc:
            store.record_run_end(user_number, JobState.FAILED, error_message=str(exc))
            store.append_progress("ERROR", f"Environment file not usable: {exc}", user_number)
            logger.error(
                "Cannot load descriptor: %s",
                exc,
                extra={"user_number": user_number, "run_id": run_id},
            )
            return OUTCOME_FAILED

        store.append_progress("INFO", "Starting setup", user_number)
        status = self.adapter.provision_with_tracking(
            descriptor, descriptor_path(self.directory, user_number), store
        )

        if status.state is JobState.COMPLETED:
            store.append_progress("SUCCESS", "Setup completed successfully", user_number)
            return OUTCOME_COMPLETED

        exit_code = status.exit_code if status.exit_code is not None else "n/a"
        store.append_progress("ERROR", f"Setup failed (exit code: {exit_code})", user_number)
        return OUTCOME_FAILED
