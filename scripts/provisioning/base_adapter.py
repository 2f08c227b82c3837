"""Abstract base class for provisioning adapters."""

from __future__ import annotations

import logging
import time
import traceback
from abc import ABC, abstractmethod
from pathlib import Path
from typing import IO

from scripts.provisioning.errors import AdapterInvocationError
from scripts.provisioning.models import JobState, JobStatus, UserEnvironmentDescriptor
from scripts.provisioning.status_store import StatusStore

logger = logging.getLogger("provisioning.adapter")


class ProvisioningAdapter(ABC):
    """Each adapter overrides provision() and declares ADAPTER_NAME.

    provision() runs synchronously inside an orchestrator worker and owns all
    platform interaction. It returns on success and raises on failure.
    """

    ADAPTER_NAME: str = ""

    @abstractmethod
    def provision(
        self,
        descriptor: UserEnvironmentDescriptor,
        descriptor_path: Path,
        log_stream: IO[str],
    ) -> None:
        """Provision one user. Raise AdapterInvocationError on failure."""

    def provision_with_tracking(
        self,
        descriptor: UserEnvironmentDescriptor,
        descriptor_path: Path,
        store: StatusStore,
    ) -> JobStatus:
        """Wrap provision() with status tracking and the per-user log file.

        Failures are recorded, never raised: one user's failure must not
        reach sibling jobs.
        """
        user_number = descriptor.user_number
        store.record_run_start(user_number)
        started = time.monotonic()
        try:
            with open(store.log_path(user_number), "w", encoding="utf-8") as log_stream:
                self.provision(descriptor, descriptor_path, log_stream)
        except AdapterInvocationError as exc:
            status = store.record_run_end(
                user_number,
                JobState.FAILED,
                exit_code=exc.exit_code,
                error_message=str(exc),
            )
            logger.error(
                "Provisioning failed: %s",
                exc,
                extra={"user_number": user_number, "duration_s": self._elapsed(started)},
            )
            return status
        except Exception as exc:
            status = store.record_run_end(
                user_number,
                JobState.FAILED,
                error_message=f"{exc}\n{traceback.format_exc()}",
            )
            logger.error(
                "Provisioning raised: %s",
                exc,
                exc_info=True,
                extra={"user_number": user_number, "duration_s": self._elapsed(started)},
            )
            return status

        status = store.record_run_end(user_number, JobState.COMPLETED, exit_code=0)
        logger.info(
            "Provisioning complete",
            extra={"user_number": user_number, "duration_s": self._elapsed(started)},
        )
        return status

    @staticmethod
    def _elapsed(started: float) -> float:
        return round(time.monotonic() - started, 3)
