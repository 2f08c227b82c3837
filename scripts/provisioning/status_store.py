"""Per-user job status tracking on disk.

Each user owns `logs/setup_userNN.status` (a small JSON document) and
`logs/setup_userNN.log`. Writers never share a key, so status writes need no
lock; files are replaced atomically so readers see either the old or the new
document. The progress log is the only shared append target.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from scripts.provisioning.errors import EnvironmentUnavailableError
from scripts.provisioning.models import JobState, JobStatus

logger = logging.getLogger("provisioning.status")

PROGRESS_LOG_FILE = "multi_setup_progress.log"
RUN_SUMMARY_FILE = "multi_setup_summary.txt"


class StatusStore:
    """File-backed JobStatus store keyed by user number."""

    def __init__(self, log_dir: Path) -> None:
        self.log_dir = Path(log_dir)
        self._progress_lock = threading.Lock()

    def ensure_dir(self) -> None:
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise EnvironmentUnavailableError(
                f"Cannot create log directory {self.log_dir}: {exc}"
            ) from exc

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def status_path(self, user_number: int) -> Path:
        return self.log_dir / f"setup_user{user_number:02d}.status"

    def log_path(self, user_number: int) -> Path:
        return self.log_dir / f"setup_user{user_number:02d}.log"

    @property
    def progress_log_path(self) -> Path:
        return self.log_dir / PROGRESS_LOG_FILE

    @property
    def summary_path(self) -> Path:
        return self.log_dir / RUN_SUMMARY_FILE

    # ------------------------------------------------------------------
    # Job run tracking
    # ------------------------------------------------------------------

    def record_run_start(self, user_number: int) -> JobStatus:
        """Mark a user RUNNING with the current attempt time."""
        status = JobStatus(
            user_number=user_number,
            state=JobState.RUNNING,
            last_attempt_time=datetime.now(timezone.utc),
            log_path=str(self.log_path(user_number)),
        )
        self._write(status)
        return status

    def record_run_end(
        self,
        user_number: int,
        state: JobState,
        exit_code: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> JobStatus:
        """Finalise a user's attempt as COMPLETED or FAILED."""
        previous = self.get_status(user_number)
        status = JobStatus(
            user_number=user_number,
            state=state,
            last_attempt_time=previous.last_attempt_time or datetime.now(timezone.utc),
            log_path=str(self.log_path(user_number)),
            exit_code=exit_code,
            error_message=error_message[:1000] if error_message else None,
        )
        self._write(status)
        return status

    def get_status(self, user_number: int) -> JobStatus:
        """Current status; a missing file means NOT_STARTED."""
        path = self.status_path(user_number)
        try:
            text = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return JobStatus(user_number=user_number)
        return self._parse(user_number, text)

    def get_statuses(self, user_numbers: Iterable[int]) -> dict[int, JobStatus]:
        return {n: self.get_status(n) for n in user_numbers}

    def append_progress(self, level: str, message: str, user_number: Optional[int] = None) -> None:
        """Append one timestamped line to the shared progress log."""
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        who = f"User {user_number:02d}: " if user_number is not None else ""
        line = f"{stamp} [{level}] {who}{message}\n"
        with self._progress_lock:
            with open(self.progress_log_path, "a", encoding="utf-8") as fh:
                fh.write(line)

    @staticmethod
    def is_stale(status: JobStatus, threshold_s: int, now: Optional[datetime] = None) -> bool:
        """True for a RUNNING entry whose last attempt is older than threshold_s."""
        if status.state is not JobState.RUNNING or status.last_attempt_time is None:
            return False
        now = now or datetime.now(timezone.utc)
        return (now - status.last_attempt_time).total_seconds() > threshold_s

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def _write(self, status: JobStatus) -> None:
        path = self.status_path(status.user_number)
        payload = {
            "user_number": status.user_number,
            "state": status.state.value,
            "last_attempt_time": (
                status.last_attempt_time.isoformat() if status.last_attempt_time else None
            ),
            "log_path": status.log_path,
            "exit_code": status.exit_code,
            "error_message": status.error_message,
        }
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.write_text(json.dumps(payload, sort_keys=True) + "\n", encoding="utf-8")
        os.replace(tmp, path)

    def _parse(self, user_number: int, text: str) -> JobStatus:
        # Older tooling wrote a bare state word ("running", "completed", ...)
        try:
            return JobStatus(user_number=user_number, state=JobState(text))
        except ValueError:
            pass
        try:
            data = json.loads(text)
            attempted = data.get("last_attempt_time")
            return JobStatus(
                user_number=user_number,
                state=JobState(data["state"]),
                last_attempt_time=datetime.fromisoformat(attempted) if attempted else None,
                log_path=data.get("log_path"),
                exit_code=data.get("exit_code"),
                error_message=data.get("error_message"),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning(
                "Unreadable status file for user %02d, treating as not started: %s",
                user_number,
                exc,
                extra={"user_number": user_number},
            )
            return JobStatus(user_number=user_number)
