"""Read-only run summaries built from the status artifacts.

Nothing here writes status; summarize() is safe to call while a run is in
progress and reflects a point-in-time snapshot.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from scripts.provisioning.models import IndexTable, JobState, RunSummary
from scripts.provisioning.status_store import StatusStore


def _selected(index: IndexTable, targets: Optional[Iterable[int]]) -> list[int]:
    registered = index.user_numbers()
    if targets is None:
        return sorted(registered)
    wanted = set(targets)
    return sorted(n for n in registered if n in wanted)


def summarize(
    index: IndexTable,
    store: StatusStore,
    targets: Optional[Iterable[int]] = None,
) -> RunSummary:
    """Aggregate the current JobStatus of every selected user."""
    numbers = _selected(index, targets)
    summary = RunSummary(total=len(numbers))
    for user_number in numbers:
        status = store.get_status(user_number)
        if status.state is JobState.COMPLETED:
            summary.completed += 1
        elif status.state is JobState.FAILED:
            summary.failed += 1
            summary.failures.append(
                (user_number, status.log_path or str(store.log_path(user_number)))
            )
        elif status.state is JobState.RUNNING:
            summary.running += 1
        else:
            summary.not_started += 1
    return summary


def render_summary(
    summary: RunSummary,
    index: IndexTable,
    store: StatusStore,
    targets: Optional[Iterable[int]] = None,
) -> str:
    """Human-readable report listing every user and every failure."""
    numbers = _selected(index, targets)
    statuses = store.get_statuses(numbers)
    lines = [
        "Multi-User Workshop Setup Summary",
        f"Generated on: {datetime.now().isoformat(timespec='seconds')}",
        "",
        f"Total Users: {summary.total}",
        f"Completed: {summary.completed}",
        f"Failed: {summary.failed}",
        f"Running: {summary.running}",
        f"Not Started: {summary.not_started}",
    ]
    if summary.skipped:
        lines.append(f"Skipped This Run: {summary.skipped}")
    if summary.dry_run:
        lines.append("Mode: DRY RUN (no jobs executed)")

    lines += ["", "User Details:"]
    for user_number in numbers:
        row = index.get(user_number)
        email = row.email if row else ""
        state = statuses[user_number].state.value
        lines.append(f"  User {user_number:02d}: {state:<12} {email}")

    lines += ["", "Failed Setups:"]
    if summary.failures:
        lines += [
            f"  User {n:02d}: see {log_path} for details" for n, log_path in summary.failures
        ]
    else:
        lines.append("  none")

    lines += ["", f"Progress Log: {store.progress_log_path}"]
    if summary.failures:
        lines += ["", "Next Steps:", "  Resume failed setups: run --resume"]
    return "\n".join(lines) + "\n"


def write_summary(path: Path, text: str) -> None:
    Path(path).write_text(text, encoding="utf-8")
