"""Tests for the file-backed job status store."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from scripts.provisioning.models import JobState, JobStatus
from scripts.provisioning.status_store import StatusStore


@pytest.fixture
def store(tmp_path):
    store = StatusStore(tmp_path / "logs")
    store.ensure_dir()
    return store


def test_missing_status_is_not_started(store):
    status = store.get_status(3)
    assert status.state is JobState.NOT_STARTED
    assert status.last_attempt_time is None


def test_run_start_then_end(store):
    started = store.record_run_start(2)
    assert store.get_status(2).state is JobState.RUNNING

    finished = store.record_run_end(2, JobState.FAILED, exit_code=4, error_message="boom")
    status = store.get_status(2)
    assert status.state is JobState.FAILED
    assert status.exit_code == 4
    assert status.error_message == "boom"
    assert status.last_attempt_time == started.last_attempt_time == finished.last_attempt_time
    assert status.log_path.endswith("setup_user02.log")


def test_status_file_is_json(store):
    store.record_run_end(1, JobState.COMPLETED, exit_code=0)
    data = json.loads(store.status_path(1).read_text(encoding="utf-8"))
    assert data["state"] == "completed"
    assert data["exit_code"] == 0
    assert not list(store.log_dir.glob(".*.tmp"))


def test_long_error_message_is_truncated(store):
    store.record_run_end(1, JobState.FAILED, error_message="x" * 5000)
    assert len(store.get_status(1).error_message) == 1000


def test_legacy_bare_word_status(store):
    store.status_path(5).write_text("completed\n", encoding="utf-8")
    assert store.get_status(5).state is JobState.COMPLETED


def test_garbage_status_is_not_started(store):
    store.status_path(6).write_text("{not json", encoding="utf-8")
    assert store.get_status(6).state is JobState.NOT_STARTED


def test_progress_log_lines(store):
    store.append_progress("INFO", "Multi-user setup started")
    store.append_progress("ERROR", "Setup failed (exit code: 1)", 7)
    lines = store.progress_log_path.read_text(encoding="utf-8").splitlines()
    assert lines[0].endswith("[INFO] Multi-user setup started")
    assert lines[1].endswith("[ERROR] User 07: Setup failed (exit code: 1)")


def test_is_stale():
    now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    old = JobStatus(1, JobState.RUNNING, last_attempt_time=now - timedelta(hours=3))
    fresh = JobStatus(1, JobState.RUNNING, last_attempt_time=now - timedelta(minutes=5))
    failed = JobStatus(1, JobState.FAILED, last_attempt_time=now - timedelta(hours=3))

    assert StatusStore.is_stale(old, 7200, now)
    assert not StatusStore.is_stale(fresh, 7200, now)
    assert not StatusStore.is_stale(failed, 7200, now)
    assert not StatusStore.is_stale(JobStatus(1, JobState.RUNNING), 7200, now)
