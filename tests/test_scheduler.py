"""Tests for the interval resume sweep."""

from dataclasses import replace

import pytest

from conftest import RecordingAdapter
from scripts.provisioning.config import SchedulerConfig
from scripts.provisioning.errors import EnvironmentUnavailableError
from scripts.provisioning.orchestrator import Orchestrator
from scripts.provisioning.scheduler import ResumeSweep, start_scheduler


class FakeScheduler:
    def __init__(self):
        self.shut_down = False

    def shutdown(self, wait=True):
        self.shut_down = True


def test_sweep_stops_when_nothing_failed(registered):
    config = registered(3)
    scheduler = FakeScheduler()
    sweep = ResumeSweep(scheduler, Orchestrator(config, RecordingAdapter()), None, 2, 3)

    sweep()

    assert scheduler.shut_down
    assert sweep.last_summary.completed == 3


def test_sweep_keeps_going_until_limit(registered):
    config = registered(2)
    scheduler = FakeScheduler()
    adapter = RecordingAdapter(fail_users={2})
    sweep = ResumeSweep(scheduler, Orchestrator(config, adapter), None, 2, 2)

    sweep()
    assert not scheduler.shut_down
    sweep()
    assert scheduler.shut_down
    assert sorted(adapter.calls) == [1, 2, 2]
    assert sweep.last_summary.failed_user_numbers == [2]


def test_sweep_stops_on_unavailable_environment(config):
    scheduler = FakeScheduler()
    sweep = ResumeSweep(scheduler, Orchestrator(config, RecordingAdapter()), None, 1, 3)

    with pytest.raises(EnvironmentUnavailableError):
        sweep()
    assert scheduler.shut_down


def test_start_scheduler_runs_first_sweep_immediately(registered):
    config = registered(2)
    config = replace(config, scheduler=SchedulerConfig(resume_interval_min=60, max_resume_sweeps=1))
    adapter = RecordingAdapter()

    sweep = start_scheduler(config, Orchestrator(config, adapter), max_concurrency=2)

    assert sweep.sweeps == 1
    assert sorted(adapter.calls) == [1, 2]
    assert sweep.last_summary.ok
