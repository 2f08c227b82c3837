"""Tests for environment-driven configuration."""

from pathlib import Path

import pytest

from conftest import ENV_VARS
from scripts.provisioning.config import DEFAULT_SERVICE_ID_PATTERN, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_defaults():
    config = load_config()
    assert config.user_env_dir == Path("user_environments")
    assert config.log_dir == Path("user_environments") / "logs"
    assert config.extractor.service_id_pattern == DEFAULT_SERVICE_ID_PATTERN
    assert config.orchestrator.max_parallel == 5
    assert config.orchestrator.adapter == "command"
    assert config.scheduler.max_resume_sweeps == 3


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("USER_ENV_DIR", "/srv/envs")
    monkeypatch.setenv("MAX_PARALLEL", "12")
    monkeypatch.setenv("JOB_TIMEOUT_S", "0")
    monkeypatch.setenv("SERVICE_ID_PATTERN", r"^sandbox\.")

    config = load_config()
    assert config.user_env_dir == Path("/srv/envs")
    assert config.orchestrator.max_parallel == 12
    assert config.orchestrator.job_timeout_s == 0
    assert config.extractor.service_id_pattern == r"^sandbox\."


@pytest.mark.parametrize("name, value", [
    ("MAX_PARALLEL", "0"),
    ("MAX_PARALLEL", "lots"),
    ("RESUME_INTERVAL_MIN", "0"),
    ("SERVICE_ID_PATTERN", "(unclosed"),
    ("LOG_FORMAT", "xml"),
])
def test_invalid_values(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=name):
        load_config()


def test_with_overrides_ignores_none():
    config = load_config()
    assert config.with_overrides(max_parallel=None) is config
    updated = config.with_overrides(max_parallel=2, job_timeout_s=None)
    assert updated.orchestrator.max_parallel == 2
    assert updated.orchestrator.job_timeout_s == config.orchestrator.job_timeout_s
