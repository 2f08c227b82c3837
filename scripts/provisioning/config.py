"""Configuration via environment variables with .env file support.

Every setting has a local default so the tooling runs from a checkout with no
environment at all. CLI flags override individual values per invocation.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path

from dotenv import load_dotenv

from scripts.provisioning.logging_config import LOG_FORMATS

DEFAULT_SERVICE_ID_PATTERN = r"^enterprise\."


@dataclass(frozen=True)
class ExtractorConfig:
    details_dir: Path = Path(".")
    base_name: str = "workshop_details"
    service_id_pattern: str = DEFAULT_SERVICE_ID_PATTERN


@dataclass(frozen=True)
class OrchestratorConfig:
    max_parallel: int = 5
    adapter: str = "command"
    setup_command: str = "scripts/exercise0/setup_workshop.sh"
    job_timeout_s: int = 3600  # 0 disables the per-job timeout
    stale_running_after_s: int = 7200


@dataclass(frozen=True)
class SchedulerConfig:
    resume_interval_min: int = 10
    max_resume_sweeps: int = 3
    misfire_grace_time: int = 300


@dataclass(frozen=True)
class ProvisioningConfig:
    user_env_dir: Path = Path("user_environments")
    extractor: ExtractorConfig = field(default_factory=ExtractorConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    log_level: str = "INFO"
    log_format: str = "json"

    @property
    def log_dir(self) -> Path:
        return self.user_env_dir / "logs"

    def with_overrides(self, **orchestrator_overrides) -> "ProvisioningConfig":
        """Return a copy with orchestrator settings replaced (None values ignored)."""
        values = {k: v for k, v in orchestrator_overrides.items() if v is not None}
        if not values:
            return self
        return replace(self, orchestrator=replace(self.orchestrator, **values))


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def load_config() -> ProvisioningConfig:
    """Load configuration from environment variables (and a local .env file)."""
    load_dotenv()

    pattern = os.environ.get("SERVICE_ID_PATTERN", DEFAULT_SERVICE_ID_PATTERN)
    try:
        re.compile(pattern)
    except re.error as exc:
        raise ValueError(f"SERVICE_ID_PATTERN is not a valid regex: {exc}")

    extractor = ExtractorConfig(
        details_dir=Path(os.environ.get("WORKSHOP_DETAILS_DIR", ".")),
        base_name=os.environ.get("WORKSHOP_DETAILS_BASENAME", "workshop_details"),
        service_id_pattern=pattern,
    )

    orchestrator = OrchestratorConfig(
        max_parallel=_int_env("MAX_PARALLEL", 5, minimum=1),
        adapter=os.environ.get("PROVISIONING_ADAPTER", "command"),
        setup_command=os.environ.get(
            "SETUP_COMMAND", "scripts/exercise0/setup_workshop.sh"
        ),
        job_timeout_s=_int_env("JOB_TIMEOUT_S", 3600),
        stale_running_after_s=_int_env("STALE_RUNNING_AFTER_S", 7200),
    )

    scheduler = SchedulerConfig(
        resume_interval_min=_int_env("RESUME_INTERVAL_MIN", 10, minimum=1),
        max_resume_sweeps=_int_env("MAX_RESUME_SWEEPS", 3, minimum=1),
        misfire_grace_time=_int_env("MISFIRE_GRACE_TIME", 300),
    )

    log_format = os.environ.get("LOG_FORMAT", "json").lower()
    if log_format not in LOG_FORMATS:
        raise ValueError(f"LOG_FORMAT must be one of {LOG_FORMATS}, got {log_format!r}")

    return ProvisioningConfig(
        user_env_dir=Path(os.environ.get("USER_ENV_DIR", "user_environments")),
        extractor=extractor,
        orchestrator=orchestrator,
        scheduler=scheduler,
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        log_format=log_format,
    )
