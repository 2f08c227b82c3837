"""Error taxonomy for the provisioning pipeline.

ParseError and ValidationError are diagnostics: they are built and logged at
the extractor/registry boundary, never raised past it. AdapterInvocationError
is absorbed per job. EnvironmentUnavailableError aborts a run before any job
is scheduled.
"""

from __future__ import annotations

from typing import Optional


class ProvisioningError(Exception):
    """Base class for all pipeline errors."""


class ParseError(ProvisioningError):
    def __init__(self, message: str, *, source_file: str = "", line_number: int = 0) -> None:
        super().__init__(message)
        self.source_file = source_file
        self.line_number = line_number

    def __str__(self) -> str:
        where = f"{self.source_file}:{self.line_number}" if self.source_file else ""
        base = super().__str__()
        return f"{where}: {base}" if where else base


class ValidationError(ProvisioningError):
    def __init__(
        self,
        user_number: int,
        missing_fields: list[str],
        invalid_fields: Optional[dict[str, str]] = None,
    ) -> None:
        invalid_fields = dict(invalid_fields or {})
        problems = []
        if missing_fields:
            problems.append("missing: " + ", ".join(missing_fields))
        problems += [f"{name} {reason}" for name, reason in invalid_fields.items()]
        kind = "incomplete" if missing_fields else "invalid"
        super().__init__(f"user {user_number:02d} descriptor is {kind}, " + "; ".join(problems))
        self.user_number = user_number
        self.missing_fields = list(missing_fields)
        self.invalid_fields = invalid_fields


class AdapterInvocationError(ProvisioningError):
    def __init__(
        self,
        message: str,
        *,
        user_number: int = 0,
        exit_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.user_number = user_number
        self.exit_code = exit_code


class EnvironmentUnavailableError(ProvisioningError):
    """No registered descriptors, or the registry directory is unusable."""
