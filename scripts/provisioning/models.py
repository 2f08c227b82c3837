"""Domain records shared by the extractor, registry, orchestrator and reports."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Optional

# Credential fields carried by every descriptor, in file order.
CREDENTIAL_FIELDS: tuple[str, ...] = (
    "cluster_api_url",
    "console_url",
    "bearer_token",
    "cluster_domain",
    "cluster_guid",
    "aap_url",
    "aap_username",
    "aap_password",
    "ssh_host",
    "ssh_port",
    "ssh_user",
    "ssh_password",
)

# Fields whose values must carry an http(s) scheme.
URL_FIELDS: tuple[str, ...] = ("cluster_api_url", "console_url", "aap_url")

_URL_RE = re.compile(r"^https?://")
_PORT_RE = re.compile(r"^[0-9]+$")


class JobState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunMode(str, Enum):
    NORMAL = "normal"
    RESUME = "resume"
    FORCE = "force"


@dataclass(frozen=True)
class RawRecord:
    """One service block lifted out of an export file.

    `fields` holds the credential values the file's extraction strategy found
    in `message_text`, keyed by descriptor field name.
    """

    service_id: str
    email: str
    message_text: str
    source_file: str
    fields: dict[str, str] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class UserEnvironmentDescriptor:
    user_number: int
    email: str
    service_id: str
    source_file: str
    cluster_api_url: str = ""
    console_url: str = ""
    bearer_token: str = ""
    cluster_domain: str = ""
    cluster_guid: str = ""
    aap_url: str = ""
    aap_username: str = ""
    aap_password: str = ""
    ssh_host: str = ""
    ssh_port: str = ""
    ssh_user: str = ""
    ssh_password: str = ""

    @property
    def missing_fields(self) -> list[str]:
        return [name for name in CREDENTIAL_FIELDS if not getattr(self, name)]

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields

    @property
    def format_issues(self) -> dict[str, str]:
        """Present-but-malformed fields, mapped to what is wrong with them."""
        issues: dict[str, str] = {}
        for name in URL_FIELDS:
            value = getattr(self, name)
            if value and not _URL_RE.match(value):
                issues[name] = "should start with http:// or https://"
        if self.ssh_port and not _PORT_RE.match(self.ssh_port):
            issues["ssh_port"] = "should be numeric"
        return issues

    @property
    def is_valid(self) -> bool:
        return self.is_complete and not self.format_issues

    @classmethod
    def field_names(cls) -> list[str]:
        return [f.name for f in fields(cls)]


@dataclass(frozen=True)
class JobStatus:
    user_number: int
    state: JobState = JobState.NOT_STARTED
    last_attempt_time: Optional[datetime] = None
    log_path: Optional[str] = None
    exit_code: Optional[int] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class IndexRow:
    user_number: int
    email: str
    service_id: str
    source_file: str
    status: str = "parsed"


@dataclass
class IndexTable:
    """Ordered ledger of registered users, keyed by user number."""

    rows: list[IndexRow] = field(default_factory=list)

    def append(self, row: IndexRow) -> None:
        self.rows.append(row)

    def user_numbers(self) -> list[int]:
        return [row.user_number for row in self.rows]

    def get(self, user_number: int) -> Optional[IndexRow]:
        for row in self.rows:
            if row.user_number == user_number:
                return row
        return None

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self):
        return iter(self.rows)


@dataclass
class RunSummary:
    total: int = 0
    completed: int = 0
    failed: int = 0
    running: int = 0
    not_started: int = 0
    skipped: int = 0
    failures: list[tuple[int, Optional[str]]] = field(default_factory=list)
    dry_run: bool = False

    @property
    def failed_user_numbers(self) -> list[int]:
        return [user_number for user_number, _ in self.failures]

    @property
    def ok(self) -> bool:
        """True only when every targeted user reached Completed."""
        return self.completed == self.total
