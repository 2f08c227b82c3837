"""Bulk export parser: workshop details text -> ordered RawRecords.

An export file is a sequence of service blocks. Each block opens with a
service identifier line, carries the participant's email on a line of its
own, and is followed by a free-form credential message. Two legacy message
layouts exist and each file uses exactly one of them:

  label line, then value line          label: value
  ---------------------------          ------------
  openshift_api_url                    openshift_api_url: https://api...
  https://api.cluster-x...             OpenShift Console: https://console...

The layout is detected once per file and the matching ExtractionStrategy is
applied to every block of that file.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence

from scripts.provisioning.config import DEFAULT_SERVICE_ID_PATTERN
from scripts.provisioning.errors import ParseError
from scripts.provisioning.models import RawRecord

logger = logging.getLogger("provisioning.extractor")

EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")

# descriptor field -> machine labels used by both layouts
FIELD_LABELS: dict[str, tuple[str, ...]] = {
    "cluster_api_url": ("openshift_api_url",),
    "console_url": ("openshift_console_url",),
    "bearer_token": ("openshift_bearer_token",),
    "cluster_domain": ("openshift_cluster_ingress_domain",),
    "cluster_guid": ("guid",),
    "aap_url": ("aap_controller_web_url",),
    "aap_username": ("aap_controller_admin_user",),
    "aap_password": ("aap_controller_admin_password",),
    "ssh_host": ("bastion_public_hostname",),
    "ssh_port": ("bastion_ssh_port",),
    "ssh_user": ("bastion_ssh_user_name",),
    "ssh_password": ("bastion_ssh_password",),
}

# Human-readable labels of the older "label: value" export (regex fragments)
LEGACY_INLINE_LABELS: dict[str, tuple[str, ...]] = {
    "cluster_api_url": (r"OpenShift API for command line[^:]*",),
    "console_url": (r"OpenShift Console",),
    "aap_url": (r"Automation Controller URL",),
    "aap_username": (r"Automation Controller Admin Login",),
    "aap_password": (r"Automation Controller Admin Password",),
}

SSH_COMMAND_RE = re.compile(r"\bssh\s+([\w.-]+)@([\w.-]+)(?:\s+-p\s*(\d+))?")
SSH_PASSWORD_HINT_RE = re.compile(r"password\s*'([^']*)'", re.IGNORECASE)
CONSOLE_PREFIX_RE = re.compile(r"^https?://console-openshift-console\.")
GUID_RE = re.compile(r"cluster-([A-Za-z0-9]+)")


# ----------------------------------------------------------------------
# Extraction strategies
# ----------------------------------------------------------------------


class ExtractionStrategy(ABC):
    """Turns one block's message text into descriptor field values."""

    NAME: str = ""

    @abstractmethod
    def detect(self, lines: Sequence[str]) -> bool:
        """Return True if the whole file looks like this layout."""

    @abstractmethod
    def extract(self, message_text: str) -> dict[str, str]:
        """Return {descriptor_field: value} for the fields found."""

    def extract_fields(self, message_text: str) -> dict[str, str]:
        """extract() plus the fields derivable from the ones found."""
        values = self.extract(message_text)
        return derive_fields(values)


class LabelLineStrategy(ExtractionStrategy):
    NAME = "label-line"

    def __init__(self) -> None:
        self._label_to_field = {
            label.lower(): name
            for name, labels in FIELD_LABELS.items()
            for label in labels
        }

    def _field_for(self, line: str) -> Optional[str]:
        return self._label_to_field.get(line.strip().lower())

    def detect(self, lines: Sequence[str]) -> bool:
        for current, following in zip(lines, lines[1:]):
            if self._field_for(current) and following.strip() and not self._field_for(following):
                return True
        return False

    def extract(self, message_text: str) -> dict[str, str]:
        lines = message_text.splitlines()
        values: dict[str, str] = {}
        for i, line in enumerate(lines[:-1]):
            name = self._field_for(line)
            if not name or name in values:
                continue
            value = lines[i + 1].strip()
            if value and not self._field_for(value):
                values[name] = value
        return values


class InlineLabelStrategy(ExtractionStrategy):
    NAME = "label-colon-value"

    def __init__(self) -> None:
        self._patterns: list[tuple[str, re.Pattern[str]]] = []
        for name, labels in FIELD_LABELS.items():
            for label in labels:
                self._patterns.append((name, self._compile(re.escape(label))))
        for name, fragments in LEGACY_INLINE_LABELS.items():
            for fragment in fragments:
                self._patterns.append((name, self._compile(fragment)))

    @staticmethod
    def _compile(label_regex: str) -> re.Pattern[str]:
        return re.compile(
            rf"^\s*(?:[-*]\s*)?{label_regex}\s*:\s*(.+?)\s*$", re.IGNORECASE
        )

    def detect(self, lines: Sequence[str]) -> bool:
        return any(p.match(line) for line in lines for _, p in self._patterns)

    def extract(self, message_text: str) -> dict[str, str]:
        values: dict[str, str] = {}
        for line in message_text.splitlines():
            for name, pattern in self._patterns:
                if name in values:
                    continue
                m = pattern.match(line)
                if m:
                    value = m.group(1).strip("`").strip()
                    if value:
                        values[name] = value
                    break
            else:
                self._extract_ssh_hints(line, values)
        return values

    @staticmethod
    def _extract_ssh_hints(line: str, values: dict[str, str]) -> None:
        if "ssh_host" not in values:
            m = SSH_COMMAND_RE.search(line)
            if m:
                values.setdefault("ssh_user", m.group(1))
                values["ssh_host"] = m.group(2)
                if m.group(3):
                    values.setdefault("ssh_port", m.group(3))
        if "ssh_password" not in values:
            m = SSH_PASSWORD_HINT_RE.search(line)
            if m and m.group(1):
                values["ssh_password"] = m.group(1)


def derive_fields(values: dict[str, str]) -> dict[str, str]:
    """Fill cluster_domain and cluster_guid from the console URL when absent."""
    console = values.get("console_url", "")
    if not values.get("cluster_domain") and CONSOLE_PREFIX_RE.match(console):
        values["cluster_domain"] = CONSOLE_PREFIX_RE.sub("", console).rstrip("/")
    domain = values.get("cluster_domain", "")
    if not values.get("cluster_guid") and domain:
        m = GUID_RE.search(domain)
        if m:
            values["cluster_guid"] = m.group(1)
    return values


DEFAULT_STRATEGIES: tuple[type[ExtractionStrategy], ...] = (
    LabelLineStrategy,
    InlineLabelStrategy,
)


# ----------------------------------------------------------------------
# File discovery
# ----------------------------------------------------------------------


def discover_export_files(directory: Path, base_name: str = "workshop_details") -> list[Path]:
    """Find the base export and its numbered continuations, in numeric order.

    `workshop_details.txt` comes first, then `workshop_details2.txt`,
    `workshop_details3.txt`, ... ordered by the number, never by the
    filesystem's listing order.
    """
    pattern = re.compile(rf"^{re.escape(base_name)}(\d*)\.txt$")
    found: list[tuple[int, int, Path]] = []
    for path in Path(directory).iterdir():
        m = pattern.match(path.name)
        if not m or not path.is_file():
            continue
        suffix = m.group(1)
        # base file sorts as 1, ahead of an explicit "1" suffix
        number = int(suffix) if suffix else 1
        found.append((number, 1 if suffix else 0, path))
    # name breaks ties such as "2" vs "02"
    found.sort(key=lambda item: (item[0], item[1], item[2].name))
    return [path for _, _, path in found]


# ----------------------------------------------------------------------
# Block state machine
# ----------------------------------------------------------------------


class _State(Enum):
    SEEKING = "seeking"
    AWAITING_EMAIL = "awaiting_email"
    ACCUMULATING = "accumulating"


class Extractor:
    """Line-oriented parser producing RawRecords in file, then encounter, order."""

    def __init__(
        self,
        service_id_pattern: str = DEFAULT_SERVICE_ID_PATTERN,
        strategies: Optional[Sequence[ExtractionStrategy]] = None,
    ) -> None:
        self._service_re = re.compile(service_id_pattern)
        self._strategies = list(strategies) if strategies else [cls() for cls in DEFAULT_STRATEGIES]
        self.diagnostics: list[ParseError] = []
        self.file_counts: dict[str, int] = {}
        self.file_strategies: dict[str, str] = {}

    def detect_strategy(self, lines: Sequence[str]) -> ExtractionStrategy:
        """First strategy whose detector matches; the last one otherwise."""
        for strategy in self._strategies:
            if strategy.detect(lines):
                return strategy
        return self._strategies[-1]

    def extract(self, files: Iterable[Path]) -> list[RawRecord]:
        records: list[RawRecord] = []
        for path in files:
            records.extend(self.extract_file(Path(path)))
        logger.info(
            "Extracted %d records from %d file(s)",
            len(records),
            len(self.file_counts),
            extra={"records": len(records)},
        )
        return records

    def extract_file(self, path: Path) -> list[RawRecord]:
        source = path.name
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
        if not lines:
            logger.warning("Export file is empty: %s", source, extra={"source_file": source})
        strategy = self.detect_strategy(lines)
        self.file_strategies[source] = strategy.NAME
        logger.debug(
            "Using %s layout for %s", strategy.NAME, source, extra={"source_file": source}
        )

        records = list(self._scan(lines, source, strategy))
        self.file_counts[source] = len(records)
        logger.info(
            "Completed %s: %d users",
            source,
            len(records),
            extra={"source_file": source, "records": len(records)},
        )
        return records

    def _scan(
        self, lines: Sequence[str], source: str, strategy: ExtractionStrategy
    ) -> Iterator[RawRecord]:
        state = _State.SEEKING
        service_id = ""
        email = ""
        message: list[str] = []
        block_line = 0

        for line_number, line in enumerate(lines, start=1):
            stripped = line.strip()

            if self._service_re.match(stripped):
                record = self._finalize(
                    state, service_id, email, message, source, block_line, strategy
                )
                if record is not None:
                    yield record
                state = _State.AWAITING_EMAIL
                service_id = stripped
                email = ""
                message = []
                block_line = line_number
                logger.debug("Found service: %s", service_id, extra={"source_file": source})
                continue

            if state is _State.ACCUMULATING:
                message.append(line)
            elif EMAIL_RE.match(stripped):
                email = stripped
                state = _State.ACCUMULATING
                if not block_line:
                    block_line = line_number
                logger.debug("Found email: %s", email, extra={"source_file": source})

        record = self._finalize(state, service_id, email, message, source, block_line, strategy)
        if record is not None:
            yield record

    def _finalize(
        self,
        state: _State,
        service_id: str,
        email: str,
        message: list[str],
        source: str,
        block_line: int,
        strategy: ExtractionStrategy,
    ) -> Optional[RawRecord]:
        if state is _State.AWAITING_EMAIL:
            diagnostic = ParseError(
                f"service block {service_id!r} has no email address, dropped",
                source_file=source,
                line_number=block_line,
            )
            self.diagnostics.append(diagnostic)
            logger.warning("%s", diagnostic, extra={"source_file": source})
            return None
        if state is not _State.ACCUMULATING:
            return None

        message_text = "\n".join(message)
        return RawRecord(
            service_id=service_id,
            email=email,
            message_text=message_text,
            source_file=source,
            fields=strategy.extract_fields(message_text),
        )
