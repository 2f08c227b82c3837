"""Environment registry: numbered descriptors, the users.csv ledger, and readers.

Every register() call is a full rebuild: descriptors 1..N are regenerated
from the current records and any older `.envNN` file is removed first.
"""

from __future__ import annotations

import csv
import logging
import re
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Sequence

from dotenv import dotenv_values

from scripts.provisioning.errors import EnvironmentUnavailableError, ValidationError
from scripts.provisioning.models import (
    CREDENTIAL_FIELDS,
    IndexRow,
    IndexTable,
    RawRecord,
    UserEnvironmentDescriptor,
)

logger = logging.getLogger("provisioning.registry")

INDEX_FILE = "users.csv"
PARSE_SUMMARY_FILE = "summary.txt"
INDEX_COLUMNS = ["user_number", "email", "service_id", "source_file", "status"]
DESCRIPTOR_RE = re.compile(r"^\.env(\d+)$")

# descriptor attribute -> key written to the .envNN file
DESCRIPTOR_KEYS: dict[str, str] = {
    "user_number": "USER_NUMBER",
    "email": "USER_EMAIL",
    "service_id": "SERVICE_ID",
    "source_file": "SOURCE_FILE",
    "cluster_api_url": "OCP_API_URL",
    "console_url": "OCP_CONSOLE_URL",
    "bearer_token": "OCP_BEARER_TOKEN",
    "cluster_domain": "OCP_CLUSTER_DOMAIN",
    "cluster_guid": "WORKSHOP_GUID",
    "aap_url": "AAP_URL",
    "aap_username": "AAP_USERNAME",
    "aap_password": "AAP_PASSWORD",
    "ssh_host": "SSH_HOST",
    "ssh_port": "SSH_PORT",
    "ssh_user": "SSH_USER",
    "ssh_password": "SSH_PASSWORD",
}


def descriptor_path(directory: Path, user_number: int) -> Path:
    return Path(directory) / f".env{user_number:02d}"


def _quote(value: str) -> str:
    # Double-quoted so `source .envNN` in bash yields the exact value.
    # python-dotenv undoes \\ and \" itself; _unquote() undoes \$ and \`.
    for char in ("\\", '"', "$", "`"):
        value = value.replace(char, "\\" + char)
    return f'"{value}"'


def _unquote(value: str) -> str:
    return value.replace("\\$", "$").replace("\\`", "`")


def build_descriptor(user_number: int, record: RawRecord) -> UserEnvironmentDescriptor:
    values = {name: record.fields.get(name, "") for name in CREDENTIAL_FIELDS}
    return UserEnvironmentDescriptor(
        user_number=user_number,
        email=record.email,
        service_id=record.service_id,
        source_file=record.source_file,
        **values,
    )


def render_descriptor(descriptor: UserEnvironmentDescriptor) -> str:
    """Serialize a descriptor. Output depends on the descriptor alone."""
    lines = [
        f"# Workshop environment descriptor for user {descriptor.user_number:02d}",
        f"# Email: {descriptor.email}",
        f"# Service: {descriptor.service_id}",
        "",
    ]
    for attr, key in DESCRIPTOR_KEYS.items():
        lines.append(f"{key}={_quote(str(getattr(descriptor, attr)))}")
    lines.append("")
    lines.append(f"WORKSHOP_USER_NUM={_quote(f'{descriptor.user_number:02d}')}")
    lines.append(f"DESCRIPTOR_COMPLETE={_quote('true' if descriptor.is_complete else 'false')}")
    lines.append(f"MISSING_FIELDS={_quote(','.join(descriptor.missing_fields))}")
    lines.append(f"INVALID_FIELDS={_quote(','.join(descriptor.format_issues))}")
    return "\n".join(lines) + "\n"


class EnvironmentRegistry:
    """Assigns global user numbers and persists one descriptor per user."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.diagnostics: list[ValidationError] = []

    def register(
        self,
        records: Iterable[RawRecord],
        dry_run: bool = False,
        source_files: Optional[Sequence[Path]] = None,
    ) -> tuple[list[UserEnvironmentDescriptor], IndexTable]:
        descriptors: list[UserEnvironmentDescriptor] = []
        index = IndexTable()
        user_number = 0

        for record in records:
            if not record.email:
                logger.warning(
                    "Skipping record without email from %s",
                    record.source_file,
                    extra={"source_file": record.source_file},
                )
                continue
            user_number += 1
            descriptor = build_descriptor(user_number, record)
            status = "parsed"
            if not descriptor.is_valid:
                diagnostic = ValidationError(
                    user_number, descriptor.missing_fields, descriptor.format_issues
                )
                self.diagnostics.append(diagnostic)
                logger.warning("%s", diagnostic, extra={"user_number": user_number})
                status = "incomplete" if descriptor.missing_fields else "invalid"
            descriptors.append(descriptor)
            index.append(
                IndexRow(
                    user_number=user_number,
                    email=descriptor.email,
                    service_id=descriptor.service_id,
                    source_file=descriptor.source_file,
                    status=status,
                )
            )

        if dry_run:
            for descriptor in descriptors:
                logger.info(
                    "Would create %s for %s",
                    descriptor_path(self.directory, descriptor.user_number).name,
                    descriptor.email,
                    extra={"user_number": descriptor.user_number},
                )
            return descriptors, index

        try:
            self._persist(descriptors, index, source_files or [])
        except OSError as exc:
            raise EnvironmentUnavailableError(
                f"Cannot write user environments to {self.directory}: {exc}"
            ) from exc

        logger.info(
            "Registered %d user environments in %s",
            len(descriptors),
            self.directory,
            extra={"records": len(descriptors)},
        )
        return descriptors, index

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(
        self,
        descriptors: list[UserEnvironmentDescriptor],
        index: IndexTable,
        source_files: Sequence[Path],
    ) -> None:
        if self.directory.exists():
            logger.warning("Output directory already exists, descriptors will be rebuilt")
        self.directory.mkdir(parents=True, exist_ok=True)

        for stale in self.directory.iterdir():
            if DESCRIPTOR_RE.match(stale.name) and stale.is_file():
                stale.unlink()

        for descriptor in descriptors:
            path = descriptor_path(self.directory, descriptor.user_number)
            path.write_text(render_descriptor(descriptor), encoding="utf-8")

        with open(self.directory / INDEX_FILE, "w", encoding="utf-8", newline="") as fh:
            writer = csv.writer(fh)
            writer.writerow(INDEX_COLUMNS)
            for row in index:
                writer.writerow(
                    [row.user_number, row.email, row.service_id, row.source_file, row.status]
                )

        (self.directory / PARSE_SUMMARY_FILE).write_text(
            self._render_parse_summary(descriptors, source_files), encoding="utf-8"
        )

    def _render_parse_summary(
        self,
        descriptors: list[UserEnvironmentDescriptor],
        source_files: Sequence[Path],
    ) -> str:
        per_file = Counter(d.source_file for d in descriptors)
        file_names = [Path(p).name for p in source_files] or list(per_file)
        flagged = [d for d in descriptors if not d.is_valid]

        lines = [
            "Workshop Details Parse Summary",
            f"Generated on: {datetime.now().isoformat(timespec='seconds')}",
            "",
            f"Total Users Processed: {len(descriptors)}",
            f"Output Directory: {self.directory}",
            f"Source Files: {len(file_names)} file(s)",
            "",
            "File Statistics:",
        ]
        lines += [f"  {name}: {per_file.get(name, 0)} users" for name in file_names]
        lines += ["", "Descriptors Failing Validation:"]
        for d in flagged:
            problems = [f"missing {', '.join(d.missing_fields)}"] if d.missing_fields else []
            problems += [f"{name} {reason}" for name, reason in d.format_issues.items()]
            lines.append(f"  User {d.user_number:02d} ({d.email}): {'; '.join(problems)}")
        if not flagged:
            lines.append("  none")
        lines += ["", "Files Created:"]
        lines += [f"  {descriptor_path(self.directory, d.user_number).name}" for d in descriptors]
        lines += [f"  {INDEX_FILE}", f"  {PARSE_SUMMARY_FILE}", ""]
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Readers
# ----------------------------------------------------------------------


def load_index(directory: Path) -> IndexTable:
    """Read users.csv. Raises EnvironmentUnavailableError when unusable."""
    directory = Path(directory)
    if not directory.is_dir():
        raise EnvironmentUnavailableError(
            f"User environments directory not found: {directory}"
        )
    path = directory / INDEX_FILE
    if not path.is_file():
        raise EnvironmentUnavailableError(
            f"No index found at {path}; parse the workshop details first"
        )

    index = IndexTable()
    try:
        with open(path, encoding="utf-8", newline="") as fh:
            for row in csv.DictReader(fh):
                index.append(
                    IndexRow(
                        user_number=int(row["user_number"]),
                        email=row["email"],
                        service_id=row["service_id"],
                        source_file=row["source_file"],
                        status=row.get("status") or "parsed",
                    )
                )
    except (KeyError, ValueError) as exc:
        raise EnvironmentUnavailableError(f"Index {path} is malformed: {exc}") from exc
    return index


def load_descriptor(directory: Path, user_number: int) -> UserEnvironmentDescriptor:
    """Read one .envNN descriptor back. Raises FileNotFoundError if absent."""
    path = descriptor_path(directory, user_number)
    if not path.is_file():
        raise FileNotFoundError(f"Environment file not found: {path}")
    raw = dotenv_values(path, interpolate=False)
    values = {attr: _unquote(raw.get(key) or "") for attr, key in DESCRIPTOR_KEYS.items()}
    values["user_number"] = int(values["user_number"] or user_number)
    return UserEnvironmentDescriptor(**values)
