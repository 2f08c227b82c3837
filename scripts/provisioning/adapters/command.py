"""Command adapter: runs the per-user setup script as a subprocess."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import tempfile
from pathlib import Path
from typing import IO

from scripts.provisioning.base_adapter import ProvisioningAdapter
from scripts.provisioning.config import ProvisioningConfig
from scripts.provisioning.errors import AdapterInvocationError
from scripts.provisioning.extractor import FIELD_LABELS
from scripts.provisioning.models import UserEnvironmentDescriptor

logger = logging.getLogger("provisioning.adapters.command")


def render_details(descriptor: UserEnvironmentDescriptor) -> str:
    """Render a descriptor as a details.txt in the label-line layout."""
    lines: list[str] = []
    for name, labels in FIELD_LABELS.items():
        lines += [labels[0], getattr(descriptor, name), ""]
    return "\n".join(lines)


class CommandAdapter(ProvisioningAdapter):
    ADAPTER_NAME = "command"

    def __init__(self, config: ProvisioningConfig) -> None:
        orch = config.orchestrator
        argv = shlex.split(orch.setup_command)
        if not argv:
            raise ValueError("SETUP_COMMAND is empty")
        # the command runs from a temp dir, so pin relative script paths now
        if os.sep in argv[0] and not os.path.isabs(argv[0]):
            argv[0] = str(Path(argv[0]).resolve())
        self._argv = argv
        self._timeout_s = orch.job_timeout_s

    def provision(
        self,
        descriptor: UserEnvironmentDescriptor,
        descriptor_path: Path,
        log_stream: IO[str],
    ) -> None:
        user_number = descriptor.user_number
        env = os.environ.copy()
        env.update({
            "USER_NUMBER": f"{user_number:02d}",
            "ENV_FILE": str(Path(descriptor_path).resolve()),
            "USE_PUBLISHED_EE": "true",
            "SKIP_INTERACTIVE": "true",
        })

        with tempfile.TemporaryDirectory(prefix=f"temp_user{user_number:02d}_") as workdir:
            Path(workdir, "details.txt").write_text(render_details(descriptor), encoding="utf-8")
            log_stream.flush()
            logger.debug(
                "Running %s in %s", self._argv[0], workdir, extra={"user_number": user_number}
            )
            try:
                completed = subprocess.run(
                    self._argv,
                    cwd=workdir,
                    env=env,
                    stdout=log_stream,
                    stderr=subprocess.STDOUT,
                    timeout=self._timeout_s or None,
                    check=False,
                )
            except subprocess.TimeoutExpired:
                raise AdapterInvocationError(
                    f"Setup timed out after {self._timeout_s}s",
                    user_number=user_number,
                )
            except OSError as exc:
                raise AdapterInvocationError(
                    f"Cannot start setup command {self._argv[0]}: {exc}",
                    user_number=user_number,
                )

        if completed.returncode != 0:
            raise AdapterInvocationError(
                f"Setup failed (exit code: {completed.returncode})",
                user_number=user_number,
                exit_code=completed.returncode,
            )
