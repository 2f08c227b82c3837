import logging
import textwrap
import threading
import time
from pathlib import Path

import pytest

from scripts.provisioning.base_adapter import ProvisioningAdapter
from scripts.provisioning.config import ProvisioningConfig
from scripts.provisioning.errors import AdapterInvocationError
from scripts.provisioning.extractor import Extractor
from scripts.provisioning.registry import EnvironmentRegistry

ENV_VARS = (
    "WORKSHOP_DETAILS_DIR",
    "WORKSHOP_DETAILS_BASENAME",
    "USER_ENV_DIR",
    "SERVICE_ID_PATTERN",
    "MAX_PARALLEL",
    "PROVISIONING_ADAPTER",
    "SETUP_COMMAND",
    "JOB_TIMEOUT_S",
    "STALE_RUNNING_AFTER_S",
    "RESUME_INTERVAL_MIN",
    "MAX_RESUME_SWEEPS",
    "MISFIRE_GRACE_TIME",
    "LOG_LEVEL",
    "LOG_FORMAT",
)


class RecordingAdapter(ProvisioningAdapter):
    """Sleeps for `duration` per call and tracks the concurrent-call high-water mark."""

    ADAPTER_NAME = "recording"

    def __init__(self, duration=0.0, fail_users=()):
        self.duration = duration
        self.fail_users = set(fail_users)
        self.calls = []
        self.active = 0
        self.high_water = 0
        self._lock = threading.Lock()

    def provision(self, descriptor, descriptor_path, log_stream):
        with self._lock:
            self.calls.append(descriptor.user_number)
            self.active += 1
            self.high_water = max(self.high_water, self.active)
        try:
            log_stream.write(f"provisioning {descriptor.email}\n")
            time.sleep(self.duration)
            if descriptor.user_number in self.fail_users:
                raise AdapterInvocationError("setup exploded", exit_code=1)
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture(autouse=True)
def _reset_provisioning_logger():
    """configure_logging() detaches the logger from root; undo that for caplog."""
    yield
    logger = logging.getLogger("provisioning")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


def label_line_block(service_id: str, email: str, guid: str) -> str:
    return textwrap.dedent(f"""\
        {service_id}
        {email}
        Your workshop environment is ready.

        openshift_api_url
        https://api.cluster-{guid}.dynamic.example.com:6443

        openshift_console_url
        https://console-openshift-console.apps.cluster-{guid}.dynamic.example.com

        openshift_bearer_token
        sha256~token-{guid}

        openshift_cluster_ingress_domain
        apps.cluster-{guid}.dynamic.example.com

        guid
        {guid}

        aap_controller_web_url
        https://aap-aap.apps.cluster-{guid}.dynamic.example.com

        aap_controller_admin_user
        admin

        aap_controller_admin_password
        pw-{guid}

        bastion_public_hostname
        bastion.{guid}.example.com

        bastion_ssh_port
        2222

        bastion_ssh_user_name
        lab-user

        bastion_ssh_password
        ssh-{guid}
        """)


def inline_block(service_id: str, email: str, guid: str) -> str:
    return textwrap.dedent(f"""\
        {service_id}
        {email}
        Here are your credentials:
        OpenShift API for command line 'oc' client: https://api.cluster-{guid}.example.com:6443
        OpenShift Console: https://console-openshift-console.apps.cluster-{guid}.example.com
        openshift_bearer_token: sha256~token-{guid}
        Automation Controller URL: https://aap.apps.cluster-{guid}.example.com
        Automation Controller Admin Login: admin
        Automation Controller Admin Password: `pw-{guid}`
        You can reach the bastion with: ssh lab-user@bastion.{guid}.example.com -p 2222
        Use the password 'ssh-{guid}' when prompted.
        """)


@pytest.fixture
def make_export(tmp_path):
    def _make(name: str, blocks: list[str]) -> Path:
        path = tmp_path / "details" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(blocks), encoding="utf-8")
        return path
    return _make


@pytest.fixture
def config(tmp_path):
    return ProvisioningConfig(user_env_dir=tmp_path / "user_environments")


@pytest.fixture
def registered(config, make_export):
    """Five complete users registered from a single label-line export."""
    def _register(count: int = 5) -> ProvisioningConfig:
        blocks = [
            label_line_block(f"enterprise.workshop-{i}", f"user{i}@example.com", f"g{i:03d}")
            for i in range(1, count + 1)
        ]
        path = make_export("workshop_details.txt", blocks)
        records = Extractor().extract([path])
        EnvironmentRegistry(config.user_env_dir).register(records, source_files=[path])
        return config
    return _register
