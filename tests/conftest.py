"""Shared pytest fixtures for firepilot tests.

Two kinds of doubles:
- FakeApi + FakeSupervisor: in-memory control plane (httpx.MockTransport)
  and process supervisor, for state-machine tests without processes.
- fake_firecracker: a real executable serving a subset of the Firecracker
  API on a Unix socket, for process-level tests (marked slow).
"""

from __future__ import annotations

import json
import stat
import sys
from pathlib import Path
from typing import Any

import httpx
import pytest

from firepilot.api_client import ApiClient
from firepilot.exceptions import FirepilotError
from firepilot.executor import Executor
from firepilot.models import BootSource, Drive, MachineConfig, VmConfig
from firepilot.settings import Settings
from firepilot.supervisor import HypervisorProcess, ProcessSupervisor

_FAKE_FIRECRACKER_SOURCE = Path(__file__).parent / "fake_firecracker.py"


# ============================================================================
# In-memory control plane
# ============================================================================


class FakeApi:
    """Records requests and answers the way firecracker does.

    Attributes:
        calls: (method, path, json body) for every request, in order
        faults: (method, path) -> fault_message answered with HTTP 400
        errors: (method, path) -> httpx exception raised instead of answering
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, Any]] = []
        self.faults: dict[tuple[str, str], str] = {}
        self.errors: dict[tuple[str, str], Exception] = {}
        self.instance_state = "Not started"

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        key = (request.method, request.url.path)
        self.calls.append((request.method, request.url.path, body))

        if key in self.errors:
            raise self.errors[key]
        if key in self.faults:
            return httpx.Response(400, json={"fault_message": self.faults[key]})

        if key == ("GET", "/"):
            return httpx.Response(
                200,
                json={"id": "vm1", "state": self.instance_state, "vmm_version": "1.7.0", "app_name": "Firecracker"},
            )
        if key == ("GET", "/version"):
            return httpx.Response(200, json={"firecracker_version": "1.7.0"})
        if key == ("GET", "/machine-config"):
            return httpx.Response(200, json={"vcpu_count": 2, "mem_size_mib": 256, "smt": False})
        return httpx.Response(204)

    def client_factory(self, socket_path: Path, timeout: float) -> ApiClient:
        return ApiClient(socket_path, timeout=timeout, transport=httpx.MockTransport(self.handler))

    def paths(self, method: str | None = None) -> list[str]:
        return [path for m, path, _ in self.calls if method is None or m == method]


# ============================================================================
# In-memory process supervisor
# ============================================================================


class FakeProcess:
    """ProcessWrapper stand-in with a settable exit status."""

    def __init__(self) -> None:
        self.pid = 4242
        self.returncode: int | None = None


class FakeSupervisor(ProcessSupervisor):
    """Supervisor that "spawns" FakeProcess handles.

    Attributes:
        ready_error: Raised from wait_ready() when set
        terminations: graceful flag of every terminate() call
    """

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.ready_error: FirepilotError | None = None
        self.terminations: list[bool] = []
        self.spawned: list[HypervisorProcess] = []

    async def spawn(  # type: ignore[override]
        self,
        binary_path,
        socket_path=None,
        args=(),
        *,
        vm_id=None,
        **kwargs,
    ) -> HypervisorProcess:
        vm_id = vm_id or "vm1"
        process = HypervisorProcess(
            vm_id=vm_id,
            binary_path=Path(binary_path),
            socket_path=Path(socket_path) if socket_path is not None else self.socket_path_for(vm_id),
            process=FakeProcess(),  # type: ignore[arg-type]
            args=tuple(args),
        )
        self.spawned.append(process)
        return process

    async def wait_ready(self, process: HypervisorProcess, timeout: float | None = None) -> None:
        if self.ready_error is not None:
            raise self.ready_error

    async def is_alive(self, process: HypervisorProcess) -> bool:
        return process.returncode is None

    async def wait_exit(self, process: HypervisorProcess, timeout: float) -> int | None:
        return process.returncode

    async def terminate(self, process: HypervisorProcess, graceful: bool = True) -> bool:
        self.terminations.append(graceful)
        if process.returncode is None:
            process.process.returncode = -15 if graceful else -9  # type: ignore[misc]
        return True


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Short timeouts and a per-test workspace."""
    return Settings(
        firecracker_bin=None,
        workspace_dir=tmp_path / "ws",
        ready_timeout_seconds=5.0,
        request_timeout_seconds=5.0,
        term_timeout_seconds=1.0,
        kill_timeout_seconds=2.0,
        shutdown_timeout_seconds=2.0,
    )


@pytest.fixture
def fake_api() -> FakeApi:
    return FakeApi()


@pytest.fixture
def fake_supervisor(settings: Settings) -> FakeSupervisor:
    return FakeSupervisor(settings)


@pytest.fixture
def make_executor(fake_api: FakeApi, fake_supervisor: FakeSupervisor):
    """Build Executors wired to the in-memory doubles."""

    def factory(vm_id: str = "vm1") -> Executor:
        return Executor(
            "/opt/firecracker/firecracker",
            vm_id=vm_id,
            supervisor=fake_supervisor,
            client_factory=fake_api.client_factory,
        )

    return factory


@pytest.fixture
def vm_config(tmp_path: Path) -> VmConfig:
    """Minimal bootable configuration with one root drive."""
    kernel = tmp_path / "vmlinux"
    kernel.write_bytes(b"\x7fELF")
    rootfs = tmp_path / "rootfs.ext4"
    rootfs.write_bytes(b"")
    return VmConfig(
        boot_source=BootSource(kernel_image_path=kernel, boot_args="console=ttyS0 reboot=k panic=1"),
        drives=[Drive(drive_id="rootfs", path_on_host=rootfs, is_root_device=True)],
        machine_config=MachineConfig(vcpu_count=1, mem_size_mib=128),
    )


@pytest.fixture
def fake_firecracker(tmp_path: Path) -> Path:
    """Executable fake firecracker binary."""
    binary = tmp_path / "bin" / "firecracker"
    binary.parent.mkdir()
    binary.write_text(f"#!{sys.executable}\n" + _FAKE_FIRECRACKER_SOURCE.read_text())
    binary.chmod(binary.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return binary


@pytest.fixture
def request_log(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Make the fake binary record requests; returns a reader for them."""
    log_file = tmp_path / "requests.jsonl"
    monkeypatch.setenv("FAKE_FC_RECORD", str(log_file))

    def read() -> list[dict[str, Any]]:
        if not log_file.exists():
            return []
        return [json.loads(line) for line in log_file.read_text().splitlines() if line]

    return read
