"""Tests for the Machine facade.

In-memory tests use the conftest doubles; the slow tests drive the fake
firecracker executable end to end over a real Unix socket.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from firepilot.exceptions import ApiError, SpawnError, VmTimeoutError
from firepilot.executor import Executor
from firepilot.machine import Machine
from firepilot.models import VmConfig
from firepilot.settings import Settings
from firepilot.vm_types import VmState

from .conftest import FakeApi, FakeSupervisor

# ============================================================================
# In-memory
# ============================================================================


class TestMachine:
    async def test_create_then_start(self, make_executor, fake_api: FakeApi, vm_config: VmConfig) -> None:
        machine = await Machine.create(vm_config, executor=make_executor())
        assert machine.state is VmState.CONFIGURED

        await machine.start()

        assert machine.state is VmState.RUNNING
        assert [(t.old, t.new) for t in machine.executor.history] == [
            (VmState.CREATED, VmState.CONFIGURING),
            (VmState.CONFIGURING, VmState.CONFIGURED),
            (VmState.CONFIGURED, VmState.BOOTING),
            (VmState.BOOTING, VmState.RUNNING),
        ]
        assert fake_api.paths("PUT") == ["/boot-source", "/machine-config", "/drives/rootfs", "/actions"]

    async def test_verbs(self, make_executor, fake_supervisor: FakeSupervisor, vm_config: VmConfig) -> None:
        machine = await Machine.create(vm_config, executor=make_executor("web-1"))
        assert machine.vm_id == "web-1"
        assert machine.socket_path == fake_supervisor.settings.workspace_dir / "web-1" / "firecracker.socket"
        assert machine.config is vm_config

        await machine.start()
        await machine.pause()
        assert machine.state is VmState.PAUSED
        await machine.resume()
        assert machine.state is VmState.RUNNING
        await machine.stop(graceful=False)
        assert machine.state is VmState.TERMINATED

    async def test_configuration_failure_kills_process(
        self, make_executor, fake_api: FakeApi, fake_supervisor: FakeSupervisor, vm_config: VmConfig
    ) -> None:
        fake_api.faults[("PUT", "/drives/rootfs")] = "Unable to create the block device"
        executor = make_executor()

        with pytest.raises(ApiError) as exc_info:
            await Machine.create(vm_config, executor=executor)

        assert exc_info.value.fault_message == "Unable to create the block device"
        assert executor.state is VmState.TERMINATED
        assert fake_supervisor.terminations == [False]

    async def test_readiness_failure_kills_process(
        self, make_executor, fake_supervisor: FakeSupervisor, vm_config: VmConfig
    ) -> None:
        fake_supervisor.ready_error = VmTimeoutError("Control socket not ready after 0.1s")
        executor = make_executor()

        with pytest.raises(VmTimeoutError):
            await Machine.create(vm_config, executor=executor, ready_timeout=0.1)

        assert executor.state is VmState.TERMINATED
        assert fake_supervisor.terminations == [False]

    async def test_context_manager_kills(self, make_executor, fake_supervisor: FakeSupervisor, vm_config) -> None:
        async with await Machine.create(vm_config, executor=make_executor()) as machine:
            await machine.start()
        assert machine.state is VmState.TERMINATED
        assert fake_supervisor.terminations == [False]

    async def test_nonexistent_binary(self, settings: Settings, tmp_path: Path, vm_config: VmConfig) -> None:
        executor = Executor(tmp_path / "missing", vm_id="vm1", settings=settings)

        with pytest.raises(SpawnError):
            await Machine.create(vm_config, executor=executor)

        assert executor.process is None
        assert executor.state is VmState.TERMINATED


# ============================================================================
# End to end against the fake binary
# ============================================================================


@pytest.mark.slow
class TestMachineProcess:
    async def test_boot_and_stop(
        self, settings: Settings, fake_firecracker: Path, vm_config: VmConfig, request_log
    ) -> None:
        machine = await Machine.create(vm_config, vm_id="vm1", binary_path=fake_firecracker, settings=settings)
        try:
            await machine.start()
            assert machine.state is VmState.RUNNING
            info = await machine.executor.describe_instance()
            assert info.id == "vm1"
            assert info.state == "Running"

            await machine.pause()
            assert (await machine.executor.describe_instance()).state == "Paused"
            await machine.resume()

            await machine.stop()
        finally:
            await machine.kill()

        assert machine.state is VmState.TERMINATED
        assert machine.executor.process is not None
        assert machine.executor.process.returncode is not None

        puts = [(r["method"], r["path"]) for r in request_log() if r["method"] != "GET"]
        assert puts[:5] == [
            ("PUT", "/boot-source"),
            ("PUT", "/machine-config"),
            ("PUT", "/drives/rootfs"),
            ("PUT", "/actions"),
            ("PATCH", "/vm"),
        ]
        boot_source = next(r["body"] for r in request_log() if r["path"] == "/boot-source")
        assert boot_source["kernel_image_path"] == str(vm_config.boot_source.kernel_image_path)

    async def test_start_rejected(
        self, settings: Settings, fake_firecracker: Path, vm_config: VmConfig, monkeypatch
    ) -> None:
        monkeypatch.setenv("FAKE_FC_FAIL_PATH", "/actions")
        machine = await Machine.create(vm_config, vm_id="vm1", binary_path=fake_firecracker, settings=settings)

        with pytest.raises(ApiError) as exc_info:
            await machine.start()

        assert exc_info.value.fault_message == "fake failure for /actions"
        assert machine.state is VmState.TERMINATED
        assert machine.executor.process is not None
        assert machine.executor.process.returncode is not None

    async def test_socket_never_ready(
        self, settings: Settings, fake_firecracker: Path, vm_config: VmConfig, monkeypatch
    ) -> None:
        monkeypatch.setenv("FAKE_FC_NO_SOCKET", "1")
        executor = Executor(fake_firecracker, vm_id="vm1", settings=settings)

        with pytest.raises(VmTimeoutError):
            await Machine.create(vm_config, executor=executor, ready_timeout=0.3)

        assert executor.state is VmState.TERMINATED
        assert executor.process is not None
        assert executor.process.returncode is not None
