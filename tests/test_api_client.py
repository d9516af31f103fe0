"""Tests for ApiClient over httpx.MockTransport.

Verifies the wire format of requests, ApiError vs TransportError
classification, and typed response parsing.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import pytest

from firepilot.api_client import ApiClient
from firepilot.exceptions import ApiError, PermanentError, TransientError, TransportError
from firepilot.models import BootSource, InstanceInfo, MachineConfig, TokenBucket, VmmVersion

from .conftest import FakeApi

SOCKET = Path("/tmp/firecracker/vm1/firecracker.socket")


def _client(handler) -> ApiClient:
    return ApiClient(SOCKET, timeout=1.0, transport=httpx.MockTransport(handler))


# ============================================================================
# Requests
# ============================================================================


class TestRequests:
    async def test_put_serializes_model(self, fake_api: FakeApi) -> None:
        async with fake_api.client_factory(SOCKET, 1.0) as api:
            await api.put("/boot-source", BootSource(kernel_image_path=Path("/images/vmlinux"), boot_args="quiet"))
        assert fake_api.calls == [
            ("PUT", "/boot-source", {"kernel_image_path": "/images/vmlinux", "boot_args": "quiet"}),
        ]

    async def test_put_accepts_plain_dict(self, fake_api: FakeApi) -> None:
        async with fake_api.client_factory(SOCKET, 1.0) as api:
            await api.put("/mmds", {"latest": {"meta-data": {"instance-id": "i-1"}}})
        assert fake_api.calls[0][2] == {"latest": {"meta-data": {"instance-id": "i-1"}}}

    async def test_patch_uses_patch_method(self, fake_api: FakeApi) -> None:
        async with fake_api.client_factory(SOCKET, 1.0) as api:
            await api.patch("/vm", {"state": "Paused"})
        assert fake_api.calls == [("PATCH", "/vm", {"state": "Paused"})]

    async def test_alias_used_on_wire(self, fake_api: FakeApi) -> None:
        async with fake_api.client_factory(SOCKET, 1.0) as api:
            await api.put("/bucket", TokenBucket(size=1, refill_time_ms=10))
        assert fake_api.calls[0][2] == {"size": 1, "refill_time": 10}

    async def test_requests_are_serialized(self) -> None:
        in_flight = 0
        peak = 0

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return httpx.Response(204)

        async with _client(handler) as api:
            await asyncio.gather(*(api.put(f"/drives/d{i}", {"drive_id": f"d{i}"}) for i in range(5)))
        assert peak == 1


# ============================================================================
# Errors
# ============================================================================


class TestErrors:
    async def test_fault_message_surfaced_verbatim(self, fake_api: FakeApi) -> None:
        fake_api.faults[("PUT", "/machine-config")] = "The requested operation is not supported after starting"
        async with fake_api.client_factory(SOCKET, 1.0) as api:
            with pytest.raises(ApiError) as exc_info:
                await api.put("/machine-config", MachineConfig(vcpu_count=1, mem_size_mib=128))

        err = exc_info.value
        assert isinstance(err, PermanentError)
        assert err.status_code == 400
        assert err.fault_message == "The requested operation is not supported after starting"
        assert err.method == "PUT"
        assert err.path == "/machine-config"
        assert err.context["socket_path"] == str(SOCKET)

    async def test_non_json_error_body_used_as_fault(self) -> None:
        async with _client(lambda request: httpx.Response(500, text="boom")) as api:
            with pytest.raises(ApiError) as exc_info:
                await api.put("/logger", {"log_path": "/tmp/x"})
        assert exc_info.value.status_code == 500
        assert exc_info.value.fault_message == "boom"

    @pytest.mark.parametrize(
        "error",
        [
            httpx.ConnectError("Connection refused"),
            httpx.ReadTimeout("timed out"),
            httpx.RemoteProtocolError("Server disconnected without sending a response."),
        ],
    )
    async def test_transport_failures(self, fake_api: FakeApi, error: Exception) -> None:
        fake_api.errors[("PUT", "/actions")] = error
        async with fake_api.client_factory(SOCKET, 1.0) as api:
            with pytest.raises(TransportError) as exc_info:
                await api.put("/actions", {"action_type": "InstanceStart"})
        assert isinstance(exc_info.value, TransientError)
        assert exc_info.value.__cause__ is error
        assert exc_info.value.context["path"] == "/actions"

    async def test_missing_socket_is_transport_error(self, tmp_path: Path) -> None:
        async with ApiClient(tmp_path / "missing.socket", timeout=1.0) as api:
            with pytest.raises(TransportError):
                await api.describe_instance()

    async def test_client_does_not_retry(self, fake_api: FakeApi) -> None:
        fake_api.faults[("PUT", "/actions")] = "InstanceStart failed"
        async with fake_api.client_factory(SOCKET, 1.0) as api:
            with pytest.raises(ApiError):
                await api.put("/actions", {"action_type": "InstanceStart"})
        assert len(fake_api.calls) == 1


# ============================================================================
# Typed reads
# ============================================================================


class TestReads:
    async def test_describe_instance(self, fake_api: FakeApi) -> None:
        async with fake_api.client_factory(SOCKET, 1.0) as api:
            info = await api.describe_instance()
        assert isinstance(info, InstanceInfo)
        assert info.state == "Not started"
        assert info.vmm_version == "1.7.0"

    async def test_get_version(self, fake_api: FakeApi) -> None:
        async with fake_api.client_factory(SOCKET, 1.0) as api:
            version = await api.get_version()
        assert version == VmmVersion(firecracker_version="1.7.0")

    async def test_get_machine_config(self, fake_api: FakeApi) -> None:
        async with fake_api.client_factory(SOCKET, 1.0) as api:
            config = await api.get_machine_config()
        assert config.vcpu_count == 2
        assert config.mem_size_mib == 256

    async def test_request_model_read_ignores_new_fields(self) -> None:
        body = {"vcpu_count": 4, "mem_size_mib": 1024, "smt": False, "added_in_a_later_release": True}
        async with _client(lambda request: httpx.Response(200, json=body)) as api:
            config = await api.get_machine_config()
        assert config == MachineConfig(vcpu_count=4, mem_size_mib=1024)

    async def test_get_without_model_returns_json(self, fake_api: FakeApi) -> None:
        async with fake_api.client_factory(SOCKET, 1.0) as api:
            data = await api.get("/version")
        assert data == {"firecracker_version": "1.7.0"}

    async def test_unexpected_body_is_api_error(self) -> None:
        async with _client(lambda request: httpx.Response(200, json={"unexpected": True})) as api:
            with pytest.raises(ApiError, match="unexpected body"):
                await api.describe_instance()

    async def test_response_ignores_unknown_fields(self) -> None:
        body = {"id": "a", "state": "Running", "vmm_version": "1.8.0", "app_name": "Firecracker", "extra": 1}
        async with _client(lambda request: httpx.Response(200, json=body)) as api:
            info = await api.describe_instance()
        assert info.state == "Running"
