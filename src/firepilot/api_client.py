"""HTTP client for the Firecracker control socket.

Firecracker serves a small REST API over a Unix socket.  ApiClient sends
one request at a time, turns non-2xx answers into ApiError carrying the
hypervisor's fault message, and turns every socket-level failure into
TransportError.  It never retries: which requests are safe to repeat is
the caller's decision.
"""

from __future__ import annotations

import asyncio
import types
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar, overload

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from firepilot import constants
from firepilot._logging import get_logger
from firepilot.exceptions import ApiError, TransportError
from firepilot.models import ApiModel, Balloon, BalloonStats, InstanceInfo, MachineConfig, VmmVersion

if TYPE_CHECKING:
    from typing import Self

_logger = get_logger(__name__)

_ResponseT = TypeVar("_ResponseT", bound=BaseModel)

_Body = ApiModel | dict[str, Any]


class ApiClient:
    """Async client for one hypervisor's control socket.

    Usage:
        async with ApiClient(socket_path) as api:
            await api.put("/boot-source", BootSource(kernel_image_path=kernel))
            info = await api.describe_instance()
    """

    def __init__(
        self,
        socket_path: str | Path,
        *,
        timeout: float = constants.REQUEST_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            socket_path: Control socket of the hypervisor
            timeout: Per-request timeout in seconds
            transport: Replacement transport (tests pass httpx.MockTransport)
        """
        self._socket_path = Path(socket_path)
        self._client = httpx.AsyncClient(
            transport=transport or httpx.AsyncHTTPTransport(uds=str(self._socket_path)),
            base_url=constants.API_BASE_URL,
            timeout=timeout,
        )
        self._lock = asyncio.Lock()

    @property
    def socket_path(self) -> Path:
        return self._socket_path

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying connection pool. Safe to call twice."""
        await self._client.aclose()

    # -------------------------------------------------------------------------
    # Generic verbs
    # -------------------------------------------------------------------------

    async def put(self, path: str, body: _Body) -> None:
        """Create or replace the resource at *path*.

        Raises:
            ApiError: Hypervisor rejected the request
            TransportError: Socket unreachable or the exchange failed
        """
        await self._request("PUT", path, body)

    async def patch(self, path: str, body: _Body) -> None:
        """Partially update the resource at *path*.

        Raises:
            ApiError: Hypervisor rejected the request
            TransportError: Socket unreachable or the exchange failed
        """
        await self._request("PATCH", path, body)

    @overload
    async def get(self, path: str) -> dict[str, Any]: ...

    @overload
    async def get(self, path: str, model: type[_ResponseT]) -> _ResponseT: ...

    async def get(self, path: str, model: type[BaseModel] | None = None) -> Any:
        """Read the resource at *path*.

        Args:
            path: Resource path (e.g. "/machine-config")
            model: Optional response model to parse the JSON body into

        Returns:
            Parsed model, or the decoded JSON body when no model is given

        Raises:
            ApiError: Hypervisor rejected the request or returned an unparseable body
            TransportError: Socket unreachable or the exchange failed
        """
        response = await self._request("GET", path)
        try:
            data = response.json()
        except ValueError as e:
            raise ApiError(
                f"GET {path} returned a non-JSON body",
                status_code=response.status_code,
                fault_message=response.text,
                method="GET",
                path=path,
            ) from e
        if model is None:
            return data
        if issubclass(model, ApiModel) and isinstance(data, dict):
            # Request models forbid unknown fields; newer hypervisors add some to their answers
            data = _known_fields(model, data)
        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            raise ApiError(
                f"GET {path} returned an unexpected body: {e.error_count()} field error(s)",
                status_code=response.status_code,
                fault_message=str(data),
                method="GET",
                path=path,
            ) from e

    # -------------------------------------------------------------------------
    # Typed reads
    # -------------------------------------------------------------------------

    async def describe_instance(self) -> InstanceInfo:
        """GET / - instance id, state and hypervisor version."""
        return await self.get(constants.PATH_INSTANCE_INFO, InstanceInfo)

    async def get_version(self) -> VmmVersion:
        return await self.get(constants.PATH_VERSION, VmmVersion)

    async def get_machine_config(self) -> MachineConfig:
        return await self.get(constants.PATH_MACHINE_CONFIG, MachineConfig)

    async def get_balloon(self) -> Balloon:
        return await self.get(constants.PATH_BALLOON, Balloon)

    async def get_balloon_stats(self) -> BalloonStats:
        return await self.get(constants.PATH_BALLOON_STATS, BalloonStats)

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _request(self, method: str, path: str, body: _Body | None = None) -> httpx.Response:
        payload = body.to_api() if isinstance(body, ApiModel) else body
        ctx: dict[str, Any] = {"method": method, "path": path, "socket_path": str(self._socket_path)}

        async with self._lock:
            _logger.debug("%s %s", method, path, extra={**ctx, "body": payload})
            try:
                response = await self._client.request(method, path, json=payload)
            except httpx.TransportError as e:
                raise TransportError(
                    f"{method} {path} failed: {type(e).__name__}: {e}",
                    context={**ctx, "error_type": type(e).__name__},
                ) from e

        if response.is_success:
            return response

        fault = _fault_message(response)
        _logger.debug(
            "%s %s rejected (%d): %s",
            method,
            path,
            response.status_code,
            fault,
            extra={**ctx, "status_code": response.status_code},
        )
        raise ApiError(
            f"{method} {path} rejected ({response.status_code}): {fault}",
            status_code=response.status_code,
            fault_message=fault,
            method=method,
            path=path,
            context={"socket_path": str(self._socket_path)},
        )


def _known_fields(model: type[BaseModel], data: dict[str, Any]) -> dict[str, Any]:
    names = set(model.model_fields)
    names.update(info.alias for info in model.model_fields.values() if info.alias)
    return {key: value for key, value in data.items() if key in names}


def _fault_message(response: httpx.Response) -> str:
    """Extract Firecracker's ``fault_message``, falling back to the raw body."""
    try:
        data = response.json()
    except ValueError:
        return response.text
    if isinstance(data, dict) and isinstance(data.get("fault_message"), str):
        return data["fault_message"]
    return response.text
