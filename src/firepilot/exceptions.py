"""Exception hierarchy for firepilot.

All exceptions inherit from FirepilotError.

Hierarchy:
    FirepilotError (base)
    ├── TransientError (retryable marker base)
    │   ├── TransportError          ← control socket unreachable / dropped
    │   ├── VmTimeoutError          ← socket not ready in time
    │   └── ProcessExitedError      ← hypervisor exited before it was ready
    ├── PermanentError (non-retryable marker base)
    │   ├── SpawnError              ← process could not be created
    │   ├── ApiError                ← hypervisor rejected a request
    │   └── LifecycleError          ← operation invalid for current state
    │       └── AlreadyTerminatedError
    └── InputValidationError (caller-bug marker base)
        └── ConfigValidationError   ← bad configuration values

Retry policy belongs to the caller.  TransportError is the only error the
Executor itself retries, and only while waiting for the socket to come up.
ApiError is never retried: re-sending a PUT is harmless, re-sending
InstanceStart is not.
"""

from __future__ import annotations

from typing import Any


class FirepilotError(Exception):
    """Base exception for all firepilot errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(FirepilotError):
    """Base for transient errors that may succeed on retry.

    Marker base class for errors that are potentially recoverable through
    retry (socket startup races, a crashed process that can be respawned).
    """


class PermanentError(FirepilotError):
    """Base for permanent errors that won't succeed on retry.

    Marker base class for errors that need a caller-side change
    (rejected configuration, missing binary, wrong lifecycle state).
    """


class InputValidationError(FirepilotError):
    """Base for input validation errors (caller bugs, not VM failures).

    Raised locally before anything reaches the control socket.
    """


# =============================================================================
# Transient Errors (retryable)
# =============================================================================


class TransportError(TransientError):
    """Control socket could not be reached or the connection dropped.

    Covers a socket that is not listening yet, a missing socket file,
    a broken pipe, a malformed HTTP exchange and request timeouts.
    """


class VmTimeoutError(TransientError):
    """Hypervisor did not become reachable within the timeout."""


class ProcessExitedError(TransientError):
    """Hypervisor process exited while it was expected to be running.

    Attributes:
        exit_code: Process return code (negative = killed by signal)
        output: Last lines the process wrote to stdout/stderr
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        exit_code: int | None = None,
        output: list[str] | None = None,
    ):
        ctx = context or {}
        ctx.setdefault("exit_code", exit_code)
        super().__init__(message, ctx)
        self.exit_code = exit_code
        self.output = output or []


# =============================================================================
# Permanent Errors (non-retryable)
# =============================================================================


class SpawnError(PermanentError):
    """Hypervisor process could not be created.

    Raised when the binary is missing or not executable, when the control
    socket path is already served by a live process, or when the OS
    refuses to fork/exec.
    """


class ApiError(PermanentError):
    """Hypervisor rejected a control-plane request.

    Surfaced verbatim: the client does not interpret the fault.

    Attributes:
        status_code: HTTP status returned by the hypervisor
        fault_message: Hypervisor's fault description
        method: HTTP method of the rejected request
        path: Resource path of the rejected request
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        fault_message: str,
        method: str,
        path: str,
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.update(
            {
                "status_code": status_code,
                "fault_message": fault_message,
                "method": method,
                "path": path,
            }
        )
        super().__init__(message, ctx)
        self.status_code = status_code
        self.fault_message = fault_message
        self.method = method
        self.path = path


class LifecycleError(PermanentError):
    """Operation is not valid in the executor's current lifecycle state.

    Attributes:
        state: State the executor was in (string value)
        operation: Name of the rejected operation
    """

    def __init__(
        self,
        message: str,
        *,
        state: str,
        operation: str,
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.update({"state": state, "operation": operation})
        super().__init__(message, ctx)
        self.state = state
        self.operation = operation


class AlreadyTerminatedError(LifecycleError):
    """Operation attempted after the microVM reached TERMINATED.

    Raised before any control-socket I/O.
    """


# =============================================================================
# Input Validation
# =============================================================================


class ConfigValidationError(InputValidationError):
    """Configuration values are invalid.

    Wraps pydantic's validation failure; the individual field errors are
    available in ``context["errors"]``.
    """
