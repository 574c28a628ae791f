"""
Error taxonomy shared by the host-side executors and the sandbox agent.

Also defines the JSON-RPC error codes used on the wire so that a failure
raised inside the VM arrives on the host as the same exception class.
"""

from typing import Optional

JSONRPC_INVALID_REQUEST = -32000
JSONRPC_SECURITY_VIOLATION = -32001
JSONRPC_CONFIGURATION_ERROR = -32002
JSONRPC_TIMEOUT = -32003
JSONRPC_METHOD_NOT_FOUND = -32601


class SandboxError(Exception):
    """Base class for every error surfaced by the sandbox subsystem."""

    rpc_code = JSONRPC_INVALID_REQUEST
    retryable = False

    def __init__(self, message: str, *, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message


class ConfigurationError(SandboxError):
    """Executor used before initialization, or workspace missing."""

    rpc_code = JSONRPC_CONFIGURATION_ERROR


class SecurityViolation(SandboxError):
    """Out-of-bounds path, traversal, symlink escape or dangerous command."""

    rpc_code = JSONRPC_SECURITY_VIOLATION


class RemoteUnavailable(SandboxError):
    """The sandbox agent could not be reached or exited."""

    retryable = True


class SandboxTimeout(SandboxError):
    """A process or RPC budget was exceeded."""

    rpc_code = JSONRPC_TIMEOUT


class UpstreamFailure(SandboxError):
    """Nonzero exit, missing file or an OS-level error."""


_ERRORS_BY_CODE = {
    JSONRPC_SECURITY_VIOLATION: SecurityViolation,
    JSONRPC_CONFIGURATION_ERROR: ConfigurationError,
    JSONRPC_TIMEOUT: SandboxTimeout,
}


def error_from_rpc(code: int, message: str) -> SandboxError:
    """Rebuild the exception matching a JSON-RPC error object."""
    return _ERRORS_BY_CODE.get(code, UpstreamFailure)(message)


def rpc_code_for(error: BaseException) -> int:
    """Return the JSON-RPC error code to report for an exception."""
    if isinstance(error, SandboxError):
        return error.rpc_code
    return JSONRPC_INVALID_REQUEST
