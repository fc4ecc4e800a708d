"""
Error taxonomy for the tool gateway.

Every error raised past a Connection boundary is a GatewayError and
carries the name of the backend it concerns (when there is one), so a
caller can always tell *which* backend failed and *why*.

    GatewayError
    ├── FramingError            malformed header / body (local, resyncs)
    ├── ProtocolError           remote returned a JSON-RPC error object
    ├── CallTimeoutError        deadline exceeded           (TimeoutError)
    ├── ConnectionClosedError   transport ended             (ConnectionError)
    ├── BackendUnavailableError spawn / connect / handshake (ConnectionError)
    ├── NotFoundError           unknown backend or tool     (LookupError)
    ├── ValidationError         malformed tool descriptor   (ValueError)
    └── ConfigError             invalid backend/settings    (ValueError)
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for all gateway errors."""

    def __init__(self, message: str, backend: str | None = None):
        super().__init__(message)
        self.message = message
        self.backend = backend

    def to_dict(self) -> dict[str, Any]:
        """Structured form handed to collaborators instead of a traceback."""
        return {
            "backend": self.backend,
            "error": type(self).__name__,
            "message": self.message,
        }


class FramingError(GatewayError):
    """A frame could not be delimited (bad Content-Length header)."""


class ProtocolError(GatewayError):
    """The peer answered with a JSON-RPC error object."""

    def __init__(
        self,
        message: str,
        code: int = -32603,
        data: Any = None,
        backend: str | None = None,
    ):
        super().__init__(message, backend=backend)
        self.code = code
        self.data = data

    @classmethod
    def from_error(cls, error: Any, backend: str | None = None) -> "ProtocolError":
        if not isinstance(error, dict):
            return cls(f"Invalid error object: {error!r}", backend=backend)
        code = error.get("code", -32603)
        message = error.get("message") or "Unknown error"
        return cls(f"Error {code}: {message}", code=code, data=error.get("data"), backend=backend)

    def to_error(self) -> dict[str, Any]:
        """JSON-RPC error object for sending this error to a peer."""
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["code"] = self.code
        return result


class CallTimeoutError(GatewayError, TimeoutError):
    """A request got no response before its deadline."""


class ConnectionClosedError(GatewayError, ConnectionError):
    """The connection ended (explicit stop or crash) before a response arrived."""


class BackendUnavailableError(GatewayError, ConnectionError):
    """A backend could not be spawned, reached or initialized."""


class NotFoundError(GatewayError, LookupError):
    """No backend (or tool) is registered under the requested name."""


class ValidationError(GatewayError, ValueError):
    """A discovered tool descriptor is malformed."""


class ConfigError(GatewayError, ValueError):
    """A backend descriptor or gateway setting is invalid."""
