"""
Uniform error conditions reported by every container runtime gateway.

Adapters translate their transport-specific failures (Docker SDK exceptions,
HTTP status codes) into these types so the orchestrator can apply a single
idempotency policy regardless of which gateway manages the container.
"""

from typing import Optional


class GatewayError(Exception):
    """Base error for gateway calls."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class GatewayNotFound(GatewayError):
    """The container or image does not exist (HTTP 404)."""
    pass


class GatewayNotModified(GatewayError):
    """The container is already in the requested state (HTTP 304)."""
    pass


class GatewayConflict(GatewayError):
    """
    The request conflicts with the current container state (HTTP 409).

    Often means "already stopped/started/being removed"; callers must confirm
    the real state with an inspect.
    """
    pass


class GatewayConfigRejected(GatewayError):
    """The create request was rejected as invalid (HTTP 400)."""
    pass


class GatewayTransportError(GatewayError):
    """Connection dropped or reset before a response arrived."""
    pass


def error_for_status(status_code: int, message: str) -> GatewayError:
    """Map an HTTP status code from a Docker-compatible API to a gateway error."""
    if status_code == 404:
        return GatewayNotFound(message, status_code)
    if status_code == 304:
        return GatewayNotModified(message, status_code)
    if status_code == 409:
        return GatewayConflict(message, status_code)
    if status_code == 400:
        return GatewayConfigRejected(message, status_code)
    return GatewayError(message, status_code)
