"""Status objects returned to clients when the dispatcher answers on its own."""

from __future__ import annotations

from dataclasses import dataclass, replace

STATUS_SUCCESS = "Success"
STATUS_FAILURE = "Failure"

STATUS_REASON_NO_READY_ENDPOINTS = "no_ready_endpoints"
STATUS_REASON_CLUSTER_NOT_BEING_PROXIED = "cluster_not_being_proxied"
STATUS_REASON_INVALID_REQUEST_CONTEXT = "invalid_request_context"
STATUS_REASON_CIRCUIT_BREAKER = "circuit_breaker"
STATUS_REASON_RATE_LIMITED = "rate_limited"
STATUS_REASON_INVALID_ENDPOINT = "invalid_endpoint"
STATUS_REASON_UPGRADE_AWARE_HANDLER_ERROR = "upgrade_aware_handler_error"
STATUS_REASON_REVERSE_PROXY_ERROR = "reverse_proxy_error"

_CAPTURED_REASONS = frozenset(
    {STATUS_REASON_UPGRADE_AWARE_HANDLER_ERROR, STATUS_REASON_REVERSE_PROXY_ERROR}
)


@dataclass
class Status:
    """An API status object, as sent in error responses."""

    kind: str = ""
    api_version: str = ""
    status: str = ""
    code: int = 0
    reason: str = ""
    message: str = ""


class StatusError(Exception):
    """An error that carries the API status describing it."""

    def __init__(self, status: Status) -> None:
        super().__init__(status.message)
        self.status = status


def capture_error_reason(reason: str) -> bool:
    """Return whether a termination with ``reason`` should be logged as an error."""
    return reason in _CAPTURED_REASONS


def error_to_proxy_status(err: BaseException) -> Status:
    """Convert an error into a status, filling in defaults for status errors."""
    if isinstance(err, StatusError):
        status = replace(err.status)
        if not status.status:
            status.status = STATUS_FAILURE
        if status.code == 0:
            status.code = 200 if status.status == STATUS_SUCCESS else 500
        status.kind = "Status"
        status.api_version = "v1"
        return status
    return Status(
        kind="Status",
        api_version="v1",
        status=STATUS_FAILURE,
        code=502,
        reason="KubeGatewayInternalError",
        message=str(err),
    )