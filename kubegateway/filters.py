"""HTTP handler filters placed in front of the gateway's dispatcher."""

from __future__ import annotations

import logging
import re
from http import HTTPStatus
from typing import Callable

from kubegateway import metrics
from kubegateway.request_context import (
    ProxyInfo,
    Request,
    extra_request_info_from,
    proxy_info_from,
    request_info_from,
    user_from,
    with_extra_request_info,
    with_proxy_info,
)

_log = logging.getLogger(__name__)

Handler = Callable[[object, Request], None]

_CAMEL_BOUNDARY = re.compile(r"([a-z])([A-Z])")
_SEPARATORS = str.maketrans({".": " ", "_": " ", "-": " "})

PANIC_MESSAGE = "This request caused apiserver to panic. Look in the logs for details."


class AbortHandler(Exception):
    """Raised by a handler to abort the response without reporting an error."""


def snake_case(text: str) -> str:
    """Turn a phrase or camel-cased word into lower snake case."""
    text = _CAMEL_BOUNDARY.sub(r"\1 \2", text)
    return "_".join(text.translate(_SEPARATORS).split()).lower()


def _http_error(w, message: str, code: int) -> None:
    w.headers.set("Content-Type", "text/plain; charset=utf-8")
    w.headers.set("X-Content-Type-Options", "nosniff")
    w.write_header(code)
    w.write((message + "\n").encode("utf-8"))


def _internal_error(w, req: Request, err: str) -> None:
    uri = req.request_uri.replace("\\", "\\\\").replace('"', '\\"')
    _http_error(w, f'Internal Server Error: "{uri}": {err}', 500)


def _status_text(code: int) -> str:
    try:
        return HTTPStatus(code).phrase
    except ValueError:
        return ""


def with_dispatcher(handler: Handler, dispatcher: Handler) -> Handler:
    """Send every request to ``dispatcher``; ``handler`` is never reached."""

    def serve(w, req: Request) -> None:
        dispatcher(w, req)

    return serve


def with_pre_processing_metrics(handler: Handler) -> Handler:
    """Count each request as received before it is processed."""

    def serve(w, req: Request) -> None:
        info = request_info_from(req)
        if info is None:
            _internal_error(w, req, "failed to get request info from context")
            return
        extra = extra_request_info_from(req)
        if extra is None:
            _internal_error(w, req, "failed to get extra request info from context")
            return
        metrics.record_proxy_request_received(req, extra.hostname, info)
        handler(w, req)

    return serve


def with_extra_request_info(handler: Handler, resolver) -> Handler:
    """Attach the resolver's extra request information to the request."""

    def serve(w, req: Request) -> None:
        try:
            info = resolver.new_extra_request_info(req)
        except Exception as err:
            _internal_error(w, req, f"failed to create ExtraRequestInfo: {err}")
            return
        handler(w, with_extra_request_info(req, info))

    return serve


def with_impersonator(handler: Handler) -> Handler:
    """Remember the authenticated user as impersonator before it is replaced."""

    def serve(w, req: Request) -> None:
        user = user_from(req)
        if user is None:
            handler(w, req)
            return
        info = extra_request_info_from(req)
        if info is not None and info.is_impersonate_request:
            info.impersonator = user
        handler(w, with_extra_request_info(req, info))

    return serve


class _TerminationMetricsWriter:
    def __init__(self, w) -> None:
        self.w = w
        self.status = 0
        self.status_recorded = False

    @property
    def headers(self):
        return self.w.headers

    def write_header(self, status: int) -> None:
        self._record_status(status)
        self.w.write_header(status)

    def write(self, data: bytes) -> int:
        if not self.status_recorded:
            self._record_status(200)
        return self.w.write(data)

    def _record_status(self, status: int) -> None:
        self.status = status
        self.status_recorded = True

    def record_metrics(self, req: Request) -> None:
        info = proxy_info_from(req)
        forwarded = info.forwarded if info is not None else False
        reason = info.reason if info is not None else ""
        if not forwarded and self.status >= 400:
            if not reason:
                reason = snake_case(_status_text(self.status))
            metrics.record_proxy_request_termination(req, self.status, reason)


def with_termination_metrics(handler: Handler) -> Handler:
    """Record requests that failed without being forwarded upstream."""

    def serve(w, req: Request) -> None:
        req = with_proxy_info(req, ProxyInfo())
        writer = _TerminationMetricsWriter(w)
        try:
            handler(writer, req)
        finally:
            writer.record_metrics(req)

    return serve


def with_no_logging_panic_recovery(handler: Handler) -> Handler:
    """Answer 500 when ``handler`` fails, then let the failure propagate.

    An ``AbortHandler`` propagates without any response being written.
    """

    def serve(w, req: Request) -> None:
        try:
            handler(w, req)
        except AbortHandler:
            raise
        except Exception:
            _http_error(w, PANIC_MESSAGE, 500)
            _log.error("apiserver panic'd on %s %s", req.method, req.request_uri)
            raise

    return serve