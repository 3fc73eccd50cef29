"""Response writer that measures, monitors and logs proxied requests."""

from __future__ import annotations

import ipaddress
import json
import logging
import time
from datetime import timedelta
from typing import Callable, Optional

from kubegateway import metrics
from kubegateway.net import host_without_port
from kubegateway.request_context import Request, RequestInfo, UserInfo, is_proxy_forwarded

_log = logging.getLogger(__name__)

_LONG_RUNNING_VERBS = frozenset({"watch", "proxy"})
_LONG_RUNNING_SUBRESOURCES = frozenset({"attach", "exec", "proxy", "log", "portforward"})
_SLOW_REQUEST = timedelta(minutes=10)


def capture_error_output(code: int) -> bool:
    """Return whether the body of a response with ``code`` should be logged."""
    return code >= 500


def _default_long_running(req: Request, info: Optional[RequestInfo]) -> bool:
    if info is None:
        return False
    if info.verb in _LONG_RUNNING_VERBS:
        return True
    return info.is_resource_request and info.subresource in _LONG_RUNNING_SUBRESOURCES


def _parse_ip(text: str):
    try:
        return ipaddress.ip_address(text.strip())
    except ValueError:
        return None


def _source_ips(req: Request) -> list:
    forwarded = req.headers.get("X-Forwarded-For")
    if forwarded:
        ips = [ip for ip in map(_parse_ip, forwarded.split(",")) if ip is not None]
        if ips:
            return ips
    real_ip = req.headers.get("X-Real-Ip")
    if real_ip:
        ip = _parse_ip(real_ip)
        if ip is not None:
            return [ip]
    if req.remote_addr:
        ip = _parse_ip(host_without_port(req.remote_addr).strip("[]"))
        if ip is not None:
            return [ip]
    return []


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _groups(groups: list[str]) -> str:
    return "[" + " ".join(groups) + "]"


class ResponseWriterDelegator:
    """Wraps a response writer to track status, size and latency of a proxied request."""

    def __init__(
        self,
        req: Request,
        w,
        logging: bool,
        request_info: RequestInfo,
        host: str,
        endpoint: str,
        user: UserInfo,
        impersonator: Optional[UserInfo] = None,
        long_running: Callable[[Request, Optional[RequestInfo]], bool] = _default_long_running,
    ) -> None:
        self.req = req
        self.w = w
        self.logging = logging
        self.request_info = request_info
        self.host = host
        self.endpoint = endpoint
        self.user = user
        self.impersonator = impersonator
        self._long_running = long_running
        self.status = 0
        self.status_recorded = False
        self.added_info = ""
        self.written = 0
        self._capture_error_output = False
        self._start = time.monotonic()

    @property
    def headers(self):
        return self.w.headers

    def write_header(self, status: int) -> None:
        self._record_status(status)
        self.w.write_header(status)

    def write(self, data: bytes) -> int:
        if not self.status_recorded:
            self._record_status(200)
        if self._capture_error_output:
            text = bytes(data).decode("utf-8", errors="replace")
            self._debugf("logging error output: %s\n", _quote(text))
        written = self.w.write(data)
        self.written += written
        return written

    def content_length(self) -> int:
        return self.written

    def elapsed(self) -> timedelta:
        return timedelta(seconds=time.monotonic() - self._start)

    def _is_watch(self) -> bool:
        return self.request_info.is_resource_request and self.request_info.verb == "watch"

    def monitor_before_proxy(self) -> None:
        if self._is_watch():
            metrics.record_watcher_registered(self.host, self.endpoint, self.request_info.resource)

    def monitor_after_proxy(self) -> None:
        if self._is_watch():
            metrics.record_watcher_unregistered(self.host, self.endpoint, self.request_info.resource)
        if not is_proxy_forwarded(self.req):
            return
        metrics.monitor_proxy_request(
            self.req,
            self.host,
            self.endpoint,
            self.request_info,
            self.headers.get("Content-Type"),
            self.status,
            self.content_length(),
            self.elapsed(),
        )
        self.log()

    def log(self) -> None:
        """Write the access log line if logging is enabled or the request was slow."""
        latency = self.elapsed()
        logging_enabled = self.logging
        if latency > _SLOW_REQUEST and not self._long_running(self.req, self.request_info):
            logging_enabled = True
        if not logging_enabled:
            return
        source_ips = "[" + " ".join(str(ip) for ip in _source_ips(self.req)) + "]"
        fields = [
            f"verb={_quote(self.request_info.verb.upper())}",
            f"host={_quote(self.host)}",
            f"endpoint={_quote(self.endpoint)}",
            f"URI={_quote(self.req.request_uri)}",
            f"latency={latency}",
            f"resp={self.status}",
            f"user={_quote(self.user.name)}",
            f"userGroup={_groups(self.user.groups)}",
            f"userAgent={_quote(self.req.user_agent)}",
        ]
        if self.impersonator is not None:
            fields.append(f"impersonator={_quote(self.impersonator.name)}")
            fields.append(f"impersonatorGroup={_groups(self.impersonator.groups)}")
        fields.append(f"srcIP={source_ips}:")
        _log.info("%s %s", " ".join(fields), self.added_info)

    def _record_status(self, status: int) -> None:
        self.status = status
        self.status_recorded = True
        self._capture_error_output = capture_error_output(status)

    def _debugf(self, fmt: str, *data) -> None:
        self.added_info += "\n" + (fmt % data)