"""Reverse proxying to a single upstream location, aware of protocol upgrades."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Optional, Protocol
from urllib.parse import urlsplit, urlunsplit

from kubegateway.dispatcher_status import STATUS_FAILURE, Status, StatusError
from kubegateway.net import host_without_port
from kubegateway.request_context import Headers, Request

_log = logging.getLogger(__name__)

CORS_HEADERS = (
    "Access-Control-Allow-Credentials",
    "Access-Control-Allow-Headers",
    "Access-Control-Allow-Methods",
    "Access-Control-Allow-Origin",
)

HOP_BY_HOP_HEADERS = (
    "Connection",
    "Proxy-Connection",
    "Keep-Alive",
    "Proxy-Authenticate",
    "Proxy-Authorization",
    "Te",
    "Trailer",
    "Transfer-Encoding",
    "Upgrade",
)


@dataclass
class Response:
    """An upstream response: status, headers and body."""

    status: int = 200
    headers: Headers = field(default_factory=Headers)
    body: bytes = b""

    def __post_init__(self) -> None:
        if not isinstance(self.headers, Headers):
            self.headers = Headers(self.headers)


class Transport(Protocol):
    def round_trip(self, req: Request) -> Response:
        ...


Responder = Callable[[object, Request, BaseException], None]
Handler = Callable[[object, Request], None]


def is_upgrade_request(req: Request) -> bool:
    """Return whether a Connection header of ``req`` asks for an upgrade."""
    return any("upgrade" in value.lower() for value in req.headers.get_all("Connection"))


def remove_cors_headers(headers: Headers) -> None:
    """Strip the CORS headers sent by the upstream."""
    for name in CORS_HEADERS:
        headers.delete(name)


@dataclass
class CorsRemovingTransport:
    """Wraps a transport and removes CORS headers from every response."""

    round_tripper: Transport

    @property
    def wrapped(self) -> Transport:
        return self.round_tripper

    def round_trip(self, req: Request) -> Response:
        resp = self.round_tripper.round_trip(req)
        remove_cors_headers(resp.headers)
        return resp


def _bad_request(message: str) -> StatusError:
    return StatusError(
        Status(
            kind="Status",
            api_version="v1",
            status=STATUS_FAILURE,
            code=400,
            reason="BadRequest",
            message=message,
        )
    )


def _remove_hop_by_hop(headers: Headers) -> None:
    for value in headers.get_all("Connection"):
        for token in value.split(","):
            token = token.strip()
            if token:
                headers.delete(token)
    for name in HOP_BY_HOP_HEADERS:
        headers.delete(name)


def _client_ip(remote_addr: str) -> str:
    if not remote_addr or ":" not in remote_addr.replace("[", "").replace("]", "") and "]" not in remote_addr:
        return ""
    host = host_without_port(remote_addr)
    if host == remote_addr.lower():
        return ""
    return host.strip("[]")


class UpgradeAwareHandler:
    """Proxies plain requests to ``location``; upgrade requests go to ``upgrade_handler``."""

    def __init__(
        self,
        location: str,
        transport: Transport,
        wrap_transport: bool = False,
        upgrade_required: bool = False,
        responder: Optional[Responder] = None,
        *,
        upgrade_handler: Optional[Handler] = None,
        use_request_location: bool = False,
    ) -> None:
        self.location = location
        self.wrap_transport = wrap_transport
        self.transport: Transport = CorsRemovingTransport(transport) if wrap_transport else transport
        self.upgrade_required = upgrade_required
        self.responder = responder
        self.upgrade_handler = upgrade_handler
        self.use_request_location = use_request_location

    def _error(self, w, req: Request, err: BaseException) -> None:
        if self.responder is not None:
            self.responder(w, req, err)
            return
        _log.error("proxy error: %s", err)
        w.write_header(502)

    def serve(self, w, req: Request) -> None:
        if is_upgrade_request(req):
            if self.upgrade_handler is None:
                self._error(w, req, _bad_request("upgrade requests are not supported by this handler"))
                return
            self.upgrade_handler(w, req)
            return

        if self.upgrade_required:
            self._error(w, req, _bad_request("Upgrade request required"))
            return

        loc = urlsplit(self.location)
        path = loc.path
        # Keep a trailing slash of the original request on the proxied path.
        if not path.endswith("/") and req.path.endswith("/"):
            path += "/"

        # Requests to a location with an empty path are redirected to one ending in '/'.
        if not path:
            query_part = f"?{req.raw_query}" if req.raw_query else ""
            w.headers.set("Location", req.path + "/" + query_part)
            w.write_header(301)
            return

        target_path = req.path if self.use_request_location else path
        url = urlunsplit((loc.scheme, loc.netloc, target_path, req.raw_query, ""))

        headers = req.headers.copy()
        _remove_hop_by_hop(headers)
        client_ip = _client_ip(req.remote_addr)
        if client_ip:
            prior = headers.get_all("X-Forwarded-For")
            headers.set("X-Forwarded-For", ", ".join([*prior, client_ip]))
        out = replace(req, url=url, headers=headers)

        try:
            resp = self.transport.round_trip(out)
        except Exception as err:
            self._error(w, out, err)
            return

        _remove_hop_by_hop(resp.headers)
        for name, values in resp.headers.items():
            for value in values:
                w.headers.add(name, value)
        w.write_header(resp.status)
        if resp.body:
            w.write(resp.body)