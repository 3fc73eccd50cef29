"""Request model and the per-request values the gateway carries with it."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping, Optional, Union
from urllib.parse import parse_qs, urlsplit

from kubegateway.net import host_without_port

IMPERSONATE_USER_HEADER = "Impersonate-User"
IMPERSONATE_GROUP_HEADER = "Impersonate-Group"
IMPERSONATE_USER_EXTRA_HEADER_PREFIX = "Impersonate-Extra-"

_USER_KEY = "user"
_REQUEST_INFO_KEY = "request_info"
_EXTRA_REQUEST_INFO_KEY = "extra_request_info"
_PROXY_INFO_KEY = "proxy_info"

_TOKEN_CHARS = frozenset(
    "!#$%&'*+-.^_`|~"
    "0123456789"
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    "abcdefghijklmnopqrstuvwxyz"
)


class MissingContextError(LookupError):
    """Raised when a value expected in the request context is absent."""


def _canonical_key(key: str) -> str:
    if not key or any(ch not in _TOKEN_CHARS for ch in key):
        return key
    return "-".join(part[:1].upper() + part[1:].lower() for part in key.split("-"))


class Headers:
    """Case-insensitive multi-valued HTTP header map with canonical keys."""

    def __init__(
        self,
        initial: Union[Mapping[str, Union[str, Iterable[str]]], Iterable[tuple[str, str]], None] = None,
    ) -> None:
        self._values: dict[str, list[str]] = {}
        if initial is None:
            return
        pairs = initial.items() if isinstance(initial, Mapping) else initial
        for key, value in pairs:
            if isinstance(value, str):
                self.add(key, value)
            else:
                for item in value:
                    self.add(key, item)

    def get(self, key: str) -> str:
        """Return the first value for ``key`` or an empty string."""
        values = self._values.get(_canonical_key(key))
        return values[0] if values else ""

    def get_all(self, key: str) -> list[str]:
        return list(self._values.get(_canonical_key(key), ()))

    def set(self, key: str, value: str) -> None:
        self._values[_canonical_key(key)] = [value]

    def add(self, key: str, value: str) -> None:
        self._values.setdefault(_canonical_key(key), []).append(value)

    def delete(self, key: str) -> None:
        self._values.pop(_canonical_key(key), None)

    def copy(self) -> "Headers":
        clone = Headers()
        clone._values = {key: list(values) for key, values in self._values.items()}
        return clone

    def items(self) -> Iterator[tuple[str, list[str]]]:
        for key, values in list(self._values.items()):
            yield key, list(values)

    def __getitem__(self, key: str) -> list[str]:
        return list(self._values[_canonical_key(key)])

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and _canonical_key(key) in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._values))

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Headers):
            return NotImplemented
        return self._values == other._values

    def __repr__(self) -> str:
        return f"Headers({self._values!r})"


@dataclass
class UserInfo:
    """An authenticated user: name, groups and extra attributes."""

    name: str = ""
    groups: list[str] = field(default_factory=list)
    extra: dict[str, list[str]] = field(default_factory=dict)
    uid: str = ""


@dataclass
class RequestInfo:
    """What a request targets, as resolved from its path and method."""

    is_resource_request: bool = False
    path: str = ""
    verb: str = ""
    api_prefix: str = ""
    api_group: str = ""
    api_version: str = ""
    namespace: str = ""
    resource: str = ""
    subresource: str = ""
    name: str = ""
    parts: list[str] = field(default_factory=list)


@dataclass
class Request:
    """An incoming HTTP request with an immutable context of per-request values."""

    method: str = "GET"
    url: str = "/"
    host: str = ""
    headers: Headers = field(default_factory=Headers)
    request_uri: str = ""
    remote_addr: str = ""
    context: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.headers, Headers):
            self.headers = Headers(self.headers)
        self.context = MappingProxyType(dict(self.context))
        parts = urlsplit(self.url)
        if not self.request_uri:
            self.request_uri = parts.path + (f"?{parts.query}" if parts.query else "")
        if not self.host:
            self.host = parts.netloc

    @property
    def path(self) -> str:
        return urlsplit(self.url).path

    @property
    def raw_query(self) -> str:
        return urlsplit(self.url).query

    @property
    def scheme(self) -> str:
        return urlsplit(self.url).scheme

    @property
    def url_host(self) -> str:
        return urlsplit(self.url).netloc

    @property
    def user_agent(self) -> str:
        return self.headers.get("User-Agent")

    def with_context(self, **kwargs: Any) -> "Request":
        """Return a shallow copy whose context also holds ``kwargs``.

        The header map is shared with the original, as for a shallow clone.
        """
        return replace(self, context={**self.context, **kwargs})

    def query(self) -> dict[str, list[str]]:
        return parse_qs(self.raw_query, keep_blank_values=True)


@dataclass
class ResponseRecorder:
    """A response writer that keeps status, headers and body in memory."""

    headers: Headers = field(default_factory=Headers)
    status: int = 200
    body: bytearray = field(default_factory=bytearray)
    wrote_header: bool = False

    def write_header(self, status: int) -> None:
        if self.wrote_header:
            return
        self.status = status
        self.wrote_header = True

    def write(self, data: bytes) -> int:
        if not self.wrote_header:
            self.write_header(200)
        self.body.extend(data)
        return len(data)


@dataclass
class ProxyInfo:
    """Whether a request was forwarded upstream, where, or why it was stopped."""

    forwarded: bool = False
    endpoint: str = ""
    reason: str = ""


@dataclass
class ExtraRequestInfo:
    scheme: str = ""
    hostname: str = ""
    is_impersonate_request: bool = False
    impersonator: Optional[UserInfo] = None


class ExtraRequestInfoFactory:
    """Resolves the gateway's extra request information from a request."""

    def new_extra_request_info(self, req: Request) -> ExtraRequestInfo:
        return ExtraRequestInfo(
            scheme=req.scheme,
            hostname=host_without_port(req.host),
            is_impersonate_request=bool(req.headers.get(IMPERSONATE_USER_HEADER)),
        )


def with_proxy_info(req: Request, info: ProxyInfo) -> Request:
    return req.with_context(**{_PROXY_INFO_KEY: info})


def proxy_info_from(req: Request) -> Optional[ProxyInfo]:
    return req.context.get(_PROXY_INFO_KEY)


def _require_proxy_info(req: Request) -> ProxyInfo:
    info = proxy_info_from(req)
    if info is None:
        raise MissingContextError("no proxy info found in context")
    return info


def set_proxy_forwarded(req: Request, endpoint: str) -> None:
    info = _require_proxy_info(req)
    info.forwarded = True
    info.endpoint = endpoint


def set_proxy_terminated(req: Request, reason: str) -> None:
    info = _require_proxy_info(req)
    info.forwarded = False
    info.reason = reason


def is_proxy_forwarded(req: Request) -> bool:
    info = proxy_info_from(req)
    return info is not None and info.forwarded


def with_extra_request_info(req: Request, info: Optional[ExtraRequestInfo]) -> Request:
    return req.with_context(**{_EXTRA_REQUEST_INFO_KEY: info})


def extra_request_info_from(req: Request) -> Optional[ExtraRequestInfo]:
    return req.context.get(_EXTRA_REQUEST_INFO_KEY)


def with_user(req: Request, user: UserInfo) -> Request:
    return req.with_context(**{_USER_KEY: user})


def user_from(req: Request) -> Optional[UserInfo]:
    return req.context.get(_USER_KEY)


def with_request_info(req: Request, info: RequestInfo) -> Request:
    return req.with_context(**{_REQUEST_INFO_KEY: info})


def request_info_from(req: Request) -> Optional[RequestInfo]:
    return req.context.get(_REQUEST_INFO_KEY)