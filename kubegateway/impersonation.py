"""User impersonation: the inbound filter and the outbound impersonating transport."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Mapping, Optional, Protocol

from urllib.parse import unquote_to_bytes

from kubegateway.request_context import (
    IMPERSONATE_GROUP_HEADER,
    IMPERSONATE_USER_EXTRA_HEADER_PREFIX,
    IMPERSONATE_USER_HEADER,
    Headers,
    Request,
    UserInfo,
    user_from,
    with_user,
)

_log = logging.getLogger(__name__)

IMPERSONATE_VERB = "impersonate"
RESOURCE_USERS = "users"
RESOURCE_GROUPS = "groups"
RESOURCE_USER_EXTRAS = "userextras"
RESOURCE_SERVICE_ACCOUNTS = "serviceaccounts"

ANONYMOUS = "system:anonymous"
ALL_AUTHENTICATED = "system:authenticated"
ALL_UNAUTHENTICATED = "system:unauthenticated"

SERVICE_ACCOUNT_USERNAME_PREFIX = "system:serviceaccount:"
ALL_SERVICE_ACCOUNTS_GROUP = "system:serviceaccounts"
SERVICE_ACCOUNT_GROUP_PREFIX = "system:serviceaccounts:"

AUTHENTICATION_GROUP = "authentication.k8s.io"
AUTHENTICATION_GROUP_VERSION = f"{AUTHENTICATION_GROUP}/v1"

_DNS1123_LABEL = re.compile(r"[a-z0-9]([-a-z0-9]*[a-z0-9])?")
_DNS1123_SUBDOMAIN = re.compile(
    r"[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*"
)
_BAD_PERCENT = re.compile(r"%(?![0-9A-Fa-f]{2})")

# HTTP token characters allowed verbatim in a header key; '%' is always escaped.
_LEGAL_HEADER_KEY_BYTES = frozenset(
    b"!#$&'*+-.^_`|~0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
)


class Decision(Enum):
    DENY = "deny"
    ALLOW = "allow"
    NO_OPINION = "no_opinion"


class ImpersonationError(ValueError):
    """Raised when the impersonation headers of a request are inconsistent."""


@dataclass
class ObjectReference:
    """Something a request asks to act as: a user, group, service account or extra."""

    kind: str = ""
    namespace: str = ""
    name: str = ""
    api_version: str = ""
    field_path: str = ""

    def group_version(self) -> tuple[str, str]:
        if "/" in self.api_version:
            group, version = self.api_version.split("/", 1)
            return group, version
        return "", self.api_version


@dataclass
class AuthorizationAttributes:
    """What the authorizer is asked to allow."""

    user: UserInfo
    verb: str = ""
    api_group: str = ""
    api_version: str = ""
    namespace: str = ""
    name: str = ""
    resource: str = ""
    subresource: str = ""
    resource_request: bool = False


class Authorizer(Protocol):
    def authorize(self, attributes: AuthorizationAttributes) -> tuple[Decision, str]:
        ...


Handler = Callable[[object, Request], None]


def make_service_account_username(namespace: str, name: str) -> str:
    return f"{SERVICE_ACCOUNT_USERNAME_PREFIX}{namespace}:{name}"


def split_service_account_username(username: str) -> tuple[str, str]:
    """Return (namespace, name) of a service account user name.

    Raises ValueError if the name is not a valid service account user name.
    """
    if not username.startswith(SERVICE_ACCOUNT_USERNAME_PREFIX):
        raise ValueError("username must be in the form system:serviceaccount:namespace:name")
    parts = username[len(SERVICE_ACCOUNT_USERNAME_PREFIX):].split(":")
    if len(parts) != 2:
        raise ValueError("username must be in the form system:serviceaccount:namespace:name")
    namespace, name = parts
    if len(namespace) > 63 or not _DNS1123_LABEL.fullmatch(namespace):
        raise ValueError(f"invalid namespace {namespace!r}")
    if len(name) > 253 or not _DNS1123_SUBDOMAIN.fullmatch(name):
        raise ValueError(f"invalid service account name {name!r}")
    return namespace, name


def service_account_group_names(namespace: str) -> list[str]:
    return [ALL_SERVICE_ACCOUNTS_GROUP, SERVICE_ACCOUNT_GROUP_PREFIX + namespace]


def unescape_extra_key(encoded_key: str) -> str:
    """Decode a %-encoded extra key; malformed keys are returned unchanged."""
    if _BAD_PERCENT.search(encoded_key):
        return encoded_key
    try:
        return unquote_to_bytes(encoded_key).decode("utf-8")
    except UnicodeDecodeError:
        return encoded_key


def build_impersonation_requests(headers: Headers) -> list[ObjectReference]:
    """Return the things a request asks to impersonate, in authorization order."""
    requests: list[ObjectReference] = []

    requested_user = headers.get(IMPERSONATE_USER_HEADER)
    has_user = bool(requested_user)
    if has_user:
        try:
            namespace, name = split_service_account_username(requested_user)
        except ValueError:
            requests.append(ObjectReference(kind="User", name=requested_user))
        else:
            requests.append(ObjectReference(kind="ServiceAccount", namespace=namespace, name=name))

    groups = headers.get_all(IMPERSONATE_GROUP_HEADER)
    requests.extend(ObjectReference(kind="Group", name=group) for group in groups)

    has_user_extra = False
    for header_name, values in headers.items():
        if not header_name.startswith(IMPERSONATE_USER_EXTRA_HEADER_PREFIX):
            continue
        has_user_extra = True
        extra_key = unescape_extra_key(
            header_name[len(IMPERSONATE_USER_EXTRA_HEADER_PREFIX):].lower()
        )
        requests.extend(
            ObjectReference(
                kind="UserExtra",
                api_version=AUTHENTICATION_GROUP_VERSION,
                name=value,
                field_path=extra_key,
            )
            for value in values
        )

    if (groups or has_user_extra) and not has_user:
        raise ImpersonationError(f"requested {requests} without impersonating a user")
    return requests


def _write_status(w, code: int, reason: str, message: str) -> None:
    body = {
        "kind": "Status",
        "apiVersion": "v1",
        "metadata": {},
        "status": "Failure",
        "message": message,
        "reason": reason,
        "code": code,
    }
    w.headers.set("Content-Type", "application/json")
    w.write_header(code)
    w.write(json.dumps(body).encode("utf-8"))


def _internal_error(w, message: str) -> None:
    _write_status(w, 500, "InternalError", f"Internal error occurred: {message}")


def _forbidden(w, attrs: AuthorizationAttributes, reason: str) -> None:
    resource = attrs.resource + (f"/{attrs.subresource}" if attrs.subresource else "")
    message = (
        f'{resource} "{attrs.name}" is forbidden: User "{attrs.user.name}" cannot '
        f'{attrs.verb} resource "{resource}" in API group "{attrs.api_group}"'
    )
    if attrs.namespace:
        message += f' in the namespace "{attrs.namespace}"'
    if reason:
        message += f": {reason}"
    _write_status(w, 403, "Forbidden", message)


def _with_default_groups(username: str, groups: list[str]) -> list[str]:
    if username != ANONYMOUS:
        if not any(g in (ALL_AUTHENTICATED, ALL_UNAUTHENTICATED) for g in groups):
            return [*groups, ALL_AUTHENTICATED]
        return groups
    if ALL_UNAUTHENTICATED not in groups:
        return [*groups, ALL_UNAUTHENTICATED]
    return groups


def with_no_logging_impersonation(handler: Handler, authorizer: Authorizer) -> Handler:
    """Wrap ``handler`` so that authorized impersonation headers replace the request user."""

    def serve(w, req: Request) -> None:
        try:
            requests = build_impersonation_requests(req.headers)
        except ImpersonationError as err:
            _log.debug("%s", err)
            _internal_error(w, str(err))
            return
        if not requests:
            handler(w, req)
            return

        requestor = user_from(req)
        if requestor is None:
            _internal_error(w, "no user found for request")
            return

        groups_specified = bool(req.headers.get_all(IMPERSONATE_GROUP_HEADER))
        username = ""
        groups: list[str] = []
        user_extra: dict[str, list[str]] = {}

        for ref in requests:
            group, version = ref.group_version()
            attrs = AuthorizationAttributes(
                user=requestor,
                verb=IMPERSONATE_VERB,
                api_group=group,
                api_version=version,
                namespace=ref.namespace,
                name=ref.name,
                resource_request=True,
            )
            group_kind = (group, ref.kind)
            if group_kind == ("", "ServiceAccount"):
                attrs.resource = RESOURCE_SERVICE_ACCOUNTS
                username = make_service_account_username(ref.namespace, ref.name)
                if not groups_specified:
                    groups = service_account_group_names(ref.namespace)
            elif group_kind == ("", "User"):
                attrs.resource = RESOURCE_USERS
                username = ref.name
            elif group_kind == ("", "Group"):
                attrs.resource = RESOURCE_GROUPS
                groups.append(ref.name)
            elif group_kind == (AUTHENTICATION_GROUP, "UserExtra"):
                attrs.resource = RESOURCE_USER_EXTRAS
                attrs.subresource = ref.field_path
                user_extra.setdefault(ref.field_path, []).append(ref.name)
            else:
                message = f"unknown impersonation request type: {ref}"
                _log.debug(message)
                _forbidden(w, attrs, message)
                return

            try:
                decision, reason = authorizer.authorize(attrs)
            except Exception as err:  # an authorizer failure denies the request
                _log.debug("Forbidden: %r, Error: %s", req.request_uri, err)
                _forbidden(w, attrs, "")
                return
            if decision is not Decision.ALLOW:
                _log.debug("Forbidden: %r, Reason: %s", req.request_uri, reason)
                _forbidden(w, attrs, reason)
                return

        new_user = UserInfo(
            name=username, groups=_with_default_groups(username, groups), extra=user_extra
        )
        req = with_user(req, new_user)

        req.headers.delete(IMPERSONATE_USER_HEADER)
        req.headers.delete(IMPERSONATE_GROUP_HEADER)
        for header_name in req.headers:
            if header_name.startswith(IMPERSONATE_USER_EXTRA_HEADER_PREFIX):
                req.headers.delete(header_name)

        handler(w, req)

    return serve


def groups_to_string(groups: list[str]) -> str:
    return "[" + " ".join(sorted(groups)) + "]"


def extra_to_string(extra: Mapping[str, list[str]]) -> str:
    if not extra:
        return ""
    entries = ",".join(
        f"{key}={groups_to_string(extra[key])}" for key in sorted(extra)
    )
    return "map{" + entries + "}"


def header_key_escape(key: str) -> str:
    """%-encode every byte of ``key`` that is not a legal header key byte."""
    return "".join(
        chr(b) if b in _LEGAL_HEADER_KEY_BYTES else f"%{b:02X}"
        for b in key.encode("utf-8")
    )


@dataclass
class DynamicImpersonatingTransport:
    """Forwards requests as the user found in the request context."""

    delegate: object
    _: None = field(default=None, repr=False)

    @property
    def wrapped(self) -> object:
        return self.delegate

    def round_trip(self, req: Request):
        _log.debug("%s %s Host:%s", req.method, req.url, req.host)

        if req.headers.get(IMPERSONATE_USER_HEADER):
            return self.delegate.round_trip(req)

        requestor = user_from(req)
        if requestor is None:
            return self.delegate.round_trip(req)

        _log.debug(
            "Impersonator: Name: %s Group: %s Extra: %s",
            requestor.name,
            groups_to_string(requestor.groups),
            extra_to_string(requestor.extra),
        )

        req = replace(req, headers=req.headers.copy())
        req.headers.set(IMPERSONATE_USER_HEADER, requestor.name)
        for group in requestor.groups:
            req.headers.add(IMPERSONATE_GROUP_HEADER, group)
        for key, values in requestor.extra.items():
            for value in values:
                req.headers.add(IMPERSONATE_USER_EXTRA_HEADER_PREFIX + header_key_escape(key), value)

        return self.delegate.round_trip(req)

    def cancel_request(self, req: Request) -> None:
        cancel: Optional[Callable[[Request], None]] = getattr(self.delegate, "cancel_request", None)
        if cancel is None:
            _log.error("cancel_request not implemented by %s", type(self.delegate).__name__)
            return
        cancel(req)