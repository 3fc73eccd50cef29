"""Command-line options of the gateway's proxy server."""

from __future__ import annotations

import argparse
import re
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Optional

# Microseconds per unit of a duration string.
_UNIT_MICROSECONDS = {
    "ns": Decimal("0.001"),
    "us": Decimal(1),
    "µs": Decimal(1),
    "μs": Decimal(1),
    "ms": Decimal(1_000),
    "s": Decimal(1_000_000),
    "m": Decimal(60_000_000),
    "h": Decimal(3_600_000_000),
}
_COMPONENT = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``300ms``, ``1.5h`` or ``2h45m``.

    A bare ``0`` is accepted; every other value needs a unit on each part.
    Raises ValueError for malformed values.
    """
    invalid = ValueError(f'time: invalid duration "{text}"')
    rest = text
    negative = False
    if rest[:1] in ("+", "-"):
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise invalid
    total = Decimal(0)
    pos = 0
    while pos < len(rest):
        match = _COMPONENT.match(rest, pos)
        if match is None:
            raise invalid
        number, unit = match.groups()
        total += Decimal(number) * _UNIT_MICROSECONDS[unit]
        pos = match.end()
    micros = int(total)
    return timedelta(microseconds=-micros if negative else micros)


def _parse_bool(text: str) -> bool:
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise ValueError(f"invalid boolean {text!r}")


def _parse_int_list(text: str) -> list[int]:
    return [int(part.strip()) for part in text.split(",")] if text else []


class _Bind(argparse.Action):
    """Stores a flag's value on the parsed namespace and on a bound options object."""

    def __init__(
        self,
        option_strings,
        dest,
        target: Any = None,
        attribute: str = "",
        accumulate: bool = False,
        **kwargs,
    ) -> None:
        super().__init__(option_strings, dest, **kwargs)
        self.target = target
        self.attribute = attribute
        self.accumulate = accumulate

    def __call__(self, parser, namespace, values, option_string=None) -> None:
        if self.accumulate:
            current = getattr(namespace, self.dest, None)
            base = [] if current is None or current is self.default else list(current)
            values = base + list(values)
        setattr(namespace, self.dest, values)
        setattr(self.target, self.attribute, values)


def _add_duration_flag(parser, name: str, target, attribute: str, help_text: str) -> None:
    default = getattr(target, attribute)
    parser.add_argument(
        name,
        action=_Bind,
        target=target,
        attribute=attribute,
        type=parse_duration,
        default=default,
        metavar="DURATION",
        help=f"{help_text} (default {default})",
    )


@dataclass
class AuthenticationOptions:
    """How long upstream token review answers are cached."""

    token_success_cache_ttl: timedelta = timedelta(seconds=600)
    token_failure_cache_ttl: timedelta = timedelta(seconds=10)

    def validate(self) -> list[Exception]:
        return []

    def add_flags(self, parser: argparse.ArgumentParser) -> None:
        _add_duration_flag(
            parser,
            "--proxy-authentication-token-success-cache-ttl",
            self,
            "token_success_cache_ttl",
            "The duration to cache success responses from the upstream token request authenticator.",
        )
        _add_duration_flag(
            parser,
            "--proxy-authentication-token-failure-cache-ttl",
            self,
            "token_failure_cache_ttl",
            "The duration to cache failure responses from the upstream token request authenticator.",
        )


@dataclass
class AuthorizerConfig:
    """What is needed to build the upstream subject access review authorizer."""

    cache_authorized_ttl: timedelta
    cache_unauthorized_ttl: timedelta
    cluster_client_provider: Optional[Any] = None


@dataclass
class AuthorizationOptions:
    """How long upstream authorization answers are cached."""

    cache_authorized_ttl: timedelta = timedelta(minutes=5)
    cache_unauthorized_ttl: timedelta = timedelta(seconds=30)

    def validate(self) -> list[Exception]:
        return []

    def to_authorization_config(self, client_provider: Optional[Any]) -> AuthorizerConfig:
        return AuthorizerConfig(
            cache_authorized_ttl=self.cache_authorized_ttl,
            cache_unauthorized_ttl=self.cache_unauthorized_ttl,
            cluster_client_provider=client_provider,
        )

    def add_flags(self, parser: argparse.ArgumentParser) -> None:
        _add_duration_flag(
            parser,
            "--proxy-authorization-cache-authorized-ttl",
            self,
            "cache_authorized_ttl",
            "The duration to cache 'authorized' responses from the subject request authorizer.",
        )
        _add_duration_flag(
            parser,
            "--proxy-authorization-cache-unauthorized-ttl",
            self,
            "cache_unauthorized_ttl",
            "The duration to cache 'unauthorized' responses from the subject request authorizer.",
        )


@dataclass
class LoggingOptions:
    enable_proxy_access_log: bool = False

    def validate(self) -> list[Exception]:
        return []

    def add_flags(self, parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--enable-proxy-access-log",
            action=_Bind,
            target=self,
            attribute="enable_proxy_access_log",
            type=_parse_bool,
            nargs="?",
            const=True,
            default=self.enable_proxy_access_log,
            metavar="BOOL",
            help="Enable proxy access log",
        )


@dataclass
class SecureServingOptions:
    """The HTTPS ports the proxy serves on."""

    ports: list[int] = field(default_factory=list)

    def validate_with(self, bind_port: int, other_ports: list[int]) -> list[ValueError]:
        """Check the ports against each other and the control plane's ports."""
        errors: list[ValueError] = []
        used = {bind_port, *other_ports}
        if not self.ports:
            errors.append(ValueError("--proxy-secure-ports must be set"))
        for port in self.ports:
            if port < 1 or port > 65535:
                errors.append(
                    ValueError(
                        f"ports in --proxy-secure-ports {port} must be between 1 and 65535, "
                        "inclusive. It cannot be turned off with 0"
                    )
                )
            if port in used:
                errors.append(
                    ValueError(
                        f"ports in --proxy-secure-ports {port} is duplicate in "
                        "--secure-port or --other-secure-ports"
                    )
                )
            else:
                used.add(port)
        return errors

    def add_flags(self, parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--proxy-secure-ports",
            action=_Bind,
            target=self,
            attribute="ports",
            accumulate=True,
            type=_parse_int_list,
            default=list(self.ports),
            metavar="PORTS",
            help="A list of ports which to serve HTTPS for apiserver proxy "
            "with authentication and authorization.",
        )

    def serving_ports(self) -> tuple[int, list[int]]:
        """Return the port to bind first and the other ports to serve on."""
        if not self.ports:
            raise ValueError("--proxy-secure-ports must be set")
        return self.ports[0], list(self.ports[1:])


_Converter = Callable[[str], Any]