import argparse
from datetime import timedelta

import pytest

from kubegateway.options import (
    AuthenticationOptions,
    AuthorizationOptions,
    AuthorizerConfig,
    LoggingOptions,
    SecureServingOptions,
    parse_duration,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("10m", timedelta(minutes=10)),
        ("600s", timedelta(seconds=600)),
        ("1h30m", timedelta(hours=1, minutes=30)),
        ("1.5h", timedelta(hours=1.5)),
        ("300ms", timedelta(milliseconds=300)),
        ("-2s", -timedelta(seconds=2)),
        ("+5s", timedelta(seconds=5)),
        ("0", timedelta(0)),
        ("1500us", timedelta(microseconds=1500)),
    ],
)
def test_parse_duration(text, expected):
    assert parse_duration(text) == expected


@pytest.mark.parametrize("text", ["", "10", "abc", "5x", "1h-2m", "-", "."])
def test_parse_duration_rejects_malformed(text):
    with pytest.raises(ValueError):
        parse_duration(text)


def test_parse_duration_parts_add_up():
    assert parse_duration("2h45m") == parse_duration("2h") + parse_duration("45m")


def test_authentication_defaults():
    opts = AuthenticationOptions()
    assert opts.token_success_cache_ttl == timedelta(seconds=600)
    assert opts.token_failure_cache_ttl == timedelta(seconds=10)
    assert opts.validate() == []


def test_authentication_flags_bind_values():
    opts = AuthenticationOptions()
    parser = argparse.ArgumentParser()
    opts.add_flags(parser)
    parser.parse_args(["--proxy-authentication-token-success-cache-ttl=1m"])
    assert opts.token_success_cache_ttl == timedelta(minutes=1)
    assert opts.token_failure_cache_ttl == timedelta(seconds=10)


def test_authentication_flag_rejects_bad_duration():
    opts = AuthenticationOptions()
    parser = argparse.ArgumentParser()
    opts.add_flags(parser)
    with pytest.raises(SystemExit):
        parser.parse_args(["--proxy-authentication-token-failure-cache-ttl", "soon"])


def test_authorization_defaults_and_config():
    opts = AuthorizationOptions()
    assert opts.cache_authorized_ttl == timedelta(minutes=5)
    assert opts.cache_unauthorized_ttl == timedelta(seconds=30)
    provider = object()
    config = opts.to_authorization_config(provider)
    assert config == AuthorizerConfig(
        cache_authorized_ttl=opts.cache_authorized_ttl,
        cache_unauthorized_ttl=opts.cache_unauthorized_ttl,
        cluster_client_provider=provider,
    )
    assert opts.validate() == []


def test_authorization_flags_bind_values():
    opts = AuthorizationOptions()
    parser = argparse.ArgumentParser()
    opts.add_flags(parser)
    args = parser.parse_args(
        [
            "--proxy-authorization-cache-authorized-ttl=2m",
            "--proxy-authorization-cache-unauthorized-ttl",
            "15s",
        ]
    )
    assert opts.cache_authorized_ttl == timedelta(minutes=2)
    assert opts.cache_unauthorized_ttl == timedelta(seconds=15)
    assert args.proxy_authorization_cache_authorized_ttl == opts.cache_authorized_ttl


def test_logging_flag():
    opts = LoggingOptions()
    assert opts.enable_proxy_access_log is False
    parser = argparse.ArgumentParser()
    opts.add_flags(parser)
    parser.parse_args(["--enable-proxy-access-log"])
    assert opts.enable_proxy_access_log is True
    parser.parse_args(["--enable-proxy-access-log=false"])
    assert opts.enable_proxy_access_log is False
    assert opts.validate() == []


def test_logging_flag_rejects_bad_bool():
    parser = argparse.ArgumentParser()
    LoggingOptions().add_flags(parser)
    with pytest.raises(SystemExit):
        parser.parse_args(["--enable-proxy-access-log=maybe"])


def test_secure_ports_flag_comma_and_repeat():
    opts = SecureServingOptions()
    parser = argparse.ArgumentParser()
    opts.add_flags(parser)
    parser.parse_args(["--proxy-secure-ports=443,8443", "--proxy-secure-ports=9443"])
    assert opts.ports == [443, 8443, 9443]


def test_secure_ports_flag_replaces_default():
    opts = SecureServingOptions(ports=[1])
    parser = argparse.ArgumentParser()
    opts.add_flags(parser)
    parser.parse_args(["--proxy-secure-ports=2"])
    assert opts.ports == [2]


def test_secure_ports_flag_rejects_non_numbers():
    parser = argparse.ArgumentParser()
    SecureServingOptions().add_flags(parser)
    with pytest.raises(SystemExit):
        parser.parse_args(["--proxy-secure-ports=abc"])


def test_validate_with_valid_ports():
    assert SecureServingOptions(ports=[443, 8443]).validate_with(6443, [7443]) == []


def test_validate_with_requires_ports():
    errors = SecureServingOptions().validate_with(6443, [])
    assert [str(e) for e in errors] == ["--proxy-secure-ports must be set"]


def test_validate_with_out_of_range():
    errors = SecureServingOptions(ports=[0, 70000]).validate_with(6443, [])
    assert len(errors) == 2
    assert all("must be between 1 and 65535" in str(e) for e in errors)


def test_validate_with_duplicates():
    errors = SecureServingOptions(ports=[6443, 7443, 443, 443]).validate_with(6443, [7443])
    assert len(errors) == 3
    assert all("is duplicate in --secure-port or --other-secure-ports" in str(e) for e in errors)


def test_serving_ports():
    assert SecureServingOptions(ports=[443, 8443, 9443]).serving_ports() == (443, [8443, 9443])
    assert SecureServingOptions(ports=[443]).serving_ports() == (443, [])


def test_serving_ports_requires_ports():
    with pytest.raises(ValueError):
        SecureServingOptions().serving_ports()