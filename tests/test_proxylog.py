import logging
from datetime import timedelta

from kubegateway import metrics
from kubegateway.proxylog import ResponseWriterDelegator, capture_error_output
from kubegateway.request_context import (
    ProxyInfo,
    Request,
    RequestInfo,
    ResponseRecorder,
    UserInfo,
    with_proxy_info,
)


def _delegator(host, info=None, logging_enabled=False, forwarded=False, impersonator=None):
    req = Request(url=f"https://{host}/api/v1/pods", remote_addr="10.0.0.1:1234")
    if forwarded:
        req = with_proxy_info(req, ProxyInfo(forwarded=True))
    w = ResponseRecorder()
    info = info or RequestInfo(is_resource_request=True, verb="create", resource="pods")
    user = UserInfo(name="alice", groups=["dev"])
    d = ResponseWriterDelegator(req, w, logging_enabled, info, host, "https://ep:6443", user, impersonator)
    return d, w


def test_capture_error_output_threshold():
    assert capture_error_output(500) is True
    assert capture_error_output(503) is True
    assert capture_error_output(499) is False


def test_write_defaults_status_and_counts_bytes():
    d, w = _delegator("write.example.com")
    assert d.write(b"hello") == 5
    d.write(b"!!")
    assert d.status == 200
    assert d.content_length() == 7
    assert bytes(w.body) == b"hello!!"
    assert d.added_info == ""


def test_error_output_is_captured():
    d, w = _delegator("err.example.com")
    d.write_header(500)
    d.write(b"oops")
    assert w.status == 500
    assert "logging error output" in d.added_info
    assert "oops" in d.added_info


def test_elapsed_is_non_negative():
    d, _ = _delegator("elapsed.example.com")
    assert d.elapsed() >= timedelta(0)


def test_watch_registers_and_unregisters():
    host = "watch.example.com"
    info = RequestInfo(is_resource_request=True, verb="watch", resource="pods")
    d, _ = _delegator(host, info=info)
    gauge = metrics.PROXY_REGISTERED_WATCHERS.with_label_values(
        metrics.PROXY_PID, host, "https://ep:6443", "pods"
    )
    before = gauge.value
    d.monitor_before_proxy()
    assert gauge.value == before + 1
    d.monitor_after_proxy()
    assert gauge.value == before


def test_forwarded_request_is_counted():
    host = "fwd.example.com"
    d, _ = _delegator(host, forwarded=True)
    d.write_header(201)
    counter = metrics.PROXY_REQUEST_COUNTER.with_label_values(
        metrics.PROXY_PID, host, "https://ep:6443", "CREATE", "pods", "201"
    )
    before = counter.value
    d.monitor_after_proxy()
    assert counter.value == before + 1


def test_unforwarded_request_is_not_counted():
    host = "nofwd.example.com"
    d, _ = _delegator(host, forwarded=False)
    d.write_header(201)
    counter = metrics.PROXY_REQUEST_COUNTER.with_label_values(
        metrics.PROXY_PID, host, "https://ep:6443", "CREATE", "pods", "201"
    )
    before = counter.value
    d.monitor_after_proxy()
    assert counter.value == before


def test_log_emits_when_enabled(caplog):
    d, _ = _delegator("log.example.com", logging_enabled=True, impersonator=UserInfo(name="bob"))
    d.write_header(200)
    with caplog.at_level(logging.INFO, logger="kubegateway.proxylog"):
        d.log()
    assert len(caplog.records) == 1
    message = caplog.records[0].getMessage()
    assert 'host="log.example.com"' in message
    assert 'impersonator="bob"' in message
    assert "10.0.0.1" in message


def test_log_silent_when_disabled(caplog):
    d, _ = _delegator("quiet.example.com", logging_enabled=False)
    with caplog.at_level(logging.INFO, logger="kubegateway.proxylog"):
        d.log()
    assert caplog.records == []