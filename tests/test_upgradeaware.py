import pytest

from kubegateway.dispatcher_status import StatusError
from kubegateway.request_context import Headers, Request, ResponseRecorder
from kubegateway.upgradeaware import (
    CORS_HEADERS,
    CorsRemovingTransport,
    Response,
    UpgradeAwareHandler,
    is_upgrade_request,
    remove_cors_headers,
)


class FakeTransport:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def round_trip(self, req):
        self.requests.append(req)
        if self.error is not None:
            raise self.error
        return self.response


def _cors_response():
    return Response(
        status=200,
        headers={
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": "GET",
            "Content-Type": "application/json",
            "Connection": "close",
        },
        body=b'{"kind":"PodList"}',
    )


@pytest.mark.parametrize(
    "connection, expected",
    [("Upgrade", True), ("keep-alive, upgrade", True), ("close", False), (None, False)],
)
def test_is_upgrade_request(connection, expected):
    headers = {"Connection": connection} if connection else {}
    assert is_upgrade_request(Request(url="/", headers=headers)) is expected


def test_remove_cors_headers_keeps_others():
    headers = Headers({name: "x" for name in CORS_HEADERS})
    headers.set("Content-Type", "application/json")
    remove_cors_headers(headers)
    assert all(name not in headers for name in CORS_HEADERS)
    assert headers.get("Content-Type") == "application/json"


def test_cors_removing_transport():
    inner = FakeTransport(_cors_response())
    transport = CorsRemovingTransport(inner)
    req = Request(url="https://upstream.example.com/api")
    resp = transport.round_trip(req)
    assert "Access-Control-Allow-Origin" not in resp.headers
    assert resp.headers.get("Content-Type") == "application/json"
    assert inner.requests == [req]
    assert transport.wrapped is inner


def test_cors_removing_transport_propagates_errors():
    transport = CorsRemovingTransport(FakeTransport(error=ConnectionError("refused")))
    with pytest.raises(ConnectionError):
        transport.round_trip(Request(url="/"))


def test_proxies_request_to_location():
    transport = FakeTransport(_cors_response())
    handler = UpgradeAwareHandler(
        "https://upstream.example.com:6443/api/v1/pods", transport, wrap_transport=True
    )
    req = Request(
        url="/api/v1/pods?limit=5",
        headers={"Accept": "application/json"},
        remote_addr="10.0.0.7:51234",
    )
    w = ResponseRecorder()
    handler.serve(w, req)

    sent = transport.requests[0]
    assert sent.url == "https://upstream.example.com:6443/api/v1/pods?limit=5"
    assert sent.headers.get("Accept") == "application/json"
    assert sent.headers.get("X-Forwarded-For") == "10.0.0.7"
    assert "X-Forwarded-For" not in req.headers
    assert w.status == 200
    assert bytes(w.body) == b'{"kind":"PodList"}'
    assert "Access-Control-Allow-Origin" not in w.headers
    assert "Connection" not in w.headers
    assert w.headers.get("Content-Type") == "application/json"


def test_without_wrapping_cors_headers_pass_through():
    transport = FakeTransport(_cors_response())
    handler = UpgradeAwareHandler("https://upstream.example.com/api", transport)
    w = ResponseRecorder()
    handler.serve(w, Request(url="/api"))
    assert w.headers.get("Access-Control-Allow-Origin") == "*"


def test_trailing_slash_is_kept():
    transport = FakeTransport(Response())
    handler = UpgradeAwareHandler("https://upstream.example.com/api", transport)
    handler.serve(ResponseRecorder(), Request(url="/foo/"))
    assert transport.requests[0].url == "https://upstream.example.com/api/"


def test_empty_location_path_redirects():
    transport = FakeTransport(Response())
    handler = UpgradeAwareHandler("https://upstream.example.com", transport)
    w = ResponseRecorder()
    handler.serve(w, Request(url="/api?watch=1"))
    assert w.status == 301
    assert w.headers.get("Location") == "/api/?watch=1"
    assert transport.requests == []


def test_upgrade_required_rejects_plain_request():
    errors = []
    handler = UpgradeAwareHandler(
        "https://upstream.example.com/api",
        FakeTransport(Response()),
        upgrade_required=True,
        responder=lambda w, req, err: errors.append(err),
    )
    handler.serve(ResponseRecorder(), Request(url="/api"))
    assert len(errors) == 1
    assert isinstance(errors[0], StatusError)
    assert errors[0].status.code == 400
    assert errors[0].status.message == "Upgrade request required"


def test_upgrade_request_goes_to_upgrade_handler():
    seen = []
    transport = FakeTransport(Response())
    handler = UpgradeAwareHandler(
        "https://upstream.example.com/api",
        transport,
        upgrade_handler=lambda w, req: seen.append(req),
    )
    req = Request(url="/api", headers={"Connection": "Upgrade", "Upgrade": "SPDY/3.1"})
    handler.serve(ResponseRecorder(), req)
    assert seen == [req]
    assert transport.requests == []


def test_transport_error_goes_to_responder():
    failure = ConnectionError("refused")
    errors = []
    handler = UpgradeAwareHandler(
        "https://upstream.example.com/api",
        FakeTransport(error=failure),
        responder=lambda w, req, err: errors.append(err),
    )
    handler.serve(ResponseRecorder(), Request(url="/api"))
    assert errors == [failure]


def test_transport_error_without_responder_is_bad_gateway():
    handler = UpgradeAwareHandler(
        "https://upstream.example.com/api", FakeTransport(error=ConnectionError("refused"))
    )
    w = ResponseRecorder()
    handler.serve(w, Request(url="/api"))
    assert w.status == 502