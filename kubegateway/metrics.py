"""Proxy metrics: counters, gauges, histograms and the registry holding them."""

from __future__ import annotations

import os
import threading
from bisect import bisect_left
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterator, Mapping, Optional, Union

from kubegateway.net import host_without_port
from kubegateway.request_context import Request, RequestInfo, request_info_from

OTHER_REQUEST_METHOD = "other"
NAMESPACE = "kubegateway"
SUBSYSTEM = "proxy"
ALPHA = "ALPHA"
APPLY_PATCH_CONTENT_TYPE = "application/apply-patch+yaml"

PROXY_PID = str(os.getpid())

VALID_REQUEST_METHODS = frozenset(
    {
        "APPLY",
        "CONNECT",
        "CREATE",
        "DELETE",
        "DELETECOLLECTION",
        "GET",
        "LIST",
        "PATCH",
        "POST",
        "PROXY",
        "PUT",
        "UPDATE",
        "WATCH",
        "WATCHLIST",
    }
)

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


@dataclass(frozen=True)
class Sample:
    """One exported value of a metric."""

    name: str
    labels: Mapping[str, str]
    value: float


def exponential_buckets(start: float, factor: float, count: int) -> list[float]:
    """Return ``count`` bucket bounds, the first ``start``, each ``factor`` times the last."""
    if count < 1:
        raise ValueError("exponential_buckets needs a positive count")
    if start <= 0:
        raise ValueError("exponential_buckets needs a positive start value")
    if factor <= 1:
        raise ValueError("exponential_buckets needs a factor greater than 1")
    buckets = []
    bound = float(start)
    for _ in range(count):
        buckets.append(bound)
        bound *= factor
    return buckets


class _Counter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0.0

    @property
    def value(self) -> float:
        return self._value

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self._value += amount

    def _samples(self, name: str, labels: dict[str, str]) -> Iterator[Sample]:
        yield Sample(name, labels, self._value)


class _Gauge:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0.0

    @property
    def value(self) -> float:
        return self._value

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    def dec(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value -= amount

    def _samples(self, name: str, labels: dict[str, str]) -> Iterator[Sample]:
        yield Sample(name, labels, self._value)


class _Histogram:
    def __init__(self, buckets: tuple[float, ...]) -> None:
        self._lock = threading.Lock()
        self.buckets = buckets
        self._counts = [0] * len(buckets)
        self.sum = 0.0
        self.count = 0

    def observe(self, value: float) -> None:
        index = bisect_left(self.buckets, value)
        with self._lock:
            if index < len(self._counts):
                self._counts[index] += 1
            self.sum += value
            self.count += 1

    def cumulative_counts(self) -> list[int]:
        totals, running = [], 0
        for count in self._counts:
            running += count
            totals.append(running)
        return totals

    def _samples(self, name: str, labels: dict[str, str]) -> Iterator[Sample]:
        for bound, total in zip(self.buckets, self.cumulative_counts()):
            yield Sample(f"{name}_bucket", {**labels, "le": repr(bound)}, float(total))
        yield Sample(f"{name}_bucket", {**labels, "le": "+Inf"}, float(self.count))
        yield Sample(f"{name}_sum", labels, self.sum)
        yield Sample(f"{name}_count", labels, float(self.count))


class _MetricVec:
    def __init__(
        self,
        name: str,
        help_text: str,
        label_names: tuple[str, ...] | list[str],
        namespace: str = "",
        subsystem: str = "",
        stability_level: str = ALPHA,
    ) -> None:
        self.name = "_".join(part for part in (namespace, subsystem, name) if part)
        self.help = help_text
        self.label_names = tuple(label_names)
        self.stability_level = stability_level
        self._children: dict[tuple[str, ...], object] = {}
        self._lock = threading.Lock()

    def _new_child(self):
        raise NotImplementedError

    def _child(self, args: tuple[str, ...]):
        if len(args) != len(self.label_names):
            raise ValueError(
                f"{self.name}: expected {len(self.label_names)} label values, got {len(args)}"
            )
        key = tuple(args)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._children[key] = self._new_child()
        return child

    def samples(self) -> Iterator[Sample]:
        with self._lock:
            children = sorted(self._children.items())
        for key, child in children:
            yield from child._samples(self.name, dict(zip(self.label_names, key)))


class CounterVec(_MetricVec):
    """A family of counters partitioned by label values."""

    def _new_child(self) -> _Counter:
        return _Counter()

    def with_label_values(self, *args: str) -> _Counter:
        return self._child(args)


class GaugeVec(_MetricVec):
    """A family of gauges partitioned by label values."""

    def _new_child(self) -> _Gauge:
        return _Gauge()

    def with_label_values(self, *args: str) -> _Gauge:
        return self._child(args)


class HistogramVec(_MetricVec):
    """A family of histograms partitioned by label values."""

    def __init__(self, name, help_text, label_names, buckets=DEFAULT_BUCKETS, **kwargs) -> None:
        super().__init__(name, help_text, label_names, **kwargs)
        self.buckets = tuple(sorted(float(b) for b in buckets))

    def _new_child(self) -> _Histogram:
        return _Histogram(self.buckets)

    def with_label_values(self, *args: str) -> _Histogram:
        return self._child(args)


Metric = Union[CounterVec, GaugeVec, HistogramVec]


class Registry:
    """A set of metrics, each registered once under its full name."""

    def __init__(self) -> None:
        self._metrics: dict[str, Metric] = {}
        self._lock = threading.Lock()

    def register(self, metric: Metric) -> None:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"duplicate metrics collector registration attempted: {metric.name}")
            self._metrics[metric.name] = metric

    def must_register(self, *args: Metric) -> None:
        for metric in args:
            self.register(metric)

    def gather(self) -> list[Sample]:
        with self._lock:
            metrics = [self._metrics[name] for name in sorted(self._metrics)]
        return [sample for metric in metrics for sample in metric.samples()]

    def __contains__(self, name: object) -> bool:
        return name in self._metrics


DEFAULT_REGISTRY = Registry()

PROXY_RECEIVE_REQUEST_COUNTER = CounterVec(
    "received_apiserver_request_total",
    "Counter of received apiserver requests, it is recorded when this request occurs",
    ["pid", "serverName", "verb", "resource"],
    namespace=NAMESPACE,
    subsystem=SUBSYSTEM,
)
PROXY_REQUEST_COUNTER = CounterVec(
    "apiserver_request_total",
    "Counter of proxied apiserver requests, it is recorded when this proxied request ends",
    ["pid", "serverName", "endpoint", "verb", "resource", "code"],
    namespace=NAMESPACE,
    subsystem=SUBSYSTEM,
)
PROXY_REQUEST_LATENCIES = HistogramVec(
    "apiserver_request_duration_seconds",
    "Response latency distribution in seconds for each serverName, endpoint, verb, resource.",
    ["pid", "serverName", "endpoint", "verb", "resource"],
    buckets=(
        0.05, 0.1, 0.15, 0.2, 0.25, 0.3, 0.35, 0.4, 0.45, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0,
        1.25, 1.5, 1.75, 2.0, 2.5, 3.0, 3.5, 4.0, 4.5, 5, 6, 7, 8, 9, 10, 15, 20, 25, 30,
        40, 50, 60, 120, 180, 240, 300,
    ),
    namespace=NAMESPACE,
    subsystem=SUBSYSTEM,
)
PROXY_RESPONSE_SIZES = HistogramVec(
    "apiserver_response_sizes",
    "Response size distribution in bytes for each group, version, verb, resource, "
    "subresource, scope and component.",
    ["pid", "serverName", "endpoint", "verb", "resource"],
    buckets=exponential_buckets(1000, 10.0, 7),
    namespace=NAMESPACE,
    subsystem=SUBSYSTEM,
)
PROXY_UPSTREAM_UNHEALTHY = CounterVec(
    "upstream_unhealthy",
    "Number of unhealthy upstream endpoint detection",
    ["pid", "serverName", "endpoint", "reason"],
    namespace=NAMESPACE,
    subsystem=SUBSYSTEM,
)
PROXY_REQUEST_TERMINATIONS_TOTAL = CounterVec(
    "apiserver_request_terminations_total",
    "Number of requests which proxy terminated in self-defense.",
    ["pid", "serverName", "verb", "path", "code", "reason", "resource"],
    namespace=NAMESPACE,
    subsystem=SUBSYSTEM,
)
PROXY_REGISTERED_WATCHERS = GaugeVec(
    "apiserver_registered_watchers",
    "Number of currently registered watchers for a given resources",
    ["pid", "serverName", "endpoint", "resource"],
    namespace=NAMESPACE,
    subsystem=SUBSYSTEM,
)

LOCAL_METRICS = (
    PROXY_RECEIVE_REQUEST_COUNTER,
    PROXY_REQUEST_COUNTER,
    PROXY_REQUEST_LATENCIES,
    PROXY_RESPONSE_SIZES,
    PROXY_UPSTREAM_UNHEALTHY,
    PROXY_REQUEST_TERMINATIONS_TOTAL,
    PROXY_REGISTERED_WATCHERS,
)

_register_lock = threading.Lock()
_registered = False


def register() -> None:
    """Register all proxy metrics with the default registry, once."""
    global _registered
    with _register_lock:
        if _registered:
            return
        DEFAULT_REGISTRY.must_register(*LOCAL_METRICS)
        _registered = True


def _default_request_info(req: Request) -> RequestInfo:
    return RequestInfo(verb=req.method, path=req.path)


def record_unhealthy_upstream(server_name: str, endpoint: str, reason: str) -> None:
    PROXY_UPSTREAM_UNHEALTHY.with_label_values(PROXY_PID, server_name, endpoint, reason).inc()


def record_proxy_request_received(
    req: Request, server_name: str, request_info: Optional[RequestInfo]
) -> None:
    if request_info is None:
        request_info = _default_request_info(req)
    verb = canonical_verb(request_info, clean_scope(request_info))
    resource = clean_resource(request_info)
    PROXY_RECEIVE_REQUEST_COUNTER.with_label_values(PROXY_PID, server_name, verb, resource).inc()


def monitor_proxy_request(
    req: Request,
    server_name: str,
    endpoint: str,
    request_info: Optional[RequestInfo],
    content_type: str,
    http_code: int,
    resp_size: int,
    elapsed: Union[timedelta, float],
) -> None:
    """Record count, latency and, for reads, response size of a proxied request."""
    if request_info is None:
        request_info = _default_request_info(req)
    verb = canonical_verb(request_info, clean_scope(request_info))
    elapsed_seconds = elapsed.total_seconds() if isinstance(elapsed, timedelta) else float(elapsed)
    resource = clean_resource(request_info)
    PROXY_REQUEST_COUNTER.with_label_values(
        PROXY_PID, server_name, endpoint, verb, resource, str(http_code)
    ).inc()
    PROXY_REQUEST_LATENCIES.with_label_values(
        PROXY_PID, server_name, endpoint, verb, resource
    ).observe(elapsed_seconds)
    if request_info.is_resource_request and verb in ("GET", "LIST"):
        PROXY_RESPONSE_SIZES.with_label_values(
            PROXY_PID, server_name, endpoint, verb, resource
        ).observe(float(resp_size))


def record_proxy_request_termination(req: Request, code: int, reason: str) -> None:
    """Record that the gateway ended a request itself instead of forwarding it."""
    request_info = request_info_from(req) or _default_request_info(req)
    verb = canonical_verb(request_info, clean_scope(request_info))
    if verb not in VALID_REQUEST_METHODS:
        verb = OTHER_REQUEST_METHOD
    server_name = host_without_port(req.host)
    resource = clean_resource(request_info)
    PROXY_REQUEST_TERMINATIONS_TOTAL.with_label_values(
        PROXY_PID,
        server_name,
        clean_verb(verb, req),
        request_info.path,
        str(code),
        reason,
        resource,
    ).inc()


def record_watcher_registered(server_name: str, endpoint: str, resource: str) -> None:
    PROXY_REGISTERED_WATCHERS.with_label_values(PROXY_PID, server_name, endpoint, resource).inc()


def record_watcher_unregistered(server_name: str, endpoint: str, resource: str) -> None:
    PROXY_REGISTERED_WATCHERS.with_label_values(PROXY_PID, server_name, endpoint, resource).dec()


def clean_scope(request_info: RequestInfo) -> str:
    """Return the scope of the request: resource, namespace, cluster or empty."""
    if request_info.name or request_info.verb == "create":
        return "resource"
    if request_info.namespace:
        return "namespace"
    if request_info.is_resource_request:
        return "cluster"
    return ""


def canonical_verb(request_info: RequestInfo, scope: str) -> str:
    verb = request_info.verb.upper()
    if not request_info.is_resource_request:
        return verb
    if verb in ("GET", "HEAD"):
        return "GET" if scope == "resource" else "LIST"
    return verb


def clean_verb(verb: str, req: Request, server_side_apply: bool = True) -> str:
    """Map a verb to the bounded set reported in metrics."""
    reported = verb
    if verb == "LIST":
        values = req.query().get("watch")
        if values and values[0].lower() not in ("0", "false"):
            reported = "WATCH"
    if verb == "WATCHLIST":
        reported = "WATCH"
    if (
        verb == "PATCH"
        and req.headers.get("Content-Type") == APPLY_PATCH_CONTENT_TYPE
        and server_side_apply
    ):
        reported = "APPLY"
    if reported in VALID_REQUEST_METHODS:
        return reported
    return OTHER_REQUEST_METHOD


def clean_resource(request_info: RequestInfo) -> str:
    if not request_info.is_resource_request:
        return "NonResourceRequest"
    if request_info.subresource:
        return f"{request_info.resource}/{request_info.subresource}"
    return request_info.resource


register()