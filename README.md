# kubegateway

Building blocks for an API gateway that sits in front of several upstream
clusters. The package has no runtime dependencies.

## Modules

- `kubegateway.net`: `host_without_port` lowercases a `host:port` value and
  strips the port; values without a valid port are returned lowercased whole.
- `kubegateway.request_context`: the request model (`Request`, `Headers`,
  `ResponseRecorder`) and the per-request context values `UserInfo`,
  `RequestInfo`, `ExtraRequestInfo` and `ProxyInfo`. Helpers such as
  `with_user`, `user_from`, `with_request_info`, `with_extra_request_info`,
  `set_proxy_forwarded`, `set_proxy_terminated` and `is_proxy_forwarded`
  put values into and read them from a request's context.
  `ExtraRequestInfoFactory` derives the scheme, the hostname without port and
  whether the request impersonates a user. `set_proxy_forwarded` and
  `set_proxy_terminated` raise `MissingContextError` when the request has no
  `ProxyInfo`.
- `kubegateway.metrics`: `CounterVec`, `GaugeVec` and `HistogramVec` kept in
  a `Registry` (`DEFAULT_REGISTRY`, whose `gather()` returns all samples),
  and the proxy recorders `record_proxy_request_received`,
  `monitor_proxy_request`, `record_proxy_request_termination`,
  `record_unhealthy_upstream`, `record_watcher_registered` and
  `record_watcher_unregistered`. `clean_scope`, `canonical_verb`,
  `clean_verb` and `clean_resource` turn request information into label
  values.
- `kubegateway.impersonation`: `with_no_logging_impersonation` checks the
  `Impersonate-User`, `Impersonate-Group` and `Impersonate-Extra-*` headers
  against an authorizer, replaces the request's user and removes those
  headers. `build_impersonation_requests` lists what a request asks to act
  as and raises `ImpersonationError` for groups or extras without a user.
  `DynamicImpersonatingTransport` adds the impersonation headers for the
  context user to an outgoing request before passing it to its delegate.
- `kubegateway.admission`: `UpstreamClusterPlugin` handles create and update
  operations on upstream clusters. `admit` runs an optional defaulter and
  normalizes every dispatch policy rule with `normalize_rules`, which uses
  `filter_rules`. `ADMISSION_PLUGINS` maps the plugin name to its factory.
- `kubegateway.dispatcher_status`: `Status`, `StatusError`,
  `error_to_proxy_status` and `capture_error_reason`.
- `kubegateway.proxylog`: `ResponseWriterDelegator` wraps a response writer.
  It tracks status, size and latency, records watcher and proxy request
  metrics for forwarded requests, and writes an access log line through the
  `logging` module.
- `kubegateway.filters`: handler wrappers `with_dispatcher`,
  `with_pre_processing_metrics`, `with_extra_request_info`,
  `with_impersonator`, `with_termination_metrics` and
  `with_no_logging_panic_recovery`, plus `snake_case` and the `AbortHandler`
  exception.
- `kubegateway.upgradeaware`: `UpgradeAwareHandler` forwards plain requests
  to one upstream location through a transport and hands upgrade requests to
  an optional `upgrade_handler`. `CorsRemovingTransport` strips CORS headers
  from responses; `is_upgrade_request` and `remove_cors_headers` are
  available on their own.
- `kubegateway.syncqueue`: `RateLimitingQueue` is a deduplicating work queue
  with delayed and rate-limited adds. `SyncQueue` runs a sync handler over
  object keys on worker threads. Failed items are retried up to
  `max_err_retries` times, and a returned `Result` can ask for a requeue with
  an optional limit. Keys come from `meta_namespace_key` by default, or from
  `passthrough_key_func`.
- `kubegateway.options`: `AuthenticationOptions`, `AuthorizationOptions`,
  `LoggingOptions` and `SecureServingOptions` register their flags on an
  `argparse.ArgumentParser` and validate their values. `parse_duration`
  reads values such as `300ms` or `2h45m`.

## Examples

```python
from kubegateway.admission import DispatchPolicyRule, normalize_rules

rule = DispatchPolicyRule(verbs=["*", "get"], api_groups=["-apps", "rbac"])
print(normalize_rules(rule).verbs)       # ['*']
print(normalize_rules(rule).api_groups)  # ['rbac']
```

```python
from kubegateway.impersonation import Decision, with_no_logging_impersonation
from kubegateway.request_context import Request, ResponseRecorder, UserInfo, user_from, with_user

class AllowAll:
    def authorize(self, attributes):
        return Decision.ALLOW, ""

seen = []
handler = with_no_logging_impersonation(lambda w, req: seen.append(user_from(req)), AllowAll())
req = with_user(Request(headers={"Impersonate-User": "alice"}), UserInfo(name="admin"))
handler(ResponseRecorder(), req)
print(seen[0].name, seen[0].groups)  # alice ['system:authenticated']
```

```python
from kubegateway.syncqueue import Result, SyncQueue, passthrough_key_func

def handle(key):
    print("syncing", key)
    return Result()

queue = SyncQueue("v1/ConfigMap", handle, key_func=passthrough_key_func)
queue.run(2)
queue.enqueue("default/web")
queue.shut_down()
```

## What it does not do

The package has no command and does not start a server. It does not route
requests to upstream clusters, authenticate clients, review tokens or
authorize against upstream clusters, and it does not open network
connections. `UpgradeAwareHandler` and `DynamicImpersonatingTransport` send
requests only through a transport object that you supply, one that has a
`round_trip(req)` method. Metrics are kept in memory and are not served over
HTTP.

## Tests

```
pip install -e ".[test]"
pytest
```