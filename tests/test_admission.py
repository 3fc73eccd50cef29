import pytest

from kubegateway.admission import (
    ADMISSION_PLUGINS,
    AdmissionAttributes,
    DispatchPolicy,
    DispatchPolicyRule,
    Operation,
    ServiceAccountRef,
    UpstreamCluster,
    UpstreamClusterPlugin,
    filter_rules,
    new_upstream_cluster_plugin,
    normalize_rules,
)


def _source_rule():
    return DispatchPolicyRule(
        verbs=["*", "get", "-delete"],
        api_groups=["-apps", "rbac"],
        resources=["-deployments", "-statefulsets"],
        resource_names=["-apps", "rbac"],
        users=["-apps", "rbac"],
        service_accounts=[ServiceAccountRef(namespace="default", name="default")],
        user_groups=["-apps", "rbac"],
        non_resource_urls=["-apps", "rbac"],
    )


EXPECTED = DispatchPolicyRule(
    verbs=["*"],
    api_groups=["rbac"],
    resources=["-deployments", "-statefulsets"],
    resource_names=["rbac"],
    users=["rbac"],
    service_accounts=[ServiceAccountRef(namespace="default", name="default")],
    user_groups=["rbac"],
    non_resource_urls=["rbac"],
)


def test_normalize_rules():
    assert normalize_rules(_source_rule()) == EXPECTED


@pytest.mark.parametrize(
    "rules, expected",
    [
        ([], []),
        (["-a", "-b"], ["-a", "-b"]),
        (["a", "*", "b"], ["*"]),
        (["", "-x"], [""]),
        (["a", "-b", "c"], ["a", "c"]),
    ],
)
def test_filter_rules(rules, expected):
    assert filter_rules(rules) == expected


def test_admit_normalizes_all_policies():
    cluster = UpstreamCluster(
        name="c1",
        dispatch_policies=[DispatchPolicy(rules=[_source_rule()]), DispatchPolicy(rules=[_source_rule()])],
    )
    plugin = UpstreamClusterPlugin()
    plugin.admit(AdmissionAttributes(operation=Operation.CREATE, object=cluster))
    assert [p.rules for p in cluster.dispatch_policies] == [[EXPECTED], [EXPECTED]]


def test_admit_runs_defaulter():
    calls = []
    cluster = UpstreamCluster(name="c1")
    plugin = UpstreamClusterPlugin(defaulter=calls.append)
    plugin.admit(AdmissionAttributes(operation=Operation.UPDATE, object=cluster))
    assert calls == [cluster]


@pytest.mark.parametrize(
    "attributes",
    [
        AdmissionAttributes(operation=Operation.CREATE, object=None),
        AdmissionAttributes(operation=Operation.CREATE, object="not a cluster"),
        AdmissionAttributes(operation=Operation.CREATE, resource="pods"),
        AdmissionAttributes(operation=Operation.CREATE, group="apps"),
        AdmissionAttributes(operation=Operation.CREATE, subresource="status"),
    ],
)
def test_admit_ignores_other_requests(attributes):
    if attributes.object is None and attributes.resource != "upstreamclusters" or attributes.group != "proxy.kubegateway.io" or attributes.subresource:
        attributes.object = UpstreamCluster(dispatch_policies=[DispatchPolicy(rules=[_source_rule()])])
    before = attributes.object
    snapshot = repr(before)
    UpstreamClusterPlugin().admit(attributes)
    assert repr(attributes.object) == snapshot


def test_handles_create_and_update_only():
    plugin = new_upstream_cluster_plugin(None)
    assert plugin.handles(Operation.CREATE)
    assert plugin.handles("UPDATE")
    assert not plugin.handles(Operation.DELETE)
    assert not plugin.handles(Operation.CONNECT)


def test_plugin_registry_builds_working_plugin():
    assert list(ADMISSION_PLUGINS) == ["UpstreamCluster"]
    plugin = ADMISSION_PLUGINS["UpstreamCluster"](None)
    cluster = UpstreamCluster(name="c2", dispatch_policies=[DispatchPolicy(rules=[_source_rule()])])
    plugin.admit(AdmissionAttributes(operation=Operation.CREATE, object=cluster))
    assert cluster.dispatch_policies[0].rules == [EXPECTED]
    assert plugin.handles(Operation.UPDATE)
    assert not plugin.handles(Operation.DELETE)