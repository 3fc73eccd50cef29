"""Admission plugin that normalizes the dispatch rules of upstream clusters."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

GROUP_NAME = "proxy.kubegateway.io"
UPSTREAM_CLUSTERS_RESOURCE = "upstreamclusters"


class Operation(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


@dataclass
class ServiceAccountRef:
    namespace: str = ""
    name: str = ""


@dataclass
class DispatchPolicyRule:
    verbs: list[str] = field(default_factory=list)
    api_groups: list[str] = field(default_factory=list)
    resources: list[str] = field(default_factory=list)
    resource_names: list[str] = field(default_factory=list)
    users: list[str] = field(default_factory=list)
    service_accounts: list[ServiceAccountRef] = field(default_factory=list)
    user_groups: list[str] = field(default_factory=list)
    non_resource_urls: list[str] = field(default_factory=list)


@dataclass
class DispatchPolicy:
    rules: list[DispatchPolicyRule] = field(default_factory=list)


@dataclass
class UpstreamCluster:
    name: str = ""
    annotations: dict[str, str] = field(default_factory=dict)
    dispatch_policies: list[DispatchPolicy] = field(default_factory=list)


@dataclass
class AdmissionAttributes:
    """The request being admitted: its target and the object it carries."""

    operation: Operation
    object: Any = None
    group: str = GROUP_NAME
    resource: str = UPSTREAM_CLUSTERS_RESOURCE
    subresource: str = ""


def filter_rules(rules: list[str]) -> list[str]:
    """Reduce a rule list: a wildcard wins, then positive rules over negated ones."""
    if "*" in rules:
        return ["*"]
    positive = [r for r in rules if not r.startswith("-")]
    if positive:
        return positive
    return [r for r in rules if r.startswith("-")]


def normalize_rules(rule: DispatchPolicyRule) -> DispatchPolicyRule:
    return DispatchPolicyRule(
        verbs=filter_rules(rule.verbs),
        api_groups=filter_rules(rule.api_groups),
        resources=filter_rules(rule.resources),
        resource_names=filter_rules(rule.resource_names),
        users=filter_rules(rule.users),
        service_accounts=rule.service_accounts,
        user_groups=filter_rules(rule.user_groups),
        non_resource_urls=filter_rules(rule.non_resource_urls),
    )


def _should_ignore(attributes: AdmissionAttributes) -> bool:
    if (attributes.group, attributes.resource) != (GROUP_NAME, UPSTREAM_CLUSTERS_RESOURCE):
        return True
    if attributes.subresource:
        return True
    return not isinstance(attributes.object, UpstreamCluster)


class UpstreamClusterPlugin:
    """Mutating admission for upstream clusters on create and update."""

    def __init__(self, defaulter: Optional[Callable[[UpstreamCluster], None]] = None) -> None:
        self._operations = frozenset({Operation.CREATE, Operation.UPDATE})
        self._defaulter = defaulter

    def handles(self, operation) -> bool:
        return operation in self._operations

    def admit(self, attributes: AdmissionAttributes) -> None:
        if _should_ignore(attributes):
            return
        cluster: UpstreamCluster = attributes.object
        if self._defaulter is not None:
            self._defaulter(cluster)
        for policy in cluster.dispatch_policies:
            policy.rules = [normalize_rules(rule) for rule in policy.rules]


def new_upstream_cluster_plugin(config=None) -> UpstreamClusterPlugin:
    """Plugin factory; the configuration is not used."""
    return UpstreamClusterPlugin()


ADMISSION_PLUGINS: dict[str, Callable[..., UpstreamClusterPlugin]] = {
    "UpstreamCluster": new_upstream_cluster_plugin,
}