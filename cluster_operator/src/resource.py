from __future__ import annotations

from typing import Any, Protocol

from kubernetes.client import V1Secret

from cluster_operator.src.cluster import RabbitmqCluster
from cluster_operator.src.config import OperatorConfig
from cluster_operator.src.configmap import PluginsConfigMapBuilder, ServerConfigMapBuilder
from cluster_operator.src.credentials import (
    AdminSecretBuilder,
    ErlangCookieBuilder,
    RegistrySecretBuilder,
)
from cluster_operator.src.naming import REGISTRY_SECRET_SUFFIX
from cluster_operator.src.rbac import RoleBindingBuilder, RoleBuilder, ServiceAccountBuilder
from cluster_operator.src.services import HeadlessServiceBuilder, IngressServiceBuilder
from cluster_operator.src.statefulset import StatefulSetBuilder


class ResourceBuilder(Protocol):
    """Capability shared by every child-object builder.

    ``build`` returns the identity-bearing skeleton used on first creation.
    ``update`` applies desired state onto a caller-supplied object in place,
    leaving fields it does not own alone, and performs no API calls.
    ``update_may_require_recreate`` reports whether the last ``update``
    produced a change the running workload cannot absorb.
    """

    kind: str

    def build(self) -> Any: ...

    def update(self, obj: Any) -> None: ...

    def update_may_require_recreate(self) -> bool: ...


class RabbitmqResourceBuilder:
    """Assembles the ordered builder registry for one cluster and one reconcile pass.

    *default_pull_secret* is the operator-namespace secret to copy into the
    cluster namespace, already read by the caller; it is ignored when the
    cluster declares its own ``imagePullSecret``.
    """

    def __init__(
        self,
        cluster: RabbitmqCluster,
        operator_config: OperatorConfig,
        default_pull_secret: V1Secret | None = None,
    ) -> None:
        self.cluster = cluster
        self.operator_config = operator_config
        self.default_pull_secret = default_pull_secret
        self.server_config = ServerConfigMapBuilder(cluster)
        self.workload = StatefulSetBuilder(
            cluster,
            operator_config,
            pull_secret_name=(
                cluster.child_resource_name(REGISTRY_SECRET_SUFFIX)
                if self.copies_default_pull_secret()
                else None
            ),
        )

    def copies_default_pull_secret(self) -> bool:
        return not self.cluster.spec.image_pull_secret and self.default_pull_secret is not None

    def resource_builders(self) -> list[ResourceBuilder]:
        """Return every builder, with the stateful set last.

        Builders run in this order, so anything whose restart signal must
        reach the workload has to come before it.
        """
        cluster = self.cluster
        builders: list[ResourceBuilder] = [
            HeadlessServiceBuilder(cluster),
            IngressServiceBuilder(cluster, self.operator_config),
            AdminSecretBuilder(cluster),
            ErlangCookieBuilder(cluster),
        ]

        if self.copies_default_pull_secret():
            builders.append(RegistrySecretBuilder(cluster, self.default_pull_secret))

        builders += [
            self.server_config,
            PluginsConfigMapBuilder(cluster),
            ServiceAccountBuilder(cluster),
            RoleBuilder(cluster),
            RoleBindingBuilder(cluster),
            self.workload,
        ]
        return builders

    def force_rollout(self, fingerprint: str) -> None:
        """Make the workload builder stamp *fingerprint* on the pod template.

        A template that already carries *fingerprint* is left alone, so the
        same fingerprint can be handed over on every pass.
        """
        self.workload.config_fingerprint = fingerprint
