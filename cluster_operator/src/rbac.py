from __future__ import annotations

from kubernetes.client import (
    RbacV1Subject,
    V1PolicyRule,
    V1Role,
    V1RoleBinding,
    V1RoleRef,
    V1ServiceAccount,
)

from cluster_operator.src.cluster import RabbitmqCluster
from cluster_operator.src.naming import (
    ROLE_SUFFIX,
    SERVER_SUFFIX,
    object_meta,
    reconcile_metadata,
)


class ServiceAccountBuilder:
    kind = "ServiceAccount"

    def __init__(self, cluster: RabbitmqCluster) -> None:
        self.cluster = cluster

    def build(self) -> V1ServiceAccount:
        return V1ServiceAccount(
            api_version="v1",
            kind="ServiceAccount",
            metadata=object_meta(self.cluster, SERVER_SUFFIX),
        )

    def update_may_require_recreate(self) -> bool:
        return False

    def update(self, service_account: V1ServiceAccount) -> None:
        reconcile_metadata(self.cluster, service_account)


class RoleBuilder:
    """Builds ``<cluster>-endpoint-discovery``: lets broker pods read endpoints and emit events."""

    kind = "Role"

    def __init__(self, cluster: RabbitmqCluster) -> None:
        self.cluster = cluster

    def build(self) -> V1Role:
        return V1Role(
            api_version="rbac.authorization.k8s.io/v1",
            kind="Role",
            metadata=object_meta(self.cluster, ROLE_SUFFIX),
        )

    def update_may_require_recreate(self) -> bool:
        return False

    def update(self, role: V1Role) -> None:
        reconcile_metadata(self.cluster, role)
        role.rules = [
            V1PolicyRule(api_groups=[""], resources=["endpoints"], verbs=["get"]),
            V1PolicyRule(api_groups=[""], resources=["events"], verbs=["create"]),
        ]


class RoleBindingBuilder:
    kind = "RoleBinding"

    def __init__(self, cluster: RabbitmqCluster) -> None:
        self.cluster = cluster

    def build(self) -> V1RoleBinding:
        return V1RoleBinding(
            api_version="rbac.authorization.k8s.io/v1",
            kind="RoleBinding",
            metadata=object_meta(self.cluster, SERVER_SUFFIX),
            role_ref=V1RoleRef(
                api_group="rbac.authorization.k8s.io",
                kind="Role",
                name=self.cluster.child_resource_name(ROLE_SUFFIX),
            ),
        )

    def update_may_require_recreate(self) -> bool:
        return False

    def update(self, role_binding: V1RoleBinding) -> None:
        reconcile_metadata(self.cluster, role_binding)
        # roleRef is immutable once created; only subjects are reconciled.
        role_binding.subjects = [
            RbacV1Subject(
                kind="ServiceAccount",
                name=self.cluster.child_resource_name(SERVER_SUFFIX),
                namespace=self.cluster.namespace,
            )
        ]
