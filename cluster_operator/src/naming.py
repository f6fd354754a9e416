from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from kubernetes.client import V1ObjectMeta, V1OwnerReference

from cluster_operator.src.errors import OwnerReferenceError

if TYPE_CHECKING:
    from cluster_operator.src.cluster import RabbitmqCluster

SERVER_CONF_SUFFIX = "server-conf"
PLUGINS_CONF_SUFFIX = "plugins-conf"
ADMIN_SECRET_SUFFIX = "admin"
ERLANG_COOKIE_SUFFIX = "erlang-cookie"
REGISTRY_SECRET_SUFFIX = "registry-access"
INGRESS_SERVICE_SUFFIX = "ingress"
HEADLESS_SERVICE_SUFFIX = "headless"
SERVER_SUFFIX = "server"
ROLE_SUFFIX = "endpoint-discovery"

_RESERVED_LABEL_PREFIX = "app.kubernetes.io"
_FILTERED_FRAGMENTS = ("kubernetes.io/", "k8s.io/")


def child_resource_name(cluster_name: str, suffix: str) -> str:
    """Return the deterministic name of a child object, ``<cluster>-<suffix>``."""
    return f"{cluster_name}-{suffix}"


def _is_platform_key(key: str) -> bool:
    return any(fragment in key for fragment in _FILTERED_FRAGMENTS)


def cluster_labels(cluster_name: str, instance_labels: Mapping[str, str] | None) -> dict[str, str]:
    """Labels stamped on every child object.

    The parent's own labels are propagated except for platform-reserved keys;
    the ``app.kubernetes.io`` identity labels are always owned by the operator.
    """
    labels = {
        key: value
        for key, value in (instance_labels or {}).items()
        if not key.startswith(_RESERVED_LABEL_PREFIX) and not _is_platform_key(key)
    }
    labels.update(label_selector(cluster_name))
    labels["app.kubernetes.io/component"] = "rabbitmq"
    labels["app.kubernetes.io/part-of"] = "rabbitmq"
    return labels


def label_selector(cluster_name: str) -> dict[str, str]:
    return {"app.kubernetes.io/name": cluster_name}


def reconcile_annotations(
    existing: Mapping[str, str] | None,
    instance_annotations: Mapping[str, str] | None,
) -> dict[str, str]:
    """Merge the parent's user annotations onto a child's existing annotations.

    Annotations written by other actors on the child survive; platform keys
    from the parent (``kubectl.kubernetes.io/last-applied-configuration`` and
    friends) are not propagated.
    """
    merged = dict(existing or {})
    for key, value in (instance_annotations or {}).items():
        if not _is_platform_key(key):
            merged[key] = value
    return merged


def object_meta(cluster: RabbitmqCluster, suffix: str) -> V1ObjectMeta:
    """Identity-bearing metadata shared by every child object skeleton."""
    return V1ObjectMeta(
        name=cluster.child_resource_name(suffix),
        namespace=cluster.namespace,
        labels=cluster_labels(cluster.name, cluster.labels),
        annotations=reconcile_annotations(None, cluster.annotations),
    )


def reconcile_metadata(cluster: RabbitmqCluster, obj: Any) -> None:
    """Refresh labels, annotations and the owner reference on a live child object."""
    if obj.metadata is None:
        obj.metadata = V1ObjectMeta()
    labels = dict(obj.metadata.labels or {})
    labels.update(cluster_labels(cluster.name, cluster.labels))
    obj.metadata.labels = labels
    obj.metadata.annotations = reconcile_annotations(obj.metadata.annotations, cluster.annotations)
    set_controller_reference(cluster, obj)


def set_controller_reference(cluster: RabbitmqCluster, obj: Any) -> None:
    """Attach a controller owner reference pointing at *cluster*.

    Raises :class:`OwnerReferenceError` if the cluster has no uid yet or the
    object is already controlled by a different owner.
    """
    from cluster_operator.src.cluster import API_GROUP, API_VERSION, KIND

    if not cluster.uid:
        raise OwnerReferenceError(
            f"cannot own {obj.metadata.name}: RabbitmqCluster {cluster.name} has no uid"
        )

    reference = V1OwnerReference(
        api_version=f"{API_GROUP}/{API_VERSION}",
        kind=KIND,
        name=cluster.name,
        uid=cluster.uid,
        controller=True,
        block_owner_deletion=True,
    )

    references: list[V1OwnerReference] = []
    for existing in obj.metadata.owner_references or []:
        if existing.uid == cluster.uid:
            continue
        if existing.controller:
            raise OwnerReferenceError(
                f"{obj.metadata.name} is already controlled by "
                f"{existing.kind} {existing.name} ({existing.uid})"
            )
        references.append(existing)
    references.append(reference)
    obj.metadata.owner_references = references
