from __future__ import annotations

from typing import Any

import pytest

from cluster_operator.src.cluster import RabbitmqCluster
from cluster_operator.src.errors import ClusterSpecError


def cluster_object(spec: dict[str, Any] | None = None, **metadata: Any) -> dict[str, Any]:
    meta = {"name": "rabbit", "namespace": "messaging", "uid": "uid-1"}
    meta.update(metadata)
    return {
        "apiVersion": "rabbitmq.com/v1beta1",
        "kind": "RabbitmqCluster",
        "metadata": meta,
        "spec": spec or {},
    }


def test_from_object_applies_defaults() -> None:
    cluster = RabbitmqCluster.from_object(cluster_object())

    assert cluster.name == "rabbit"
    assert cluster.namespace == "messaging"
    assert cluster.spec.replicas == 1
    assert cluster.spec.image is None
    assert cluster.spec.memory_limit is None
    assert not cluster.tls_enabled()
    assert cluster.status == {}


def test_from_object_parses_full_spec() -> None:
    cluster = RabbitmqCluster.from_object(
        cluster_object(
            {
                "replicas": 3,
                "image": "rabbitmq:3.8.9",
                "imagePullSecret": "custom",
                "service": {"type": "LoadBalancer", "annotations": {"a": "b"}},
                "persistence": {"storage": "20Gi", "storageClassName": "fast"},
                "resources": {"limits": {"memory": "2Gi", "cpu": "1"}},
                "tls": {
                    "secretName": "tls",
                    "caSecretName": "ca",
                    "disableNonTLSListeners": True,
                },
                "rabbitmq": {
                    "additionalConfig": "a = b",
                    "advancedConfig": "[].",
                    "envConfig": "X=1",
                    "additionalPlugins": ["rabbitmq_mqtt", "rabbitmq_mqtt", "rabbitmq_stomp"],
                },
            },
            labels={"team": "payments"},
        )
    )

    spec = cluster.spec
    assert spec.replicas == 3
    assert spec.image_pull_secret == "custom"
    assert spec.service_type == "LoadBalancer"
    assert spec.persistence_storage_class_name == "fast"
    assert spec.memory_limit == 2 * 1024**3
    assert spec.resources == {"limits": {"memory": "2Gi", "cpu": "1"}}
    assert spec.rabbitmq.additional_plugins == ("rabbitmq_mqtt", "rabbitmq_stomp")
    assert cluster.tls_enabled()
    assert cluster.mutual_tls_enabled()
    assert cluster.disable_non_tls_listeners()
    assert cluster.additional_plugin_enabled("rabbitmq_stomp")
    assert cluster.memory_limited()
    assert cluster.labels == {"team": "payments"}


def test_mutual_tls_requires_server_certificate() -> None:
    cluster = RabbitmqCluster.from_object(cluster_object({"tls": {"caSecretName": "ca"}}))

    assert not cluster.tls_enabled()
    assert not cluster.mutual_tls_enabled()


def test_child_resource_name_uses_cluster_name() -> None:
    cluster = RabbitmqCluster.from_object(cluster_object())

    assert cluster.child_resource_name("headless") == "rabbit-headless"


@pytest.mark.parametrize("replicas", [-1, "3", True, 1.5])
def test_invalid_replicas_are_rejected(replicas: Any) -> None:
    with pytest.raises(ClusterSpecError):
        RabbitmqCluster.from_object(cluster_object({"replicas": replicas}))


def test_zero_replicas_are_allowed() -> None:
    cluster = RabbitmqCluster.from_object(cluster_object({"replicas": 0}))

    assert cluster.spec.replicas == 0


def test_invalid_memory_quantity_is_rejected() -> None:
    with pytest.raises(ClusterSpecError):
        RabbitmqCluster.from_object(
            cluster_object({"resources": {"limits": {"memory": "lots"}}})
        )


def test_plugins_must_be_a_list() -> None:
    with pytest.raises(ClusterSpecError):
        RabbitmqCluster.from_object(
            cluster_object({"rabbitmq": {"additionalPlugins": "rabbitmq_mqtt"}})
        )


def test_missing_name_is_rejected() -> None:
    with pytest.raises(ClusterSpecError):
        RabbitmqCluster.from_object({"metadata": {"namespace": "messaging"}})


def test_deletion_timestamp_is_captured() -> None:
    cluster = RabbitmqCluster.from_object(
        cluster_object(deletionTimestamp="2026-01-01T00:00:00Z")
    )

    assert cluster.deletion_timestamp == "2026-01-01T00:00:00Z"
