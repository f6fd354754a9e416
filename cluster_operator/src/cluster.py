from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from kubernetes.utils import parse_quantity

from cluster_operator.src.errors import ClusterSpecError
from cluster_operator.src.naming import child_resource_name

API_GROUP = "rabbitmq.com"
API_VERSION = "v1beta1"
KIND = "RabbitmqCluster"
PLURAL = "rabbitmqclusters"


@dataclass(frozen=True)
class TLSSpec:
    secret_name: str = ""
    ca_secret_name: str = ""
    disable_non_tls_listeners: bool = False


@dataclass(frozen=True)
class RabbitmqSpec:
    """Free-form broker configuration overlays and extra plugins."""

    additional_config: str = ""
    advanced_config: str = ""
    env_config: str = ""
    additional_plugins: tuple[str, ...] = ()


@dataclass(frozen=True)
class ClusterSpec:
    """User-declared desired state of a cluster; read-only to the reconciler."""

    replicas: int = 1
    image: str | None = None
    image_pull_secret: str = ""
    service_type: str | None = None
    service_annotations: dict[str, str] = field(default_factory=dict)
    persistence_storage: str | None = None
    persistence_storage_class_name: str | None = None
    resources: dict[str, dict[str, str]] = field(default_factory=dict)
    memory_limit: int | None = None
    tls: TLSSpec = field(default_factory=TLSSpec)
    rabbitmq: RabbitmqSpec = field(default_factory=RabbitmqSpec)


@dataclass(frozen=True)
class RabbitmqCluster:
    """A ``RabbitmqCluster`` custom resource as seen by one reconcile pass."""

    name: str
    namespace: str
    uid: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    spec: ClusterSpec = field(default_factory=ClusterSpec)
    status: dict[str, Any] = field(default_factory=dict)
    deletion_timestamp: str | None = None

    def child_resource_name(self, suffix: str) -> str:
        return child_resource_name(self.name, suffix)

    def tls_enabled(self) -> bool:
        return bool(self.spec.tls.secret_name)

    def mutual_tls_enabled(self) -> bool:
        return self.tls_enabled() and bool(self.spec.tls.ca_secret_name)

    def disable_non_tls_listeners(self) -> bool:
        return self.spec.tls.disable_non_tls_listeners

    def additional_plugin_enabled(self, plugin: str) -> bool:
        return plugin in self.spec.rabbitmq.additional_plugins

    def memory_limited(self) -> bool:
        return self.spec.memory_limit is not None

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> RabbitmqCluster:
        """Parse a custom object as returned by ``CustomObjectsApi`` or a watch event."""
        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        namespace = metadata.get("namespace")
        if not name or not namespace:
            raise ClusterSpecError("RabbitmqCluster must have metadata.name and metadata.namespace")

        return cls(
            name=name,
            namespace=namespace,
            uid=metadata.get("uid"),
            labels=_string_map(metadata.get("labels"), "metadata.labels"),
            annotations=_string_map(metadata.get("annotations"), "metadata.annotations"),
            spec=_parse_spec(obj.get("spec") or {}),
            status=dict(obj.get("status") or {}),
            deletion_timestamp=metadata.get("deletionTimestamp"),
        )


def _string_map(value: Any, path: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ClusterSpecError(f"{path} must be a mapping")
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


def _mapping(value: Any, path: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ClusterSpecError(f"{path} must be a mapping")
    return value


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _parse_replicas(value: Any) -> int:
    if value is None:
        return 1
    if isinstance(value, bool) or not isinstance(value, int):
        raise ClusterSpecError(f"spec.replicas must be an integer, got: {value!r}")
    if value < 0:
        raise ClusterSpecError(f"spec.replicas must be >= 0, got: {value}")
    return value


def _parse_plugins(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ClusterSpecError("spec.rabbitmq.additionalPlugins must be a list")
    plugins: list[str] = []
    for plugin in value:
        plugin_name = str(plugin).strip()
        if plugin_name and plugin_name not in plugins:
            plugins.append(plugin_name)
    return tuple(plugins)


def _parse_memory_limit(resources: Mapping[str, Any]) -> int | None:
    limits = _mapping(resources.get("limits"), "spec.resources.limits")
    memory = limits.get("memory")
    if memory is None or memory == "":
        return None
    try:
        return int(parse_quantity(memory))
    except ValueError as exc:
        raise ClusterSpecError(
            f"spec.resources.limits.memory is not a quantity: {memory!r}"
        ) from exc


def _parse_spec(raw: Mapping[str, Any]) -> ClusterSpec:
    service = _mapping(raw.get("service"), "spec.service")
    persistence = _mapping(raw.get("persistence"), "spec.persistence")
    resources = _mapping(raw.get("resources"), "spec.resources")
    tls = _mapping(raw.get("tls"), "spec.tls")
    rabbitmq = _mapping(raw.get("rabbitmq"), "spec.rabbitmq")

    return ClusterSpec(
        replicas=_parse_replicas(raw.get("replicas")),
        image=raw.get("image") or None,
        image_pull_secret=_text(raw.get("imagePullSecret")),
        service_type=service.get("type") or None,
        service_annotations=_string_map(service.get("annotations"), "spec.service.annotations"),
        persistence_storage=_text(persistence.get("storage")) or None,
        persistence_storage_class_name=persistence.get("storageClassName") or None,
        resources={
            section: _string_map(resources.get(section), f"spec.resources.{section}")
            for section in ("requests", "limits")
            if resources.get(section)
        },
        memory_limit=_parse_memory_limit(resources),
        tls=TLSSpec(
            secret_name=_text(tls.get("secretName")),
            ca_secret_name=_text(tls.get("caSecretName")),
            disable_non_tls_listeners=bool(tls.get("disableNonTLSListeners", False)),
        ),
        rabbitmq=RabbitmqSpec(
            additional_config=_text(rabbitmq.get("additionalConfig")),
            advanced_config=_text(rabbitmq.get("advancedConfig")),
            env_config=_text(rabbitmq.get("envConfig")),
            additional_plugins=_parse_plugins(rabbitmq.get("additionalPlugins")),
        ),
    )
