from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from cluster_operator.src.errors import OperatorConfigError

DEFAULT_RABBITMQ_IMAGE = "rabbitmq:3.8.9-management"
DEFAULT_SERVICE_TYPE = "ClusterIP"
DEFAULT_PERSISTENCE_STORAGE = "10Gi"
SERVICE_TYPES = frozenset({"ClusterIP", "NodePort", "LoadBalancer"})


@dataclass(frozen=True)
class OperatorConfig:
    """Immutable operator-wide configuration loaded at startup.

    Attributes:
        namespace:           Namespace the operator runs in; the default image
                             pull secret is read from here.
        watch_namespace:     Namespace to watch for clusters, ``None`` for all.
        image:               Broker image used when a cluster does not set one.
        image_pull_secret:   Name of the default pull secret in ``namespace``,
                             copied into clusters that do not declare their own.
        service_type:        Default type for the ingress service.
        service_annotations: Annotations applied to every ingress service.
        persistence_storage: Default size of the persistence claim.
        persistence_storage_class_name: Default storage class, ``None`` to use
                             the cluster default.
        metrics_port:        Port serving Prometheus metrics.
    """

    namespace: str = "rabbitmq-system"
    watch_namespace: str | None = None
    image: str = DEFAULT_RABBITMQ_IMAGE
    image_pull_secret: str | None = None
    service_type: str = DEFAULT_SERVICE_TYPE
    service_annotations: dict[str, str] = field(default_factory=dict)
    persistence_storage: str = DEFAULT_PERSISTENCE_STORAGE
    persistence_storage_class_name: str | None = None
    metrics_port: int = 9782


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise OperatorConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise OperatorConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise OperatorConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _load_config_file(path: str) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise OperatorConfigError(f"cannot read operator config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise OperatorConfigError(f"operator config file {path} is not valid YAML: {exc}") from exc

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise OperatorConfigError(f"operator config file {path} must contain a mapping")
    return raw


def _section(document: dict[str, Any], key: str) -> dict[str, Any]:
    value = document.get(key) or {}
    if not isinstance(value, dict):
        raise OperatorConfigError(f"operator config key {key!r} must be a mapping")
    return value


def _optional(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def load_operator_config(env: Mapping[str, str] | None = None) -> OperatorConfig:
    """Load the operator configuration.

    Resolution order, later wins:
    1. Built-in defaults.
    2. YAML file named by ``OPERATOR_CONFIG_FILE`` (``image``,
       ``imagePullSecret``, ``service.type``, ``service.annotations``,
       ``persistence.storage``, ``persistence.storageClassName``).
    3. Environment variables ``DEFAULT_RABBITMQ_IMAGE``,
       ``DEFAULT_IMAGE_PULL_SECRET``, ``SERVICE_TYPE``, ``PERSISTENCE_STORAGE``,
       ``PERSISTENCE_STORAGE_CLASS_NAME``.

    ``OPERATOR_NAMESPACE``, ``WATCH_NAMESPACE`` and ``METRICS_PORT`` are read
    from the environment only.
    """
    values = env if env is not None else os.environ

    document: dict[str, Any] = {}
    config_file = values.get("OPERATOR_CONFIG_FILE")
    if config_file:
        document = _load_config_file(config_file)

    service = _section(document, "service")
    persistence = _section(document, "persistence")

    annotations = service.get("annotations") or {}
    if not isinstance(annotations, dict):
        raise OperatorConfigError("operator config key 'service.annotations' must be a mapping")

    namespace = values.get("OPERATOR_NAMESPACE", "rabbitmq-system")
    if not namespace.strip():
        raise OperatorConfigError("OPERATOR_NAMESPACE must be a non-empty string")

    service_type = values.get("SERVICE_TYPE") or service.get("type") or DEFAULT_SERVICE_TYPE
    if service_type not in SERVICE_TYPES:
        raise OperatorConfigError(
            f"service type must be one of {sorted(SERVICE_TYPES)}, got: {service_type!r}"
        )

    return OperatorConfig(
        namespace=namespace,
        watch_namespace=_optional(values.get("WATCH_NAMESPACE")),
        image=(
            values.get("DEFAULT_RABBITMQ_IMAGE") or document.get("image") or DEFAULT_RABBITMQ_IMAGE
        ),
        image_pull_secret=_optional(
            values.get("DEFAULT_IMAGE_PULL_SECRET", document.get("imagePullSecret"))
        ),
        service_type=service_type,
        service_annotations={str(k): str(v) for k, v in annotations.items()},
        persistence_storage=str(
            values.get("PERSISTENCE_STORAGE")
            or persistence.get("storage")
            or DEFAULT_PERSISTENCE_STORAGE
        ),
        persistence_storage_class_name=_optional(
            values.get(
                "PERSISTENCE_STORAGE_CLASS_NAME", persistence.get("storageClassName")
            )
        ),
        metrics_port=env_int("METRICS_PORT", 9782, minimum=1, maximum=65535, env=values),
    )
