from __future__ import annotations

import json
from collections.abc import Mapping
from hashlib import sha256
from typing import Any

from kubernetes.client import V1ConfigMap

from cluster_operator.src.cluster import RabbitmqCluster
from cluster_operator.src.ini import ConfigurationDocument
from cluster_operator.src.naming import (
    HEADLESS_SERVICE_SUFFIX,
    PLUGINS_CONF_SUFFIX,
    SERVER_CONF_SUFFIX,
    SERVER_SUFFIX,
    object_meta,
    reconcile_metadata,
)

OPERATOR_DEFAULTS_KEY = "operatorDefaults.conf"
USER_CONFIGURATION_KEY = "userDefinedConfiguration.conf"
ADVANCED_CONFIG_KEY = "advanced.config"
ENV_CONFIG_KEY = "rabbitmq-env.conf"
ENABLED_PLUGINS_KEY = "enabled_plugins"

PEER_DISCOVERY_NODE_PREFIX = "cluster_formation.classic_config.nodes."

# Recorded on server-conf whenever a restart-worthy change is written.
ROLLOUT_FINGERPRINT_ANNOTATION = "rabbitmq.com/rollout-fingerprint"

CA_CERT_PATH = "/etc/rabbitmq-tls/ca.crt"
TLS_CERT_PATH = "/etc/rabbitmq-tls/tls.crt"
TLS_KEY_PATH = "/etc/rabbitmq-tls/tls.key"

GIB = 1024**3

DEFAULT_RABBITMQ_CONF = """
cluster_partition_handling = pause_minority
queue_master_locator = min-masters
disk_free_limit.absolute = 2GB
cluster_formation.peer_discovery_backend = classic_config
cluster_formation.randomized_startup_delay_range.min = 0
cluster_formation.randomized_startup_delay_range.max = 60
"""

DEFAULT_TLS_CONF = f"""
ssl_options.certfile = {TLS_CERT_PATH}
ssl_options.keyfile = {TLS_KEY_PATH}
listeners.ssl.default = 5671

management.ssl.certfile = {TLS_CERT_PATH}
management.ssl.keyfile = {TLS_KEY_PATH}
management.ssl.port = 15671

prometheus.ssl.certfile = {TLS_CERT_PATH}
prometheus.ssl.keyfile = {TLS_KEY_PATH}
prometheus.ssl.port = 15691
"""

DEFAULT_PLUGINS = ("rabbitmq_management", "rabbitmq_prometheus")

# (plugin, secure listener key, secure port, plain listener key)
_TLS_PLUGIN_LISTENERS = (
    ("rabbitmq_mqtt", "mqtt.listeners.ssl.default", "8883", "mqtt.listeners.tcp"),
    ("rabbitmq_stomp", "stomp.listeners.ssl.1", "61614", "stomp.listeners.tcp"),
)
_MUTUAL_TLS_WEB_PLUGINS = (
    ("rabbitmq_web_mqtt", "web_mqtt", "15676"),
    ("rabbitmq_web_stomp", "web_stomp", "15673"),
)


def remove_headroom(memory_limit: int) -> int:
    """Return the memory the broker may use below its container limit.

    The Erlang runtime needs headroom above the broker's own accounting to
    avoid being OOM killed: the smaller of 20% of the limit or 2 GiB.
    """
    return memory_limit - min(memory_limit // 5, 2 * GIB)


def peer_discovery_nodes(cluster: RabbitmqCluster) -> list[tuple[str, str]]:
    """One classic-config peer entry per ordinal, keyed ``nodes.1`` upwards."""
    statefulset = cluster.child_resource_name(SERVER_SUFFIX)
    headless = cluster.child_resource_name(HEADLESS_SERVICE_SUFFIX)
    return [
        (
            f"{PEER_DISCOVERY_NODE_PREFIX}{ordinal + 1}",
            f"rabbit@{statefulset}-{ordinal}.{headless}.{cluster.namespace}",
        )
        for ordinal in range(cluster.spec.replicas)
    ]


def _operator_defaults(cluster: RabbitmqCluster) -> ConfigurationDocument:
    document = ConfigurationDocument.parse(DEFAULT_RABBITMQ_CONF)
    for key, node in peer_discovery_nodes(cluster):
        document.set(key, node)
    document.set("cluster_name", cluster.name)
    return document


def _apply_tls(cluster: RabbitmqCluster, document: ConfigurationDocument) -> None:
    disable_plain = cluster.disable_non_tls_listeners()
    document.append(DEFAULT_TLS_CONF)
    if disable_plain:
        document.set("listeners.tcp", "none")
    else:
        # The management and prometheus plugins have no listeners.tcp switch;
        # their plain ports must be set explicitly once an ssl port is.
        document.set("management.tcp.port", "15672")
        document.set("prometheus.tcp.port", "15692")

    for plugin, secure_key, secure_port, plain_key in _TLS_PLUGIN_LISTENERS:
        if not cluster.additional_plugin_enabled(plugin):
            continue
        document.set(secure_key, secure_port)
        if disable_plain:
            document.set(plain_key, "none")


def _apply_mutual_tls(cluster: RabbitmqCluster, document: ConfigurationDocument) -> None:
    document.set("ssl_options.cacertfile", CA_CERT_PATH)
    document.set("ssl_options.verify", "verify_peer")
    document.set("management.ssl.cacertfile", CA_CERT_PATH)
    document.set("prometheus.ssl.cacertfile", CA_CERT_PATH)

    for plugin, prefix, secure_port in _MUTUAL_TLS_WEB_PLUGINS:
        if not cluster.additional_plugin_enabled(plugin):
            continue
        document.set(f"{prefix}.ssl.port", secure_port)
        document.set(f"{prefix}.ssl.cacertfile", CA_CERT_PATH)
        document.set(f"{prefix}.ssl.certfile", TLS_CERT_PATH)
        document.set(f"{prefix}.ssl.keyfile", TLS_KEY_PATH)
        if cluster.disable_non_tls_listeners():
            document.set(f"{prefix}.tcp.listener", "none")


def _user_configuration(cluster: RabbitmqCluster) -> ConfigurationDocument:
    document = ConfigurationDocument()
    if cluster.tls_enabled():
        _apply_tls(cluster, document)
    if cluster.mutual_tls_enabled():
        _apply_mutual_tls(cluster, document)
    if cluster.spec.memory_limit is not None:
        document.set(
            "total_memory_available_override_value",
            str(remove_headroom(cluster.spec.memory_limit)),
        )
    document.append(cluster.spec.rabbitmq.additional_config)
    return document


def build_configuration(cluster: RabbitmqCluster) -> dict[str, str]:
    """Render every configuration file for *cluster*.

    Pure: identical clusters always render byte-identical files.  The two
    overlay files are only present when the user set them.  Raises
    :class:`~cluster_operator.src.errors.ConfigurationParseError` when the
    ``additionalConfig`` overlay is not valid ``rabbitmq.conf`` syntax.
    """
    files = {
        OPERATOR_DEFAULTS_KEY: _operator_defaults(cluster).render(),
        USER_CONFIGURATION_KEY: _user_configuration(cluster).render(),
    }
    rabbitmq = cluster.spec.rabbitmq
    if rabbitmq.advanced_config:
        files[ADVANCED_CONFIG_KEY] = rabbitmq.advanced_config
    if rabbitmq.env_config:
        files[ENV_CONFIG_KEY] = rabbitmq.env_config
    return files


def normalize_data(raw_data: Any) -> dict[str, str]:
    """Coerce ConfigMap ``data`` into a stable ``dict[str, str]``."""
    if not isinstance(raw_data, Mapping):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw_data.items()
        if isinstance(k, str)
    }


def _without_restart_exempt_entries(data: Mapping[str, Any]) -> dict[str, str]:
    normalized = normalize_data(data)
    for key in (OPERATOR_DEFAULTS_KEY, USER_CONFIGURATION_KEY):
        text = normalized.get(key)
        if not text:
            continue
        document = ConfigurationDocument.parse(text)
        # Peer entries set through additionalConfig still count.
        if key == OPERATOR_DEFAULTS_KEY:
            document.remove_keys(lambda entry: entry.startswith(PEER_DISCOVERY_NODE_PREFIX))
        normalized[key] = document.render()
    return normalized


def requires_restart(previous: Mapping[str, Any] | None, updated: Mapping[str, Any] | None) -> bool:
    """Return True if moving from *previous* to *updated* data needs a broker restart.

    Peer discovery entries the operator generates only change with the
    replica count; a running cluster absorbs them because new members join
    through existing ones.  The same keys set through ``additionalConfig``
    are not exempt.
    Everything else is treated as restart-worthy.  Both sides go through the
    same canonical writer so formatting differences never count.
    """
    return _without_restart_exempt_entries(previous or {}) != _without_restart_exempt_entries(
        updated or {}
    )


def config_fingerprint(data: Mapping[str, Any] | None) -> str:
    """Return a SHA-256 hex digest of ConfigMap data, stable across key order."""
    stable_payload = json.dumps(normalize_data(data), sort_keys=True, separators=(",", ":"))
    return sha256(stable_payload.encode("utf-8")).hexdigest()


def restart_fingerprint(data: Mapping[str, Any] | None) -> str:
    """Fingerprint of the part of server-conf data the running brokers depend on."""
    return config_fingerprint(_without_restart_exempt_entries(data or {}))


def pending_rollout(config_map: V1ConfigMap) -> str | None:
    """Return the rollout fingerprint recorded on a server-conf ConfigMap, if any."""
    if config_map.metadata is None:
        return None
    return (config_map.metadata.annotations or {}).get(ROLLOUT_FINGERPRINT_ANNOTATION)


def _update_property(data: dict[str, str], key: str, value: str) -> None:
    if value:
        data[key] = value
    else:
        data.pop(key, None)


class ServerConfigMapBuilder:
    """Builds ``<cluster>-server-conf`` and classifies the restart impact of updates."""

    kind = "ConfigMap"

    def __init__(self, cluster: RabbitmqCluster) -> None:
        self.cluster = cluster
        # Set by every update(); True until proven otherwise.
        self.update_requires_restart = True

    def build(self) -> V1ConfigMap:
        return V1ConfigMap(
            api_version="v1",
            kind="ConfigMap",
            metadata=object_meta(self.cluster, SERVER_CONF_SUFFIX),
        )

    def update_may_require_recreate(self) -> bool:
        return self.update_requires_restart

    def update(self, config_map: V1ConfigMap) -> None:
        previous = normalize_data(config_map.data)
        files = build_configuration(self.cluster)

        data = dict(previous)
        data[OPERATOR_DEFAULTS_KEY] = files[OPERATOR_DEFAULTS_KEY]
        data[USER_CONFIGURATION_KEY] = files[USER_CONFIGURATION_KEY]
        _update_property(data, ADVANCED_CONFIG_KEY, files.get(ADVANCED_CONFIG_KEY, ""))
        _update_property(data, ENV_CONFIG_KEY, files.get(ENV_CONFIG_KEY, ""))
        restart = requires_restart(previous, data)

        reconcile_metadata(self.cluster, config_map)
        config_map.data = data
        if restart:
            annotations = dict(config_map.metadata.annotations or {})
            annotations[ROLLOUT_FINGERPRINT_ANNOTATION] = restart_fingerprint(data)
            config_map.metadata.annotations = annotations
        self.update_requires_restart = restart


def enabled_plugins(cluster: RabbitmqCluster) -> list[str]:
    plugins = list(DEFAULT_PLUGINS)
    for plugin in cluster.spec.rabbitmq.additional_plugins:
        if plugin not in plugins:
            plugins.append(plugin)
    return plugins


class PluginsConfigMapBuilder:
    """Builds ``<cluster>-plugins-conf`` holding the ``enabled_plugins`` Erlang term."""

    kind = "ConfigMap"

    def __init__(self, cluster: RabbitmqCluster) -> None:
        self.cluster = cluster

    def build(self) -> V1ConfigMap:
        return V1ConfigMap(
            api_version="v1",
            kind="ConfigMap",
            metadata=object_meta(self.cluster, PLUGINS_CONF_SUFFIX),
        )

    def update_may_require_recreate(self) -> bool:
        return False

    def update(self, config_map: V1ConfigMap) -> None:
        reconcile_metadata(self.cluster, config_map)
        data = normalize_data(config_map.data)
        data[ENABLED_PLUGINS_KEY] = "[" + ",".join(enabled_plugins(self.cluster)) + "]."
        config_map.data = data
