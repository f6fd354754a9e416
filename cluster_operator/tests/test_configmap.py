from __future__ import annotations

from typing import Any

import pytest
from kubernetes.client import V1ConfigMap, V1ObjectMeta

from cluster_operator.src.cluster import RabbitmqCluster
from cluster_operator.src.configmap import (
    ADVANCED_CONFIG_KEY,
    ENABLED_PLUGINS_KEY,
    ENV_CONFIG_KEY,
    GIB,
    OPERATOR_DEFAULTS_KEY,
    ROLLOUT_FINGERPRINT_ANNOTATION,
    USER_CONFIGURATION_KEY,
    PluginsConfigMapBuilder,
    ServerConfigMapBuilder,
    build_configuration,
    config_fingerprint,
    pending_rollout,
    remove_headroom,
    requires_restart,
    restart_fingerprint,
)
from cluster_operator.src.errors import ConfigurationParseError
from cluster_operator.src.ini import ConfigurationDocument


def make_cluster(spec: dict[str, Any] | None = None, name: str = "rabbit") -> RabbitmqCluster:
    return RabbitmqCluster.from_object(
        {
            "metadata": {"name": name, "namespace": "messaging", "uid": "uid-1"},
            "spec": spec or {},
        }
    )


def user_conf(cluster: RabbitmqCluster) -> ConfigurationDocument:
    return ConfigurationDocument.parse(build_configuration(cluster)[USER_CONFIGURATION_KEY])


def peer_entries(cluster: RabbitmqCluster) -> list[tuple[str, str]]:
    document = ConfigurationDocument.parse(build_configuration(cluster)[OPERATOR_DEFAULTS_KEY])
    return [
        (key, value)
        for key, value in document
        if key.startswith("cluster_formation.classic_config.nodes.")
    ]


def test_operator_defaults_for_single_replica() -> None:
    files = build_configuration(make_cluster())

    assert files[OPERATOR_DEFAULTS_KEY] == (
        "cluster_partition_handling = pause_minority\n"
        "queue_master_locator = min-masters\n"
        "disk_free_limit.absolute = 2GB\n"
        "cluster_formation.peer_discovery_backend = classic_config\n"
        "cluster_formation.randomized_startup_delay_range.min = 0\n"
        "cluster_formation.randomized_startup_delay_range.max = 60\n"
        "cluster_formation.classic_config.nodes.1 = "
        "rabbit@rabbit-server-0.rabbit-headless.messaging\n"
        "cluster_name = rabbit\n"
    )
    assert files[USER_CONFIGURATION_KEY] == ""
    assert ADVANCED_CONFIG_KEY not in files
    assert ENV_CONFIG_KEY not in files


def test_build_configuration_is_deterministic() -> None:
    spec = {
        "replicas": 3,
        "tls": {"secretName": "tls", "caSecretName": "ca"},
        "resources": {"limits": {"memory": "4Gi"}},
        "rabbitmq": {"additionalPlugins": ["rabbitmq_mqtt", "rabbitmq_web_stomp"]},
    }

    assert build_configuration(make_cluster(spec)) == build_configuration(make_cluster(spec))


@pytest.mark.parametrize("replicas", [0, 1, 3, 7])
def test_one_peer_entry_per_replica(replicas: int) -> None:
    entries = peer_entries(make_cluster({"replicas": replicas}))

    assert len(entries) == replicas
    assert [key for key, _ in entries] == [
        f"cluster_formation.classic_config.nodes.{i + 1}" for i in range(replicas)
    ]
    assert [value for _, value in entries] == [
        f"rabbit@rabbit-server-{i}.rabbit-headless.messaging" for i in range(replicas)
    ]


@pytest.mark.parametrize(
    ("limit", "expected"),
    [
        (10 * GIB, 8 * GIB),
        (100 * GIB, 98 * GIB),
        (5 * GIB, 4 * GIB),
        (1000, 800),
    ],
)
def test_remove_headroom(limit: int, expected: int) -> None:
    assert remove_headroom(limit) == expected


def test_memory_limit_sets_override_value() -> None:
    document = user_conf(make_cluster({"resources": {"limits": {"memory": "10Gi"}}}))

    assert document.get("total_memory_available_override_value") == str(8 * GIB)


def test_additional_config_overrides_generated_entries() -> None:
    document = user_conf(
        make_cluster(
            {
                "resources": {"limits": {"memory": "10Gi"}},
                "rabbitmq": {
                    "additionalConfig": "total_memory_available_override_value = 1\n"
                    "log.console.level = debug\n"
                },
            }
        )
    )

    assert document.get("total_memory_available_override_value") == "1"
    assert document.get("log.console.level") == "debug"


def test_invalid_additional_config_fails_the_render() -> None:
    with pytest.raises(ConfigurationParseError):
        build_configuration(make_cluster({"rabbitmq": {"additionalConfig": "not an entry"}}))


def test_tls_adds_listeners_and_keeps_plain_ports() -> None:
    document = user_conf(make_cluster({"tls": {"secretName": "tls"}}))

    assert document.get("ssl_options.certfile") == "/etc/rabbitmq-tls/tls.crt"
    assert document.get("ssl_options.keyfile") == "/etc/rabbitmq-tls/tls.key"
    assert document.get("listeners.ssl.default") == "5671"
    assert document.get("management.ssl.port") == "15671"
    assert document.get("prometheus.ssl.port") == "15691"
    assert document.get("management.tcp.port") == "15672"
    assert document.get("prometheus.tcp.port") == "15692"
    assert document.get("listeners.tcp") is None
    assert document.get("ssl_options.verify") is None


def test_tls_with_plain_listeners_disabled() -> None:
    document = user_conf(
        make_cluster(
            {
                "tls": {"secretName": "tls", "disableNonTLSListeners": True},
                "rabbitmq": {"additionalPlugins": ["rabbitmq_mqtt", "rabbitmq_stomp"]},
            }
        )
    )

    assert document.get("listeners.tcp") == "none"
    assert document.get("management.tcp.port") is None
    assert document.get("mqtt.listeners.ssl.default") == "8883"
    assert document.get("mqtt.listeners.tcp") == "none"
    assert document.get("stomp.listeners.ssl.1") == "61614"
    assert document.get("stomp.listeners.tcp") == "none"


def test_tls_plugin_listeners_only_for_enabled_plugins() -> None:
    document = user_conf(
        make_cluster(
            {"tls": {"secretName": "tls"}, "rabbitmq": {"additionalPlugins": ["rabbitmq_mqtt"]}}
        )
    )

    assert document.get("mqtt.listeners.ssl.default") == "8883"
    assert document.get("mqtt.listeners.tcp") is None
    assert document.get("stomp.listeners.ssl.1") is None


def test_mutual_tls_verifies_peers_and_configures_web_plugins() -> None:
    document = user_conf(
        make_cluster(
            {
                "tls": {"secretName": "tls", "caSecretName": "ca"},
                "rabbitmq": {"additionalPlugins": ["rabbitmq_web_mqtt", "rabbitmq_web_stomp"]},
            }
        )
    )

    assert document.get("ssl_options.cacertfile") == "/etc/rabbitmq-tls/ca.crt"
    assert document.get("ssl_options.verify") == "verify_peer"
    assert document.get("management.ssl.cacertfile") == "/etc/rabbitmq-tls/ca.crt"
    assert document.get("web_mqtt.ssl.port") == "15676"
    assert document.get("web_stomp.ssl.port") == "15673"
    assert document.get("web_stomp.ssl.certfile") == "/etc/rabbitmq-tls/tls.crt"
    assert document.get("web_mqtt.tcp.listener") is None


def test_mutual_tls_ignored_without_server_certificate() -> None:
    document = user_conf(make_cluster({"tls": {"caSecretName": "ca"}}))

    assert len(document) == 0


def test_advanced_and_env_config_are_passed_through() -> None:
    files = build_configuration(
        make_cluster({"rabbitmq": {"advancedConfig": "[{rabbit, []}].", "envConfig": "A=1"}})
    )

    assert files[ADVANCED_CONFIG_KEY] == "[{rabbit, []}]."
    assert files[ENV_CONFIG_KEY] == "A=1"


def data_for(spec: dict[str, Any] | None = None) -> dict[str, str]:
    return build_configuration(make_cluster(spec))


def test_scaling_does_not_require_restart() -> None:
    assert not requires_restart(data_for({"replicas": 3}), data_for({"replicas": 5}))


def test_enabling_tls_requires_restart() -> None:
    assert requires_restart(data_for(), data_for({"tls": {"secretName": "tls"}}))


def test_memory_change_requires_restart() -> None:
    assert requires_restart(
        data_for({"resources": {"limits": {"memory": "2Gi"}}}),
        data_for({"resources": {"limits": {"memory": "4Gi"}}}),
    )


def test_reformatted_previous_data_does_not_require_restart() -> None:
    updated = data_for({"replicas": 2, "rabbitmq": {"additionalConfig": "a = 1"}})
    previous = dict(updated)
    previous[USER_CONFIGURATION_KEY] = "# written by hand\na=1\n"

    assert not requires_restart(previous, updated)


def test_missing_previous_data_requires_restart() -> None:
    assert requires_restart(None, data_for())


def test_peer_entries_from_additional_config_require_restart() -> None:
    previous = data_for(
        {"rabbitmq": {"additionalConfig": "cluster_formation.classic_config.nodes.1 = rabbit@a"}}
    )
    updated = data_for(
        {"rabbitmq": {"additionalConfig": "cluster_formation.classic_config.nodes.1 = rabbit@b"}}
    )

    assert requires_restart(previous, updated)


def test_restart_fingerprint_ignores_generated_peer_entries() -> None:
    assert restart_fingerprint(data_for({"replicas": 3})) == restart_fingerprint(
        data_for({"replicas": 5})
    )
    assert restart_fingerprint(data_for()) != restart_fingerprint(
        data_for({"tls": {"secretName": "tls"}})
    )


def test_config_fingerprint_ignores_key_order() -> None:
    assert config_fingerprint({"a": "1", "b": "2"}) == config_fingerprint({"b": "2", "a": "1"})
    assert config_fingerprint({"a": "1"}) != config_fingerprint({"a": "2"})


def updated_config_map(
    cluster: RabbitmqCluster, config_map: V1ConfigMap | None = None
) -> tuple[V1ConfigMap, bool]:
    builder = ServerConfigMapBuilder(cluster)
    obj = config_map or builder.build()
    builder.update(obj)
    return obj, builder.update_may_require_recreate()


def test_server_config_map_build_is_named_and_owned() -> None:
    builder = ServerConfigMapBuilder(make_cluster())
    config_map = builder.build()

    assert config_map.metadata.name == "rabbit-server-conf"
    assert config_map.metadata.namespace == "messaging"
    assert builder.update_may_require_recreate() is True


def test_server_config_map_update_is_idempotent() -> None:
    cluster = make_cluster({"rabbitmq": {"additionalPlugins": ["rabbitmq_mqtt"]}})
    config_map, _ = updated_config_map(cluster)
    first = dict(config_map.data)

    config_map, restart = updated_config_map(cluster, config_map)

    assert config_map.data == first
    assert restart is False


def test_server_config_map_enabling_plugin_twice_needs_no_second_restart() -> None:
    config_map, _ = updated_config_map(make_cluster({"tls": {"secretName": "tls"}}))
    with_plugin = make_cluster(
        {"tls": {"secretName": "tls"}, "rabbitmq": {"additionalPlugins": ["rabbitmq_mqtt"]}}
    )

    config_map, first_restart = updated_config_map(with_plugin, config_map)
    user_document = config_map.data[USER_CONFIGURATION_KEY]
    config_map, second_restart = updated_config_map(with_plugin, config_map)

    assert first_restart is True
    assert second_restart is False
    assert config_map.data[USER_CONFIGURATION_KEY] == user_document


def test_server_config_map_scale_keeps_restart_flag_clear() -> None:
    config_map, _ = updated_config_map(make_cluster({"replicas": 3}))

    config_map, restart = updated_config_map(make_cluster({"replicas": 5}), config_map)

    assert restart is False
    assert "nodes.5 = rabbit@rabbit-server-4" in config_map.data[OPERATOR_DEFAULTS_KEY]


def test_server_config_map_clearing_advanced_config_removes_key() -> None:
    config_map, _ = updated_config_map(make_cluster({"rabbitmq": {"advancedConfig": "[]."}}))
    assert ADVANCED_CONFIG_KEY in config_map.data

    config_map, restart = updated_config_map(make_cluster(), config_map)

    assert ADVANCED_CONFIG_KEY not in config_map.data
    assert restart is True


def test_server_config_map_keeps_foreign_data_keys() -> None:
    config_map = V1ConfigMap(
        metadata=V1ObjectMeta(name="rabbit-server-conf", namespace="messaging"),
        data={"extra.conf": "kept"},
    )

    updated_config_map(make_cluster(), config_map)

    assert config_map.data["extra.conf"] == "kept"


def test_server_config_map_failed_render_leaves_object_untouched() -> None:
    config_map, _ = updated_config_map(make_cluster())
    before = dict(config_map.data)
    builder = ServerConfigMapBuilder(
        make_cluster({"rabbitmq": {"additionalConfig": "[broken]"}})
    )

    with pytest.raises(ConfigurationParseError):
        builder.update(config_map)

    assert config_map.data == before


def test_plugins_config_map_lists_default_and_additional_plugins() -> None:
    builder = PluginsConfigMapBuilder(
        make_cluster({"rabbitmq": {"additionalPlugins": ["rabbitmq_mqtt", "rabbitmq_management"]}})
    )
    config_map = builder.build()

    builder.update(config_map)

    assert config_map.metadata.name == "rabbit-plugins-conf"
    assert config_map.data[ENABLED_PLUGINS_KEY] == (
        "[rabbitmq_management,rabbitmq_prometheus,rabbitmq_mqtt]."
    )
    assert builder.update_may_require_recreate() is False


def test_server_config_map_records_rollout_fingerprint_on_restart_worthy_change() -> None:
    config_map, _ = updated_config_map(make_cluster({"replicas": 3}))
    created_with = pending_rollout(config_map)

    config_map, _ = updated_config_map(make_cluster({"replicas": 5}), config_map)
    assert pending_rollout(config_map) == created_with

    tls = make_cluster({"replicas": 5, "tls": {"secretName": "tls"}})
    config_map, restart = updated_config_map(tls, config_map)

    assert restart is True
    assert config_map.metadata.annotations[ROLLOUT_FINGERPRINT_ANNOTATION] == (
        restart_fingerprint(config_map.data)
    )
    assert pending_rollout(config_map) != created_with


def test_pending_rollout_absent_on_unannotated_config_map() -> None:
    config_map = V1ConfigMap(metadata=V1ObjectMeta(name="rabbit-server-conf"))

    assert pending_rollout(config_map) is None
