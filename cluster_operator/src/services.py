from __future__ import annotations

from kubernetes.client import V1Service, V1ServicePort, V1ServiceSpec

from cluster_operator.src.cluster import RabbitmqCluster
from cluster_operator.src.config import OperatorConfig
from cluster_operator.src.naming import (
    HEADLESS_SERVICE_SUFFIX,
    INGRESS_SERVICE_SUFFIX,
    label_selector,
    object_meta,
    reconcile_annotations,
    reconcile_metadata,
)

# (plugin, plain port name, plain port, secure port name, secure port, secure needs mutual TLS)
_PLUGIN_PORTS = (
    ("rabbitmq_mqtt", "mqtt", 1883, "mqtts", 8883, False),
    ("rabbitmq_stomp", "stomp", 61613, "stomps", 61614, False),
    ("rabbitmq_web_mqtt", "web-mqtt", 15675, "web-mqtt-tls", 15676, True),
    ("rabbitmq_web_stomp", "web-stomp", 15674, "web-stomp-tls", 15673, True),
)


def plain_listeners_disabled(cluster: RabbitmqCluster) -> bool:
    return cluster.tls_enabled() and cluster.disable_non_tls_listeners()


def client_ports(cluster: RabbitmqCluster) -> list[tuple[str, int]]:
    """Named client-facing ports the broker listens on for *cluster*, in a stable order."""
    disable_plain = plain_listeners_disabled(cluster)
    ports: list[tuple[str, int]] = []
    if not disable_plain:
        ports += [("amqp", 5672), ("management", 15672), ("prometheus", 15692)]
    if cluster.tls_enabled():
        ports += [("amqps", 5671), ("management-tls", 15671), ("prometheus-tls", 15691)]

    for plugin, plain_name, plain_port, secure_name, secure_port, needs_mtls in _PLUGIN_PORTS:
        if not cluster.additional_plugin_enabled(plugin):
            continue
        if not disable_plain:
            ports.append((plain_name, plain_port))
        secure_enabled = cluster.mutual_tls_enabled() if needs_mtls else cluster.tls_enabled()
        if secure_enabled:
            ports.append((secure_name, secure_port))
    return ports


class IngressServiceBuilder:
    """Builds ``<cluster>-ingress``, the client-facing service."""

    kind = "Service"

    def __init__(self, cluster: RabbitmqCluster, operator_config: OperatorConfig) -> None:
        self.cluster = cluster
        self.operator_config = operator_config

    def build(self) -> V1Service:
        return V1Service(
            api_version="v1",
            kind="Service",
            metadata=object_meta(self.cluster, INGRESS_SERVICE_SUFFIX),
        )

    def update_may_require_recreate(self) -> bool:
        return False

    def _service_type(self) -> str:
        return self.cluster.spec.service_type or self.operator_config.service_type

    def update(self, service: V1Service) -> None:
        reconcile_metadata(self.cluster, service)
        service.metadata.annotations = reconcile_annotations(
            reconcile_annotations(
                service.metadata.annotations, self.operator_config.service_annotations
            ),
            self.cluster.spec.service_annotations,
        )

        if service.spec is None:
            service.spec = V1ServiceSpec()
        service_type = self._service_type()
        existing_node_ports = {}
        if service_type != "ClusterIP":
            existing_node_ports = {
                port.name: port.node_port for port in service.spec.ports or [] if port.node_port
            }

        service.spec.type = service_type
        service.spec.selector = label_selector(self.cluster.name)
        service.spec.ports = [
            V1ServicePort(
                name=name,
                port=port,
                target_port=port,
                protocol="TCP",
                node_port=existing_node_ports.get(name),
            )
            for name, port in client_ports(self.cluster)
        ]


class HeadlessServiceBuilder:
    """Builds ``<cluster>-headless``, giving every broker pod a stable DNS identity."""

    kind = "Service"

    def __init__(self, cluster: RabbitmqCluster) -> None:
        self.cluster = cluster

    def build(self) -> V1Service:
        return V1Service(
            api_version="v1",
            kind="Service",
            metadata=object_meta(self.cluster, HEADLESS_SERVICE_SUFFIX),
        )

    def update_may_require_recreate(self) -> bool:
        return False

    def update(self, service: V1Service) -> None:
        reconcile_metadata(self.cluster, service)
        if service.spec is None:
            service.spec = V1ServiceSpec()
        service.spec.cluster_ip = "None"
        service.spec.selector = label_selector(self.cluster.name)
        service.spec.publish_not_ready_addresses = True
        service.spec.ports = [
            V1ServicePort(name="epmd", port=4369, target_port=4369, protocol="TCP"),
            V1ServicePort(name="cluster-rpc", port=25672, target_port=25672, protocol="TCP"),
        ]
