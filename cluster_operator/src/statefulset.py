from __future__ import annotations

from kubernetes.client import (
    V1ConfigMapVolumeSource,
    V1Container,
    V1ContainerPort,
    V1EmptyDirVolumeSource,
    V1EnvVar,
    V1EnvVarSource,
    V1LabelSelector,
    V1LocalObjectReference,
    V1ObjectFieldSelector,
    V1ObjectMeta,
    V1PersistentVolumeClaim,
    V1PersistentVolumeClaimSpec,
    V1PodSecurityContext,
    V1PodSpec,
    V1PodTemplateSpec,
    V1Probe,
    V1ProjectedVolumeSource,
    V1ResourceRequirements,
    V1SecretProjection,
    V1SecretVolumeSource,
    V1StatefulSet,
    V1StatefulSetSpec,
    V1TCPSocketAction,
    V1Volume,
    V1VolumeMount,
    V1VolumeProjection,
    V1VolumeResourceRequirements,
)

from cluster_operator.src.cluster import RabbitmqCluster
from cluster_operator.src.config import OperatorConfig
from cluster_operator.src.configmap import (
    ADVANCED_CONFIG_KEY,
    ENABLED_PLUGINS_KEY,
    ENV_CONFIG_KEY,
    OPERATOR_DEFAULTS_KEY,
    USER_CONFIGURATION_KEY,
)
from cluster_operator.src.credentials import ERLANG_COOKIE_KEY
from cluster_operator.src.naming import (
    ERLANG_COOKIE_SUFFIX,
    HEADLESS_SERVICE_SUFFIX,
    PLUGINS_CONF_SUFFIX,
    SERVER_CONF_SUFFIX,
    SERVER_SUFFIX,
    cluster_labels,
    label_selector,
    object_meta,
    reconcile_metadata,
)
from cluster_operator.src.services import client_ports, plain_listeners_disabled

CONFIG_HASH_ANNOTATION = "rabbitmq.com/config-hash"
RABBITMQ_UID = 999
DEFAULT_MODE = 420
TERMINATION_GRACE_PERIOD_SECONDS = 150

_SETUP_SCRIPT = " && ".join(
    [
        f"cp /tmp/erlang-cookie-secret/{ERLANG_COOKIE_KEY} /var/lib/rabbitmq/{ERLANG_COOKIE_KEY}",
        f"chmod 600 /var/lib/rabbitmq/{ERLANG_COOKIE_KEY}",
        f"cp /tmp/rabbitmq-plugins/{ENABLED_PLUGINS_KEY} /etc/rabbitmq/{ENABLED_PLUGINS_KEY}",
        "mkdir -p /etc/rabbitmq/conf.d",
        f"cp /tmp/server-conf/{OPERATOR_DEFAULTS_KEY} "
        f"/etc/rabbitmq/conf.d/10-{OPERATOR_DEFAULTS_KEY}",
        f"cp /tmp/server-conf/{USER_CONFIGURATION_KEY} "
        f"/etc/rabbitmq/conf.d/90-{USER_CONFIGURATION_KEY}",
        f"if [ -f /tmp/server-conf/{ADVANCED_CONFIG_KEY} ]; then "
        f"cp /tmp/server-conf/{ADVANCED_CONFIG_KEY} /etc/rabbitmq/{ADVANCED_CONFIG_KEY}; fi",
        f"if [ -f /tmp/server-conf/{ENV_CONFIG_KEY} ]; then "
        f"cp /tmp/server-conf/{ENV_CONFIG_KEY} /etc/rabbitmq/{ENV_CONFIG_KEY}; fi",
    ]
)


def _secret_projection(name: str) -> V1VolumeProjection:
    return V1VolumeProjection(secret=V1SecretProjection(name=name, optional=False))


def _field_env(name: str, field_path: str) -> V1EnvVar:
    return V1EnvVar(
        name=name,
        value_from=V1EnvVarSource(
            field_ref=V1ObjectFieldSelector(api_version="v1", field_path=field_path)
        ),
    )


class StatefulSetBuilder:
    """Builds ``<cluster>-server``, the broker workload.

    The orchestrator sets :attr:`config_fingerprint` to the rollout
    fingerprint recorded on server-conf; it lands in a pod template
    annotation, and a new value makes the platform perform a rolling restart.
    Without a fingerprint the existing annotation is left untouched.
    """

    kind = "StatefulSet"

    def __init__(
        self,
        cluster: RabbitmqCluster,
        operator_config: OperatorConfig,
        pull_secret_name: str | None = None,
    ) -> None:
        self.cluster = cluster
        self.operator_config = operator_config
        self.pull_secret_name = pull_secret_name
        self.config_fingerprint: str | None = None
        # Set by update() when it moved the pod template to a new fingerprint.
        self.rollout_triggered = False

    def build(self) -> V1StatefulSet:
        return V1StatefulSet(
            api_version="apps/v1",
            kind="StatefulSet",
            metadata=object_meta(self.cluster, SERVER_SUFFIX),
        )

    def update_may_require_recreate(self) -> bool:
        return False

    @property
    def image(self) -> str:
        return self.cluster.spec.image or self.operator_config.image

    def _persistence_claim(self) -> V1PersistentVolumeClaim:
        spec = self.cluster.spec
        return V1PersistentVolumeClaim(
            metadata=V1ObjectMeta(
                name="persistence",
                namespace=self.cluster.namespace,
                labels=cluster_labels(self.cluster.name, self.cluster.labels),
            ),
            spec=V1PersistentVolumeClaimSpec(
                access_modes=["ReadWriteOnce"],
                resources=V1VolumeResourceRequirements(
                    requests={
                        "storage": spec.persistence_storage
                        or self.operator_config.persistence_storage
                    }
                ),
                storage_class_name=spec.persistence_storage_class_name
                or self.operator_config.persistence_storage_class_name,
            ),
        )

    def _volumes(self) -> list[V1Volume]:
        volumes = [
            V1Volume(
                name="server-conf",
                config_map=V1ConfigMapVolumeSource(
                    name=self.cluster.child_resource_name(SERVER_CONF_SUFFIX),
                    default_mode=DEFAULT_MODE,
                ),
            ),
            V1Volume(
                name="plugins-conf",
                config_map=V1ConfigMapVolumeSource(
                    name=self.cluster.child_resource_name(PLUGINS_CONF_SUFFIX),
                    default_mode=DEFAULT_MODE,
                ),
            ),
            V1Volume(
                name="erlang-cookie-secret",
                secret=V1SecretVolumeSource(
                    secret_name=self.cluster.child_resource_name(ERLANG_COOKIE_SUFFIX),
                    default_mode=DEFAULT_MODE,
                ),
            ),
            V1Volume(name="rabbitmq-erlang-cookie", empty_dir=V1EmptyDirVolumeSource()),
            V1Volume(name="rabbitmq-etc", empty_dir=V1EmptyDirVolumeSource()),
        ]
        if self.cluster.tls_enabled():
            tls = self.cluster.spec.tls
            sources = [_secret_projection(tls.secret_name)]
            if self.cluster.mutual_tls_enabled() and tls.ca_secret_name != tls.secret_name:
                sources.append(_secret_projection(tls.ca_secret_name))
            volumes.append(
                V1Volume(
                    name="rabbitmq-tls",
                    projected=V1ProjectedVolumeSource(sources=sources, default_mode=DEFAULT_MODE),
                )
            )
        return volumes

    def _setup_container(self, existing: V1Container | None) -> V1Container:
        container = existing or V1Container(name="setup-container")
        container.image = self.image
        container.command = ["sh", "-c", _SETUP_SCRIPT]
        container.volume_mounts = [
            V1VolumeMount(name="plugins-conf", mount_path="/tmp/rabbitmq-plugins/"),
            V1VolumeMount(name="server-conf", mount_path="/tmp/server-conf/"),
            V1VolumeMount(name="erlang-cookie-secret", mount_path="/tmp/erlang-cookie-secret/"),
            V1VolumeMount(name="rabbitmq-erlang-cookie", mount_path="/var/lib/rabbitmq/"),
            V1VolumeMount(name="rabbitmq-etc", mount_path="/etc/rabbitmq/"),
        ]
        return container

    def _rabbitmq_container(self, existing: V1Container | None) -> V1Container:
        container = existing or V1Container(name="rabbitmq")
        container.image = self.image
        container.env = [
            _field_env("MY_POD_NAME", "metadata.name"),
            _field_env("MY_POD_NAMESPACE", "metadata.namespace"),
            V1EnvVar(name="RABBITMQ_USE_LONGNAME", value="true"),
            V1EnvVar(
                name="K8S_SERVICE_NAME",
                value=self.cluster.child_resource_name(HEADLESS_SERVICE_SUFFIX),
            ),
            V1EnvVar(
                name="RABBITMQ_NODENAME",
                value="rabbit@$(MY_POD_NAME).$(K8S_SERVICE_NAME).$(MY_POD_NAMESPACE)",
            ),
            V1EnvVar(name="K8S_HOSTNAME_SUFFIX", value=".$(K8S_SERVICE_NAME).$(MY_POD_NAMESPACE)"),
        ]
        container.ports = [
            V1ContainerPort(name=name, container_port=port, protocol="TCP")
            for name, port in [("epmd", 4369), ("cluster-rpc", 25672), *client_ports(self.cluster)]
        ]
        resources = self.cluster.spec.resources
        container.resources = V1ResourceRequirements(
            requests=resources.get("requests") or None,
            limits=resources.get("limits") or None,
        )
        probe_port = "amqps" if plain_listeners_disabled(self.cluster) else "amqp"
        container.readiness_probe = V1Probe(
            tcp_socket=V1TCPSocketAction(port=probe_port),
            initial_delay_seconds=10,
            timeout_seconds=5,
            period_seconds=10,
            success_threshold=1,
            failure_threshold=3,
        )
        mounts = [
            V1VolumeMount(name="persistence", mount_path="/var/lib/rabbitmq/mnesia/"),
            V1VolumeMount(name="rabbitmq-etc", mount_path="/etc/rabbitmq/"),
            V1VolumeMount(name="rabbitmq-erlang-cookie", mount_path="/var/lib/rabbitmq/"),
        ]
        if self.cluster.tls_enabled():
            mounts.append(
                V1VolumeMount(name="rabbitmq-tls", mount_path="/etc/rabbitmq-tls/", read_only=True)
            )
        container.volume_mounts = mounts
        return container

    def _image_pull_secrets(self) -> list[V1LocalObjectReference] | None:
        name = self.cluster.spec.image_pull_secret or self.pull_secret_name
        if not name:
            return None
        return [V1LocalObjectReference(name=name)]

    def update(self, statefulset: V1StatefulSet) -> None:
        reconcile_metadata(self.cluster, statefulset)

        if statefulset.spec is None:
            # selector, serviceName, podManagementPolicy and volumeClaimTemplates
            # are immutable and only written at creation.
            statefulset.spec = V1StatefulSetSpec(
                selector=V1LabelSelector(match_labels=label_selector(self.cluster.name)),
                service_name=self.cluster.child_resource_name(HEADLESS_SERVICE_SUFFIX),
                pod_management_policy="Parallel",
                template=V1PodTemplateSpec(),
                volume_claim_templates=[self._persistence_claim()],
            )
        spec = statefulset.spec
        spec.replicas = self.cluster.spec.replicas

        template = spec.template or V1PodTemplateSpec()
        spec.template = template
        if template.metadata is None:
            template.metadata = V1ObjectMeta()
        labels = dict(template.metadata.labels or {})
        labels.update(cluster_labels(self.cluster.name, self.cluster.labels))
        template.metadata.labels = labels
        annotations = dict(template.metadata.annotations or {})
        self.rollout_triggered = False
        if (
            self.config_fingerprint is not None
            and annotations.get(CONFIG_HASH_ANNOTATION) != self.config_fingerprint
        ):
            self.rollout_triggered = True
            annotations[CONFIG_HASH_ANNOTATION] = self.config_fingerprint
            template.metadata.annotations = annotations

        pod_spec = template.spec or V1PodSpec(containers=[])
        template.spec = pod_spec
        pod_spec.service_account_name = self.cluster.child_resource_name(SERVER_SUFFIX)
        pod_spec.automount_service_account_token = True
        pod_spec.image_pull_secrets = self._image_pull_secrets()
        pod_spec.termination_grace_period_seconds = TERMINATION_GRACE_PERIOD_SECONDS
        pod_spec.security_context = V1PodSecurityContext(
            fs_group=RABBITMQ_UID, run_as_user=RABBITMQ_UID, run_as_group=RABBITMQ_UID
        )
        pod_spec.volumes = self._volumes()

        init_containers = {c.name: c for c in pod_spec.init_containers or []}
        pod_spec.init_containers = [self._setup_container(init_containers.get("setup-container"))]
        containers = {c.name: c for c in pod_spec.containers or []}
        pod_spec.containers = [self._rabbitmq_container(containers.get("rabbitmq"))]

