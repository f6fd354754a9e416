from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException, V1Secret

from cluster_operator.src.cluster import RabbitmqCluster
from cluster_operator.src.config import OperatorConfig
from cluster_operator.src.configmap import pending_rollout
from cluster_operator.src.kube import KubeClients, patch_cluster_status, resource_clients
from cluster_operator.src.metrics import METRICS
from cluster_operator.src.resource import RabbitmqResourceBuilder, ResourceBuilder

CLUSTER_STATUS_CREATED = "created"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconcile pass, listed as ``Kind/name`` entries."""

    cluster: str
    created: tuple[str, ...]
    updated: tuple[str, ...]
    unchanged: tuple[str, ...]
    restart_required: bool


class ClusterReconciler:
    """Converges the child objects of one ``RabbitmqCluster`` toward its spec.

    For each builder in registry order the live object is read; a missing
    object is built, updated and created, an existing one is updated in place
    and written back only if the update changed it.  The restart signals of
    all builders are OR-ed together.  Only children that already existed and
    were rewritten can raise the signal.

    A restart-worthy configuration change also records a rollout fingerprint
    on server-conf.  Every pass hands that fingerprint to the workload
    builder, which stamps it on the pod template; the platform rolls the pods
    whenever it moves.  The intent is therefore persisted before the
    workload is touched, and a pass that fails between the two writes still
    rolls the pods on its retry.

    The reconciler never retries and never swallows errors: an exception
    aborts the pass and is left to the driving loop, which requeues it.
    Objects written earlier in a failed pass stay as they are.
    """

    def __init__(
        self,
        clients: KubeClients,
        operator_config: OperatorConfig,
        logger: logging.Logger | None = None,
    ) -> None:
        self.clients = clients
        self.operator_config = operator_config
        self.logger = logger or logging.getLogger(__name__)
        self._resource_clients = resource_clients(clients)

    def _default_pull_secret(self, cluster: RabbitmqCluster) -> V1Secret | None:
        """Read the operator's default pull secret when *cluster* needs a copy of it."""
        secret_name = self.operator_config.image_pull_secret
        if cluster.spec.image_pull_secret or not secret_name:
            return None
        return self.clients.core.read_namespaced_secret(
            name=secret_name,
            namespace=self.operator_config.namespace,
        )

    def _apply(self, builder: ResourceBuilder, namespace: str) -> tuple[str, Any]:
        api = self._resource_clients[builder.kind]
        desired = builder.build()
        name = desired.metadata.name

        try:
            live = api.read(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status != 404:
                raise
            builder.update(desired)
            api.create(namespace=namespace, body=desired)
            return "created", desired

        snapshot = copy.deepcopy(live)
        builder.update(live)
        if live == snapshot:
            return "unchanged", live
        api.replace(name=name, namespace=namespace, body=live)
        return "updated", live

    def reconcile(self, cluster: RabbitmqCluster) -> ReconcileResult:
        resources = RabbitmqResourceBuilder(
            cluster,
            self.operator_config,
            default_pull_secret=self._default_pull_secret(cluster),
        )
        outcome: dict[str, list[str]] = {"created": [], "updated": [], "unchanged": []}
        restart_required = False

        for builder in resources.resource_builders():
            action, obj = self._apply(builder, cluster.namespace)
            entry = f"{builder.kind}/{obj.metadata.name}"
            outcome[action].append(entry)
            if action != "unchanged":
                METRICS.child_writes_total.labels(kind=builder.kind, action=action).inc()
                self.logger.info(
                    "%s %s in namespace %s", action.capitalize(), entry, cluster.namespace
                )

            # A freshly created child has no running pods built from an older version.
            if action == "updated" and builder.update_may_require_recreate():
                restart_required = True
                self.logger.info(
                    "%s changed in a way that requires restarting cluster %s/%s",
                    entry,
                    cluster.namespace,
                    cluster.name,
                )

            if builder is resources.server_config:
                fingerprint = pending_rollout(obj)
                if fingerprint is not None:
                    resources.force_rollout(fingerprint)

            if (
                builder is resources.workload
                and action == "updated"
                and resources.workload.rollout_triggered
            ):
                restart_required = True
                METRICS.workload_restarts_total.inc()
                self.logger.info("Triggered rolling restart of %s", entry)

        if cluster.status.get("clusterStatus") != CLUSTER_STATUS_CREATED:
            patch_cluster_status(
                self.clients.custom,
                namespace=cluster.namespace,
                name=cluster.name,
                status={"clusterStatus": CLUSTER_STATUS_CREATED},
            )

        return ReconcileResult(
            cluster=f"{cluster.namespace}/{cluster.name}",
            created=tuple(outcome["created"]),
            updated=tuple(outcome["updated"]),
            unchanged=tuple(outcome["unchanged"]),
            restart_required=restart_required,
        )
