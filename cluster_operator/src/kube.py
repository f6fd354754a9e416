from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api, CustomObjectsApi, RbacAuthorizationV1Api
from kubernetes.config.config_exception import ConfigException

from cluster_operator.src.cluster import API_GROUP, API_VERSION, PLURAL

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class KubeClients:
    core: CoreV1Api
    apps: AppsV1Api
    rbac: RbacAuthorizationV1Api
    custom: CustomObjectsApi


@dataclass(frozen=True)
class ResourceClient:
    """Typed read/create/replace calls for one child object kind.

    Every call is keyed by ``(name, namespace)``; ``replace`` sends the body
    including its ``resourceVersion`` so a stale write is rejected with 409.
    """

    kind: str
    read: Callable[..., Any]
    create: Callable[..., Any]
    replace: Callable[..., Any]


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> KubeClients:
    """Return the API clients the operator needs, using the active kube configuration."""
    return KubeClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        rbac=client.RbacAuthorizationV1Api(),
        custom=client.CustomObjectsApi(),
    )


def resource_clients(clients: KubeClients) -> dict[str, ResourceClient]:
    """Map each builder ``kind`` to the API calls that persist it."""
    core, apps, rbac = clients.core, clients.apps, clients.rbac
    return {
        "ConfigMap": ResourceClient(
            kind="ConfigMap",
            read=core.read_namespaced_config_map,
            create=core.create_namespaced_config_map,
            replace=core.replace_namespaced_config_map,
        ),
        "Secret": ResourceClient(
            kind="Secret",
            read=core.read_namespaced_secret,
            create=core.create_namespaced_secret,
            replace=core.replace_namespaced_secret,
        ),
        "Service": ResourceClient(
            kind="Service",
            read=core.read_namespaced_service,
            create=core.create_namespaced_service,
            replace=core.replace_namespaced_service,
        ),
        "ServiceAccount": ResourceClient(
            kind="ServiceAccount",
            read=core.read_namespaced_service_account,
            create=core.create_namespaced_service_account,
            replace=core.replace_namespaced_service_account,
        ),
        "Role": ResourceClient(
            kind="Role",
            read=rbac.read_namespaced_role,
            create=rbac.create_namespaced_role,
            replace=rbac.replace_namespaced_role,
        ),
        "RoleBinding": ResourceClient(
            kind="RoleBinding",
            read=rbac.read_namespaced_role_binding,
            create=rbac.create_namespaced_role_binding,
            replace=rbac.replace_namespaced_role_binding,
        ),
        "StatefulSet": ResourceClient(
            kind="StatefulSet",
            read=apps.read_namespaced_stateful_set,
            create=apps.create_namespaced_stateful_set,
            replace=apps.replace_namespaced_stateful_set,
        ),
    }


def patch_cluster_status(
    custom_api: CustomObjectsApi,
    namespace: str,
    name: str,
    status: dict[str, Any],
) -> None:
    """Merge-patch the ``status`` subresource of a ``RabbitmqCluster``."""
    custom_api.patch_namespaced_custom_object_status(
        group=API_GROUP,
        version=API_VERSION,
        namespace=namespace,
        plural=PLURAL,
        name=name,
        body={"status": status},
    )
