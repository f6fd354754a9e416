from __future__ import annotations

import base64
import secrets
import string

from kubernetes.client import V1Secret

from cluster_operator.src.cluster import RabbitmqCluster
from cluster_operator.src.naming import (
    ADMIN_SECRET_SUFFIX,
    ERLANG_COOKIE_SUFFIX,
    REGISTRY_SECRET_SUFFIX,
    object_meta,
    reconcile_metadata,
)

ERLANG_COOKIE_KEY = ".erlang.cookie"
ERLANG_COOKIE_LENGTH = 24


def b64encode(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def generate_erlang_cookie(length: int = ERLANG_COOKIE_LENGTH) -> str:
    alphabet = string.ascii_letters
    return "".join(secrets.choice(alphabet) for _ in range(length))


class AdminSecretBuilder:
    """Builds ``<cluster>-admin`` with generated default user credentials.

    Credentials are generated once, in :meth:`build`; :meth:`update` only
    reconciles metadata so an existing password is never rotated.
    """

    kind = "Secret"

    def __init__(self, cluster: RabbitmqCluster) -> None:
        self.cluster = cluster

    def build(self) -> V1Secret:
        return V1Secret(
            api_version="v1",
            kind="Secret",
            metadata=object_meta(self.cluster, ADMIN_SECRET_SUFFIX),
            type="Opaque",
            data={
                "username": b64encode(secrets.token_urlsafe(18)),
                "password": b64encode(secrets.token_urlsafe(24)),
            },
        )

    def update_may_require_recreate(self) -> bool:
        return False

    def update(self, secret: V1Secret) -> None:
        reconcile_metadata(self.cluster, secret)


class ErlangCookieBuilder:
    """Builds ``<cluster>-erlang-cookie``, the secret shared by all broker nodes."""

    kind = "Secret"

    def __init__(self, cluster: RabbitmqCluster) -> None:
        self.cluster = cluster

    def build(self) -> V1Secret:
        return V1Secret(
            api_version="v1",
            kind="Secret",
            metadata=object_meta(self.cluster, ERLANG_COOKIE_SUFFIX),
            type="Opaque",
            data={ERLANG_COOKIE_KEY: b64encode(generate_erlang_cookie())},
        )

    def update_may_require_recreate(self) -> bool:
        return False

    def update(self, secret: V1Secret) -> None:
        reconcile_metadata(self.cluster, secret)


class RegistrySecretBuilder:
    """Builds ``<cluster>-registry-access``, a copy of the operator's default pull secret.

    Only registered when the cluster declares no ``imagePullSecret`` of its
    own.  The source secret is read by the reconciler and handed in, so the
    builder stays free of API calls.
    """

    kind = "Secret"

    def __init__(self, cluster: RabbitmqCluster, source: V1Secret) -> None:
        self.cluster = cluster
        self.source = source

    def build(self) -> V1Secret:
        return V1Secret(
            api_version="v1",
            kind="Secret",
            metadata=object_meta(self.cluster, REGISTRY_SECRET_SUFFIX),
        )

    def update_may_require_recreate(self) -> bool:
        return False

    def update(self, secret: V1Secret) -> None:
        reconcile_metadata(self.cluster, secret)
        secret.type = self.source.type or "kubernetes.io/dockerconfigjson"
        secret.data = dict(self.source.data or {})
