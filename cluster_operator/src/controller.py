from __future__ import annotations

import logging
import math
import random
import threading
import time
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CustomObjectsApi

from cluster_operator.src.cluster import API_GROUP, API_VERSION, PLURAL, RabbitmqCluster
from cluster_operator.src.config import OperatorConfig
from cluster_operator.src.errors import ClusterSpecError
from cluster_operator.src.kube import KubeClients
from cluster_operator.src.metrics import METRICS
from cluster_operator.src.reconciler import ClusterReconciler, ReconcileResult

ClusterKey = tuple[str, str]


class ClusterController:
    """Watches ``RabbitmqCluster`` objects and drives reconcile passes.

    Events are handled one at a time on the watch thread, so two passes for
    the same cluster never overlap.  A failed pass is requeued per cluster
    with bounded exponential backoff (1 s doubling up to 30 s); the retry
    re-reads the cluster so it always reconciles the freshest spec.

    Key internal state:
        ``_pending_retries``
            Maps ``(namespace, name)`` to the ``time.monotonic()`` timestamp
            at which the next retry is due.
        ``_retry_attempts``
            Consecutive failure count per key, used for the backoff delay.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        reconciler: ClusterReconciler,
        watch_namespace: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.custom_api = custom_api
        self.reconciler = reconciler
        self.watch_namespace = watch_namespace
        self.logger = logger or logging.getLogger(__name__)

        self._pending_retries: dict[ClusterKey, float] = {}
        self._retry_attempts: dict[ClusterKey, int] = {}
        METRICS.pending_retries.set(0)

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list_call(self) -> Any:
        if self.watch_namespace:
            return self.custom_api.list_namespaced_custom_object
        return self.custom_api.list_cluster_custom_object

    def _list_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"group": API_GROUP, "version": API_VERSION, "plural": PLURAL}
        if self.watch_namespace:
            kwargs["namespace"] = self.watch_namespace
        return kwargs

    def _clear_retry(self, key: ClusterKey) -> None:
        self._pending_retries.pop(key, None)
        self._retry_attempts.pop(key, None)
        METRICS.pending_retries.set(len(self._pending_retries))

    def _schedule_retry(self, key: ClusterKey, now_monotonic: float) -> None:
        """Schedule a retry after a failed pass using bounded exponential backoff."""
        attempt = self._retry_attempts.get(key, 0) + 1
        self._retry_attempts[key] = attempt

        delay_seconds = min(30.0, float(2 ** (attempt - 1)))
        self._pending_retries[key] = now_monotonic + delay_seconds
        METRICS.pending_retries.set(len(self._pending_retries))

        self.logger.warning(
            "Reconcile of %s/%s failed; scheduling retry attempt %d in %.1fs",
            key[0],
            key[1],
            attempt,
            delay_seconds,
        )

    def _reconcile_and_record(self, cluster: RabbitmqCluster) -> ReconcileResult | None:
        key = (cluster.namespace, cluster.name)
        started = time.monotonic()
        try:
            result = self.reconciler.reconcile(cluster)
        except Exception:
            self.logger.exception("Reconcile of %s/%s failed", cluster.namespace, cluster.name)
            METRICS.reconciles_total.labels(result="error").inc()
            self._schedule_retry(key, now_monotonic=time.monotonic())
            return None
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)

        METRICS.reconciles_total.labels(result="success").inc()
        self._clear_retry(key)
        self.logger.info(
            "Reconciled %s (created=%d updated=%d unchanged=%d restart=%s)",
            result.cluster,
            len(result.created),
            len(result.updated),
            len(result.unchanged),
            result.restart_required,
        )
        return result

    def handle_cluster_event(self, event_type: str, obj: Any) -> ReconcileResult | None:
        """Process a single ``RabbitmqCluster`` watch event.

        Returns the :class:`ReconcileResult` of the pass it ran, or ``None``
        when the event was ignored or the pass failed (and was requeued).
        """
        if not isinstance(obj, dict):
            return None
        metadata = obj.get("metadata") or {}
        key = (metadata.get("namespace", ""), metadata.get("name", ""))

        if event_type == "DELETED":
            # Child objects go with the parent through owner references.
            self._clear_retry(key)
            return None
        if event_type not in {"ADDED", "MODIFIED"}:
            return None

        try:
            cluster = RabbitmqCluster.from_object(obj)
        except ClusterSpecError as exc:
            # Not retried: the next edit of the resource produces a new event.
            self.logger.error("Skipping invalid RabbitmqCluster %s/%s: %s", key[0], key[1], exc)
            self._clear_retry(key)
            return None

        if cluster.deletion_timestamp:
            self._clear_retry(key)
            return None

        return self._reconcile_and_record(cluster)

    def _drain_pending_retries(self, now_monotonic: float) -> None:
        """Re-read and reconcile every cluster whose retry is due."""
        due = [key for key, due_at in self._pending_retries.items() if due_at <= now_monotonic]
        for namespace, name in due:
            self.logger.info("Retrying reconcile of %s/%s", namespace, name)
            try:
                obj = self.custom_api.get_namespaced_custom_object(
                    group=API_GROUP,
                    version=API_VERSION,
                    namespace=namespace,
                    plural=PLURAL,
                    name=name,
                )
            except ApiException as exc:
                if exc.status == 404:
                    self._clear_retry((namespace, name))
                    continue
                self.logger.exception("Failed to read %s/%s for retry", namespace, name)
                self._schedule_retry((namespace, name), now_monotonic=now_monotonic)
                continue
            self.handle_cluster_event("MODIFIED", obj)

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        """Return the next watch timeout in seconds, shortened for pending retries."""
        if not self._pending_retries:
            return 30

        nearest_due = min(self._pending_retries.values())
        remaining = max(1.0, nearest_due - now_monotonic)
        return min(30, max(1, math.ceil(remaining)))

    def _reconcile_listing(self, listing: Any) -> str | None:
        """Reconcile every cluster in a list response and return its resourceVersion."""
        for item in (listing or {}).get("items") or []:
            self.handle_cluster_event("ADDED", item)
        return ((listing or {}).get("metadata") or {}).get("resourceVersion")

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: list-then-watch clusters until shutdown.

        1. Retries the initial list with jittered exponential backoff so
           transient API startup failures do not crash-loop the operator.
        2. Reconciles every listed cluster, then watches from the list's
           ``resourceVersion``.
        3. On ``410 Gone`` re-lists, reconciling everything again.
        4. Drains due retries on every loop iteration and after every event,
           shortening the watch timeout so retries fire on time.

        ``401`` / ``403`` responses are treated as RBAC misconfiguration and
        end the loop instead of retrying forever.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                initial = self._list_call()(**self._list_kwargs())
                resource_version = self._reconcile_listing(initial)
                self.ready.set()
                self.logger.info("Starting watch from resourceVersion %s", resource_version)
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial list (status=%s). "
                        "Check operator RBAC and service account permissions.",
                        exc.status,
                    )
                    self.ready.clear()
                    return
                self.logger.exception("Initial RabbitmqCluster list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial RabbitmqCluster list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.ready.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            self._drain_pending_retries(now_monotonic=time.monotonic())
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self._list_call(),
                    resource_version=resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(time.monotonic()),
                    **self._list_kwargs(),
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if not isinstance(obj, dict):
                        continue
                    observed_version = (obj.get("metadata") or {}).get("resourceVersion")
                    if observed_version:
                        resource_version = observed_version

                    self.handle_cluster_event(str(event.get("type", "")), obj)
                    self._drain_pending_retries(now_monotonic=time.monotonic())

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        fresh = self._list_call()(**self._list_kwargs())
                        resource_version = self._reconcile_listing(fresh)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check operator RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            self.ready.clear()
                            return
                        self.logger.exception("Failed to re-list after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check operator RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    self.ready.clear()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        if self._pending_retries:
            self.logger.warning(
                "Dropping %d pending reconcile retr(ies) on shutdown", len(self._pending_retries)
            )
        self.ready.clear()


def build_controller(clients: KubeClients, operator_config: OperatorConfig) -> ClusterController:
    """Construct a :class:`ClusterController` wired to a :class:`ClusterReconciler`.

    The controller watches ``operator_config.watch_namespace`` when set and
    every namespace otherwise.
    """
    reconciler = ClusterReconciler(clients=clients, operator_config=operator_config)
    return ClusterController(
        custom_api=clients.custom,
        reconciler=reconciler,
        watch_namespace=operator_config.watch_namespace,
    )
