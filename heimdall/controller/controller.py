"""Injection controller: the reconciliation loop.

Watch events are turned into queue keys by one handler per event variant.
Worker coroutines pull keys and reconcile them:

    WorkloadKey  -> look the Deployment up in the indexer, classify its
                    annotations, and for PENDING_INJECTION run the pipeline
                    resolve -> decrypt/materialize -> replace Deployment.
    CleanupKey   -> delete the materialized ConfigMap.

Retry policy:

* indexer lookup failures are requeued up to ``lookup_retries`` times;
* retryable pipeline failures (transient infrastructure, state conflicts,
  unexpected errors) are requeued up to ``pipeline_retries`` times;
* data-format and crypto failures are dropped at once, since they recur
  on every attempt until the source changes.

Every dropped key is logged at error level, counted in
``heimdall_queue_drops_total`` and recorded as a Warning Event.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable
from typing import Any

from kubernetes_asyncio.client.exceptions import ApiException

from heimdall.controller.queue import RateLimitingQueue
from heimdall.controller.recorder import EventRecorder
from heimdall.controller.state import (
    InjectionState,
    injected_marker_changed,
    mark_injected,
    state_of,
)
from heimdall.controller.watcher import WorkloadIndexer
from heimdall.errors import (
    TRANSPORT_ERRORS,
    ClusterUnavailable,
    DocumentMalformed,
    HeimdallError,
    PathNotFound,
    WorkloadConflict,
)
from heimdall.materializer import Materializer
from heimdall.models.config import InjectorConfig
from heimdall.models.configuration import Configuration
from heimdall.models.workload import (
    ANNOTATION_CONFIG_VERSION,
    ANNOTATION_INJECTED,
    ANNOTATION_NAME,
    ANNOTATION_PATH,
    ANNOTATION_REPOSITORY,
    CleanupKey,
    QueueKey,
    ResourceRef,
    WorkloadCreated,
    WorkloadDeleted,
    WorkloadEvent,
    WorkloadKey,
    WorkloadUpdated,
    annotations_of,
    materialized_name,
)
from heimdall.observability.logging import get_logger
from heimdall.observability.metrics import injections_total, queue_drops_total, queue_retries_total
from heimdall.source.git import GitCredentials
from heimdall.source.resolver import ConfigurationResolver, load_git_credentials

_log = get_logger("controller")


class InjectionController:
    """Drives Deployments from PENDING_INJECTION to INJECTED.

    Args:
        apps_v1:      AppsV1Api used to replace Deployments.
        core_v1:      CoreV1Api used to read git credentials.
        indexer:      Local Deployment store maintained by the watcher.
        resolver:     Fetches and parses configuration documents.
        materializer: Decrypts and writes ConfigMaps.
        recorder:     Records Kubernetes Events for operators.
        config:       Retry bounds, worker count, cleanup toggle.
        queue:        Work queue; a default rate-limited queue if omitted.
    """

    def __init__(
        self,
        *,
        apps_v1: Any,
        core_v1: Any,
        indexer: WorkloadIndexer,
        resolver: ConfigurationResolver,
        materializer: Materializer,
        recorder: EventRecorder,
        config: InjectorConfig,
        queue: RateLimitingQueue[QueueKey] | None = None,
    ) -> None:
        self._apps_v1 = apps_v1
        self._core_v1 = core_v1
        self._indexer = indexer
        self._resolver = resolver
        self._materializer = materializer
        self._recorder = recorder
        self._config = config
        self.queue: RateLimitingQueue[QueueKey] = queue or RateLimitingQueue()
        self._workers: list[asyncio.Task[None]] = []
        self._event_handlers: dict[type, Callable[[Any], None]] = {
            WorkloadCreated: self._on_created,
            WorkloadUpdated: self._on_updated,
            WorkloadDeleted: self._on_deleted,
        }

    # ------------------------------------------------------------------
    # Watch event handlers
    # ------------------------------------------------------------------

    def handle_event(self, event: WorkloadEvent) -> None:
        """Translate a watch event into zero or one queue key."""
        self._event_handlers[type(event)](event)

    def _on_created(self, event: WorkloadCreated) -> None:
        self.queue.add(WorkloadKey.of(event.workload))

    def _on_updated(self, event: WorkloadUpdated) -> None:
        # Unrelated Deployment changes are ignored; only marker changes are reprocessed.
        if injected_marker_changed(event.old, event.new):
            self.queue.add(WorkloadKey.of(event.new))

    def _on_deleted(self, event: WorkloadDeleted) -> None:
        if not self._config.configmap_cleanup:
            return
        annotations = annotations_of(event.workload)
        if ANNOTATION_INJECTED not in annotations:
            return
        name = annotations.get(ANNOTATION_NAME)
        version = annotations.get(ANNOTATION_CONFIG_VERSION)
        if not name or not version:
            _log.warning(
                "injected workload deleted without materialized name",
                workload=str(WorkloadKey.of(event.workload)),
            )
            return
        namespace = WorkloadKey.of(event.workload).namespace
        self.queue.add(CleanupKey(namespace=namespace, name=materialized_name(name, version)))

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Wait for the indexer to sync, then start the worker coroutines."""
        await self._indexer.wait_synced()
        for index in range(self._config.workers):
            task = asyncio.create_task(self._run_worker(), name=f"injector-worker-{index}")
            self._workers.append(task)
        _log.info("controller workers started", workers=self._config.workers)

    async def stop(self) -> None:
        """Stop accepting keys and let the workers drain the queue."""
        self.queue.shut_down()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        _log.info("controller workers stopped")

    async def _run_worker(self) -> None:
        while await self.process_next_item():
            pass

    async def process_next_item(self) -> bool:
        """Process one key.  Returns False once the queue has shut down."""
        key, quit = await self.queue.get()
        if quit or key is None:
            return False
        try:
            if isinstance(key, CleanupKey):
                await self._process_cleanup(key)
            else:
                await self._process_workload(key)
        except Exception as exc:
            # A worker must outlive any single key.
            self._retry_or_drop_unhandled(key, exc)
        finally:
            self.queue.done(key)
        return True

    def _retry_or_drop_unhandled(self, key: QueueKey, exc: Exception) -> None:
        requeues = self.queue.num_requeues(key)
        if requeues < self._config.pipeline_retries:
            _log.error("unexpected error processing key; requeuing", key=str(key), error=str(exc), exc_info=True)
            queue_retries_total.labels(reason="internal").inc()
            self.queue.add_rate_limited(key)
            return
        _log.error(
            "unexpected error processing key; dropping",
            key=str(key),
            error=str(exc),
            retried=requeues,
            exc_info=True,
        )
        queue_drops_total.labels(reason="internal").inc()
        self.queue.forget(key)

    # ------------------------------------------------------------------
    # Workload keys
    # ------------------------------------------------------------------

    async def _process_workload(self, key: WorkloadKey) -> None:
        try:
            workload = self._indexer.get_by_key(key)
        except HeimdallError as exc:
            if self.queue.num_requeues(key) < self._config.lookup_retries:
                _log.error("workload lookup failed; retrying", key=str(key), error=str(exc))
                queue_retries_total.labels(reason="lookup").inc()
                self.queue.add_rate_limited(key)
            else:
                _log.error("workload lookup failed; no more retries", key=str(key), error=str(exc))
                queue_drops_total.labels(reason="lookup").inc()
                self.queue.forget(key)
                await self._recorder.warning(key, "InjectionDropped", f"workload lookup failed: {exc}")
            return

        if workload is None:
            _log.info("workload no longer exists", key=str(key))
            self.queue.forget(key)
            return

        await self.reconcile(key, workload)

    async def reconcile(self, key: WorkloadKey, workload: dict[str, Any]) -> None:
        """Apply the state machine to one observed workload."""
        state = state_of(workload)
        if state is InjectionState.UNANNOTATED:
            _log.debug("skipping workload without repository annotation", key=str(key))
            self.queue.forget(key)
            return
        if state is InjectionState.INJECTED:
            _log.debug("skipping already injected workload", key=str(key))
            self.queue.forget(key)
            return

        try:
            ref = await self.inject(workload)
        except Exception as exc:
            await self._handle_pipeline_error(key, workload, exc)
            return

        self.queue.forget(key)
        injections_total.labels(result="success").inc()
        _log.info(
            "workload injected",
            key=str(key),
            configmap=ref.name if ref is not None else None,
        )
        await self._recorder.normal(
            key,
            "Injected",
            f"configuration injected from ConfigMap {ref.name}" if ref else "configuration injected (no entities)",
            uid=_uid(workload),
        )

    async def _handle_pipeline_error(self, key: WorkloadKey, workload: dict[str, Any], exc: Exception) -> None:
        retryable = exc.retryable if isinstance(exc, HeimdallError) else True
        category = exc.category if isinstance(exc, HeimdallError) else "internal"
        requeues = self.queue.num_requeues(key)

        if retryable and requeues < self._config.pipeline_retries:
            _log.error(
                "injection failed; requeuing",
                key=str(key),
                category=category,
                error=str(exc),
                retries_left=self._config.pipeline_retries - requeues,
                exc_info=not isinstance(exc, HeimdallError),
            )
            injections_total.labels(result="retry").inc()
            queue_retries_total.labels(reason=category).inc()
            self.queue.add_rate_limited(key)
            await self._recorder.warning(key, "InjectionFailed", str(exc), uid=_uid(workload))
            return

        _log.error(
            "injection failed; dropping workload until it changes",
            key=str(key),
            category=category,
            error=str(exc),
            retried=requeues,
            exc_info=not isinstance(exc, HeimdallError),
        )
        injections_total.labels(result="dropped").inc()
        queue_drops_total.labels(reason=category).inc()
        self.queue.forget(key)
        await self._recorder.warning(key, "InjectionDropped", f"{category}: {exc}", uid=_uid(workload))

    async def inject(self, workload: dict[str, Any]) -> ResourceRef | None:
        """Run the full pipeline for one PENDING_INJECTION workload."""
        key = WorkloadKey.of(workload)
        annotations = annotations_of(workload)
        repository = annotations[ANNOTATION_REPOSITORY]
        path = annotations.get(ANNOTATION_PATH, "")
        if not path:
            raise PathNotFound(f"workload {key} has no '{ANNOTATION_PATH}' annotation")

        credentials = await self._git_credentials()
        configuration = await self._resolver.resolve(repository, path, credentials)
        if configuration.metadata.namespace != key.namespace:
            raise DocumentMalformed(
                f"configuration targets namespace '{configuration.metadata.namespace}' "
                f"but workload {key} lives in '{key.namespace}'"
            )

        ref = await self._materializer.materialize(configuration)
        await self._replace_workload(key, build_injected_workload(workload, configuration, ref))
        return ref

    async def _git_credentials(self) -> GitCredentials | None:
        ref = self._config.git_credentials_ref
        if ref is None:
            return None
        namespace, name = ref
        return await load_git_credentials(self._core_v1, namespace, name)

    async def _replace_workload(self, key: WorkloadKey, body: dict[str, Any]) -> None:
        try:
            await self._apps_v1.replace_namespaced_deployment(key.name, key.namespace, body)
        except ApiException as exc:
            if exc.status in (404, 409):
                raise WorkloadConflict(f"deployment {key} changed during injection ({exc.status})") from exc
            raise ClusterUnavailable(f"updating deployment {key} failed: {exc.reason}") from exc
        except TRANSPORT_ERRORS as exc:
            raise ClusterUnavailable(f"updating deployment {key} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Cleanup keys
    # ------------------------------------------------------------------

    async def _process_cleanup(self, key: CleanupKey) -> None:
        try:
            await self._materializer.delete(key.namespace, key.name)
        except HeimdallError as exc:
            if exc.retryable and self.queue.num_requeues(key) < self._config.pipeline_retries:
                _log.error("configmap cleanup failed; retrying", key=str(key), error=str(exc))
                queue_retries_total.labels(reason="cleanup").inc()
                self.queue.add_rate_limited(key)
            else:
                _log.error("configmap cleanup failed; leaving configmap in place", key=str(key), error=str(exc))
                queue_drops_total.labels(reason="cleanup").inc()
                self.queue.forget(key)
            return
        self.queue.forget(key)


def build_injected_workload(
    workload: dict[str, Any],
    configuration: Configuration,
    ref: ResourceRef | None,
) -> dict[str, Any]:
    """Return a copy of *workload* marked injected and wired to *ref*.

    Every container gets an ``envFrom`` ConfigMap reference (once).
    """
    updated = copy.deepcopy(workload)
    metadata = updated.setdefault("metadata", {})
    metadata["annotations"] = mark_injected(metadata.get("annotations") or {}, configuration)

    if ref is not None:
        pod_spec = ((updated.get("spec") or {}).get("template") or {}).get("spec") or {}
        for container in pod_spec.get("containers") or []:
            env_from = container.setdefault("envFrom", [])
            source = {"configMapRef": {"name": ref.name}}
            if not any((item.get("configMapRef") or {}).get("name") == ref.name for item in env_from):
                env_from.append(source)
    return updated


def _uid(workload: dict[str, Any]) -> str | None:
    return (workload.get("metadata") or {}).get("uid")
