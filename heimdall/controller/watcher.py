"""Deployment list/watch stream and the local indexer it keeps current.

The watcher lists Deployments in all namespaces, replaces the indexer
contents, marks it synced, and then watches from the list's
resourceVersion.  Every change is translated into one of the tagged
variants (``WorkloadCreated``, ``WorkloadUpdated``, ``WorkloadDeleted``)
and passed to the handler.

Recovery: an expired resourceVersion (HTTP 410) triggers an immediate
relist; any other failure reconnects after an exponential back-off capped at
``_MAX_BACKOFF_SECONDS``.  A relist diffs against the indexer so deletions
missed while disconnected are still reported.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import aiohttp
from kubernetes_asyncio import watch
from kubernetes_asyncio.client.exceptions import ApiException

from heimdall.errors import TransientInfraError
from heimdall.models.workload import (
    WorkloadCreated,
    WorkloadDeleted,
    WorkloadEvent,
    WorkloadKey,
    WorkloadUpdated,
)
from heimdall.observability.logging import get_logger

_log = get_logger("controller.watcher")

_INITIAL_BACKOFF_SECONDS = 1.0
_MAX_BACKOFF_SECONDS = 30.0
_WATCH_TIMEOUT_SECONDS = 300


class IndexerNotSynced(TransientInfraError):
    """The indexer was read before the initial list completed."""


class WorkloadIndexer:
    """In-memory store of the last observed state of every Deployment."""

    def __init__(self) -> None:
        self._store: dict[WorkloadKey, dict[str, Any]] = {}
        self._synced = asyncio.Event()

    @property
    def has_synced(self) -> bool:
        return self._synced.is_set()

    async def wait_synced(self) -> None:
        await self._synced.wait()

    def get_by_key(self, key: WorkloadKey) -> dict[str, Any] | None:
        """Return the stored workload, or None when it no longer exists."""
        if not self._synced.is_set():
            raise IndexerNotSynced(f"indexer not synced; cannot look up {key}")
        return self._store.get(key)

    def keys(self) -> list[WorkloadKey]:
        return list(self._store)

    def update(self, workload: dict[str, Any]) -> dict[str, Any] | None:
        """Store *workload*; return the previous version, if any."""
        key = WorkloadKey.of(workload)
        old = self._store.get(key)
        self._store[key] = workload
        return old

    def delete(self, workload: dict[str, Any]) -> dict[str, Any] | None:
        return self._store.pop(WorkloadKey.of(workload), None)

    def replace(self, workloads: list[dict[str, Any]]) -> list[WorkloadEvent]:
        """Replace the whole store after a (re)list and return the diff."""
        events: list[WorkloadEvent] = []
        fresh = {WorkloadKey.of(w): w for w in workloads}
        for key, old in self._store.items():
            if key not in fresh:
                events.append(WorkloadDeleted(workload=old))
        for key, new in fresh.items():
            old = self._store.get(key)
            if old is None:
                events.append(WorkloadCreated(workload=new))
            elif _resource_version(old) != _resource_version(new):
                events.append(WorkloadUpdated(old=old, new=new))
        self._store = fresh
        self._synced.set()
        return events


class WorkloadWatcher:
    """Feeds Deployment changes into *handler*.

    Args:
        apps_v1: ``kubernetes_asyncio`` AppsV1Api (or compatible fake).
        indexer: Store kept in sync with the cluster.
        handler: Called synchronously with each tagged event.
        watch_factory: Creates a ``kubernetes_asyncio.watch.Watch``.
    """

    def __init__(
        self,
        apps_v1: Any,
        indexer: WorkloadIndexer,
        handler: Callable[[WorkloadEvent], None],
        watch_factory: Callable[[], Any] = watch.Watch,
    ) -> None:
        self._apps_v1 = apps_v1
        self._indexer = indexer
        self._handler = handler
        self._watch_factory = watch_factory
        self._task: asyncio.Task[None] | None = None
        self._resource_version = ""

    async def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name="workload-watcher")

    async def stop(self) -> None:
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        backoff = _INITIAL_BACKOFF_SECONDS
        relist = True
        while True:
            try:
                if relist:
                    await self.list_once()
                    backoff = _INITIAL_BACKOFF_SECONDS
                relist = await self.watch_once()
            except ApiException as exc:
                if exc.status == 410:
                    _log.info("watch resource version expired; relisting")
                    relist = True
                    continue
                _log.warning("watch failed; reconnecting", status=exc.status, reason=exc.reason, backoff=backoff)
                relist = True
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _MAX_BACKOFF_SECONDS)
            except (aiohttp.ClientError, OSError, TimeoutError, ValueError) as exc:
                _log.warning("watch connection lost; reconnecting", error=str(exc), backoff=backoff)
                relist = True
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _MAX_BACKOFF_SECONDS)
            except Exception:
                _log.exception("unexpected watch failure; relisting", backoff=backoff)
                relist = True
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _MAX_BACKOFF_SECONDS)

    async def list_once(self) -> None:
        """List all Deployments and reconcile the indexer against them."""
        result = _to_dict(self._apps_v1, await self._apps_v1.list_deployment_for_all_namespaces())
        items = result.get("items") or []
        self._resource_version = str((result.get("metadata") or {}).get("resourceVersion", ""))
        events = self._indexer.replace(items)
        _log.info("deployments listed", count=len(items), changes=len(events))
        for event in events:
            self._handler(event)

    async def watch_once(self) -> bool:
        """Consume one watch connection.  Returns True when a relist is needed."""
        w = self._watch_factory()
        async with w.stream(
            self._apps_v1.list_deployment_for_all_namespaces,
            resource_version=self._resource_version,
            timeout_seconds=_WATCH_TIMEOUT_SECONDS,
            allow_watch_bookmarks=True,
        ) as stream:
            async for event in stream:
                if self._handle_watch_event(event):
                    return True
        return False

    def _handle_watch_event(self, event: dict[str, Any]) -> bool:
        event_type = event.get("type", "")
        raw = event.get("raw_object") or {}

        if event_type == "ERROR":
            code = raw.get("code") if isinstance(raw, dict) else None
            _log.info("watch error event", code=code, message=(raw or {}).get("message", ""))
            return True

        version = str((raw.get("metadata") or {}).get("resourceVersion", ""))
        if version:
            self._resource_version = version
        if event_type == "BOOKMARK":
            return False

        if event_type in ("ADDED", "MODIFIED"):
            old = self._indexer.update(raw)
            if old is None:
                self._handler(WorkloadCreated(workload=raw))
            else:
                self._handler(WorkloadUpdated(old=old, new=raw))
        elif event_type == "DELETED":
            self._indexer.delete(raw)
            self._handler(WorkloadDeleted(workload=raw))
        return False


def _resource_version(workload: dict[str, Any]) -> str:
    return str((workload.get("metadata") or {}).get("resourceVersion", ""))


def _to_dict(api: Any, obj: Any) -> dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    return api.api_client.sanitize_for_serialization(obj)
