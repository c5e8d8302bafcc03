"""Kubernetes Event recorder.

Failures the controller gives up on must reach an operator, so besides the
error log every drop is recorded as a ``Warning`` Event on the Deployment,
visible with ``kubectl describe deployment``.  Recording is best effort: it
never raises, a failed create is logged and the controller carries on.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from heimdall.models.workload import WorkloadKey
from heimdall.observability.logging import get_logger

_log = get_logger("controller.recorder")

_COMPONENT = "heimdall-injector"
_MAX_MESSAGE = 1024


class EventRecorder:
    """Creates core/v1 Events that reference a Deployment."""

    def __init__(self, core_v1: Any, component: str = _COMPONENT) -> None:
        self._core_v1 = core_v1
        self._component = component

    async def normal(self, key: WorkloadKey, reason: str, message: str, uid: str | None = None) -> None:
        await self._record(key, "Normal", reason, message, uid)

    async def warning(self, key: WorkloadKey, reason: str, message: str, uid: str | None = None) -> None:
        await self._record(key, "Warning", reason, message, uid)

    async def _record(
        self,
        key: WorkloadKey,
        event_type: str,
        reason: str,
        message: str,
        uid: str | None,
    ) -> None:
        now = datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        involved: dict[str, str] = {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "namespace": key.namespace,
            "name": key.name,
        }
        if uid:
            involved["uid"] = uid
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {"generateName": f"{key.name}.", "namespace": key.namespace},
            "involvedObject": involved,
            "type": event_type,
            "reason": reason,
            "message": message[:_MAX_MESSAGE],
            "source": {"component": self._component},
            "reportingComponent": self._component,
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
        try:
            await self._core_v1.create_namespaced_event(key.namespace, body)
        except Exception as exc:  # noqa: BLE001
            _log.warning(
                "event_record_failed",
                workload=str(key),
                reason=reason,
                error=str(exc),
            )
