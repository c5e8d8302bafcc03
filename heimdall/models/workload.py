"""Workload annotations, queue keys and watch events."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

ANNOTATION_REPOSITORY = "heimdall-repository"
ANNOTATION_PATH = "heimdall-path"
ANNOTATION_INJECTED = "heimdall-injected"
ANNOTATION_NAME = "heimdall-name"
ANNOTATION_CONFIG_VERSION = "heimdall-config-version"


def annotations_of(workload: dict[str, Any]) -> dict[str, str]:
    """Return the annotations of a raw workload object (never None)."""
    return (workload.get("metadata") or {}).get("annotations") or {}


def materialized_name(config_name: str, config_version: str) -> str:
    return f"heimdall-{config_name}-{config_version}"


# ---------------------------------------------------------------------------
# Queue keys
#
# Workload keys and cleanup keys live in the same work queue but are distinct
# types, so a Deployment and a ConfigMap with the same namespace/name can
# never be confused.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkloadKey:
    """Identifies a Deployment awaiting reconciliation."""

    namespace: str
    name: str

    @classmethod
    def of(cls, workload: dict[str, Any]) -> WorkloadKey:
        meta = workload.get("metadata") or {}
        return cls(namespace=str(meta.get("namespace", "")), name=str(meta.get("name", "")))

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class CleanupKey:
    """Identifies a materialized ConfigMap that must be deleted."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"configmap:{self.namespace}/{self.name}"


QueueKey = WorkloadKey | CleanupKey


@dataclass(frozen=True)
class ResourceRef:
    """Reference to a materialized ConfigMap."""

    namespace: str
    name: str


# ---------------------------------------------------------------------------
# Watch events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkloadCreated:
    workload: dict[str, Any]


@dataclass(frozen=True)
class WorkloadUpdated:
    old: dict[str, Any]
    new: dict[str, Any]


@dataclass(frozen=True)
class WorkloadDeleted:
    """Carries the last known state of the deleted workload."""

    workload: dict[str, Any]


WorkloadEvent = WorkloadCreated | WorkloadUpdated | WorkloadDeleted
