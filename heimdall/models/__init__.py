"""Core data structures for Heimdall."""

from heimdall.models.config import HeimdallConfig, InjectorConfig, KeysConfig, LogConfig
from heimdall.models.configuration import Configuration, ConfigurationEntity, Metadata
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
)

__all__ = [
    "ANNOTATION_CONFIG_VERSION",
    "ANNOTATION_INJECTED",
    "ANNOTATION_NAME",
    "ANNOTATION_PATH",
    "ANNOTATION_REPOSITORY",
    "CleanupKey",
    "Configuration",
    "ConfigurationEntity",
    "HeimdallConfig",
    "InjectorConfig",
    "KeysConfig",
    "LogConfig",
    "Metadata",
    "QueueKey",
    "ResourceRef",
    "WorkloadCreated",
    "WorkloadDeleted",
    "WorkloadEvent",
    "WorkloadKey",
    "WorkloadUpdated",
]
