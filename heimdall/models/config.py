"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class KeysConfig:
    """Key service configuration (server bind and client address)."""

    address: str = "http://heimdall-keys:8080"
    timeout_seconds: int = 10
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class InjectorConfig:
    """Injection controller configuration."""

    git_credentials: str = ""
    configmap_cleanup: bool = False
    workers: int = 1
    lookup_retries: int = 5
    pipeline_retries: int = 3
    metrics_port: int = 0

    @property
    def git_credentials_ref(self) -> tuple[str, str] | None:
        """Return ``(namespace, secret_name)`` or None when anonymous."""
        if not self.git_credentials:
            return None
        namespace, name = self.git_credentials.split("/")
        return namespace, name


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass
class HeimdallConfig:
    """Top-level Heimdall configuration."""

    kubeconfig: str = ""
    keys: KeysConfig = field(default_factory=KeysConfig)
    injector: InjectorConfig = field(default_factory=InjectorConfig)
    log: LogConfig = field(default_factory=LogConfig)
