"""Configuration loading from environment variables."""

from __future__ import annotations

import os
import re

from heimdall.models.config import HeimdallConfig, InjectorConfig, KeysConfig, LogConfig


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"HEIMDALL_{key}", default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = _env(key, str(default).lower())
    return val.lower() in ("true", "1", "yes")


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _validate_git_credentials(value: str) -> str:
    if value and not re.match(r"^[^/\s]+/[^/\s]+$", value):
        raise ValueError(f"Invalid git credentials reference: {value}. Format as namespace/secretName")
    return value


def normalize_keys_address(value: str) -> str:
    if not re.match(r"^https?://", value):
        # A bare host:port, as the service address is usually written.
        value = f"http://{value}"
    return value.rstrip("/")


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def load_config() -> HeimdallConfig:
    """Load configuration from HEIMDALL_* environment variables."""
    return HeimdallConfig(
        kubeconfig=os.environ.get("KUBECONFIG", ""),
        keys=KeysConfig(
            address=normalize_keys_address(_env("KEYS_ADDRESS", "http://heimdall-keys:8080")),
            timeout_seconds=_env_int("KEYS_TIMEOUT", 10, min_val=1, max_val=60),
            host=_env("KEYS_HOST", "0.0.0.0"),
            port=_env_int("KEYS_PORT", 8080, min_val=1024, max_val=65535),
        ),
        injector=InjectorConfig(
            git_credentials=_validate_git_credentials(_env("GIT_CREDENTIALS", "")),
            configmap_cleanup=_env_bool("CONFIGMAP_CLEANUP", False),
            workers=_env_int("WORKERS", 1, min_val=1, max_val=16),
            lookup_retries=_env_int("LOOKUP_RETRIES", 5, min_val=0, max_val=20),
            pipeline_retries=_env_int("PIPELINE_RETRIES", 3, min_val=0, max_val=20),
            metrics_port=_env_int("METRICS_PORT", 0, min_val=0, max_val=65535),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
        ),
    )
