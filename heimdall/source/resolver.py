"""Configuration source resolver.

``resolve(source_reference, path, credentials)`` fetches the repository,
reads *path* and parses it into a :class:`Configuration`.  It never retries;
retry policy belongs to the controller.
"""

from __future__ import annotations

import asyncio
import base64
from typing import Any, Protocol

import yaml
from kubernetes_asyncio.client.exceptions import ApiException

from heimdall.errors import TRANSPORT_ERRORS, ClusterUnavailable, DocumentMalformed, SourceUnreachable
from heimdall.models.configuration import Configuration
from heimdall.source.git import GitCredentials, GitFetcher


class Fetcher(Protocol):
    def read_file(self, url: str, path: str, credentials: GitCredentials | None = None) -> bytes: ...


def parse_configuration(content: bytes | str) -> Configuration:
    """Parse a YAML configuration document.

    Raises:
        DocumentMalformed: invalid YAML or schema violation.
    """
    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise DocumentMalformed(f"configuration is not valid YAML: {exc}") from exc
    return Configuration.from_dict(raw)


class ConfigurationResolver:
    """Resolves a repository reference and path into a Configuration."""

    def __init__(self, fetcher: Fetcher | None = None) -> None:
        self._fetcher = fetcher or GitFetcher()

    async def resolve(
        self,
        source_reference: str,
        path: str,
        credentials: GitCredentials | None = None,
    ) -> Configuration:
        content = await asyncio.to_thread(self._fetcher.read_file, source_reference, path, credentials)
        return parse_configuration(content)


async def load_git_credentials(core_v1: Any, namespace: str, name: str) -> GitCredentials:
    """Read ``username``/``password`` from the Secret *namespace*/*name*."""
    try:
        secret = await core_v1.read_namespaced_secret(name, namespace)
    except ApiException as exc:
        if exc.status == 404:
            raise SourceUnreachable(f"git credentials secret {namespace}/{name} not found") from exc
        raise ClusterUnavailable(f"reading git credentials {namespace}/{name} failed: {exc.reason}") from exc
    except TRANSPORT_ERRORS as exc:
        raise ClusterUnavailable(f"reading git credentials {namespace}/{name} failed: {exc}") from exc

    data = getattr(secret, "data", None) or {}
    return GitCredentials(
        username=_decode(data.get("username")),
        password=_decode(data.get("password")),
    )


def _decode(value: str | None) -> str:
    return base64.b64decode(value).decode("utf-8") if value else ""
