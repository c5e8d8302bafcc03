"""Shared fixtures for Heimdall integration tests.

In-memory stand-ins for the CoreV1 and AppsV1 APIs let the key store,
materializer and controller run their full pipelines without a cluster.
The fakes honour the API-server behaviour the code relies on: 404 for
missing objects, 409 on create of an existing name and on replace with a
stale resourceVersion.
"""

from __future__ import annotations

import asyncio
import base64
import copy
from collections.abc import Callable
from typing import Any

import httpx
import pytest
from kubernetes_asyncio import client as k8s_client
from kubernetes_asyncio.client.exceptions import ApiException

from heimdall.errors import PathNotFound
from heimdall.keys import KeysClient, KeyStore, create_app

# ---------------------------------------------------------------------------
# Fake Kubernetes APIs
# ---------------------------------------------------------------------------


class FakeCoreV1:
    """Secrets, ConfigMaps and Events kept in dictionaries."""

    def __init__(self) -> None:
        self.secrets: dict[tuple[str, str], k8s_client.V1Secret] = {}
        self.config_maps: dict[tuple[str, str], k8s_client.V1ConfigMap] = {}
        self.events: list[dict[str, Any]] = []
        self.secret_creates = 0
        self.config_map_writes = 0
        # method name -> exceptions raised by the next calls, in order
        self.failures: dict[str, list[Exception]] = {}
        self._version = 0

    def _maybe_fail(self, method: str) -> None:
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    # Secrets ------------------------------------------------------------

    def put_secret(self, namespace: str, name: str, data: dict[str, str]) -> None:
        encoded = {k: base64.b64encode(v.encode()).decode() for k, v in data.items()}
        self.secrets[(namespace, name)] = k8s_client.V1Secret(
            metadata=k8s_client.V1ObjectMeta(name=name, namespace=namespace, resource_version=self._next_version()),
            data=encoded,
        )

    async def read_namespaced_secret(self, name: str, namespace: str) -> k8s_client.V1Secret:
        await asyncio.sleep(0)
        self._maybe_fail("read_namespaced_secret")
        secret = self.secrets.get((namespace, name))
        if secret is None:
            raise ApiException(status=404, reason="Not Found")
        return secret

    async def create_namespaced_secret(self, namespace: str, body: dict[str, Any]) -> k8s_client.V1Secret:
        await asyncio.sleep(0)
        self._maybe_fail("create_namespaced_secret")
        name = body["metadata"]["name"]
        if (namespace, name) in self.secrets:
            raise ApiException(status=409, reason="AlreadyExists")
        self.secret_creates += 1
        self.put_secret(namespace, name, body.get("stringData") or {})
        return self.secrets[(namespace, name)]

    # ConfigMaps ---------------------------------------------------------

    async def read_namespaced_config_map(self, name: str, namespace: str) -> k8s_client.V1ConfigMap:
        self._maybe_fail("read_namespaced_config_map")
        config_map = self.config_maps.get((namespace, name))
        if config_map is None:
            raise ApiException(status=404, reason="Not Found")
        return config_map

    async def create_namespaced_config_map(self, namespace: str, body: dict[str, Any]) -> k8s_client.V1ConfigMap:
        self._maybe_fail("create_namespaced_config_map")
        meta = body["metadata"]
        if (namespace, meta["name"]) in self.config_maps:
            raise ApiException(status=409, reason="AlreadyExists")
        self.config_map_writes += 1
        self.config_maps[(namespace, meta["name"])] = k8s_client.V1ConfigMap(
            metadata=k8s_client.V1ObjectMeta(
                name=meta["name"],
                namespace=namespace,
                labels=meta.get("labels"),
                resource_version=self._next_version(),
            ),
            data=dict(body.get("data") or {}),
        )
        return self.config_maps[(namespace, meta["name"])]

    async def replace_namespaced_config_map(
        self, name: str, namespace: str, body: dict[str, Any]
    ) -> k8s_client.V1ConfigMap:
        self._maybe_fail("replace_namespaced_config_map")
        current = self.config_maps.get((namespace, name))
        if current is None:
            raise ApiException(status=404, reason="Not Found")
        if body["metadata"].get("resourceVersion") != current.metadata.resource_version:
            raise ApiException(status=409, reason="Conflict")
        self.config_map_writes += 1
        current.metadata.labels = body["metadata"].get("labels")
        current.metadata.resource_version = self._next_version()
        current.data = dict(body.get("data") or {})
        return current

    async def delete_namespaced_config_map(self, name: str, namespace: str) -> None:
        self._maybe_fail("delete_namespaced_config_map")
        if self.config_maps.pop((namespace, name), None) is None:
            raise ApiException(status=404, reason="Not Found")

    # Events -------------------------------------------------------------

    async def create_namespaced_event(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        self.events.append(body)
        return body

    def event_reasons(self) -> list[str]:
        return [e["reason"] for e in self.events]


class FakeAppsV1:
    """Deployments as raw dicts, with optional change listeners."""

    def __init__(self) -> None:
        self.deployments: dict[tuple[str, str], dict[str, Any]] = {}
        self.replace_calls = 0
        self.failures: dict[str, list[Exception]] = {}
        self.listeners: list[Callable[[dict[str, Any], dict[str, Any]], None]] = []
        self._version = 100

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def put(self, deployment: dict[str, Any]) -> dict[str, Any]:
        meta = deployment["metadata"]
        meta["resourceVersion"] = self._next_version()
        self.deployments[(meta["namespace"], meta["name"])] = deployment
        return copy.deepcopy(deployment)

    def get(self, namespace: str, name: str) -> dict[str, Any]:
        return self.deployments[(namespace, name)]

    async def list_deployment_for_all_namespaces(self, **_kwargs: Any) -> dict[str, Any]:
        pending = self.failures.get("list_deployment_for_all_namespaces")
        if pending:
            raise pending.pop(0)
        return {
            "metadata": {"resourceVersion": str(self._version)},
            "items": [copy.deepcopy(d) for d in self.deployments.values()],
        }

    async def replace_namespaced_deployment(self, name: str, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        pending = self.failures.get("replace_namespaced_deployment")
        if pending:
            raise pending.pop(0)
        current = self.deployments.get((namespace, name))
        if current is None:
            raise ApiException(status=404, reason="Not Found")
        if body["metadata"].get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        self.replace_calls += 1
        old = copy.deepcopy(current)
        new = self.put(copy.deepcopy(body))
        for listener in self.listeners:
            listener(old, copy.deepcopy(new))
        return new


# ---------------------------------------------------------------------------
# Fake configuration source
# ---------------------------------------------------------------------------


class FakeFetcher:
    """Serves documents keyed by (url, path); records every call."""

    def __init__(self) -> None:
        self.files: dict[tuple[str, str], bytes] = {}
        self.errors: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple[str, str, Any]] = []

    def add(self, url: str, path: str, content: str) -> None:
        self.files[(url, path)] = content.encode("utf-8")

    def read_file(self, url: str, path: str, credentials: Any = None) -> bytes:
        self.calls.append((url, path, credentials))
        if (url, path) in self.errors:
            raise self.errors[(url, path)]
        try:
            return self.files[(url, path)]
        except KeyError:
            raise PathNotFound(f"'{path}' not found in {url}") from None


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

REPO = "https://git.example/config.git"


def make_deployment(
    name: str = "app",
    namespace: str = "ns1",
    annotations: dict[str, str] | None = None,
    containers: int = 1,
) -> dict[str, Any]:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": f"uid-{namespace}-{name}",
            "annotations": dict(annotations or {}),
        },
        "spec": {
            "template": {
                "spec": {
                    "containers": [{"name": f"c{i}", "image": "busybox"} for i in range(containers)],
                }
            }
        },
    }


def make_document(
    name: str = "app",
    namespace: str = "ns1",
    version: str = "v1",
    entities: list[tuple[str, str, bool]] | None = None,
) -> str:
    lines = [
        f"configVersion: {version}",
        "metadata:",
        "  author: jane",
        f"  name: {name}",
        f"  namespace: {namespace}",
        "configuration:",
    ]
    for entity_name, value, encrypted in entities or []:
        lines += [
            f"  - name: {entity_name}",
            f"    value: '{value}'",
            f"    encrypted: {'true' if encrypted else 'false'}",
        ]
    if not entities:
        lines[-1] = "configuration: []"
    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def core_v1() -> FakeCoreV1:
    return FakeCoreV1()


@pytest.fixture
def apps_v1() -> FakeAppsV1:
    return FakeAppsV1()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def key_store(core_v1: FakeCoreV1) -> KeyStore:
    return KeyStore(core_v1)


@pytest.fixture
async def keys_client(key_store: KeyStore):  # type: ignore[no-untyped-def]
    """KeysClient talking to the real key service app in-process."""
    transport = httpx.ASGITransport(app=create_app(key_store))
    client = KeysClient("http://heimdall-keys", transport=transport)
    yield client
    await client.close()
