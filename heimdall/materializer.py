"""Configuration materializer.

Turns a Configuration into the ConfigMap ``heimdall-<name>-<version>`` in the
configuration's namespace.  Plain entities are copied, encrypted entities are
decrypted with the namespace private key.  Every value is decrypted before
the first write, so a failing entity aborts the whole materialization and
no ConfigMap ever holds a partial set of values.

The version is part of the name: a new ``configVersion`` yields a new
ConfigMap, while re-materializing the same version replaces the data of the
existing one wholesale.
"""

from __future__ import annotations

from typing import Any

from kubernetes_asyncio.client.exceptions import ApiException

from heimdall import codec
from heimdall.errors import TRANSPORT_ERRORS, ClusterUnavailable, DecryptFailure, StateConflictError
from heimdall.models.configuration import Configuration
from heimdall.models.workload import ResourceRef
from heimdall.observability.logging import get_logger
from heimdall.observability.metrics import materializations_total

_log = get_logger("materializer")

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
CONFIG_NAME_LABEL = "heimdall.io/config-name"


class Materializer:
    """Creates or updates materialized ConfigMaps.

    Args:
        core_v1: ``kubernetes_asyncio`` CoreV1Api (or compatible fake).
        keys_client: Object with an async ``get_private_key(namespace)``.
    """

    def __init__(self, core_v1: Any, keys_client: Any) -> None:
        self._core_v1 = core_v1
        self._keys = keys_client

    async def build_data(self, configuration: Configuration) -> dict[str, str]:
        """Return the plaintext data mapping for *configuration*.

        Raises:
            KeyNotFound, KeyServiceUnavailable: from the key service.
            DecryptFailure: an encrypted value could not be decrypted.
        """
        namespace = configuration.metadata.namespace
        private_key: str | None = None
        data: dict[str, str] = {}
        for entity in configuration.entities:
            if not entity.encrypted:
                data[entity.name] = entity.value
                continue
            if private_key is None:
                private_key = await self._keys.get_private_key(namespace)
            try:
                data[entity.name] = codec.decrypt(private_key, entity.value)
            except DecryptFailure:
                raise DecryptFailure(f"entity '{entity.name}' could not be decrypted") from None
        return data

    async def materialize(self, configuration: Configuration) -> ResourceRef | None:
        """Create or update the ConfigMap for *configuration*.

        Returns None, and writes nothing, when the document has no entities.
        """
        namespace = configuration.metadata.namespace
        name = configuration.resource_name
        if not configuration.entities:
            _log.info("configuration has no entities; nothing to materialize", namespace=namespace, name=name)
            return None

        data = await self.build_data(configuration)

        existing = await self._read(namespace, name)
        if existing is None:
            created = await self._create(namespace, name, configuration, data)
            if created:
                return ResourceRef(namespace=namespace, name=name)
            # Created concurrently since our read; update it instead.
            existing = await self._read(namespace, name)
            if existing is None:
                raise StateConflictError(f"configmap {namespace}/{name} changed during create")

        await self._replace(namespace, name, existing, configuration, data)
        return ResourceRef(namespace=namespace, name=name)

    async def delete(self, namespace: str, name: str) -> bool:
        """Delete a materialized ConfigMap.  Returns False if it was already gone."""
        try:
            await self._core_v1.delete_namespaced_config_map(name, namespace)
        except ApiException as exc:
            if exc.status == 404:
                _log.info("configmap already deleted", namespace=namespace, name=name)
                return False
            raise ClusterUnavailable(f"deleting configmap {namespace}/{name} failed: {exc.reason}") from exc
        except TRANSPORT_ERRORS as exc:
            raise ClusterUnavailable(f"deleting configmap {namespace}/{name} failed: {exc}") from exc
        materializations_total.labels(action="delete").inc()
        _log.info("configmap deleted", namespace=namespace, name=name)
        return True

    async def _read(self, namespace: str, name: str) -> Any | None:
        try:
            return await self._core_v1.read_namespaced_config_map(name, namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise ClusterUnavailable(f"reading configmap {namespace}/{name} failed: {exc.reason}") from exc
        except TRANSPORT_ERRORS as exc:
            raise ClusterUnavailable(f"reading configmap {namespace}/{name} failed: {exc}") from exc

    async def _create(
        self,
        namespace: str,
        name: str,
        configuration: Configuration,
        data: dict[str, str],
    ) -> bool:
        body = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "labels": _labels(configuration),
            },
            "data": data,
        }
        try:
            await self._core_v1.create_namespaced_config_map(namespace, body)
        except ApiException as exc:
            if exc.status == 409:
                return False
            raise ClusterUnavailable(f"creating configmap {namespace}/{name} failed: {exc.reason}") from exc
        except TRANSPORT_ERRORS as exc:
            raise ClusterUnavailable(f"creating configmap {namespace}/{name} failed: {exc}") from exc
        materializations_total.labels(action="create").inc()
        _log.info("configmap created", namespace=namespace, name=name, keys=len(data))
        return True

    async def _replace(
        self,
        namespace: str,
        name: str,
        existing: Any,
        configuration: Configuration,
        data: dict[str, str],
    ) -> None:
        meta = existing.metadata
        labels = dict(getattr(meta, "labels", None) or {})
        labels.update(_labels(configuration))
        body = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "labels": labels,
                "annotations": dict(getattr(meta, "annotations", None) or {}),
                "resourceVersion": meta.resource_version,
            },
            "data": data,
        }
        try:
            await self._core_v1.replace_namespaced_config_map(name, namespace, body)
        except ApiException as exc:
            if exc.status == 409:
                raise StateConflictError(f"configmap {namespace}/{name} was modified concurrently") from exc
            raise ClusterUnavailable(f"updating configmap {namespace}/{name} failed: {exc.reason}") from exc
        except TRANSPORT_ERRORS as exc:
            raise ClusterUnavailable(f"updating configmap {namespace}/{name} failed: {exc}") from exc
        materializations_total.labels(action="update").inc()
        _log.info("configmap updated", namespace=namespace, name=name, keys=len(data))


def _labels(configuration: Configuration) -> dict[str, str]:
    return {
        MANAGED_BY_LABEL: "heimdall",
        CONFIG_NAME_LABEL: configuration.metadata.name,
    }
