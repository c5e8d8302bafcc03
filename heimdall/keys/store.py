"""Per-namespace key pair storage backed by a Kubernetes Secret.

Each namespace owns at most one key pair, kept in the Secret ``heimdall``
in that namespace with the PEM blocks under ``publicKey`` and
``privateKey``.  The pair is created on the first public-key request and
never rotated.

Concurrent first-use requests converge through the API server rather than a
local lock: every caller that finds no Secret generates a pair and attempts
a create; exactly one create succeeds, the others get HTTP 409 and re-read
the winner's Secret.
"""

from __future__ import annotations

import asyncio
import base64
from typing import Any

from kubernetes_asyncio.client.exceptions import ApiException

from heimdall import codec
from heimdall.errors import TRANSPORT_ERRORS, ClusterUnavailable, KeyNotFound
from heimdall.observability.logging import get_logger

SECRET_NAME = "heimdall"
PUBLIC_KEY_FIELD = "publicKey"
PRIVATE_KEY_FIELD = "privateKey"

_log = get_logger("keys.store")


class KeyStore:
    """Acquire-or-create access to namespace key pairs.

    Args:
        core_v1: A ``kubernetes_asyncio`` CoreV1Api (or compatible fake).
        key_size: RSA modulus size for newly generated pairs.
    """

    def __init__(self, core_v1: Any, key_size: int = codec.KEY_SIZE) -> None:
        self._core_v1 = core_v1
        self._key_size = key_size

    async def get_public_key(self, namespace: str) -> str:
        """Return the namespace public key, creating the pair on first use."""
        secret = await self._read_secret(namespace)
        if secret is None:
            secret = await self._create_key_pair(namespace)
        return _secret_field(secret, PUBLIC_KEY_FIELD, namespace)

    async def get_private_key(self, namespace: str) -> str:
        """Return the namespace private key.

        Raises:
            KeyNotFound: no public key was ever requested for *namespace*.
        """
        secret = await self._read_secret(namespace)
        if secret is None:
            raise KeyNotFound(namespace)
        return _secret_field(secret, PRIVATE_KEY_FIELD, namespace)

    async def _read_secret(self, namespace: str) -> Any | None:
        try:
            return await self._core_v1.read_namespaced_secret(SECRET_NAME, namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise ClusterUnavailable(f"reading secret {namespace}/{SECRET_NAME} failed: {exc.reason}") from exc
        except TRANSPORT_ERRORS as exc:
            raise ClusterUnavailable(f"reading secret {namespace}/{SECRET_NAME} failed: {exc}") from exc

    async def _create_key_pair(self, namespace: str) -> Any:
        # Key generation is CPU bound; keep it off the event loop.
        pair = await asyncio.to_thread(codec.generate_key_pair, self._key_size)
        body = {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "Opaque",
            "metadata": {
                "name": SECRET_NAME,
                "namespace": namespace,
                "labels": {"app.kubernetes.io/managed-by": "heimdall"},
            },
            "stringData": {
                PUBLIC_KEY_FIELD: pair.public_key,
                PRIVATE_KEY_FIELD: pair.private_key,
            },
        }
        try:
            created = await self._core_v1.create_namespaced_secret(namespace, body)
            _log.info("key pair created", namespace=namespace)
            return created
        except ApiException as exc:
            if exc.status != 409:
                raise ClusterUnavailable(
                    f"creating secret {namespace}/{SECRET_NAME} failed: {exc.reason}"
                ) from exc
        except TRANSPORT_ERRORS as exc:
            raise ClusterUnavailable(f"creating secret {namespace}/{SECRET_NAME} failed: {exc}") from exc

        # Lost the create race: the winner's pair is authoritative.
        _log.info("key pair created concurrently; using existing", namespace=namespace)
        secret = await self._read_secret(namespace)
        if secret is None:
            raise ClusterUnavailable(f"secret {namespace}/{SECRET_NAME} vanished after create conflict")
        return secret


def _secret_field(secret: Any, field: str, namespace: str) -> str:
    """Decode one PEM field from a V1Secret (``data`` is base64)."""
    data = getattr(secret, "data", None) or {}
    encoded = data.get(field)
    if not encoded:
        raise ClusterUnavailable(f"secret {namespace}/{SECRET_NAME} has no '{field}' entry")
    return base64.b64decode(encoded).decode("ascii")
