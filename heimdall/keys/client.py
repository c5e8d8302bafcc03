"""HTTP client for the key service."""

from __future__ import annotations

import httpx

from heimdall.errors import KeyNotFound, KeyServiceUnavailable
from heimdall.keys.schemas import KEY_NOT_FOUND
from heimdall.observability.logging import get_logger

_log = get_logger("keys.client")


class KeysClient:
    """Async client for ``/v1/keys/*``.

    Args:
        base_url: Key service address, e.g. ``http://heimdall-keys:8080``.
        timeout:  Per-request timeout in seconds.
        transport: Optional httpx transport (tests pass an ASGITransport).

    ``KEY_NOT_FOUND`` responses raise :class:`KeyNotFound`; every other
    failure (connection, timeout, non-2xx) raises
    :class:`KeyServiceUnavailable`.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self._base_url, timeout=timeout, transport=transport)

    async def get_public_key(self, namespace: str) -> str:
        return await self._request_key("/v1/keys/public", namespace)

    async def get_private_key(self, namespace: str) -> str:
        return await self._request_key("/v1/keys/private", namespace)

    async def close(self) -> None:
        await self._client.aclose()

    async def stop(self) -> None:
        await self.close()

    async def __aenter__(self) -> KeysClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _request_key(self, path: str, namespace: str) -> str:
        try:
            response = await self._client.post(path, json={"namespace": namespace})
        except httpx.TimeoutException as exc:
            raise KeyServiceUnavailable(f"key service timed out ({self._base_url}{path})") from exc
        except httpx.HTTPError as exc:
            raise KeyServiceUnavailable(f"key service unreachable ({self._base_url}{path}): {exc}") from exc

        if response.is_success:
            try:
                return str(response.json()["key"])
            except (ValueError, KeyError, TypeError) as exc:
                raise KeyServiceUnavailable("key service returned a malformed body") from exc

        error_code = _error_code(response)
        if response.status_code == 404 and error_code == KEY_NOT_FOUND:
            raise KeyNotFound(namespace)

        _log.warning(
            "key service error response",
            path=path,
            namespace=namespace,
            status_code=response.status_code,
            error=error_code,
        )
        raise KeyServiceUnavailable(f"key service answered {response.status_code} ({error_code or 'no code'})")


def _error_code(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    if isinstance(body, dict):
        return str(body.get("error", ""))
    return ""
