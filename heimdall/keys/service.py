"""FastAPI application factory for the key service.

Usage::

    from heimdall.keys.service import create_app

    app = create_app(store=KeyStore(core_v1))

Endpoints (all JSON):

    POST /v1/keys/public   {"namespace": "ns1"} -> {"key": "<PEM>"}
    POST /v1/keys/private  {"namespace": "ns1"} -> {"key": "<PEM>"}
    GET  /healthz
    GET  /metrics          Prometheus exposition

Errors use the ``{"error", "detail"}`` envelope.  ``KEY_NOT_FOUND`` (404) is
kept distinct from ``BACKEND_UNAVAILABLE`` (503) so that callers can tell "this
namespace never requested a public key" apart from a transport problem.
There is no authentication: callers are co-located trusted workloads.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from heimdall.errors import KeyNotFound, TransientInfraError
from heimdall.keys.schemas import (
    BACKEND_UNAVAILABLE,
    INTERNAL_ERROR,
    INVALID_NAMESPACE,
    KEY_NOT_FOUND,
    ErrorResponse,
    KeyResponse,
    NamespaceRequest,
)
from heimdall.observability.metrics import key_requests_total

_log = structlog.get_logger(component="keys.service")

router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/v1/keys/public", response_model=KeyResponse)
async def get_public_key(body: NamespaceRequest, request: Request) -> KeyResponse:
    """Return the namespace public key, creating the key pair on first use."""
    _log.info("public key requested", namespace=body.namespace)
    key = await request.app.state.store.get_public_key(body.namespace)
    key_requests_total.labels(kind="public", result="ok").inc()
    return KeyResponse(key=key)


@router.post("/v1/keys/private", response_model=KeyResponse)
async def get_private_key(body: NamespaceRequest, request: Request) -> KeyResponse:
    """Return the namespace private key.  Never creates a key pair."""
    _log.info("private key requested", namespace=body.namespace)
    key = await request.app.state.store.get_private_key(body.namespace)
    key_requests_total.labels(kind="private", result="ok").inc()
    return KeyResponse(key=key)


def _kind_of(request: Request) -> str:
    return "private" if request.url.path.endswith("/private") else "public"


def create_app(store: Any) -> FastAPI:
    """Create and configure the key service application.

    Args:
        store: KeyStore (or any object with async ``get_public_key`` and
            ``get_private_key``).

    Returns:
        Configured FastAPI application, ready to be served by uvicorn.
    """
    from heimdall import __version__

    app = FastAPI(
        title="Heimdall Keys",
        summary="Per-namespace key pairs for Heimdall",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )
    app.state.store = store
    app.include_router(router)
    app.mount("/metrics", make_asgi_app())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        _request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = exc.errors()
        first_msg = str(errors[0].get("msg", "")) if errors else "invalid request"
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error=INVALID_NAMESPACE, detail=first_msg).model_dump(),
        )

    @app.exception_handler(KeyNotFound)
    async def key_not_found_handler(request: Request, exc: KeyNotFound) -> JSONResponse:
        key_requests_total.labels(kind=_kind_of(request), result="not_found").inc()
        _log.warning("key pair not found", namespace=exc.namespace)
        return JSONResponse(
            status_code=404,
            content=ErrorResponse(error=KEY_NOT_FOUND, detail=str(exc)).model_dump(),
        )

    @app.exception_handler(TransientInfraError)
    async def backend_unavailable_handler(request: Request, exc: TransientInfraError) -> JSONResponse:
        key_requests_total.labels(kind=_kind_of(request), result="unavailable").inc()
        _log.error("key backend unavailable", path=str(request.url.path), error=str(exc))
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(error=BACKEND_UNAVAILABLE, detail=str(exc)).model_dump(),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all; never expose stack traces or key material."""
        key_requests_total.labels(kind=_kind_of(request), result="error").inc()
        _log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error_type=type(exc).__name__,
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error=INTERNAL_ERROR, detail="An unexpected error occurred.").model_dump(),
        )

    return app
