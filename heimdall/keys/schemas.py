"""Request and response bodies of the key service."""

from __future__ import annotations

from pydantic import BaseModel, Field

# RFC 1123 label, as Kubernetes requires for namespace names.
_NAMESPACE_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"


class NamespaceRequest(BaseModel):
    namespace: str = Field(min_length=1, max_length=63, pattern=_NAMESPACE_PATTERN)


class KeyResponse(BaseModel):
    key: str


class ErrorResponse(BaseModel):
    """Error envelope.  ``error`` is a stable machine-readable code."""

    error: str
    detail: str


KEY_NOT_FOUND = "KEY_NOT_FOUND"
INVALID_NAMESPACE = "INVALID_NAMESPACE"
BACKEND_UNAVAILABLE = "BACKEND_UNAVAILABLE"
INTERNAL_ERROR = "INTERNAL_ERROR"
