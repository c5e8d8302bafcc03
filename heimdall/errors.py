"""Error taxonomy for Heimdall.

Every failure raised by the core belongs to exactly one category, and the
category alone decides what the injection controller does with it:

    TransientInfraError  -- cluster API, key service or repository unreachable.
                            Retried with back-off, then dropped.
    DataFormatError      -- malformed document or missing path.  Not retried:
                            the same input fails the same way.
    CryptoError          -- missing key pair or undecryptable value.  Not
                            retried, and never says which check failed.
    StateConflictError   -- the workload changed underneath us.  Retried; a
                            fresh read usually resolves it.
"""

from __future__ import annotations

import aiohttp

# Raised by the kubernetes_asyncio transport below the ApiException layer.
TRANSPORT_ERRORS: tuple[type[Exception], ...] = (aiohttp.ClientError, OSError, TimeoutError)


class HeimdallError(Exception):
    """Base class for all Heimdall errors."""

    retryable: bool = False
    category: str = "internal"


class TransientInfraError(HeimdallError):
    retryable = True
    category = "transient_infra"


class DataFormatError(HeimdallError):
    retryable = False
    category = "data_format"


class CryptoError(HeimdallError):
    retryable = False
    category = "crypto"


class StateConflictError(HeimdallError):
    retryable = True
    category = "state_conflict"


# ---------------------------------------------------------------------------
# Crypto
# ---------------------------------------------------------------------------


class KeyGenFailure(CryptoError):
    """Key pair generation failed."""


class EncryptFailure(CryptoError):
    """The public key could not be parsed or the plaintext is too long."""


class DecryptFailure(CryptoError):
    """Ciphertext could not be decrypted.

    The message is deliberately the same for a wrong key, a corrupt
    ciphertext and a padding failure.
    """

    def __init__(self, message: str = "value could not be decrypted") -> None:
        super().__init__(message)


class KeyNotFound(CryptoError):
    """No key pair exists for the namespace."""

    def __init__(self, namespace: str) -> None:
        super().__init__(f"no key pair exists for namespace '{namespace}'")
        self.namespace = namespace


# ---------------------------------------------------------------------------
# Transient infrastructure
# ---------------------------------------------------------------------------


class SourceUnreachable(TransientInfraError):
    """The configuration repository could not be fetched."""


class KeyServiceUnavailable(TransientInfraError):
    """The key service could not be reached or failed internally."""


class ClusterUnavailable(TransientInfraError):
    """A Kubernetes API call failed for a reason other than a conflict."""


# ---------------------------------------------------------------------------
# Data format
# ---------------------------------------------------------------------------


class PathNotFound(DataFormatError):
    """The configuration path does not exist in the repository."""


class DocumentMalformed(DataFormatError):
    """The configuration document could not be parsed or validated."""


# ---------------------------------------------------------------------------
# State conflict
# ---------------------------------------------------------------------------


class WorkloadConflict(StateConflictError):
    """The workload was modified concurrently (HTTP 409 on update)."""
