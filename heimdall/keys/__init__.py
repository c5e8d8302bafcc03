"""Key service: per-namespace key pairs.

Exports:
    KeyStore    -- acquire-or-create access to the ``heimdall`` Secret.
    KeysClient  -- httpx client used by the injector and the CLI.
    create_app  -- FastAPI factory serving the store over HTTP.
"""

from heimdall.keys.client import KeysClient
from heimdall.keys.service import create_app
from heimdall.keys.store import SECRET_NAME, KeyStore

__all__ = ["KeyStore", "KeysClient", "SECRET_NAME", "create_app"]
