"""In-memory git transport.

Repositories are fetched into a dulwich ``MemoryRepo`` and the requested
file is read straight out of the object store, so no working tree or pack
ever touches the disk.  Everything here is blocking; callers run it in a
worker thread.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from dulwich.client import HTTPUnauthorized, get_transport_and_path
from dulwich.errors import GitProtocolError, NotGitRepository, NotTreeError
from dulwich.object_store import tree_lookup_path
from dulwich.objects import Blob
from dulwich.repo import MemoryRepo

from heimdall.errors import PathNotFound, SourceUnreachable
from heimdall.observability.logging import get_logger

_log = get_logger("source.git")


@dataclass(frozen=True)
class GitCredentials:
    """HTTP basic-auth credentials for private repositories."""

    username: str
    password: str

    def __repr__(self) -> str:
        return f"GitCredentials(username={self.username!r}, password=<redacted>)"


class GitFetcher:
    """Reads one file from the ``HEAD`` commit of a remote repository."""

    def read_file(self, url: str, path: str, credentials: GitCredentials | None = None) -> bytes:
        """Fetch *url* into memory and return the bytes of *path*.

        Raises:
            SourceUnreachable: the remote could not be fetched.
            PathNotFound: the repository has no ``HEAD`` or no file at *path*.
        """
        repo = MemoryRepo()
        kwargs: dict[str, Any] = {}
        if credentials is not None and url.startswith(("http://", "https://")):
            kwargs = {"username": credentials.username, "password": credentials.password}

        _log.info("fetching config from remote", url=url, authenticated=bool(kwargs))
        try:
            client, remote_path = get_transport_and_path(url, **kwargs)
            result = client.fetch(remote_path, repo)
        except HTTPUnauthorized as exc:
            raise SourceUnreachable(f"authentication failed for {url}") from exc
        except (GitProtocolError, NotGitRepository, OSError, ValueError) as exc:
            raise SourceUnreachable(f"could not fetch {url}: {exc}") from exc

        head = _resolve_head(result.refs, getattr(result, "symrefs", {}) or {})
        if head is None:
            raise PathNotFound(f"repository {url} has no HEAD")

        commit = repo[head]
        try:
            _mode, sha = tree_lookup_path(repo.__getitem__, commit.tree, path.strip("/").encode("utf-8"))
        except (KeyError, NotTreeError) as exc:
            raise PathNotFound(f"'{path}' not found in {url}") from exc

        obj = repo[sha]
        if not isinstance(obj, Blob):
            raise PathNotFound(f"'{path}' in {url} is not a file")
        return obj.data


def _resolve_head(refs: dict[bytes, bytes], symrefs: dict[bytes, bytes]) -> bytes | None:
    if refs.get(b"HEAD"):
        return refs[b"HEAD"]
    target = symrefs.get(b"HEAD")
    if target is not None:
        return refs.get(target)
    return None
