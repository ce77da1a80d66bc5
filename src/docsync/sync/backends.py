"""
Remote object store backends -- where the sealed documents live.

Each backend stores opaque byte objects in one private per-user folder
and exposes a change feed over that folder. Backends never see
plaintext; the RemoteClient seals everything before it gets here.

Graph: Microsoft Graph drive app folder over HTTPS (OneDrive).
Folder: Plain shared directory with a change journal. For NAS, USB,
    or a folder some other tool already replicates.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional
from urllib.parse import quote

import requests

from ..auth import TokenProvider
from ..fileio import atomic_write_bytes, atomic_write_text
from .models import BackendType, SyncConfig

logger = logging.getLogger("docsync.sync.backends")

SIMPLE_UPLOAD_LIMIT = 4 * 1024 * 1024
UPLOAD_CHUNK_SIZE = 4 * 1024 * 1024
LIST_PAGE_SIZE = 200
FOLDER_FEED_PAGE_SIZE = 200


class RemoteError(Exception):
    """A remote call failed. ``status`` carries the HTTP status when known."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class AuthenticationError(RemoteError):
    """No access token is available, or the remote rejected it."""


class RemoteNotFound(RemoteError):
    """The object does not exist (or is gone)."""


class PreconditionFailed(RemoteError):
    """A conditional write lost the race: the remote etag moved."""


class DeltaTokenExpired(RemoteError):
    """The continuation token is no longer valid; a full listing is needed."""


@dataclass
class RemoteObject:
    """Object body plus its concurrency token."""

    data: bytes
    etag: Optional[str] = None


@dataclass
class FeedItem:
    """One change-feed entry. Some delete events carry no name."""

    name: Optional[str]
    deleted: bool = False
    etag: Optional[str] = None
    download_url: Optional[str] = None
    is_folder: bool = False


@dataclass
class FeedPage:
    """One page of the change feed.

    Exactly one of ``next_cursor`` (more pages follow) or ``delta_token``
    (feed drained; resume from here next time) is normally set.
    """

    items: list[FeedItem] = field(default_factory=list)
    next_cursor: Optional[str] = None
    delta_token: Optional[str] = None


def _check_name(name: str) -> None:
    if not name or "/" in name or "\\" in name or name in (".", ".."):
        raise ValueError(f"Invalid object name: {name!r}")


class RemoteBackend(ABC):
    """Abstract object store with a change feed."""

    @abstractmethod
    def put(self, name: str, data: bytes, etag: Optional[str] = None) -> Optional[str]:
        """Store an object.

        Args:
            name: Object name inside the documents folder.
            data: Object body.
            etag: If given, only write when the remote etag still matches.

        Returns:
            The new etag.

        Raises:
            PreconditionFailed: If ``etag`` no longer matches.
        """

    @abstractmethod
    def get(self, name: str) -> RemoteObject:
        """Read an object and its etag.

        Raises:
            RemoteNotFound: If the object does not exist.
        """

    def fetch(self, item: FeedItem) -> RemoteObject:
        """Read the object a feed item refers to."""
        if not item.name:
            raise RemoteNotFound("Feed item has no name")
        return self.get(item.name)

    @abstractmethod
    def delete(self, name: str) -> None:
        """Delete an object. A missing object is not an error."""

    @abstractmethod
    def changes(self, cursor: Optional[str] = None) -> FeedPage:
        """Read one page of the change feed.

        Args:
            cursor: A next-page cursor or delta token from an earlier page.
                None starts a fresh feed that enumerates every object.

        Raises:
            DeltaTokenExpired: If the cursor is no longer valid.
        """

    @abstractmethod
    def list_names(self) -> list[str]:
        """Names of all objects in the documents folder."""

    @abstractmethod
    def put_root(self, name: str, data: bytes) -> None:
        """Store an object beside (not inside) the documents folder."""

    @abstractmethod
    def get_root(self, name: str) -> Optional[bytes]:
        """Read an object beside the documents folder, or None."""

    @abstractmethod
    def available(self) -> bool:
        """Check if this backend is currently usable."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name."""


# ---------------------------------------------------------------------------
# Microsoft Graph
# ---------------------------------------------------------------------------


class GraphBackend(RemoteBackend):
    """OneDrive app folder through Microsoft Graph.

    Layout: ``/drive/special/approot/<app_folder>/<name>``. Root objects
    (settings) sit directly in ``approot``.
    """

    def __init__(
        self,
        config: SyncConfig,
        token_provider: TokenProvider,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.config = config
        self.token_provider = token_provider
        self.session = session or requests.Session()
        self._base = config.graph_base.rstrip("/")
        self._folder = config.app_folder
        self._timeout = config.request_timeout
        self._folder_ready = False

    @property
    def name(self) -> str:
        return "graph"

    def available(self) -> bool:
        return bool(self.token_provider.get_token())

    # -- request plumbing --------------------------------------------------

    def _auth_headers(self) -> dict[str, str]:
        token = self.token_provider.get_token()
        if not token:
            raise AuthenticationError("Not signed in: no access token available")
        return {"Authorization": f"Bearer {token}"}

    def _request(
        self,
        method: str,
        url: str,
        *,
        authenticated: bool = True,
        headers: Optional[dict] = None,
        **kwargs,
    ) -> requests.Response:
        all_headers = dict(headers or {})
        if authenticated:
            all_headers.update(self._auth_headers())
        try:
            resp = self.session.request(
                method, url, headers=all_headers, timeout=self._timeout, **kwargs,
            )
        except requests.RequestException as exc:
            raise RemoteError(f"{method} {url} failed: {exc}") from exc

        if resp.status_code == 401:
            raise AuthenticationError("Access token rejected", status=401)
        return resp

    @staticmethod
    def _raise_for(resp: requests.Response, what: str) -> None:
        status = resp.status_code
        if status < 400:
            return
        message = f"{what} failed ({status}): {resp.reason}"
        if status in (404, 410):
            raise RemoteNotFound(message, status=status)
        if status == 412:
            raise PreconditionFailed(message, status=status)
        raise RemoteError(message, status=status)

    def _item_url(self, name: str) -> str:
        _check_name(name)
        return f"{self._base}/me/drive/special/approot:/{self._folder}/{quote(name)}"

    def _root_url(self, name: str) -> str:
        _check_name(name)
        return f"{self._base}/me/drive/special/approot:/{quote(name)}"

    def _ensure_folder(self) -> None:
        """Create the documents folder on first write."""
        if self._folder_ready:
            return
        resp = self._request(
            "GET", f"{self._base}/me/drive/special/approot:/{self._folder}",
        )
        if resp.status_code == 404:
            create = self._request(
                "POST",
                f"{self._base}/me/drive/special/approot/children",
                headers={"Content-Type": "application/json"},
                json={
                    "name": self._folder,
                    "folder": {},
                    "@microsoft.graph.conflictBehavior": "fail",
                },
            )
            if create.status_code != 409:
                self._raise_for(create, "Create documents folder")
        else:
            self._raise_for(resp, "Check documents folder")
        self._folder_ready = True

    # -- objects -------------------------------------------------------------

    def put(self, name: str, data: bytes, etag: Optional[str] = None) -> Optional[str]:
        self._ensure_folder()
        if len(data) >= SIMPLE_UPLOAD_LIMIT:
            return self._upload_large(self._item_url(name), data, etag)

        headers = {"Content-Type": "application/json"}
        if etag:
            headers["If-Match"] = etag
        resp = self._request("PUT", f"{self._item_url(name)}:/content", headers=headers, data=data)
        self._raise_for(resp, f"Upload {name}")
        return resp.json().get("eTag")

    def _upload_large(self, item_url: str, data: bytes, etag: Optional[str]) -> Optional[str]:
        """Upload through a resumable session in 4 MiB chunks."""
        headers = {"Content-Type": "application/json"}
        if etag:
            headers["If-Match"] = etag
        session_resp = self._request(
            "POST",
            f"{item_url}:/createUploadSession",
            headers=headers,
            json={"item": {"@microsoft.graph.conflictBehavior": "replace"}},
        )
        self._raise_for(session_resp, "Create upload session")
        upload_url = session_resp.json()["uploadUrl"]

        total = len(data)
        offset = 0
        new_etag = None
        while offset < total:
            end = min(offset + UPLOAD_CHUNK_SIZE, total)
            chunk_resp = self._request(
                "PUT",
                upload_url,
                authenticated=False,
                headers={
                    "Content-Length": str(end - offset),
                    "Content-Range": f"bytes {offset}-{end - 1}/{total}",
                },
                data=data[offset:end],
            )
            self._raise_for(chunk_resp, f"Upload chunk at {offset}")
            if chunk_resp.status_code in (200, 201):
                new_etag = chunk_resp.json().get("eTag")
            offset = end
        return new_etag

    def get(self, name: str) -> RemoteObject:
        resp = self._request("GET", self._item_url(name))
        self._raise_for(resp, f"Read {name}")
        item = resp.json()
        download_url = item.get("@microsoft.graph.downloadUrl")
        if download_url:
            body = self._download(download_url, name)
        else:
            content = self._request("GET", f"{self._item_url(name)}:/content")
            self._raise_for(content, f"Download {name}")
            body = content.content
        return RemoteObject(data=body, etag=item.get("eTag"))

    def fetch(self, item: FeedItem) -> RemoteObject:
        if item.download_url:
            return RemoteObject(
                data=self._download(item.download_url, item.name or "item"),
                etag=item.etag,
            )
        return super().fetch(item)

    def _download(self, url: str, what: str) -> bytes:
        # Pre-authenticated short-lived URL; sending the bearer token is not allowed.
        resp = self._request("GET", url, authenticated=False)
        self._raise_for(resp, f"Download {what}")
        return resp.content

    def delete(self, name: str) -> None:
        resp = self._request("DELETE", self._item_url(name))
        if resp.status_code == 404:
            return
        self._raise_for(resp, f"Delete {name}")

    def changes(self, cursor: Optional[str] = None) -> FeedPage:
        url = cursor or f"{self._base}/me/drive/special/approot:/{self._folder}:/delta"
        resp = self._request("GET", url)
        if resp.status_code in (404, 410):
            raise DeltaTokenExpired(
                f"Delta cursor rejected ({resp.status_code})", status=resp.status_code,
            )
        self._raise_for(resp, "Delta query")
        data = resp.json()

        items = []
        for raw in data.get("value", []):
            items.append(
                FeedItem(
                    name=raw.get("name") or None,
                    deleted=bool(raw.get("deleted") or raw.get("@removed")),
                    etag=raw.get("eTag"),
                    download_url=raw.get("@microsoft.graph.downloadUrl"),
                    is_folder="folder" in raw,
                )
            )
        return FeedPage(
            items=items,
            next_cursor=data.get("@odata.nextLink"),
            delta_token=data.get("@odata.deltaLink"),
        )

    def list_names(self) -> list[str]:
        # Consumer OneDrive does not support $filter on /children.
        url: Optional[str] = (
            f"{self._base}/me/drive/special/approot:/{self._folder}:/children"
            f"?$select=name&$top={LIST_PAGE_SIZE}"
        )
        names: list[str] = []
        while url:
            resp = self._request("GET", url)
            if resp.status_code == 404:
                return []
            self._raise_for(resp, "List documents")
            data = resp.json()
            names.extend(item["name"] for item in data.get("value", []) if item.get("name"))
            url = data.get("@odata.nextLink")
        return names

    def put_root(self, name: str, data: bytes) -> None:
        resp = self._request(
            "PUT",
            f"{self._root_url(name)}:/content",
            headers={"Content-Type": "application/json"},
            data=data,
        )
        self._raise_for(resp, f"Upload {name}")

    def get_root(self, name: str) -> Optional[bytes]:
        resp = self._request("GET", f"{self._root_url(name)}:/content")
        if resp.status_code == 404:
            return None
        self._raise_for(resp, f"Download {name}")
        return resp.content


# ---------------------------------------------------------------------------
# Shared folder
# ---------------------------------------------------------------------------


class FolderBackend(RemoteBackend):
    """Shared filesystem folder with a JSON-lines change journal.

    Every write or delete appends ``{"seq", "name", "deleted"}`` to the
    journal. Tokens are ``seq:<n>``. ``compact()`` drops history and
    raises the floor; tokens below the floor are expired.

    Layout:
        <root>/
        ├── objects/<name>
        ├── journal.jsonl
        ├── state.json        # {"seq", "floor", "etags"}
        └── <root objects>    # settings.enc.json
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()
        self.objects = self.root / "objects"
        self.journal = self.root / "journal.jsonl"
        self.state_file = self.root / "state.json"
        self._lock_file = self.root / ".lock"
        self.objects.mkdir(parents=True, exist_ok=True)

    @property
    def name(self) -> str:
        return "folder"

    def available(self) -> bool:
        return self.root.exists()

    @contextmanager
    def _locked(self) -> Iterator[dict]:
        """Hold the cross-process lock and yield mutable state."""
        with open(self._lock_file, "a+") as lock:
            fcntl.flock(lock.fileno(), fcntl.LOCK_EX)
            try:
                yield self._load_state()
            finally:
                fcntl.flock(lock.fileno(), fcntl.LOCK_UN)

    def _load_state(self) -> dict:
        if self.state_file.exists():
            try:
                return json.loads(self.state_file.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise RemoteError(f"Folder state is corrupt: {exc}") from exc
        return {"seq": 0, "floor": 0, "etags": {}}

    def _save_state(self, state: dict) -> None:
        atomic_write_text(self.state_file, json.dumps(state, indent=2))

    def _append(self, state: dict, name: str, deleted: bool) -> int:
        state["seq"] += 1
        with open(self.journal, "a", encoding="utf-8") as fh:
            fh.write(json.dumps({"seq": state["seq"], "name": name, "deleted": deleted}) + "\n")
        return state["seq"]

    def put(self, name: str, data: bytes, etag: Optional[str] = None) -> Optional[str]:
        _check_name(name)
        with self._locked() as state:
            current = state["etags"].get(name)
            if etag is not None and current != etag:
                raise PreconditionFailed(
                    f"Etag mismatch for {name}: have {current}, expected {etag}", status=412,
                )
            atomic_write_bytes(self.objects / name, data)
            seq = self._append(state, name, deleted=False)
            new_etag = f"{seq}-{hashlib.sha256(data).hexdigest()[:12]}"
            state["etags"][name] = new_etag
            self._save_state(state)
        return new_etag

    def get(self, name: str) -> RemoteObject:
        _check_name(name)
        with self._locked() as state:
            etag = state["etags"].get(name)
            path = self.objects / name
            if etag is None or not path.exists():
                raise RemoteNotFound(f"{name} not found", status=404)
            return RemoteObject(data=path.read_bytes(), etag=etag)

    def delete(self, name: str) -> None:
        _check_name(name)
        with self._locked() as state:
            if name not in state["etags"]:
                return
            (self.objects / name).unlink(missing_ok=True)
            del state["etags"][name]
            self._append(state, name, deleted=True)
            self._save_state(state)

    def changes(self, cursor: Optional[str] = None) -> FeedPage:
        with self._locked() as state:
            if cursor is None:
                items = [
                    FeedItem(name=name, etag=etag)
                    for name, etag in sorted(state["etags"].items())
                ]
                return FeedPage(items=items, delta_token=f"seq:{state['seq']}")

            after = self._parse_cursor(cursor)
            if after < state["floor"] or after > state["seq"]:
                raise DeltaTokenExpired(f"Cursor {cursor} is outside the journal", status=410)

            entries = [e for e in self._read_journal() if e["seq"] > after]
            page = entries[:FOLDER_FEED_PAGE_SIZE]
            items = [
                FeedItem(
                    name=e["name"],
                    deleted=e["deleted"],
                    etag=None if e["deleted"] else state["etags"].get(e["name"]),
                )
                for e in page
            ]
            if len(entries) > len(page):
                return FeedPage(items=items, next_cursor=f"seq:{page[-1]['seq']}")
            return FeedPage(items=items, delta_token=f"seq:{state['seq']}")

    @staticmethod
    def _parse_cursor(cursor: str) -> int:
        prefix, _, value = cursor.partition(":")
        if prefix != "seq" or not value.isdigit():
            raise DeltaTokenExpired(f"Unrecognized cursor {cursor!r}")
        return int(value)

    def _read_journal(self) -> list[dict]:
        if not self.journal.exists():
            return []
        entries = []
        with open(self.journal, encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if line:
                    entries.append(json.loads(line))
        return entries

    def compact(self) -> int:
        """Drop journal history. Outstanding tokens become expired.

        Returns:
            The new floor.
        """
        with self._locked() as state:
            state["floor"] = state["seq"]
            self.journal.write_text("", encoding="utf-8")
            self._save_state(state)
            logger.info("Folder journal compacted at seq %d", state["floor"])
            return state["floor"]

    def list_names(self) -> list[str]:
        with self._locked() as state:
            return sorted(state["etags"])

    def put_root(self, name: str, data: bytes) -> None:
        _check_name(name)
        atomic_write_bytes(self.root / name, data)

    def get_root(self, name: str) -> Optional[bytes]:
        _check_name(name)
        path = self.root / name
        return path.read_bytes() if path.exists() else None


def create_backend(
    config: SyncConfig,
    home: Path,
    token_provider: TokenProvider,
) -> RemoteBackend:
    """Factory function to create the configured backend.

    Args:
        config: Sync configuration.
        home: docsync home directory.
        token_provider: Bearer token source (Graph only).

    Returns:
        Instantiated RemoteBackend.

    Raises:
        ValueError: If backend type is not supported.
    """
    if config.backend == BackendType.GRAPH:
        return GraphBackend(config, token_provider)
    if config.backend == BackendType.FOLDER:
        root = config.folder_path or (home / "sync" / "remote-folder")
        return FolderBackend(root)
    raise ValueError(f"Unsupported backend: {config.backend}")
