"""Shared test fixtures for docsync."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

import pytest

from docsync.sync.backends import (
    AuthenticationError,
    DeltaTokenExpired,
    FeedItem,
    FeedPage,
    PreconditionFailed,
    RemoteBackend,
    RemoteError,
    RemoteNotFound,
    RemoteObject,
)
from docsync.sync.models import SyncConfig

USER_ID = "user-0001"


class MemoryBackend(RemoteBackend):
    """In-process object store with a change journal, shared between devices.

    Failure injection:
        fail_get: names whose reads raise a 503.
        fail_put: names whose writes raise a 503.
        nameless_deletes: delete events without a name emitted on the next feed read.
        signed_in: False makes every call raise AuthenticationError.
    """

    def __init__(self, page_size: int = 100) -> None:
        self.objects: dict[str, bytes] = {}
        self.etags: dict[str, str] = {}
        self.roots: dict[str, bytes] = {}
        self.journal: list[tuple[int, str, bool]] = []
        self.seq = 0
        self.floor = 0
        self.page_size = page_size
        self.fail_get: set[str] = set()
        self.fail_put: set[str] = set()
        self.nameless_deletes = 0
        self.signed_in = True
        self.put_log: list[tuple[str, Optional[str]]] = []
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "memory"

    def available(self) -> bool:
        return self.signed_in

    def _check_auth(self) -> None:
        if not self.signed_in:
            raise AuthenticationError("not signed in")

    def put(self, name, data, etag=None):
        self._check_auth()
        with self._lock:
            self.put_log.append((name, etag))
            if name in self.fail_put:
                raise RemoteError("injected write failure", status=503)
            if etag is not None and self.etags.get(name) != etag:
                raise PreconditionFailed("etag moved", status=412)
            self.seq += 1
            self.objects[name] = data
            self.etags[name] = f"e{self.seq}"
            self.journal.append((self.seq, name, False))
            return self.etags[name]

    def get(self, name):
        self._check_auth()
        with self._lock:
            if name in self.fail_get:
                raise RemoteError("injected read failure", status=503)
            if name not in self.objects:
                raise RemoteNotFound(f"{name} not found", status=404)
            return RemoteObject(data=self.objects[name], etag=self.etags[name])

    def delete(self, name):
        self._check_auth()
        with self._lock:
            if name not in self.objects:
                return
            del self.objects[name]
            del self.etags[name]
            self.seq += 1
            self.journal.append((self.seq, name, True))

    def changes(self, cursor=None):
        self._check_auth()
        with self._lock:
            extra = [FeedItem(name=None, deleted=True) for _ in range(self.nameless_deletes)]
            self.nameless_deletes = 0
            if cursor is None:
                items = [FeedItem(name=n, etag=e) for n, e in sorted(self.etags.items())]
                return FeedPage(items=items + extra, delta_token=f"seq:{self.seq}")
            after = int(cursor.split(":")[1])
            if after < self.floor:
                raise DeltaTokenExpired("token expired", status=410)
            entries = [e for e in self.journal if e[0] > after]
            page = entries[: self.page_size]
            items = [
                FeedItem(name=n, deleted=d, etag=None if d else self.etags.get(n))
                for _, n, d in page
            ]
            if len(entries) > len(page):
                return FeedPage(items=items, next_cursor=f"seq:{page[-1][0]}")
            return FeedPage(items=items + extra, delta_token=f"seq:{self.seq}")

    def list_names(self):
        self._check_auth()
        with self._lock:
            return sorted(self.objects)

    def put_root(self, name, data):
        self._check_auth()
        self.roots[name] = data

    def get_root(self, name):
        self._check_auth()
        return self.roots.get(name)

    def expire_tokens(self) -> None:
        self.floor = self.seq


@pytest.fixture
def docsync_home(tmp_path: Path) -> Path:
    """Provide a temporary docsync home directory."""
    home = tmp_path / ".docsync"
    home.mkdir()
    return home


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(user_id=USER_ID, token_env_var=None)


@pytest.fixture
def make_coordinator(tmp_path: Path, backend: MemoryBackend):
    """Factory for coordinators that share one remote (one per device)."""
    from docsync.sync.engine import SyncCoordinator

    created = []

    def _make(device: str = "a", config: Optional[SyncConfig] = None, shared=None):
        home = tmp_path / f"device-{device}"
        home.mkdir(exist_ok=True)
        coordinator = SyncCoordinator(
            home,
            config=config or SyncConfig(user_id=USER_ID, token_env_var=None),
            backend=shared or backend,
        )
        created.append(coordinator)
        return coordinator

    yield _make
    for coordinator in created:
        coordinator.close(timeout=2)
