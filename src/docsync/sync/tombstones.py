"""
Pending-delete tombstones.

A document deleted on this device must not come back when a pull
returns a feed that predates the remote delete. The tombstone is
durable before ``add`` returns and lives until the remote confirms the
delete or the TTL runs out.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Iterable, Optional

from ..fileio import atomic_write_text
from .models import PendingDeleteTombstone, now_ms

logger = logging.getLogger("docsync.sync.tombstones")

DEFAULT_TTL_HOURS = 24


class PendingDeleteTracker:
    """Persistent set of locally deleted document ids.

    Args:
        path: JSON file backing the set.
        ttl_hours: Age after which an unconfirmed tombstone is dropped.
    """

    def __init__(self, path: Path, ttl_hours: int = DEFAULT_TTL_HOURS) -> None:
        self.path = path
        self.ttl_ms = ttl_hours * 3600 * 1000
        self._lock = threading.Lock()
        self._tombstones: dict[str, PendingDeleteTombstone] = self._load()

    def _load(self) -> dict[str, PendingDeleteTombstone]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return {
                t.id: t for t in (PendingDeleteTombstone.model_validate(item) for item in raw)
            }
        except (json.JSONDecodeError, ValueError, TypeError) as exc:
            logger.warning("Tombstone file unreadable, starting empty: %s", exc)
            return {}

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = [t.model_dump() for t in self._tombstones.values()]
        atomic_write_text(self.path, json.dumps(data, indent=2))

    def add(self, doc_id: str, now: Optional[int] = None) -> None:
        with self._lock:
            self._tombstones[doc_id] = PendingDeleteTombstone(
                id=doc_id, deleted_at=now if now is not None else now_ms(),
            )
            self._save()

    def contains(self, doc_id: str) -> bool:
        with self._lock:
            return doc_id in self._tombstones

    def __contains__(self, doc_id: str) -> bool:
        return self.contains(doc_id)

    def ids(self) -> set[str]:
        with self._lock:
            return set(self._tombstones)

    def _drop(self, doc_ids: Iterable[str]) -> int:
        removed = 0
        for doc_id in doc_ids:
            if self._tombstones.pop(doc_id, None) is not None:
                removed += 1
        if removed:
            self._save()
        return removed

    def confirmed(self, doc_ids: Iterable[str]) -> int:
        """The feed reported these deletes. Returns the count cleared."""
        with self._lock:
            return self._drop(list(doc_ids))

    def confirm_absent(self, reported_ids: Iterable[str]) -> int:
        """A complete listing did not report these tombstoned ids any more."""
        reported = set(reported_ids)
        with self._lock:
            return self._drop([d for d in self._tombstones if d not in reported])

    def prune(self, now: Optional[int] = None) -> int:
        """Drop tombstones older than the TTL."""
        now = now if now is not None else now_ms()
        with self._lock:
            expired = [
                d for d, t in self._tombstones.items() if now - t.deleted_at > self.ttl_ms
            ]
            removed = self._drop(expired)
        if removed:
            logger.info("Pruned %d expired tombstone(s)", removed)
        return removed
