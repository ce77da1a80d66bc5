"""
Cloud index -- local cache of the metadata of every remote document.

Lets the list view show documents that exist only in the cloud without
downloading their content. Both the pull cycle and the push worker write
to it, so every mutation takes the lock and saves atomically.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Iterable, Optional

from ..fileio import atomic_write_text
from .models import DocumentMetadata

logger = logging.getLogger("docsync.sync.index")


class CloudIndexStore:
    """Persistent ``{id: DocumentMetadata}`` map.

    Args:
        path: JSON file backing the index.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.RLock()
        self._entries: dict[str, DocumentMetadata] = self._load()

    def _load(self) -> dict[str, DocumentMetadata]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return {k: DocumentMetadata.model_validate(v) for k, v in data.items()}
        except (json.JSONDecodeError, ValueError, AttributeError) as exc:
            logger.warning("Cloud index unreadable, starting empty: %s", exc)
            return {}

    def _save(self) -> None:
        data = {k: v.model_dump(mode="json") for k, v in self._entries.items()}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_text(self.path, json.dumps(data, indent=2))

    def get(self, doc_id: str) -> Optional[DocumentMetadata]:
        with self._lock:
            entry = self._entries.get(doc_id)
            return entry.model_copy() if entry is not None else None

    def all(self) -> list[DocumentMetadata]:
        with self._lock:
            return [e.model_copy() for e in self._entries.values()]

    def ids(self) -> set[str]:
        with self._lock:
            return set(self._entries)

    def snapshot(self) -> dict[str, DocumentMetadata]:
        with self._lock:
            return {k: v.model_copy() for k, v in self._entries.items()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, doc_id: str) -> bool:
        with self._lock:
            return doc_id in self._entries

    def upsert(self, meta: DocumentMetadata) -> None:
        with self._lock:
            self._entries[meta.id] = meta.model_copy()
            self._save()

    def upsert_many(self, metas: Iterable[DocumentMetadata]) -> None:
        with self._lock:
            for meta in metas:
                self._entries[meta.id] = meta.model_copy()
            self._save()

    def remove(self, doc_id: str) -> bool:
        with self._lock:
            if self._entries.pop(doc_id, None) is None:
                return False
            self._save()
            return True

    def remove_many(self, doc_ids: Iterable[str]) -> int:
        with self._lock:
            removed = sum(1 for d in doc_ids if self._entries.pop(d, None) is not None)
            if removed:
                self._save()
            return removed

    def replace(self, metas: Iterable[DocumentMetadata]) -> None:
        """Rebuild from scratch (clean full resync)."""
        with self._lock:
            self._entries = {m.id: m.model_copy() for m in metas}
            self._save()

    def clear(self) -> None:
        with self._lock:
            self._entries = {}
            self._save()
