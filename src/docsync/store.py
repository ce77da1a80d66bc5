"""
Local document store -- the device's own copy of every hydrated document.

Each document is two files keyed by its id: a small metadata JSON used
by the summary read path, and the content body read only on open.
Writes are atomic per record and complete synchronously, whatever the
network is doing.

Storage layout:
    ~/.docsync/documents/
    ├── <id>.json       # DocumentRecord minus content
    └── <id>.content    # UTF-8 content body
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Optional

from .fileio import atomic_write_text
from .sync.models import DocumentRecord, DocumentSummary, now_ms

logger = logging.getLogger("docsync.store")

META_SUFFIX = ".json"
CONTENT_SUFFIX = ".content"


class LocalStoreError(Exception):
    """Raised when the local store cannot read or write a record."""


def generate_id() -> str:
    """Globally unique, stable document id."""
    return f"doc_{now_ms()}_{uuid.uuid4().hex[:12]}"


class LocalStore:
    """Keyed persistent record store for documents.

    Safe for concurrent reads and per-record writes. There are no
    cross-record transactions.

    Args:
        home: docsync home directory (~/.docsync).
    """

    def __init__(self, home: Path) -> None:
        self._dir = home / "documents"
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    def get(self, doc_id: str) -> Optional[DocumentRecord]:
        """Full record including content, or None."""
        meta = self._read_meta(doc_id)
        if meta is None:
            return None
        try:
            content = self._content_path(doc_id).read_text(encoding="utf-8")
        except FileNotFoundError:
            content = ""
        except OSError as exc:
            raise LocalStoreError(f"Failed to read content for {doc_id}: {exc}") from exc
        return DocumentRecord(**meta, content=content)

    def get_summary(self, doc_id: str) -> Optional[DocumentSummary]:
        meta = self._read_meta(doc_id)
        return DocumentSummary(**meta) if meta is not None else None

    def exists(self, doc_id: str) -> bool:
        return self._meta_path(doc_id).exists()

    def summaries(self) -> list[DocumentSummary]:
        """All documents without content, newest first."""
        result = []
        for path in self._dir.glob(f"*{META_SUFFIX}"):
            doc_id = path.name[: -len(META_SUFFIX)]
            meta = self._read_meta(doc_id)
            if meta is not None:
                result.append(DocumentSummary(**meta))
        result.sort(key=lambda s: s.created_at, reverse=True)
        return result

    def ids(self) -> set[str]:
        return {p.name[: -len(META_SUFFIX)] for p in self._dir.glob(f"*{META_SUFFIX}")}

    def stats(self) -> dict:
        summaries = self.summaries()
        return {
            "count": len(summaries),
            "total_size": sum(s.size_bytes for s in summaries),
            "favorites": sum(1 for s in summaries if s.is_favorite),
        }

    # -------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------

    def save_new(
        self,
        title: str,
        content: str,
        source_url: str = "",
        asset_refs: Optional[list[str]] = None,
    ) -> DocumentRecord:
        """Create a new document with a fresh id."""
        ts = now_ms()
        record = DocumentRecord(
            id=generate_id(),
            title=title,
            source_url=source_url,
            content=content,
            created_at=ts,
            updated_at=ts,
            size_bytes=len(content.encode("utf-8")),
            asset_refs=list(asset_refs or []),
        )
        self.put(record)
        logger.info("Document saved: %s", record.id)
        return record

    def put(self, record: DocumentRecord) -> DocumentRecord:
        """Store a record as given (used when applying remote state)."""
        with self._lock:
            try:
                atomic_write_text(self._content_path(record.id), record.content)
                atomic_write_text(
                    self._meta_path(record.id),
                    json.dumps(record.model_dump(mode="json", exclude={"content"}), indent=2),
                )
            except OSError as exc:
                raise LocalStoreError(f"Failed to write {record.id}: {exc}") from exc
        return record

    def update(self, doc_id: str, **changes) -> DocumentRecord:
        """Apply local edits and bump updated_at.

        Raises:
            LocalStoreError: If the document does not exist.
        """
        with self._lock:
            record = self.get(doc_id)
            if record is None:
                raise LocalStoreError(f"Document not found: {doc_id}")
            data = record.model_dump()
            data.update(changes)
            if "content" in changes:
                data["size_bytes"] = len(data["content"].encode("utf-8"))
            data["updated_at"] = self._next_timestamp(record.updated_at)
            return self.put(DocumentRecord(**data))

    def toggle_favorite(self, doc_id: str) -> DocumentRecord:
        with self._lock:
            record = self.get_summary(doc_id)
            if record is None:
                raise LocalStoreError(f"Document not found: {doc_id}")
            return self.update(doc_id, is_favorite=not record.is_favorite)

    def set_metadata(self, doc_id: str, is_favorite: bool, updated_at: int) -> None:
        """Adopt merged metadata fields without treating it as a new edit."""
        with self._lock:
            meta = self._read_meta(doc_id)
            if meta is None:
                return
            meta["is_favorite"] = is_favorite
            meta["updated_at"] = max(meta.get("updated_at", 0), updated_at)
            try:
                atomic_write_text(self._meta_path(doc_id), json.dumps(meta, indent=2))
            except OSError as exc:
                raise LocalStoreError(f"Failed to write {doc_id}: {exc}") from exc

    def delete(self, doc_id: str) -> bool:
        """Remove a document. Returns False if it was not present."""
        with self._lock:
            meta_path = self._meta_path(doc_id)
            existed = meta_path.exists()
            try:
                meta_path.unlink(missing_ok=True)
                self._content_path(doc_id).unlink(missing_ok=True)
            except OSError as exc:
                raise LocalStoreError(f"Failed to delete {doc_id}: {exc}") from exc
        if existed:
            logger.info("Document deleted: %s", doc_id)
        return existed

    def clear(self) -> int:
        """Delete every document. Returns the count removed."""
        removed = 0
        for doc_id in self.ids():
            if self.delete(doc_id):
                removed += 1
        return removed

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    @staticmethod
    def _next_timestamp(previous: int) -> int:
        return max(now_ms(), previous + 1)

    def _meta_path(self, doc_id: str) -> Path:
        self._check_id(doc_id)
        return self._dir / f"{doc_id}{META_SUFFIX}"

    def _content_path(self, doc_id: str) -> Path:
        self._check_id(doc_id)
        return self._dir / f"{doc_id}{CONTENT_SUFFIX}"

    @staticmethod
    def _check_id(doc_id: str) -> None:
        if not doc_id or "/" in doc_id or "\\" in doc_id or doc_id.startswith("."):
            raise LocalStoreError(f"Invalid document id: {doc_id!r}")

    def _read_meta(self, doc_id: str) -> Optional[dict]:
        path = self._meta_path(doc_id)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            raise LocalStoreError(f"Failed to read {doc_id}: {exc}") from exc
