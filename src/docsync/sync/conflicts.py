"""
Conflict merger for metadata writes.

Metadata is written conditionally on the etag we last saw. When another
device got there first the write fails with a precondition error and we
merge instead of surfacing the conflict:

    local fields win, except
        is_favorite   OR of both sides (a favorite is never lost)
        updated_at    max of both sides

then retry without a condition. If even that fails, the caller's data is
written unconditionally so the push is never lost.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .backends import PreconditionFailed, RemoteError, RemoteNotFound
from .models import DocumentMetadata
from .remote import RemoteClient

logger = logging.getLogger("docsync.sync.conflicts")


@dataclass
class UploadOutcome:
    """Result of a metadata upload.

    Attributes:
        etag: New remote etag.
        metadata: What was finally written (merged when ``merged``).
        merged: True if a conflict was resolved by merging.
    """

    etag: Optional[str]
    metadata: DocumentMetadata
    merged: bool = False


def merge_metadata(local: DocumentMetadata, remote: DocumentMetadata) -> DocumentMetadata:
    """Local wins, with favorite OR'd and updated_at maxed."""
    merged = local.model_copy(
        update={
            "is_favorite": local.is_favorite or remote.is_favorite,
            "updated_at": max(local.updated_at, remote.updated_at),
        }
    )
    return merged


class ConflictMerger:
    """Conditional metadata upload with merge-on-conflict."""

    def __init__(self, remote: RemoteClient) -> None:
        self.remote = remote

    def upload(self, doc_id: str, meta: DocumentMetadata, etag: Optional[str] = None) -> UploadOutcome:
        """Upload metadata, resolving a lost race by merging.

        Args:
            doc_id: Document id.
            meta: Local metadata to write.
            etag: Last known remote etag, or None for an unconditional write.

        Raises:
            RemoteError: Only when the final unconditional write fails too.
        """
        if meta.id != doc_id:
            raise ValueError(f"Metadata id {meta.id!r} does not match {doc_id!r}")

        try:
            new_etag = self.remote.upload_metadata(meta, etag=etag)
            return UploadOutcome(etag=new_etag, metadata=meta)
        except PreconditionFailed:
            logger.info("Metadata conflict on %s, merging with remote copy", doc_id)

        try:
            remote_meta = self.remote.download_metadata(doc_id)
            merged = merge_metadata(meta, remote_meta)
        except RemoteNotFound:
            merged = meta
        except Exception as exc:
            logger.warning("Could not read remote metadata for %s: %s", doc_id, exc)
            merged = None

        if merged is not None:
            try:
                new_etag = self.remote.upload_metadata(merged)
                return UploadOutcome(etag=new_etag, metadata=merged, merged=merged != meta)
            except RemoteError as exc:
                logger.warning("Merged upload of %s failed, overwriting: %s", doc_id, exc)

        new_etag = self.remote.upload_metadata(meta)
        return UploadOutcome(etag=new_etag, metadata=meta)
