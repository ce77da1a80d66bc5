"""
Remote client -- the encrypting contract over a RemoteBackend.

Every document is two objects in the app folder:

    <id>.doc     content envelope (identity key)
    <id>.meta    metadata envelope (identity key)

plus two internal objects, ``_index.meta`` (a full metadata snapshot for
fast first display) and the root-level ``settings.enc.json``. Names that
start with ``_`` are never treated as documents.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from pydantic import ValidationError

from ..crypto import DecryptionError, SyncCipher
from .backends import (
    AuthenticationError,
    FeedItem,
    FeedPage,
    RemoteBackend,
    RemoteNotFound,
    RemoteObject,
)
from .models import DocumentMetadata, ListResult

logger = logging.getLogger("docsync.sync.remote")

CONTENT_EXT = ".doc"
META_EXT = ".meta"
INDEX_NAME = "_index.meta"
SETTINGS_NAME = "settings.enc.json"


def content_name(doc_id: str) -> str:
    return f"{doc_id}{CONTENT_EXT}"


def meta_name(doc_id: str) -> str:
    return f"{doc_id}{META_EXT}"


def is_internal(name: str) -> bool:
    return name.startswith("_")


def id_from_name(name: Optional[str]) -> Optional[str]:
    """Document id for a ``.doc`` or ``.meta`` object name, else None."""
    if not name or is_internal(name):
        return None
    for ext in (CONTENT_EXT, META_EXT):
        if name.endswith(ext) and len(name) > len(ext):
            return name[: -len(ext)]
    return None


class RemoteClient:
    """Encrypted document operations against one remote folder.

    Args:
        backend: Object store transport.
        cipher: Identity-key cipher for this account.
        concurrency: Worker count for metadata downloads in ``list_all``.
    """

    def __init__(self, backend: RemoteBackend, cipher: SyncCipher, concurrency: int = 4) -> None:
        self.backend = backend
        self.cipher = cipher
        self.concurrency = max(1, concurrency)

    @property
    def name(self) -> str:
        return self.backend.name

    def available(self) -> bool:
        return self.backend.available()

    # -- documents -----------------------------------------------------------

    def upload_content(self, doc_id: str, content: str) -> Optional[str]:
        return self.backend.put(content_name(doc_id), self.cipher.seal(content.encode("utf-8")))

    def download_content(self, doc_id: str) -> str:
        obj = self.backend.get(content_name(doc_id))
        plaintext = self.cipher.open(obj.data)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError(f"Content of {doc_id} is not UTF-8") from exc

    def upload_metadata(self, meta: DocumentMetadata, etag: Optional[str] = None) -> Optional[str]:
        """Write the metadata object; conditional when ``etag`` is given.

        Raises:
            PreconditionFailed: If the remote copy changed since ``etag``.
        """
        return self.backend.put(meta_name(meta.id), self.cipher.seal_json(meta.payload()), etag=etag)

    def download_metadata(self, doc_id: str) -> DocumentMetadata:
        return self._decode_metadata(self.backend.get(meta_name(doc_id)), doc_id)

    def fetch_metadata(self, item: FeedItem) -> DocumentMetadata:
        """Read the metadata object a feed item refers to."""
        return self._decode_metadata(self.backend.fetch(item), id_from_name(item.name))

    def _decode_metadata(self, obj: RemoteObject, expected_id: Optional[str]) -> DocumentMetadata:
        payload = self.cipher.open_json(obj.data)
        try:
            meta = DocumentMetadata.model_validate(payload)
        except ValidationError as exc:
            raise DecryptionError(f"Metadata payload is invalid: {exc}") from exc
        if expected_id is not None and meta.id != expected_id:
            raise DecryptionError(
                f"Metadata id {meta.id!r} does not match object {expected_id!r}"
            )
        meta.etag = obj.etag
        return meta

    def delete(self, doc_id: str) -> None:
        self.backend.delete(meta_name(doc_id))
        self.backend.delete(content_name(doc_id))

    # -- listing -------------------------------------------------------------

    def delta(self, cursor: Optional[str] = None) -> FeedPage:
        return self.backend.changes(cursor)

    def list_all(self) -> ListResult:
        """Download every document's metadata.

        Objects that vanish between listing and download are skipped.
        Any other failure sets ``had_failures``.

        Raises:
            AuthenticationError: If the token is rejected mid-listing.
        """
        ids = sorted(
            {id_from_name(name) for name in self.backend.list_names()
             if name.endswith(META_EXT) and id_from_name(name)}
        )
        result = ListResult()

        def _one(doc_id: str) -> Optional[DocumentMetadata]:
            try:
                return self.download_metadata(doc_id)
            except RemoteNotFound:
                return None
            except AuthenticationError:
                raise
            except Exception as exc:
                logger.warning("Failed to read metadata for %s: %s", doc_id, exc)
                result.had_failures = True
                return None

        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            for meta in pool.map(_one, ids):
                if meta is not None:
                    result.items.append(meta)
        return result

    # -- snapshot and settings -------------------------------------------------

    def upload_index(self, metas: list[DocumentMetadata]) -> None:
        self.backend.put(INDEX_NAME, self.cipher.seal_json([m.payload() for m in metas]))

    def download_index(self) -> list[DocumentMetadata]:
        """Remote metadata snapshot, or an empty list when none exists."""
        try:
            obj = self.backend.get(INDEX_NAME)
        except RemoteNotFound:
            return []
        payload = self.cipher.open_json(obj.data)
        if not isinstance(payload, list):
            raise DecryptionError("Index snapshot is not a list")
        try:
            return [DocumentMetadata.model_validate(entry) for entry in payload]
        except ValidationError as exc:
            raise DecryptionError(f"Index snapshot is invalid: {exc}") from exc

    def upload_settings(self, data: bytes) -> None:
        """Store an already-sealed settings blob."""
        self.backend.put_root(SETTINGS_NAME, data)

    def download_settings(self) -> Optional[bytes]:
        return self.backend.get_root(SETTINGS_NAME)
