"""
Sync data models -- documents, envelopes, configuration, and state.
"""

from __future__ import annotations

import time
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class BackendType(str, Enum):
    """Supported remote object store backends."""

    GRAPH = "graph"
    FOLDER = "folder"


class SyncPhase(str, Enum):
    """Pull cycle state machine."""

    IDLE = "idle"
    SYNCING = "syncing"


class DocumentMetadata(BaseModel):
    """Remote-facing projection of a document (everything but content).

    The etag is transport state. It is filled in from the remote store
    when the metadata object is read and never serialized into the
    encrypted payload itself.
    """

    id: str
    title: str = ""
    source_url: str = ""
    created_at: int = 0
    updated_at: int = 0
    is_favorite: bool = False
    size_bytes: int = 0
    asset_refs: list[str] = Field(default_factory=list)
    etag: Optional[str] = None

    def payload(self) -> dict:
        """Fields that travel inside the encrypted metadata object."""
        return self.model_dump(mode="json", exclude={"etag"})


class DocumentRecord(BaseModel):
    """A full local document, content included."""

    id: str
    title: str = ""
    source_url: str = ""
    content: str = ""
    created_at: int = 0
    updated_at: int = 0
    is_favorite: bool = False
    size_bytes: int = 0
    asset_refs: list[str] = Field(default_factory=list)

    def to_metadata(self, etag: Optional[str] = None) -> DocumentMetadata:
        return DocumentMetadata(
            **self.model_dump(exclude={"content"}),
            etag=etag,
        )

    @classmethod
    def from_metadata(cls, meta: DocumentMetadata, content: str) -> "DocumentRecord":
        return cls(**meta.model_dump(exclude={"etag"}), content=content)


class DocumentSummary(BaseModel):
    """List-view entry: metadata only, flagged when not hydrated locally."""

    id: str
    title: str = ""
    source_url: str = ""
    created_at: int = 0
    updated_at: int = 0
    is_favorite: bool = False
    size_bytes: int = 0
    asset_refs: list[str] = Field(default_factory=list)
    cloud_only: bool = False

    @classmethod
    def from_metadata(cls, meta: DocumentMetadata, cloud_only: bool = False) -> "DocumentSummary":
        return cls(**meta.model_dump(exclude={"etag"}), cloud_only=cloud_only)


class PendingDeleteTombstone(BaseModel):
    """Marker that a document was deleted on this device."""

    id: str
    deleted_at: int


class SyncConfig(BaseModel):
    """Complete sync configuration for one device."""

    backend: BackendType = BackendType.GRAPH
    enabled: bool = True

    # Identity used to derive the sync key
    user_id: Optional[str] = None

    # Microsoft Graph app folder
    graph_base: str = "https://graph.microsoft.com/v1.0"
    app_folder: str = "documents"
    token_env_var: Optional[str] = "DOCSYNC_ACCESS_TOKEN"
    token_file: Optional[Path] = None
    request_timeout: float = 30.0

    # Shared folder backend
    folder_path: Optional[Path] = None

    pull_interval_minutes: int = 15
    metadata_concurrency: int = 4
    freshness_threshold_seconds: int = 300
    tombstone_ttl_hours: int = 24
    stale_sync_minutes: int = 10


class SyncState(BaseModel):
    """Current sync state persisted to disk."""

    phase: SyncPhase = SyncPhase.IDLE
    last_sync_time: int = 0
    last_error: Optional[str] = None
    sync_started_at: Optional[int] = None
    owner_pid: Optional[int] = None
    pull_count: int = 0
    last_pulled: int = 0
    last_deleted: int = 0

    @property
    def is_syncing(self) -> bool:
        return self.phase == SyncPhase.SYNCING


class DeltaResult(BaseModel):
    """Outcome of one DeltaClient pull."""

    upserts: list[DocumentMetadata] = Field(default_factory=list)
    deletes: list[str] = Field(default_factory=list)
    new_token: Optional[str] = None
    is_full_resync: bool = False
    failure_count: int = 0
    unresolved_deletes: int = 0

    @property
    def has_failures(self) -> bool:
        return self.failure_count > 0


class ListResult(BaseModel):
    """Full listing of remote metadata."""

    items: list[DocumentMetadata] = Field(default_factory=list)
    had_failures: bool = False


class PullResult(BaseModel):
    """What a pull cycle changed locally."""

    pulled: int = 0
    deleted: int = 0
    pushed: int = 0
    removed: int = 0
    deferred: int = 0
    failures: int = 0
    full_resync: bool = False
    skipped: bool = False
    error: Optional[str] = None

    @property
    def changed(self) -> bool:
        return bool(self.pulled or self.deleted or self.removed)
