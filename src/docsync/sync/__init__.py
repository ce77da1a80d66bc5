"""
Document sync -- encrypted, eventually consistent replication.

Local writes are pushed in the background. Remote changes arrive by
polling a change feed. Every payload is sealed with the account's
identity key before it leaves the device.

Backends: Microsoft Graph app folder, shared filesystem folder.

The coordinator lives in ``docsync.sync.engine``; it is not imported
here because the local store depends on the models in this package.
"""

from .models import (
    DocumentMetadata,
    DocumentRecord,
    DocumentSummary,
    PullResult,
    SyncConfig,
    SyncState,
)

__all__ = [
    "DocumentMetadata",
    "DocumentRecord",
    "DocumentSummary",
    "PullResult",
    "SyncConfig",
    "SyncState",
]
