"""
Persisted sync state and the change-feed continuation token.

Storage layout:
    ~/.docsync/sync/
    ├── state.json       # SyncState
    └── delta_token      # opaque continuation token
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from ..fileio import atomic_write_text
from .models import SyncState

logger = logging.getLogger("docsync.sync.state")


class SyncStateStore:
    """Reads and writes SyncState and the continuation token.

    Args:
        sync_dir: The ``sync`` directory under the docsync home.
    """

    def __init__(self, sync_dir: Path) -> None:
        self.sync_dir = sync_dir
        self.sync_dir.mkdir(parents=True, exist_ok=True)
        self.state_file = sync_dir / "state.json"
        self.token_file = sync_dir / "delta_token"

    def load(self) -> SyncState:
        """Load sync state from disk."""
        if self.state_file.exists():
            try:
                data = json.loads(self.state_file.read_text(encoding="utf-8"))
                return SyncState(**data)
            except (json.JSONDecodeError, ValueError) as exc:
                logger.warning("Failed to load sync state: %s", exc)
        return SyncState()

    def save(self, state: SyncState) -> None:
        """Persist sync state to disk."""
        atomic_write_text(self.state_file, state.model_dump_json(indent=2))

    def get_token(self) -> Optional[str]:
        if not self.token_file.exists():
            return None
        token = self.token_file.read_text(encoding="utf-8").strip()
        return token or None

    def set_token(self, token: str) -> None:
        atomic_write_text(self.token_file, token)

    def clear_token(self) -> None:
        self.token_file.unlink(missing_ok=True)
