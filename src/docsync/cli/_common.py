"""Shared utilities for all CLI command modules.

Provides the Rich console instance, home resolution, and the helpers
that build a coordinator or fall back to the bare local store.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from rich.console import Console

from .. import DOCSYNC_HOME
from ..store import LocalStore
from ..sync.engine import SyncCoordinator, load_config

console = Console()
logger = logging.getLogger("docsync.cli")


def home_path(home: str) -> Path:
    return Path(home).expanduser()


def format_ms(ms: Optional[int]) -> str:
    """Epoch milliseconds as a short UTC timestamp."""
    if not ms:
        return "[dim]never[/]"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def sync_configured(home: Path) -> bool:
    config = load_config(home)
    return bool(config.enabled and config.user_id)


def get_coordinator(home: Path) -> SyncCoordinator:
    """Build a coordinator or exit with a hint when sync is not set up."""
    config = load_config(home)
    if not config.user_id:
        console.print("[bold red]Sync is not configured.[/] Run: docsync sync setup --user-id <id>")
        sys.exit(1)
    return SyncCoordinator(home, config=config)


def get_optional_coordinator(home: Path) -> Optional[SyncCoordinator]:
    """Coordinator when sync is enabled, else None (local-only mode)."""
    if not sync_configured(home):
        return None
    return SyncCoordinator(home)


def get_store(home: Path) -> LocalStore:
    return LocalStore(home)
