"""
Sync coordinator -- owns the pull cycle and routes local writes to the push queue.

    docsync sync pull  ->  prune tombstones -> delta -> apply upserts/deletes
                       ->  update cloud index -> save token -> reconcile
    local save/delete  ->  enqueue intent -> push worker -> remote

At most one pull runs at a time. The phase flag is persisted so a
second process sees it too, and a flag left behind by a crash is
recovered on start.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Optional

import yaml

from .. import DOCSYNC_HOME
from ..auth import TokenProvider, create_token_provider
from ..crypto import SyncCipher
from ..fileio import atomic_write_text
from ..store import LocalStore, LocalStoreError
from .backends import AuthenticationError, RemoteBackend, create_backend
from .conflicts import ConflictMerger
from .delta import DeltaClient
from .index import CloudIndexStore
from .models import (
    DocumentRecord,
    DocumentSummary,
    PullResult,
    SyncConfig,
    SyncPhase,
    SyncState,
    now_ms,
)
from .pushq import PushIntent, PushKind, PushQueue, PushWorker
from .reconcile import Reconciler
from .remote import RemoteClient
from .state import SyncStateStore
from .tombstones import PendingDeleteTracker

logger = logging.getLogger("docsync.sync.engine")

CONFIG_FILE = "config.yaml"
INDEX_FILE = "cloud_index.json"
TOMBSTONE_FILE = "pending_deletes.json"


def resolve_home(home: Optional[Path] = None) -> Path:
    return Path(home or DOCSYNC_HOME).expanduser()


def load_config(home: Optional[Path] = None) -> SyncConfig:
    """Load sync configuration from ``<home>/sync/config.yaml``."""
    config_file = resolve_home(home) / "sync" / CONFIG_FILE
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return SyncConfig(**data)
        except (yaml.YAMLError, ValueError, TypeError) as exc:
            logger.warning("Failed to load sync config: %s", exc)
    return SyncConfig()


def save_config(config: SyncConfig, home: Optional[Path] = None) -> Path:
    """Persist sync configuration to disk."""
    sync_dir = resolve_home(home) / "sync"
    sync_dir.mkdir(parents=True, exist_ok=True)
    config_file = sync_dir / CONFIG_FILE
    data = config.model_dump(mode="json", exclude_none=True)
    atomic_write_text(config_file, yaml.dump(data, default_flow_style=False))
    return config_file


def _pid_alive(pid: Optional[int]) -> bool:
    if not pid:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


class SyncCoordinator:
    """Orchestrates pulls, pushes, and the local views built on them.

    Args:
        home: docsync home directory. Defaults to ``DOCSYNC_HOME``.
        config: Sync configuration. Loaded from disk when omitted.
        backend: Remote transport. Built from config when omitted.
        token_provider: Bearer token source. Built from config when omitted.
        store: Local document store. Created under ``home`` when omitted.

    Raises:
        ValueError: If no user id is configured (the sync key derives from it).
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        config: Optional[SyncConfig] = None,
        backend: Optional[RemoteBackend] = None,
        token_provider: Optional[TokenProvider] = None,
        store: Optional[LocalStore] = None,
    ) -> None:
        self.home = resolve_home(home)
        self.sync_dir = self.home / "sync"
        self.sync_dir.mkdir(parents=True, exist_ok=True)

        self.config = config or load_config(self.home)
        if not self.config.user_id:
            raise ValueError("Sync is not configured: user_id is missing")

        self.token_provider = token_provider or create_token_provider(
            self.config.token_env_var, self.config.token_file,
        )
        self.backend = backend or create_backend(self.config, self.home, self.token_provider)
        self.store = store or LocalStore(self.home)

        self.remote = RemoteClient(
            self.backend,
            SyncCipher(self.config.user_id),
            concurrency=self.config.metadata_concurrency,
        )
        self.index = CloudIndexStore(self.sync_dir / INDEX_FILE)
        self.tombstones = PendingDeleteTracker(
            self.sync_dir / TOMBSTONE_FILE, ttl_hours=self.config.tombstone_ttl_hours,
        )
        self.state_store = SyncStateStore(self.sync_dir)
        self.delta_client = DeltaClient(self.remote, concurrency=self.config.metadata_concurrency)
        self.merger = ConflictMerger(self.remote)
        self.pushes = PushQueue(
            PushWorker(self.store, self.remote, self.merger, self.index, self.tombstones),
        )
        self.reconciler = Reconciler(
            self.store,
            self.index,
            self.tombstones,
            push=lambda doc_id: self._enqueue(PushKind.DOCUMENT, doc_id),
            freshness_threshold_seconds=self.config.freshness_threshold_seconds,
        )

        self._pull_lock = threading.Lock()
        self._recover_stale_state()

    # -------------------------------------------------------------------
    # Sync state
    # -------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self.state_store.load()

    def _is_stale(self, state: SyncState) -> bool:
        if not state.is_syncing:
            return False
        if not _pid_alive(state.owner_pid):
            return True
        age_ms = now_ms() - (state.sync_started_at or 0)
        return age_ms > self.config.stale_sync_minutes * 60 * 1000

    def _recover_stale_state(self) -> None:
        with self._pull_lock:
            state = self.state_store.load()
            if self._is_stale(state):
                self._reset_stale(state)

    def _reset_stale(self, state: SyncState) -> None:
        logger.warning(
            "Recovering stale sync state (pid %s, started %s)",
            state.owner_pid, state.sync_started_at,
        )
        state.phase = SyncPhase.IDLE
        state.sync_started_at = None
        state.owner_pid = None
        state.last_error = "Previous sync was interrupted"
        self.state_store.save(state)

    # -------------------------------------------------------------------
    # Pull
    # -------------------------------------------------------------------

    def pull(self) -> PullResult:
        """Run one pull cycle.

        Never raises. Returns ``skipped=True`` when another pull holds
        the sync flag, and ``error`` when the cycle failed.
        """
        with self._pull_lock:
            state = self.state_store.load()
            if state.is_syncing:
                if not self._is_stale(state):
                    logger.debug("Pull already in progress (pid %s), skipping", state.owner_pid)
                    return PullResult(skipped=True)
                self._reset_stale(state)
            state.phase = SyncPhase.SYNCING
            state.last_error = None
            state.sync_started_at = now_ms()
            state.owner_pid = os.getpid()
            self.state_store.save(state)

        result = PullResult()
        try:
            result = self._run_pull()
        except AuthenticationError as exc:
            result.error = f"Authentication failed: {exc}"
            logger.warning("Pull aborted: %s", result.error)
        except Exception as exc:
            result.error = str(exc) or exc.__class__.__name__
            logger.error("Pull failed: %s", result.error, exc_info=True)
        finally:
            with self._pull_lock:
                state = self.state_store.load()
                state.phase = SyncPhase.IDLE
                state.sync_started_at = None
                state.owner_pid = None
                if result.error:
                    state.last_error = result.error
                else:
                    state.last_sync_time = now_ms()
                    state.pull_count += 1
                    state.last_pulled = result.pulled
                    state.last_deleted = result.deleted
                self.state_store.save(state)
        return result

    def _run_pull(self) -> PullResult:
        self.tombstones.prune()
        if not self.backend.available():
            raise AuthenticationError(f"{self.backend.name} backend is not available")

        token = self.state_store.get_token()
        delta = self.delta_client.pull(token)
        result = PullResult(full_resync=delta.is_full_resync)

        applied = []
        content_failures = 0
        for meta in delta.upserts:
            if self.tombstones.contains(meta.id):
                continue
            applied.append(meta)
            local = self.store.get_summary(meta.id)
            if local is None or meta.updated_at <= local.updated_at:
                continue
            try:
                content = self.remote.download_content(meta.id)
            except AuthenticationError:
                raise
            except Exception as exc:
                content_failures += 1
                logger.warning("Failed to download content for %s: %s", meta.id, exc)
                continue
            self.store.put(DocumentRecord.from_metadata(meta, content))
        result.pulled = len(applied)

        if delta.deletes:
            self.index.remove_many(delta.deletes)
            for doc_id in delta.deletes:
                if self.store.delete(doc_id):
                    result.deleted += 1
            self.tombstones.confirmed(delta.deletes)

        result.failures = delta.failure_count + content_failures
        clean = result.failures == 0
        if delta.is_full_resync and clean:
            self.index.replace(applied)
            self.tombstones.confirm_absent(m.id for m in delta.upserts)
        else:
            self.index.upsert_many(applied)

        if delta.new_token and clean:
            self.state_store.set_token(delta.new_token)
        elif delta.new_token is None and token is not None:
            self.state_store.clear_token()
        elif not clean:
            logger.warning(
                "Pull had %d failure(s); keeping the previous continuation token",
                result.failures,
            )

        index_ids = self.index.ids()
        report = self.reconciler.run(index_ids, complete=clean and bool(index_ids))
        result.pushed = report.pushed
        result.removed = report.removed
        result.deferred = report.deferred

        if delta.is_full_resync and clean:
            try:
                self.remote.upload_index(self.index.all())
            except Exception as exc:
                logger.warning("Index snapshot upload failed: %s", exc)

        logger.info(
            "Pull complete: %d pulled, %d deleted, %d pushed, %d removed, %d failure(s)",
            result.pulled, result.deleted, result.pushed, result.removed, result.failures,
        )
        return result

    def reset_token(self) -> None:
        """Forget the continuation token; the next pull is a full resync."""
        self.state_store.clear_token()
        logger.info("Continuation token cleared")

    def bootstrap_from_index(self) -> int:
        """Seed an empty cloud index from the remote snapshot.

        Returns:
            Number of entries added (0 when the index was not empty).
        """
        if len(self.index):
            return 0
        tombstoned = self.tombstones.ids()
        metas = [m for m in self.remote.download_index() if m.id not in tombstoned]
        self.index.upsert_many(metas)
        logger.info("Bootstrapped cloud index with %d entries", len(metas))
        return len(metas)

    # -------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------

    def _enqueue(self, kind: PushKind, doc_id: str) -> None:
        self.pushes.enqueue(PushIntent(kind, doc_id))

    def push(self, doc: DocumentRecord) -> None:
        """Upload content and metadata in the background."""
        self._enqueue(PushKind.DOCUMENT, doc.id)

    def push_meta_update(self, doc: DocumentRecord) -> None:
        """Upload metadata only in the background."""
        self._enqueue(PushKind.METADATA, doc.id)

    def push_delete(self, doc_id: str) -> None:
        self._enqueue(PushKind.DELETE, doc_id)

    def wait_for_pushes(self, timeout: Optional[float] = None) -> bool:
        return self.pushes.wait(timeout)

    def close(self, timeout: Optional[float] = 5.0) -> None:
        self.pushes.close(timeout)

    # -------------------------------------------------------------------
    # Document operations
    # -------------------------------------------------------------------

    def save_document(self, title: str, content: str, source_url: str = "") -> DocumentRecord:
        record = self.store.save_new(title, content, source_url=source_url)
        self.push(record)
        return record

    def update_document(self, doc_id: str, **changes) -> DocumentRecord:
        record = self.store.update(doc_id, **changes)
        self.push(record)
        return record

    def delete_document(self, doc_id: str) -> bool:
        """Delete everywhere. The tombstone is durable before anything else.

        Returns:
            True if the document was known locally or in the cloud index.
        """
        self.tombstones.add(doc_id)
        existed_locally = self.store.delete(doc_id)
        existed_remotely = self.index.remove(doc_id)
        self.push_delete(doc_id)
        return existed_locally or existed_remotely

    def toggle_favorite(self, doc_id: str) -> DocumentRecord:
        """Flip the favorite flag, hydrating a cloud-only document first.

        Raises:
            LocalStoreError: If the document is unknown.
        """
        if not self.store.exists(doc_id) and self.open_document(doc_id) is None:
            raise LocalStoreError(f"Document not found: {doc_id}")
        record = self.store.toggle_favorite(doc_id)
        self.push_meta_update(record)
        return record

    def open_document(self, doc_id: str) -> Optional[DocumentRecord]:
        """Local record, or hydrate a cloud-only entry on demand."""
        record = self.store.get(doc_id)
        if record is not None:
            return record
        if self.tombstones.contains(doc_id):
            return None
        meta = self.index.get(doc_id)
        if meta is None:
            return None
        content = self.remote.download_content(doc_id)
        record = DocumentRecord.from_metadata(meta, content)
        self.store.put(record)
        logger.info("Hydrated %s from the cloud", doc_id)
        return record

    def merged_list(self) -> list[DocumentSummary]:
        """Local documents plus cloud-only entries, newest first."""
        tombstoned = self.tombstones.ids()
        local = [s for s in self.store.summaries() if s.id not in tombstoned]
        local_ids = {s.id for s in local}
        cloud_only = [
            DocumentSummary.from_metadata(m, cloud_only=True)
            for m in self.index.all()
            if m.id not in local_ids and m.id not in tombstoned
        ]
        merged = local + cloud_only
        merged.sort(key=lambda s: s.created_at, reverse=True)
        return merged

    def status(self) -> dict:
        """Snapshot of sync health for the CLI and the daemon API."""
        state = self.state_store.load()
        return {
            "backend": self.backend.name,
            "available": self.backend.available(),
            "phase": state.phase.value,
            "last_sync_time": state.last_sync_time,
            "last_error": state.last_error,
            "pull_count": state.pull_count,
            "has_token": self.state_store.get_token() is not None,
            "local_documents": len(self.store.ids()),
            "cloud_index": len(self.index),
            "pending_deletes": len(self.tombstones.ids()),
            "pending_pushes": self.pushes.pending(),
        }
