"""
Push queue -- local writes are message-passed to a single upload worker.

Callers enqueue an intent and return immediately. The worker loads the
latest local record when the intent runs, so a burst of edits to one
document uploads whatever is current at that moment. Failures are
logged and dropped; the next pull's reconciler picks up anything left
behind.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ..store import LocalStore
from .backends import AuthenticationError
from .conflicts import ConflictMerger
from .index import CloudIndexStore
from .remote import RemoteClient
from .tombstones import PendingDeleteTracker

logger = logging.getLogger("docsync.sync.pushq")


class PushKind(str, Enum):
    """What an intent uploads."""

    DOCUMENT = "document"
    METADATA = "metadata"
    DELETE = "delete"


@dataclass(frozen=True)
class PushIntent:
    kind: PushKind
    doc_id: str


_STOP = object()


class PushQueue:
    """FIFO of intents drained by one daemon thread.

    Args:
        handler: Called with each intent on the worker thread.
        name: Worker thread name.
    """

    def __init__(self, handler: Callable[[PushIntent], None], name: str = "docsync-push") -> None:
        self._handler = handler
        self._name = name
        self._queue: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self._closed = False

    def enqueue(self, intent: PushIntent) -> None:
        if self._closed:
            logger.debug("Push queue closed, dropping %s %s", intent.kind.value, intent.doc_id)
            return
        self._ensure_worker()
        self._queue.put(intent)

    def pending(self) -> int:
        return self._queue.unfinished_tasks

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued intent has run.

        Returns:
            True if the queue drained, False on timeout.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                if deadline is None:
                    self._queue.all_tasks_done.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Finish queued work and stop the worker."""
        self._closed = True
        thread = self._thread
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout)

    def _ensure_worker(self) -> None:
        with self._start_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, daemon=True, name=self._name)
            self._thread.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._handler(item)
            except Exception as exc:
                logger.error("Push %s %s failed: %s", item.kind.value, item.doc_id, exc)
            finally:
                self._queue.task_done()


class PushWorker:
    """Executes push intents against the remote.

    Args:
        store: Local document store.
        remote: Encrypting remote client.
        merger: Conflict-aware metadata uploader.
        index: Cloud index, updated with new etags.
        tombstones: Pending deletes; pushes of deleted documents are skipped.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteClient,
        merger: ConflictMerger,
        index: CloudIndexStore,
        tombstones: PendingDeleteTracker,
    ) -> None:
        self.store = store
        self.remote = remote
        self.merger = merger
        self.index = index
        self.tombstones = tombstones

    def __call__(self, intent: PushIntent) -> None:
        try:
            if intent.kind == PushKind.DELETE:
                self._delete(intent.doc_id)
            else:
                self._upload(intent.doc_id, with_content=intent.kind == PushKind.DOCUMENT)
        except AuthenticationError:
            logger.debug("Not signed in, skipping push of %s", intent.doc_id)

    def _upload(self, doc_id: str, with_content: bool) -> None:
        if self.tombstones.contains(doc_id):
            logger.debug("Skipping push of deleted document %s", doc_id)
            return
        record = self.store.get(doc_id)
        if record is None:
            logger.debug("Document %s vanished before push", doc_id)
            return

        cached = self.index.get(doc_id)
        # Never pushed from here: metadata alone would point at missing content.
        if with_content or cached is None:
            self.remote.upload_content(doc_id, record.content)

        outcome = self.merger.upload(
            doc_id, record.to_metadata(), etag=cached.etag if cached else None,
        )
        if outcome.merged:
            self.store.set_metadata(
                doc_id, outcome.metadata.is_favorite, outcome.metadata.updated_at,
            )
        self.index.upsert(outcome.metadata.model_copy(update={"etag": outcome.etag}))
        logger.info("Pushed %s%s", doc_id, " (merged)" if outcome.merged else "")

    def _delete(self, doc_id: str) -> None:
        self.remote.delete(doc_id)
        self.index.remove(doc_id)
        logger.info("Deleted %s remotely", doc_id)
