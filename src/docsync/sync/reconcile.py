"""
Reconciler -- closes the gap between the local store and the cloud index.

A local document the index does not know about is either a recent save
whose upload has not landed yet (push it) or a document another device
deleted while the feed could not tell us (remove it). Age on
``updated_at`` decides which. Removal only happens when the index is
known complete; otherwise the document is left alone until next time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from ..store import LocalStore
from .index import CloudIndexStore
from .models import now_ms
from .tombstones import PendingDeleteTracker

logger = logging.getLogger("docsync.sync.reconcile")


@dataclass
class ReconcileReport:
    pushed: int = 0
    removed: int = 0
    deferred: int = 0
    dropped: int = 0


class Reconciler:
    """Two-way sweep between LocalStore and CloudIndexStore.

    Args:
        store: Local document store.
        index: Cloud index.
        tombstones: Pending deletes (never pushed, never kept in the index).
        push: Enqueues a full upload of a document id.
        freshness_threshold_seconds: Documents edited more recently than
            this are treated as unsynced local work.
    """

    def __init__(
        self,
        store: LocalStore,
        index: CloudIndexStore,
        tombstones: PendingDeleteTracker,
        push: Callable[[str], None],
        freshness_threshold_seconds: int = 300,
    ) -> None:
        self.store = store
        self.index = index
        self.tombstones = tombstones
        self.push = push
        self.threshold_ms = freshness_threshold_seconds * 1000

    def run(self, index_ids: Iterable[str], complete: bool, now: Optional[int] = None) -> ReconcileReport:
        """Reconcile once.

        Args:
            index_ids: Ids currently in the cloud index.
            complete: True when the index reflects the whole remote
                (no failures during the pull and not empty).
            now: Current time in epoch ms.
        """
        now = now if now is not None else now_ms()
        known = set(index_ids)
        tombstoned = self.tombstones.ids()
        report = ReconcileReport()

        for summary in self.store.summaries():
            if summary.id in known or summary.id in tombstoned:
                continue
            age = now - summary.updated_at
            if age < self.threshold_ms:
                self.push(summary.id)
                report.pushed += 1
            elif complete:
                self.store.delete(summary.id)
                report.removed += 1
                logger.info("Removed %s: absent from the complete cloud index", summary.id)
            else:
                report.deferred += 1
                logger.info("Deferred %s: absent from an incomplete cloud index", summary.id)

        stale = known & tombstoned
        if stale:
            report.dropped = self.index.remove_many(stale)

        if report.pushed or report.removed or report.deferred or report.dropped:
            logger.info(
                "Reconcile: %d pushed, %d removed, %d deferred, %d dropped",
                report.pushed, report.removed, report.deferred, report.dropped,
            )
        return report
