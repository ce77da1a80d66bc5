"""
Delta client -- turns the remote change feed into document upserts and deletes.

    pull(token)  ->  page through the feed  ->  classify items
                 ->  download .meta objects (bounded pool)  ->  DeltaResult

An expired token, or deletes reported without a name, fall back to a full
listing. Any per-document failure is counted so the caller knows the new
token must not be saved.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Union

from .backends import AuthenticationError, DeltaTokenExpired, FeedItem, RemoteNotFound
from .models import DeltaResult, DocumentMetadata
from .remote import META_EXT, RemoteClient, id_from_name

logger = logging.getLogger("docsync.sync.delta")

_DELETED = "deleted"

# Per-id outcome of a pull: metadata for an upsert, the marker for a delete.
Outcome = Union[DocumentMetadata, str]


class DeltaClient:
    """Pulls changes from the remote feed.

    Args:
        remote: Encrypting remote client.
        concurrency: Parallel metadata downloads per feed page.
    """

    def __init__(self, remote: RemoteClient, concurrency: int = 4) -> None:
        self.remote = remote
        self.concurrency = max(1, concurrency)

    def pull(self, token: Optional[str] = None) -> DeltaResult:
        """Collect everything that changed since ``token``.

        Args:
            token: Continuation token from the last clean pull, or None
                to enumerate the whole folder.

        Returns:
            DeltaResult. ``new_token`` is None after an expired-token
            fallback; the next pull starts over. An incremental pull
            that saw deletes without a name comes back as a full resync
            so the caller rebuilds the index and the reconciler sees
            the missing documents.
        """
        try:
            result = self._follow(token)
        except DeltaTokenExpired as exc:
            logger.info("Delta token expired (%s), falling back to full listing", exc)
            return self._full_listing()

        if token is not None and result.unresolved_deletes:
            logger.info(
                "%d delete(s) without a name, rebuilding from a full listing",
                result.unresolved_deletes,
            )
            return self._full_listing(
                new_token=result.new_token,
                deletes=result.deletes,
                unresolved=result.unresolved_deletes,
            )
        return result

    def _follow(self, token: Optional[str]) -> DeltaResult:
        outcomes: dict[str, Outcome] = {}
        failures = 0
        unresolved = 0
        cursor = token
        new_token = None

        while True:
            page = self.remote.delta(cursor)
            events, page_unresolved = self._classify(page.items)
            unresolved += page_unresolved
            page_outcomes, page_failures = self._resolve(events)
            failures += page_failures
            # Later pages supersede earlier ones for the same id.
            for doc_id, outcome in page_outcomes.items():
                outcomes.pop(doc_id, None)
                outcomes[doc_id] = outcome

            if page.next_cursor:
                cursor = page.next_cursor
                continue
            new_token = page.delta_token
            break

        result = DeltaResult(
            upserts=[o for o in outcomes.values() if isinstance(o, DocumentMetadata)],
            deletes=[d for d, o in outcomes.items() if o == _DELETED],
            new_token=new_token,
            is_full_resync=token is None,
            failure_count=failures,
            unresolved_deletes=unresolved,
        )
        logger.debug(
            "Delta pulled: %d upsert(s), %d delete(s), %d failure(s), %d unresolved",
            len(result.upserts), len(result.deletes), failures, unresolved,
        )
        return result

    @staticmethod
    def _classify(items: list[FeedItem]) -> tuple[dict[str, Optional[FeedItem]], int]:
        """Reduce one page to its last event per document id.

        Returns:
            ``{id: FeedItem to download, or None for a delete}`` and the
            count of deletes that carried no usable name.
        """
        events: dict[str, Optional[FeedItem]] = {}
        unresolved = 0
        for item in items:
            if item.is_folder:
                continue
            doc_id = id_from_name(item.name)
            if item.deleted:
                if doc_id is None:
                    if not item.name:
                        unresolved += 1
                    continue
                events.pop(doc_id, None)
                events[doc_id] = None
            elif doc_id is not None and item.name.endswith(META_EXT):
                events.pop(doc_id, None)
                events[doc_id] = item
        return events, unresolved

    def _resolve(self, events: dict[str, Optional[FeedItem]]) -> tuple[dict[str, Outcome], int]:
        outcomes: dict[str, Outcome] = {}
        to_fetch = []
        for doc_id, item in events.items():
            if item is None:
                outcomes[doc_id] = _DELETED
            else:
                outcomes[doc_id] = _DELETED  # placeholder keeps feed order
                to_fetch.append((doc_id, item))

        failures = 0
        if not to_fetch:
            return outcomes, failures

        def _fetch(entry: tuple[str, FeedItem]) -> tuple[str, Optional[Outcome]]:
            doc_id, item = entry
            try:
                return doc_id, self.remote.fetch_metadata(item)
            except RemoteNotFound:
                return doc_id, _DELETED
            except AuthenticationError:
                raise
            except Exception as exc:
                logger.warning("Failed to download metadata for %s: %s", doc_id, exc)
                return doc_id, None

        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            for doc_id, outcome in pool.map(_fetch, to_fetch):
                if outcome is None:
                    failures += 1
                    del outcomes[doc_id]
                else:
                    outcomes[doc_id] = outcome
        return outcomes, failures

    def _full_listing(
        self,
        new_token: Optional[str] = None,
        deletes: Optional[list[str]] = None,
        unresolved: int = 0,
    ) -> DeltaResult:
        listing = self.remote.list_all()
        listed = {m.id for m in listing.items}
        return DeltaResult(
            upserts=listing.items,
            deletes=[d for d in deletes or [] if d not in listed],
            new_token=new_token,
            is_full_resync=True,
            failure_count=1 if listing.had_failures else 0,
            unresolved_deletes=unresolved,
        )
