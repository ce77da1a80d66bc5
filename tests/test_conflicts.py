"""Tests for metadata conflict merging."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from conftest import USER_ID, MemoryBackend
from docsync.crypto import SyncCipher
from docsync.sync.backends import PreconditionFailed, RemoteError
from docsync.sync.conflicts import ConflictMerger, merge_metadata
from docsync.sync.models import DocumentMetadata
from docsync.sync.remote import RemoteClient


def _meta(**fields) -> DocumentMetadata:
    data = {"id": "doc_1", "title": "t", "created_at": 1, "updated_at": 100}
    data.update(fields)
    return DocumentMetadata(**data)


class TestMergeMetadata:
    """Tests for the field-level merge rule."""

    def test_local_wins_except_favorite_and_time(self):
        local = _meta(title="local", is_favorite=False, updated_at=100)
        remote = _meta(title="remote", is_favorite=True, updated_at=200)

        merged = merge_metadata(local, remote)
        assert merged.title == "local"
        assert merged.is_favorite is True
        assert merged.updated_at == 200

    @pytest.mark.parametrize("local_fav,remote_fav,expected", [
        (False, False, False),
        (True, False, True),
        (False, True, True),
        (True, True, True),
    ])
    def test_favorite_is_or(self, local_fav, remote_fav, expected):
        merged = merge_metadata(_meta(is_favorite=local_fav), _meta(is_favorite=remote_fav))
        assert merged.is_favorite is expected


class TestConflictMerger:
    """Tests for conditional upload with merge-on-conflict."""

    @pytest.fixture
    def remote(self, backend: MemoryBackend) -> RemoteClient:
        return RemoteClient(backend, SyncCipher(USER_ID))

    def test_clean_conditional_write(self, remote: RemoteClient):
        etag = remote.upload_metadata(_meta())
        outcome = ConflictMerger(remote).upload("doc_1", _meta(title="new"), etag=etag)

        assert outcome.merged is False
        assert remote.download_metadata("doc_1").title == "new"
        assert outcome.etag == remote.download_metadata("doc_1").etag

    def test_stale_etag_merges(self, remote: RemoteClient):
        stale = remote.upload_metadata(_meta())
        remote.upload_metadata(_meta(is_favorite=True, updated_at=500))

        outcome = ConflictMerger(remote).upload("doc_1", _meta(title="mine", updated_at=300), etag=stale)
        stored = remote.download_metadata("doc_1")

        assert outcome.merged is True
        assert stored.title == "mine"
        assert stored.is_favorite is True
        assert stored.updated_at == 500
        assert outcome.metadata.is_favorite is True

    def test_conflict_on_missing_remote_writes_local(self, remote: RemoteClient):
        outcome = ConflictMerger(remote).upload("doc_1", _meta(title="mine"), etag="phantom")
        assert outcome.merged is False
        assert remote.download_metadata("doc_1").title == "mine"

    def test_falls_back_to_unconditional_overwrite(self):
        remote = MagicMock()
        remote.upload_metadata.side_effect = [
            PreconditionFailed("moved", status=412),
            RemoteError("flaky", status=503),
            "final-etag",
        ]
        remote.download_metadata.return_value = _meta(is_favorite=True)
        local = _meta(title="mine")

        outcome = ConflictMerger(remote).upload("doc_1", local, etag="old")
        assert outcome.etag == "final-etag"
        assert outcome.metadata == local
        last_call = remote.upload_metadata.call_args_list[-1]
        assert last_call.args == (local,)

    def test_id_mismatch_rejected(self, remote: RemoteClient):
        with pytest.raises(ValueError):
            ConflictMerger(remote).upload("doc_2", _meta())
