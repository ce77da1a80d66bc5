"""
Tests for the sync coordinator -- multi-device scenarios over an in-memory remote.
"""

from __future__ import annotations

import os
import time
from unittest.mock import patch

import pytest

from conftest import MemoryBackend
from docsync.store import LocalStoreError
from docsync.sync.backends import AuthenticationError
from docsync.sync.models import DocumentRecord, SyncPhase, SyncState, now_ms


def _push(coordinator, record):
    coordinator.push(record)
    assert coordinator.wait_for_pushes(5)


def _local_view(coordinator) -> dict:
    return {
        s.id: (s.title, s.updated_at, s.is_favorite)
        for s in coordinator.store.summaries()
    }


class TestPullBasics:
    """Tests for pull state handling."""

    def test_first_pull_is_full_resync_and_saves_token(self, make_coordinator):
        a = make_coordinator("a")
        result = a.pull()

        assert result.error is None
        assert result.full_resync is True
        assert a.state_store.get_token() is not None
        state = a.state
        assert state.phase == SyncPhase.IDLE
        assert state.last_sync_time > 0
        assert state.pull_count == 1

    def test_skips_when_already_syncing(self, make_coordinator):
        a = make_coordinator("a")
        a.state_store.save(SyncState(
            phase=SyncPhase.SYNCING, owner_pid=os.getpid(), sync_started_at=now_ms(),
        ))

        result = a.pull()
        assert result.skipped is True
        assert a.state.is_syncing

    def test_stale_flag_recovered_on_start(self, make_coordinator, tmp_path):
        home = tmp_path / "device-a"
        a = make_coordinator("a")
        a.state_store.save(SyncState(phase=SyncPhase.SYNCING, owner_pid=123456, sync_started_at=1))

        with patch("docsync.sync.engine._pid_alive", return_value=False):
            again = make_coordinator("a")

        state = again.state
        assert state.phase == SyncPhase.IDLE
        assert state.last_error == "Previous sync was interrupted"
        assert home.exists()

    def test_old_flag_recovered_even_if_pid_alive(self, make_coordinator):
        a = make_coordinator("a")
        a.state_store.save(SyncState(
            phase=SyncPhase.SYNCING, owner_pid=os.getpid(), sync_started_at=now_ms() - 60 * 60 * 1000,
        ))

        result = a.pull()
        assert result.skipped is False
        assert result.error is None

    def test_auth_failure_sets_last_error(self, make_coordinator, backend: MemoryBackend):
        a = make_coordinator("a")
        backend.signed_in = False

        result = a.pull()
        assert result.error.startswith("Authentication failed")
        state = a.state
        assert state.phase == SyncPhase.IDLE
        assert state.last_error == result.error
        assert state.last_sync_time == 0

    def test_unexpected_error_never_raises(self, make_coordinator):
        a = make_coordinator("a")
        with patch.object(a.delta_client, "pull", side_effect=RuntimeError("boom")):
            result = a.pull()
        assert result.error == "boom"
        assert a.state.phase == SyncPhase.IDLE

    def test_error_cleared_by_next_success(self, make_coordinator, backend: MemoryBackend):
        a = make_coordinator("a")
        backend.signed_in = False
        a.pull()
        backend.signed_in = True

        assert a.pull().error is None
        assert a.state.last_error is None


class TestPushAndHydrate:
    """Tests for pushes and lazy hydration."""

    def test_save_on_one_device_appears_cloud_only_on_another(self, make_coordinator):
        a = make_coordinator("a")
        b = make_coordinator("b")
        record = a.save_document("Hello", "Wörld")
        assert a.wait_for_pushes(5)

        b.pull()
        listing = b.merged_list()
        assert [(s.id, s.cloud_only) for s in listing] == [(record.id, True)]
        assert b.store.get(record.id) is None

        opened = b.open_document(record.id)
        assert opened.content == "Wörld"
        assert b.store.get(record.id) is not None
        assert b.merged_list()[0].cloud_only is False

    def test_push_records_etag_in_index(self, make_coordinator, backend: MemoryBackend):
        a = make_coordinator("a")
        record = a.save_document("t", "c")
        assert a.wait_for_pushes(5)

        assert a.index.get(record.id).etag == backend.etags[f"{record.id}.meta"]

    def test_push_without_token_is_silent(self, make_coordinator, backend: MemoryBackend):
        a = make_coordinator("a")
        backend.signed_in = False
        record = a.save_document("t", "c")
        assert a.wait_for_pushes(5)

        assert backend.objects == {}
        assert a.store.get(record.id) is not None

    def test_toggle_favorite_on_cloud_only_hydrates(self, make_coordinator):
        a = make_coordinator("a")
        b = make_coordinator("b")
        record = a.save_document("t", "c")
        assert a.wait_for_pushes(5)
        b.pull()

        toggled = b.toggle_favorite(record.id)
        assert toggled.is_favorite is True
        assert b.store.exists(record.id)

    def test_toggle_unknown_raises(self, make_coordinator):
        with pytest.raises(LocalStoreError):
            make_coordinator("a").toggle_favorite("doc_unknown")

    def test_merged_list_newest_first(self, make_coordinator):
        a = make_coordinator("a")
        a.store.put(DocumentRecord(id="doc_old", created_at=1, updated_at=1))
        a.store.put(DocumentRecord(id="doc_new", created_at=3, updated_at=3))
        from docsync.sync.models import DocumentMetadata
        a.index.upsert(DocumentMetadata(id="doc_cloud", created_at=2, updated_at=2))

        assert [s.id for s in a.merged_list()] == ["doc_new", "doc_cloud", "doc_old"]


class TestProperties:
    """Cross-device properties of the sync engine."""

    def test_idempotent_pull(self, make_coordinator):
        a = make_coordinator("a")
        b = make_coordinator("b")
        for i in range(3):
            a.save_document(f"doc {i}", f"content {i}")
        assert a.wait_for_pushes(5)

        b.pull()
        before = (_local_view(b), b.index.ids(), b.tombstones.ids())
        second = b.pull()
        after = (_local_view(b), b.index.ids(), b.tombstones.ids())

        assert before == after
        assert second.pulled == 0 and second.deleted == 0 and second.removed == 0

    def test_remote_newer_overwrites_local(self, make_coordinator):
        a = make_coordinator("a")
        a.store.put(DocumentRecord(id="doc_a", title="old", content="old", created_at=1, updated_at=100))
        a.index.upsert(a.store.get("doc_a").to_metadata())
        a.remote.upload_content("doc_a", "new content")
        a.remote.upload_metadata(
            DocumentRecord(id="doc_a", title="new", created_at=1, updated_at=200).to_metadata(),
        )

        a.pull()
        record = a.store.get("doc_a")
        assert record.content == "new content"
        assert record.updated_at == 200

    def test_remote_not_newer_leaves_local(self, make_coordinator):
        a = make_coordinator("a")
        a.store.put(DocumentRecord(id="doc_a", title="mine", content="mine", created_at=1, updated_at=200))
        a.remote.upload_content("doc_a", "theirs")
        a.remote.upload_metadata(
            DocumentRecord(id="doc_a", title="theirs", created_at=1, updated_at=200).to_metadata(),
        )

        a.pull()
        assert a.store.get("doc_a").content == "mine"

    def test_last_write_wins_across_devices(self, make_coordinator):
        a = make_coordinator("a")
        b = make_coordinator("b")
        record = a.save_document("t", "v0")
        assert a.wait_for_pushes(5)
        b.pull()
        b.open_document(record.id)

        a.update_document(record.id, content="from a")
        assert a.wait_for_pushes(5)
        time.sleep(0.01)
        b.update_document(record.id, content="from b")
        assert b.wait_for_pushes(5)

        a.pull()
        b.pull()
        assert a.store.get(record.id).content == "from b"
        assert b.store.get(record.id).content == "from b"

    def test_no_resurrection_while_delete_in_flight(self, make_coordinator):
        a = make_coordinator("a")
        b = make_coordinator("b")
        record = a.save_document("t", "c")
        assert a.wait_for_pushes(5)
        b.pull()
        b.open_document(record.id)

        # The remote delete has not gone out yet.
        with patch.object(b.pushes, "enqueue"):
            b.delete_document(record.id)
            b.reset_token()
            result = b.pull()

        assert result.error is None
        assert record.id not in {s.id for s in b.merged_list()}
        assert b.store.get(record.id) is None
        assert b.open_document(record.id) is None
        assert b.tombstones.contains(record.id)

    def test_tombstone_confirmed_after_remote_delete(self, make_coordinator):
        a = make_coordinator("a")
        b = make_coordinator("b")
        record = a.save_document("t", "c")
        assert a.wait_for_pushes(5)
        a.pull()
        b.pull()

        b.delete_document(record.id)
        assert b.wait_for_pushes(5)
        b.pull()
        assert not b.tombstones.contains(record.id)

        a.pull()
        assert a.store.get(record.id) is None
        assert record.id not in a.index

    def test_favorite_never_lost(self, make_coordinator):
        a = make_coordinator("a")
        b = make_coordinator("b")
        record = a.save_document("t", "c")
        assert a.wait_for_pushes(5)
        b.pull()
        b.open_document(record.id)

        a.toggle_favorite(record.id)
        assert a.wait_for_pushes(5)
        # b's cached etag is now stale.
        time.sleep(0.01)
        b.update_document(record.id, title="renamed on b")
        assert b.wait_for_pushes(5)

        remote_meta = b.remote.download_metadata(record.id)
        assert remote_meta.is_favorite is True
        assert remote_meta.title == "renamed on b"
        assert b.store.get(record.id).is_favorite is True

        a.pull()
        assert a.store.get(record.id).is_favorite is True
        assert a.store.get(record.id).title == "renamed on b"

    def test_both_devices_favorite_independently(self, make_coordinator):
        a = make_coordinator("a")
        b = make_coordinator("b")
        first = a.save_document("one", "c")
        second = a.save_document("two", "c")
        assert a.wait_for_pushes(5)
        b.pull()
        b.open_document(first.id)
        b.open_document(second.id)

        a.toggle_favorite(first.id)
        b.toggle_favorite(second.id)
        assert a.wait_for_pushes(5)
        assert b.wait_for_pushes(5)
        a.pull()
        b.pull()

        for device in (a, b):
            assert device.store.get(first.id).is_favorite is True
            assert device.store.get(second.id).is_favorite is True

    def test_etag_race_merges_favorite(self, make_coordinator, backend: MemoryBackend):
        a = make_coordinator("a")
        record = a.save_document("t", "c")
        assert a.wait_for_pushes(5)
        v1 = a.index.get(record.id).etag

        other = a.remote.download_metadata(record.id).model_copy(update={"is_favorite": True})
        a.remote.upload_metadata(other)
        assert backend.etags[f"{record.id}.meta"] != v1

        outcome = a.merger.upload(record.id, a.store.get(record.id).to_metadata(), etag=v1)
        assert outcome.merged is True
        assert a.remote.download_metadata(record.id).is_favorite is True

    def test_partial_failure_keeps_old_local_documents(self, make_coordinator, backend: MemoryBackend):
        a = make_coordinator("a")
        b = make_coordinator("b")
        docs = [a.save_document(f"d{i}", "c") for i in range(3)]
        assert a.wait_for_pushes(5)

        old = now_ms() - 60 * 60 * 1000
        b.store.put(DocumentRecord(id="doc_orphan", created_at=old, updated_at=old))
        backend.fail_get.add(f"{docs[0].id}.meta")

        first = b.pull()
        assert first.failures == 1
        assert first.deferred == 1
        assert b.store.exists("doc_orphan")
        assert b.state_store.get_token() is None

        backend.fail_get.clear()
        second = b.pull()
        assert second.failures == 0
        assert second.removed == 1
        assert not b.store.exists("doc_orphan")
        assert b.state_store.get_token() is not None
        assert b.index.ids() == {d.id for d in docs}

    def test_fresh_unpushed_document_is_pushed_by_reconcile(self, make_coordinator, backend: MemoryBackend):
        a = make_coordinator("a")
        record = a.store.save_new("never pushed", "c")

        result = a.pull()
        assert result.pushed == 1
        assert a.wait_for_pushes(5)
        assert f"{record.id}.meta" in backend.objects

    def test_expired_token_resync(self, make_coordinator, backend: MemoryBackend):
        a = make_coordinator("a")
        b = make_coordinator("b")
        b.pull()
        record = a.save_document("t", "c")
        assert a.wait_for_pushes(5)
        backend.expire_tokens()

        result = b.pull()
        assert result.full_resync is True
        assert record.id in b.index
        assert b.state_store.get_token() is None

        b.pull()
        assert b.state_store.get_token() is not None

    def test_untracked_old_document_removed_on_full_pull(self, make_coordinator, backend: MemoryBackend):
        a = make_coordinator("a")
        old = now_ms() - 60 * 60 * 1000
        keep = a.save_document("keep", "c")
        assert a.wait_for_pushes(5)
        a.store.put(DocumentRecord(id="doc_lost", created_at=old, updated_at=old))
        backend.nameless_deletes = 1

        result = a.pull()
        assert result.error is None
        assert result.removed == 1
        assert not a.store.exists("doc_lost")
        assert a.store.exists(keep.id)

    def test_nameless_delete_of_indexed_document(self, make_coordinator, backend: MemoryBackend):
        a = make_coordinator("a")
        b = make_coordinator("b")
        keep = a.save_document("keep", "c")
        gone = a.save_document("gone", "c")
        assert a.wait_for_pushes(5)
        b.pull()
        hydrated = b.open_document(gone.id)
        old = now_ms() - 60 * 60 * 1000
        b.store.put(hydrated.model_copy(update={"updated_at": old}))
        assert gone.id in b.index

        # The remote loses the document and the feed cannot name it.
        for name in (f"{gone.id}.meta", f"{gone.id}.doc"):
            del backend.objects[name]
            del backend.etags[name]
        backend.nameless_deletes = 2

        result = b.pull()
        assert result.error is None
        assert result.full_resync is True
        assert result.removed == 1
        assert gone.id not in b.index
        assert not b.store.exists(gone.id)
        assert gone.id not in {s.id for s in b.merged_list()}
        assert keep.id in b.index
        assert b.state_store.get_token() is not None

        again = b.pull()
        assert again.full_resync is False
        assert again.removed == 0

    def test_auth_failure_mid_pull_is_an_error(self, make_coordinator):
        a = make_coordinator("a")
        b = make_coordinator("b")
        b.pull()
        before = b.state.last_sync_time
        a.save_document("t", "c")
        assert a.wait_for_pushes(5)

        with patch.object(b.remote, "fetch_metadata", side_effect=AuthenticationError("expired", status=401)):
            result = b.pull()

        assert result.error is not None
        assert result.error.startswith("Authentication failed")
        state = b.state
        assert state.last_error == result.error
        assert state.last_sync_time == before
        assert state.phase == SyncPhase.IDLE

    def test_index_snapshot_uploaded_and_bootstraps(self, make_coordinator, backend: MemoryBackend):
        a = make_coordinator("a")
        record = a.save_document("t", "c")
        assert a.wait_for_pushes(5)
        a.pull()
        assert "_index.meta" in backend.objects

        b = make_coordinator("b")
        assert b.bootstrap_from_index() == 1
        assert b.merged_list()[0].id == record.id
        assert b.bootstrap_from_index() == 0

    def test_status(self, make_coordinator):
        a = make_coordinator("a")
        a.save_document("t", "c")
        assert a.wait_for_pushes(5)
        status = a.status()
        assert status["backend"] == "memory"
        assert status["local_documents"] == 1
        assert status["cloud_index"] == 1
        assert status["phase"] == "idle"


class TestConfig:
    """Tests for YAML config persistence."""

    def test_round_trip(self, docsync_home):
        from docsync.sync.engine import load_config, save_config
        from docsync.sync.models import BackendType, SyncConfig

        save_config(SyncConfig(user_id="u1", backend=BackendType.FOLDER, pull_interval_minutes=5), docsync_home)
        config = load_config(docsync_home)
        assert config.user_id == "u1"
        assert config.backend == BackendType.FOLDER
        assert config.pull_interval_minutes == 5

    def test_invalid_yaml_falls_back(self, docsync_home):
        from docsync.sync.engine import load_config

        (docsync_home / "sync").mkdir()
        (docsync_home / "sync" / "config.yaml").write_text("backend: [unclosed")
        assert load_config(docsync_home).user_id is None

    def test_coordinator_requires_user_id(self, docsync_home, backend):
        from docsync.sync.engine import SyncCoordinator
        from docsync.sync.models import SyncConfig

        with pytest.raises(ValueError):
            SyncCoordinator(docsync_home, config=SyncConfig(), backend=backend)
