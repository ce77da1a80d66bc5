"""Tests for the cloud index cache."""

from __future__ import annotations

from pathlib import Path

from docsync.sync.index import CloudIndexStore
from docsync.sync.models import DocumentMetadata


class TestCloudIndexStore:
    """Tests for CloudIndexStore."""

    def test_upsert_persists_etag(self, tmp_path: Path):
        path = tmp_path / "index.json"
        CloudIndexStore(path).upsert(DocumentMetadata(id="doc_1", title="t", etag="e1"))

        reloaded = CloudIndexStore(path)
        assert reloaded.get("doc_1").etag == "e1"
        assert "doc_1" in reloaded
        assert len(reloaded) == 1

    def test_replace_rebuilds(self, tmp_path: Path):
        index = CloudIndexStore(tmp_path / "index.json")
        index.upsert(DocumentMetadata(id="doc_1"))
        index.replace([DocumentMetadata(id="doc_2")])
        assert index.ids() == {"doc_2"}

    def test_returned_entries_are_copies(self, tmp_path: Path):
        index = CloudIndexStore(tmp_path / "index.json")
        index.upsert(DocumentMetadata(id="doc_1", title="a"))
        entry = index.get("doc_1")
        entry.title = "changed"
        assert index.get("doc_1").title == "a"

    def test_remove(self, tmp_path: Path):
        index = CloudIndexStore(tmp_path / "index.json")
        index.upsert_many([DocumentMetadata(id="a"), DocumentMetadata(id="b"), DocumentMetadata(id="c")])
        assert index.remove("a") is True
        assert index.remove("a") is False
        assert index.remove_many(["b", "zz"]) == 1
        assert index.ids() == {"c"}
        index.clear()
        assert len(index) == 0

    def test_snapshot_keyed_by_id(self, tmp_path: Path):
        index = CloudIndexStore(tmp_path / "index.json")
        index.upsert_many([DocumentMetadata(id="a", title="x"), DocumentMetadata(id="b")])
        snap = index.snapshot()
        assert set(snap) == {"a", "b"}
        assert snap["a"].title == "x"
