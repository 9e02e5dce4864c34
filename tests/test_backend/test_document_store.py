"""Tests for the in-memory and diskcache-backed document stores."""

from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest

from overdrip.backend.store import (
    AUTH_CODES,
    DEVICES,
    DiskDocumentStore,
    DocumentNotFoundError,
    DocumentStore,
    MemoryDocumentStore,
)


@pytest.fixture(params=["memory", "disk"])
def doc_store(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[DocumentStore]:
    if request.param == "memory":
        store: DocumentStore = MemoryDocumentStore()
    else:
        store = DiskDocumentStore(tmp_path / "store")
    yield store
    store.close()


class TestDocumentStore:
    def test_get_missing(self, doc_store: DocumentStore) -> None:
        assert doc_store.get(AUTH_CODES, "nope") is None

    def test_set_and_get(self, doc_store: DocumentStore) -> None:
        doc_store.set(AUTH_CODES, "k", {"user_id": "u", "n": 1})
        assert doc_store.get(AUTH_CODES, "k") == {"user_id": "u", "n": 1}

    def test_collections_are_separate(self, doc_store: DocumentStore) -> None:
        doc_store.set(AUTH_CODES, "k", {"a": 1})
        assert doc_store.get(DEVICES, "k") is None

    def test_set_replaces_without_merge(self, doc_store: DocumentStore) -> None:
        doc_store.set(DEVICES, "k", {"a": 1, "b": 2})
        doc_store.set(DEVICES, "k", {"a": 3})
        assert doc_store.get(DEVICES, "k") == {"a": 3}

    def test_set_with_merge(self, doc_store: DocumentStore) -> None:
        doc_store.set(DEVICES, "k", {"a": 1, "b": 2})
        doc_store.set(DEVICES, "k", {"a": 3}, merge=True)
        assert doc_store.get(DEVICES, "k") == {"a": 3, "b": 2}

    def test_merge_into_missing_document_creates_it(self, doc_store: DocumentStore) -> None:
        doc_store.set(DEVICES, "k", {"a": 1}, merge=True)
        assert doc_store.get(DEVICES, "k") == {"a": 1}

    def test_update(self, doc_store: DocumentStore) -> None:
        doc_store.set(AUTH_CODES, "k", {"a": 1, "b": 2})
        doc_store.update(AUTH_CODES, "k", {"b": 5})
        assert doc_store.get(AUTH_CODES, "k") == {"a": 1, "b": 5}

    def test_update_missing_raises(self, doc_store: DocumentStore) -> None:
        with pytest.raises(DocumentNotFoundError):
            doc_store.update(AUTH_CODES, "missing", {"b": 5})

    def test_delete(self, doc_store: DocumentStore) -> None:
        doc_store.set(AUTH_CODES, "k", {"a": 1})
        assert doc_store.delete(AUTH_CODES, "k") is True
        assert doc_store.delete(AUTH_CODES, "k") is False
        assert doc_store.get(AUTH_CODES, "k") is None

    def test_query(self, doc_store: DocumentStore) -> None:
        doc_store.set(AUTH_CODES, "one", {"user_id": "u1"})
        doc_store.set(AUTH_CODES, "two", {"user_id": "u2"})
        doc_store.set(AUTH_CODES, "three", {"user_id": "u1"})
        doc_store.set(DEVICES, "four", {"user_id": "u1"})

        keys = sorted(key for key, _ in doc_store.query(AUTH_CODES, "user_id", "u1"))

        assert keys == ["one", "three"]

    def test_returned_documents_are_copies(self, doc_store: DocumentStore) -> None:
        doc_store.set(AUTH_CODES, "k", {"a": 1})
        doc = doc_store.get(AUTH_CODES, "k")
        assert doc is not None
        doc["a"] = 99
        assert doc_store.get(AUTH_CODES, "k") == {"a": 1}


class TestDiskDocumentStore:
    def test_persists_across_instances(self, tmp_path: Path) -> None:
        directory = tmp_path / "store"
        first = DiskDocumentStore(directory)
        first.set(DEVICES, "user-1/device", {"name": "Pi"})
        first.close()

        second = DiskDocumentStore(directory)
        try:
            assert second.get(DEVICES, "user-1/device") == {"name": "Pi"}
            assert second.directory == directory
        finally:
            second.close()
