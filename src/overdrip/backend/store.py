"""Document store backing the auth-code and device-registration collections.

The store is schemaless: documents are JSON-compatible dicts
grouped in named collections and addressed by a string key. Typed access
lives one layer up in :class:`~overdrip.backend.auth_codes.AuthCodeManager`.

Two implementations share the :class:`DocumentStore` interface:

- :class:`MemoryDocumentStore` -- process-local, guarded by a
  :class:`threading.Lock`. Used by tests and by ``overdrip serve`` when no
  store directory is configured.
- :class:`DiskDocumentStore` -- persistent, backed by :mod:`diskcache`.
  Read-modify-write operations run inside ``Cache.transact()`` so they stay
  atomic across worker processes.
"""

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable, Optional

import diskcache

Document = dict[str, Any]

AUTH_CODES = "authCodes"
DEVICES = "devices"


class DocumentNotFoundError(KeyError):
    """Raised by :meth:`DocumentStore.update` when the document does not exist."""


class DocumentStore(ABC):
    """Minimal Firestore-like persistence contract."""

    @abstractmethod
    def get(self, collection: str, key: str) -> Optional[Document]:
        """Return a copy of the document, or ``None``."""

    @abstractmethod
    def set(self, collection: str, key: str, data: Document, merge: bool = False) -> None:
        """Create or replace a document. With ``merge=True`` only *data*'s fields are overwritten."""

    @abstractmethod
    def update(self, collection: str, key: str, fields: Document) -> None:
        """Overwrite *fields* of an existing document.

        Raises:
            DocumentNotFoundError: If the document does not exist.
        """

    @abstractmethod
    def delete(self, collection: str, key: str) -> bool:
        """Delete a document. Returns ``False`` if there was nothing to delete."""

    @abstractmethod
    def _items(self, collection: str) -> Iterable[tuple[str, Document]]:
        """All ``(key, document)`` pairs of *collection*."""

    def query(self, collection: str, field: str, value: Any) -> list[tuple[str, Document]]:
        """All documents whose *field* equals *value*, in no particular order."""
        return [(key, doc) for key, doc in self._items(collection) if doc.get(field) == value]

    def close(self) -> None:
        """Release resources held by the store."""


class MemoryDocumentStore(DocumentStore):
    def __init__(self) -> None:
        self._collections: dict[str, dict[str, Document]] = {}
        self._lock = threading.Lock()

    def get(self, collection: str, key: str) -> Optional[Document]:
        with self._lock:
            doc = self._collections.get(collection, {}).get(key)
            return copy.deepcopy(doc) if doc is not None else None

    def set(self, collection: str, key: str, data: Document, merge: bool = False) -> None:
        with self._lock:
            docs = self._collections.setdefault(collection, {})
            if merge and key in docs:
                docs[key].update(copy.deepcopy(data))
            else:
                docs[key] = copy.deepcopy(data)

    def update(self, collection: str, key: str, fields: Document) -> None:
        with self._lock:
            docs = self._collections.get(collection, {})
            if key not in docs:
                raise DocumentNotFoundError(f"{collection}/{key}")
            docs[key].update(copy.deepcopy(fields))

    def delete(self, collection: str, key: str) -> bool:
        with self._lock:
            return self._collections.get(collection, {}).pop(key, None) is not None

    def _items(self, collection: str) -> Iterable[tuple[str, Document]]:
        with self._lock:
            return copy.deepcopy(list(self._collections.get(collection, {}).items()))


class DiskDocumentStore(DocumentStore):
    """Persistent store in a :class:`diskcache.Cache` directory.

    Documents are stored under ``"<collection>:<key>"``.

    Args:
        directory: Cache directory, created if missing.
    """

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)
        self._cache = diskcache.Cache(str(self._directory))

    @property
    def directory(self) -> Path:
        return self._directory

    @staticmethod
    def _key(collection: str, key: str) -> str:
        return f"{collection}:{key}"

    def get(self, collection: str, key: str) -> Optional[Document]:
        return self._cache.get(self._key(collection, key))

    def set(self, collection: str, key: str, data: Document, merge: bool = False) -> None:
        cache_key = self._key(collection, key)
        with self._cache.transact():
            existing = self._cache.get(cache_key) if merge else None
            if existing is not None:
                existing.update(data)
                data = existing
            self._cache.set(cache_key, dict(data))

    def update(self, collection: str, key: str, fields: Document) -> None:
        cache_key = self._key(collection, key)
        with self._cache.transact():
            existing = self._cache.get(cache_key)
            if existing is None:
                raise DocumentNotFoundError(f"{collection}/{key}")
            existing.update(fields)
            self._cache.set(cache_key, existing)

    def delete(self, collection: str, key: str) -> bool:
        return self._cache.delete(self._key(collection, key))

    def _items(self, collection: str) -> Iterable[tuple[str, Document]]:
        prefix = f"{collection}:"
        items = []
        for cache_key in self._cache.iterkeys():
            if isinstance(cache_key, str) and cache_key.startswith(prefix):
                doc = self._cache.get(cache_key)
                if doc is not None:
                    items.append((cache_key[len(prefix):], doc))
        return items

    def close(self) -> None:
        self._cache.close()
