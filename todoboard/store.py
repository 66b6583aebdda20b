from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Protocol

from .errors import ConflictError, StoreError
from .utils import clone, find_element, new_uuid


def check_version(collection: str, doc_id: str, version: Optional[int], expected: Optional[int]) -> None:
    if expected is not None and expected != version:
        raise ConflictError(collection, doc_id, f"version is {version}, expected {expected}")


class DocumentStore(Protocol):
    """Operations the synchronizer relies on.

    Array mutations (``push``, ``pull``, ``set_element``) must each be atomic
    and scoped to one element id, so two writers appending to the same parent
    never lose each other's element.
    """

    def find(self, collection: str, doc_id: str) -> Optional[dict]: ...

    def find_by(
        self, collection: str, field: str, value: Any, limit: Optional[int] = None
    ) -> List[dict]: ...

    def insert(self, collection: str, doc: dict) -> dict: ...

    def insert_unique(self, collection: str, doc: dict, key: str) -> Optional[dict]:
        """Insert ``doc`` unless another document has the same ``doc[key]``.

        Returns None when the key is taken.
        """
        ...

    def update(
        self,
        collection: str,
        doc_id: str,
        values: dict,
        bump_version: bool = False,
        expected_version: Optional[int] = None,
    ) -> Optional[dict]:
        """Merge ``values``; ConflictError if the stored version is not ``expected_version``."""
        ...

    def delete(self, collection: str, doc_id: str) -> bool: ...

    def push(self, collection: str, doc_id: str, field: str, element: dict) -> Optional[dict]: ...

    def pull(self, collection: str, doc_id: str, field: str, element_id: str) -> bool: ...

    def set_element(
        self, collection: str, doc_id: str, field: str, element_id: str, values: dict
    ) -> bool: ...


class MemoryStore:
    """In-memory document store; one lock serializes every operation."""

    def __init__(self) -> None:
        self.collections: Dict[str, Dict[str, dict]] = {}
        self._lock = threading.RLock()

    def _docs(self, collection: str) -> Dict[str, dict]:
        return self.collections.setdefault(collection, {})

    # === Documents ===
    def find(self, collection: str, doc_id: str) -> Optional[dict]:
        with self._lock:
            doc = self._docs(collection).get(doc_id)
            return clone(doc) if doc is not None else None

    def find_by(
        self, collection: str, field: str, value: Any, limit: Optional[int] = None
    ) -> List[dict]:
        with self._lock:
            found = [clone(d) for d in self._docs(collection).values() if d.get(field) == value]
        return found[:limit] if limit is not None else found

    def insert(self, collection: str, doc: dict) -> dict:
        with self._lock:
            docs = self._docs(collection)
            stored = clone(doc)
            stored.setdefault("id", new_uuid())
            if stored["id"] in docs:
                raise StoreError("insert", collection, KeyError(stored["id"]))
            docs[stored["id"]] = stored
            return clone(stored)

    def insert_unique(self, collection: str, doc: dict, key: str) -> Optional[dict]:
        with self._lock:
            value = doc.get(key)
            if any(d.get(key) == value for d in self._docs(collection).values()):
                return None
            return self.insert(collection, doc)

    def update(
        self,
        collection: str,
        doc_id: str,
        values: dict,
        bump_version: bool = False,
        expected_version: Optional[int] = None,
    ) -> Optional[dict]:
        with self._lock:
            doc = self._docs(collection).get(doc_id)
            if doc is None:
                return None
            check_version(collection, doc_id, doc.get("version"), expected_version)
            doc.update(clone(values))
            if bump_version:
                doc["version"] = doc.get("version", 0) + 1
            return clone(doc)

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            return self._docs(collection).pop(doc_id, None) is not None

    # === Embedded arrays ===
    def push(self, collection: str, doc_id: str, field: str, element: dict) -> Optional[dict]:
        with self._lock:
            doc = self._docs(collection).get(doc_id)
            if doc is None:
                return None
            elements = doc.setdefault(field, [])
            stored = clone(element)
            stored.setdefault("id", new_uuid())
            existing = find_element(elements, stored["id"])
            if existing is not None:
                return clone(existing)
            elements.append(stored)
            return clone(stored)

    def pull(self, collection: str, doc_id: str, field: str, element_id: str) -> bool:
        with self._lock:
            doc = self._docs(collection).get(doc_id)
            if doc is None:
                return False
            elements = doc.get(field, [])
            kept = [e for e in elements if e.get("id") != element_id]
            doc[field] = kept
            return len(kept) != len(elements)

    def set_element(
        self, collection: str, doc_id: str, field: str, element_id: str, values: dict
    ) -> bool:
        with self._lock:
            doc = self._docs(collection).get(doc_id)
            if doc is None:
                return False
            element = find_element(doc.get(field, []), element_id)
            if element is None:
                return False
            element.update(clone(values))
            element["id"] = element_id
            return True
