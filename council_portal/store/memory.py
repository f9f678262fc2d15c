"""In-process document store used by tests and local development."""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any
from uuid import UUID

from council_portal.store.base import COLLECTIONS, ConditionalWrite, DocumentStore, matches

logger = logging.getLogger(__name__)


class InMemoryDocumentStore(DocumentStore):
    """
    Thread-safe dict-backed store.

    A single re-entrant lock serializes commits, so checking every expected
    version and applying the batch happen as one step.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._data: dict[str, dict[str, dict[str, Any]]] = {name: {} for name in COLLECTIONS}

    def find_by_id(self, collection: str, doc_id: UUID) -> dict[str, Any] | None:
        with self._lock:
            document = self._data.setdefault(collection, {}).get(str(doc_id))
            return copy.deepcopy(document) if document is not None else None

    def find(self, collection: str, **filters: Any) -> list[dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(document)
                for document in self._data.setdefault(collection, {}).values()
                if matches(document, filters)
            ]

    def commit(self, writes: list[ConditionalWrite]) -> bool:
        with self._lock:
            for write in writes:
                current = self._data.setdefault(write.collection, {}).get(str(write.doc_id))
                if write.is_insert:
                    if current is not None:
                        return False
                elif current is None or current.get("version") != write.expected_version:
                    return False

            for write in writes:
                bucket = self._data[write.collection]
                key = str(write.doc_id)
                if write.is_delete:
                    bucket.pop(key, None)
                    continue
                document = copy.deepcopy(write.document)
                document["id"] = key
                document["version"] = (write.expected_version or 0) + 1
                bucket[key] = document

            logger.debug("Committed %d write(s)", len(writes))
            return True

    def clear(self) -> None:
        with self._lock:
            for bucket in self._data.values():
                bucket.clear()
