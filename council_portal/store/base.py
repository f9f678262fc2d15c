"""
Document Store — the persistence collaborator of the council services.

The services see persistence as a set of named collections of JSON
documents. Reads are plain lookups; every write goes through ``commit``,
which applies a batch of version-guarded conditional writes as one
all-or-nothing unit (optimistic concurrency). A batch whose expected
versions no longer match is rejected untouched and the caller re-reads and
retries.

Infrastructure faults (connection loss, timeouts) are raised as
``StoreUnavailableError``; a rejected batch is an ordinary ``False``.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

ACCOUNTS = "accounts"
ELECTIONS = "elections"
COMPLAINTS = "complaints"
CLUBS = "clubs"

COLLECTIONS = (ACCOUNTS, ELECTIONS, COMPLAINTS, CLUBS)


class StoreUnavailableError(Exception):
    """Raised when the backing store cannot be reached or times out."""
    pass


@dataclass(frozen=True)
class ConditionalWrite:
    """
    One write in a commit batch.

    ``expected_version=None`` inserts a new document (fails if the id
    exists). ``document=None`` deletes. Otherwise the stored document is
    replaced only if its version still equals ``expected_version``.
    """

    collection: str
    doc_id: UUID
    expected_version: int | None
    document: dict[str, Any] | None

    @property
    def is_insert(self) -> bool:
        return self.expected_version is None

    @property
    def is_delete(self) -> bool:
        return self.document is None


def encode_value(value: Any) -> Any:
    """Normalize a filter value to its JSON form."""
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def matches(document: dict[str, Any], filters: dict[str, Any]) -> bool:
    """Equality match on top-level keys."""
    for key, expected in filters.items():
        if document.get(key) != encode_value(expected):
            return False
    return True


class DocumentStore(ABC):
    """Abstract document store over the four council collections."""

    @abstractmethod
    def find_by_id(self, collection: str, doc_id: UUID) -> dict[str, Any] | None:
        """Return a copy of the document, or None."""

    @abstractmethod
    def find(self, collection: str, **filters: Any) -> list[dict[str, Any]]:
        """Return copies of every document matching all ``filters``."""

    @abstractmethod
    def commit(self, writes: list[ConditionalWrite]) -> bool:
        """
        Apply every write or none.

        Returns:
            True when applied; False when any expected version (or insert
            uniqueness) no longer holds.

        Raises:
            StoreUnavailableError: On infrastructure failure.
        """

    def count(self, collection: str, **filters: Any) -> int:
        return len(self.find(collection, **filters))

    def insert(self, collection: str, doc_id: UUID, document: dict[str, Any]) -> bool:
        return self.commit([ConditionalWrite(collection, doc_id, None, document)])

    def delete(self, collection: str, doc_id: UUID, expected_version: int) -> bool:
        return self.commit([ConditionalWrite(collection, doc_id, expected_version, None)])

    def replace(
        self,
        collection: str,
        doc_id: UUID,
        expected_version: int,
        document: dict[str, Any],
    ) -> bool:
        return self.commit([ConditionalWrite(collection, doc_id, expected_version, document)])

    def close(self) -> None:
        """Release resources held by the store."""
