"""
SQL Document Store — the production persistence backend.

Documents live in a single ``documents`` table (see ``store.models``).
A commit batch runs in one database transaction; each conditional update is
``UPDATE ... WHERE collection = :c AND id = :id AND version = :expected``
and the batch is rolled back unless every statement touched exactly one row.

Usage:
    store = SqlDocumentStore(settings.database_url_sync)
    store.initialize()  # Create tables
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import create_engine, delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from council_portal.store.base import (
    ConditionalWrite,
    DocumentStore,
    StoreUnavailableError,
    matches,
)
from council_portal.store.models import Base, DocumentDB

logger = logging.getLogger(__name__)


class _WriteRejected(Exception):
    """A conditional write found a different version; rolls the batch back."""
    pass


class SqlDocumentStore(DocumentStore):
    """Document store over any SQLAlchemy-supported database."""

    def __init__(self, database_url: str, **engine_kwargs: Any) -> None:
        """
        Initialize the store.

        Args:
            database_url: SQLAlchemy connection string (sync driver).
            engine_kwargs: Extra options passed to ``create_engine``.
        """
        self.engine = create_engine(database_url, echo=False, **engine_kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine)

    def initialize(self) -> None:
        """Create the schema if it does not exist."""
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        logger.info("Document store schema ready")

    def find_by_id(self, collection: str, doc_id: UUID) -> dict[str, Any] | None:
        try:
            with self.SessionLocal() as session:
                row = session.execute(
                    select(DocumentDB).where(
                        DocumentDB.collection == collection,
                        DocumentDB.id == str(doc_id),
                    )
                ).scalar_one_or_none()
                return row.to_document() if row is not None else None
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    def find(self, collection: str, **filters: Any) -> list[dict[str, Any]]:
        try:
            with self.SessionLocal() as session:
                rows = session.execute(
                    select(DocumentDB)
                    .where(DocumentDB.collection == collection)
                    .order_by(DocumentDB.updated_at.asc(), DocumentDB.id.asc())
                ).scalars().all()
                documents = [row.to_document() for row in rows]
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        return [document for document in documents if matches(document, filters)]

    def commit(self, writes: list[ConditionalWrite]) -> bool:
        try:
            with self.SessionLocal() as session:
                with session.begin():
                    for write in writes:
                        self._apply(session, write)
        except (_WriteRejected, IntegrityError):
            logger.debug("Commit of %d write(s) rejected on version check", len(writes))
            return False
        except SQLAlchemyError as exc:
            logger.error("Document store commit failed: %s", type(exc).__name__)
            raise StoreUnavailableError(str(exc)) from exc
        return True

    def close(self) -> None:
        self.engine.dispose()

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _apply(session, write: ConditionalWrite) -> None:
        key = str(write.doc_id)

        if write.is_insert:
            session.execute(
                insert(DocumentDB).values(
                    collection=write.collection,
                    id=key,
                    version=1,
                    body=_body(write.document),
                )
            )
            return

        where = (
            DocumentDB.collection == write.collection,
            DocumentDB.id == key,
            DocumentDB.version == write.expected_version,
        )
        if write.is_delete:
            result = session.execute(
                delete(DocumentDB).where(*where).execution_options(synchronize_session=False)
            )
        else:
            result = session.execute(
                update(DocumentDB)
                .where(*where)
                .values(version=write.expected_version + 1, body=_body(write.document))
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != 1:
            raise _WriteRejected(key)


def _body(document: dict[str, Any] | None) -> dict[str, Any]:
    body = dict(document or {})
    body.pop("version", None)
    return body
