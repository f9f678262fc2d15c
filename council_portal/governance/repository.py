"""
Typed access to the document store for the council services.

Maps pydantic entities to stored documents and back, and runs the
read-decide-commit loop that every mutating operation uses.
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable, TypeVar
from uuid import UUID

from pydantic import BaseModel
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from council_portal.governance.outcomes import CoreError, Outcome
from council_portal.store.base import ConditionalWrite, DocumentStore, StoreUnavailableError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

# Returns either a final Outcome or (writes, value)
Attempt = Callable[[], Any]

# Lost commits are retried with jittered backoff so racing writers spread out
COMMIT_ATTEMPTS = 30
COMMIT_BACKOFF_MULTIPLIER = 0.005
COMMIT_BACKOFF_MAX = 0.25

# Fields derived on read and never written back
_DERIVED_FIELDS = {"turnout_percentage"}


class CommitLost(Exception):
    """A conditional commit found a newer version than the one it read."""

    def __init__(self, writes: int) -> None:
        super().__init__(f"{writes} write(s) lost the optimistic commit")


def store_guard(func: Callable[..., Outcome]) -> Callable[..., Outcome]:
    """Convert ``StoreUnavailableError`` into an infrastructure outcome."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Outcome:
        try:
            return func(*args, **kwargs)
        except StoreUnavailableError as exc:
            logger.error("Store unavailable during %s: %s", func.__name__, exc)
            return Outcome.failure(
                CoreError.infrastructure(
                    "store_unavailable", "Service temporarily unavailable, please retry"
                )
            )

    return wrapper


class Repository:
    """Entity-level view of a ``DocumentStore``."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def get(self, model: type[M], collection: str, doc_id: UUID) -> M | None:
        document = self.store.find_by_id(collection, doc_id)
        return model.model_validate(document) if document is not None else None

    def all(self, model: type[M], collection: str, **filters: Any) -> list[M]:
        return [model.model_validate(d) for d in self.store.find(collection, **filters)]

    def count(self, collection: str, **filters: Any) -> int:
        return self.store.count(collection, **filters)

    @staticmethod
    def write(collection: str, entity: BaseModel, *, insert: bool = False) -> ConditionalWrite:
        document = entity.model_dump(mode="json", exclude=_DERIVED_FIELDS)
        return ConditionalWrite(
            collection=collection,
            doc_id=entity.id,
            expected_version=None if insert else entity.version,
            document=document,
        )

    @staticmethod
    def removal(collection: str, entity: BaseModel) -> ConditionalWrite:
        return ConditionalWrite(collection, entity.id, entity.version, None)

    def transact(self, attempt: Attempt, retries: int = COMMIT_ATTEMPTS) -> Outcome:
        """
        Run ``attempt`` until its writes commit.

        ``attempt`` re-reads what it needs and returns either a final
        ``Outcome`` (nothing to write) or ``(writes, value)``. A rejected
        commit means another writer got there first, so the attempt is
        repeated against fresh state after a jittered backoff.

        Only lost commits are retried. ``StoreUnavailableError`` propagates
        to ``store_guard`` on the first occurrence.
        """
        retrying = Retrying(
            retry=retry_if_exception_type(CommitLost),
            stop=stop_after_attempt(retries),
            wait=wait_random_exponential(
                multiplier=COMMIT_BACKOFF_MULTIPLIER, max=COMMIT_BACKOFF_MAX
            ),
            before_sleep=_log_lost_commit,
            reraise=True,
        )
        try:
            for retry_attempt in retrying:
                with retry_attempt:
                    result = attempt()
                    if isinstance(result, Outcome):
                        return result
                    writes, value = result
                    if not self.store.commit(writes):
                        raise CommitLost(len(writes))
                    _refresh_versions(writes, value)
                    return Outcome.success(value)
        except CommitLost:
            logger.warning("Gave up after %d conflicting commits", retries)
        return Outcome.failure(
            CoreError.infrastructure(
                "write_contention", "Too many concurrent updates, please retry"
            )
        )


def _refresh_versions(writes: list[ConditionalWrite], value: Any) -> None:
    """Bring the versions of returned entities in line with what was committed."""
    committed = {w.doc_id: (w.expected_version or 0) + 1 for w in writes if not w.is_delete}
    items = value if isinstance(value, (tuple, list)) else (value,)
    for item in items:
        if isinstance(item, BaseModel) and getattr(item, "id", None) in committed:
            item.version = committed[item.id]


def _log_lost_commit(retry_state) -> None:
    logger.debug(
        "Optimistic commit lost race (attempt %d), retrying in %.3fs",
        retry_state.attempt_number,
        retry_state.next_action.sleep if retry_state.next_action else 0.0,
    )
