"""
Tests for the document stores.

Validates:
- Conditional writes apply only against the expected version
- A commit batch is all-or-nothing
- The SQL store behaves like the in-memory store
- Store outages surface as infrastructure outcomes, never exceptions
"""

from __future__ import annotations

from uuid import uuid4

import pytest

from council_factories import T0, make_account, make_active_election
from council_portal.clock import FrozenClock
from council_portal.domain.schema import Account, Election
from council_portal.governance.elections import ElectionService
from council_portal.governance.lifecycle import reconcile_election
from council_portal.governance.outcomes import ErrorKind
from council_portal.governance.repository import Repository
from council_portal.store.base import (
    ACCOUNTS,
    ELECTIONS,
    ConditionalWrite,
    DocumentStore,
    StoreUnavailableError,
)
from council_portal.store.memory import InMemoryDocumentStore
from council_portal.store.sql import SqlDocumentStore


class TestConditionalWrites:
    def test_insert_and_read_back(self, store):
        """An insert should be readable with version 1."""
        doc_id = uuid4()
        assert store.insert(ACCOUNTS, doc_id, {"username": "kai", "is_active": True})
        document = store.find_by_id(ACCOUNTS, doc_id)
        assert document["username"] == "kai"
        assert document["version"] == 1
        assert document["id"] == str(doc_id)

    def test_duplicate_insert_is_rejected(self, store):
        """Inserting an existing id should be rejected without overwriting."""
        doc_id = uuid4()
        store.insert(ACCOUNTS, doc_id, {"username": "kai"})
        assert not store.insert(ACCOUNTS, doc_id, {"username": "impostor"})
        assert store.find_by_id(ACCOUNTS, doc_id)["username"] == "kai"

    def test_replace_requires_current_version(self, store):
        """A replace should apply only against the current version."""
        doc_id = uuid4()
        store.insert(ACCOUNTS, doc_id, {"username": "kai"})
        assert store.replace(ACCOUNTS, doc_id, 1, {"username": "kai2"})
        assert not store.replace(ACCOUNTS, doc_id, 1, {"username": "stale"})
        document = store.find_by_id(ACCOUNTS, doc_id)
        assert document["username"] == "kai2"
        assert document["version"] == 2

    def test_delete_requires_current_version(self, store):
        """A delete should apply only against the current version."""
        doc_id = uuid4()
        store.insert(ACCOUNTS, doc_id, {"username": "kai"})
        assert not store.delete(ACCOUNTS, doc_id, 7)
        assert store.delete(ACCOUNTS, doc_id, 1)
        assert store.find_by_id(ACCOUNTS, doc_id) is None

    def test_batch_is_all_or_nothing(self, store):
        """One stale write should reject the whole batch."""
        good, bad = uuid4(), uuid4()
        store.insert(ACCOUNTS, good, {"username": "a"})
        store.insert(ELECTIONS, bad, {"title": "b"})
        applied = store.commit([
            ConditionalWrite(ACCOUNTS, good, 1, {"username": "a2"}),
            ConditionalWrite(ELECTIONS, bad, 5, {"title": "b2"}),
        ])
        assert not applied
        assert store.find_by_id(ACCOUNTS, good)["username"] == "a"
        assert store.find_by_id(ACCOUNTS, good)["version"] == 1

    def test_find_filters_on_top_level_fields(self, store):
        """find should filter on top-level document fields."""
        store.insert(ACCOUNTS, uuid4(), {"username": "a", "is_active": True})
        store.insert(ACCOUNTS, uuid4(), {"username": "b", "is_active": False})
        assert [d["username"] for d in store.find(ACCOUNTS, is_active=True)] == ["a"]
        assert store.count(ACCOUNTS) == 2

    def test_collections_are_separate(self, store):
        """Documents should not leak across collections."""
        doc_id = uuid4()
        store.insert(ACCOUNTS, doc_id, {"username": "a"})
        assert store.find_by_id(ELECTIONS, doc_id) is None


class TestVotingOverSql:
    def test_vote_round_trip(self, store):
        """A vote should persist counters and ledger through the store."""
        service = ElectionService(store, clock=FrozenClock(T0))
        student = make_account(store)
        election = make_active_election(store)
        candidate = election.candidates[0]

        assert service.cast_vote(student, election.id, candidate.id, "10.0.0.9").ok
        assert service.cast_vote(student, election.id, candidate.id).error.code == "already_voted"

        repo = Repository(store)
        stored = repo.get(Election, ELECTIONS, election.id)
        assert stored.total_votes == 1
        assert stored.version == 2
        assert reconcile_election(stored) == []
        assert repo.get(Account, ACCOUNTS, student.id).voted_elections == [election.id]


class UnavailableStore(DocumentStore):
    """A store whose backend is down."""

    def find_by_id(self, collection, doc_id):
        raise StoreUnavailableError("connection refused")

    def find(self, collection, **filters):
        raise StoreUnavailableError("connection refused")

    def commit(self, writes):
        raise StoreUnavailableError("connection refused")


class TestInfrastructureFailures:
    def test_service_returns_infrastructure_outcome(self):
        """A store outage should become a retryable infrastructure outcome."""
        service = ElectionService(UnavailableStore(), clock=FrozenClock(T0))
        student = Account(name="Io", username="io")
        outcome = service.cast_vote(student, uuid4(), uuid4())
        assert outcome.error.kind == ErrorKind.INFRASTRUCTURE_FAILURE
        assert outcome.error.code == "store_unavailable"
        assert outcome.error.is_retryable

    def test_unreachable_database(self, tmp_path):
        """An unreachable database should raise, and services should report it."""
        sql_store = SqlDocumentStore(f"sqlite:///{tmp_path / 'missing' / 'council.db'}")
        with pytest.raises(StoreUnavailableError):
            sql_store.find_by_id(ACCOUNTS, uuid4())
        outcome = ElectionService(sql_store, clock=FrozenClock(T0)).list_elections(
            Account(name="Io", username="io")
        )
        assert outcome.error.kind == ErrorKind.INFRASTRUCTURE_FAILURE
        sql_store.close()

    def test_write_contention_is_reported(self):
        """Exhausting the commit attempts should report write contention."""
        class AlwaysStale(InMemoryDocumentStore):
            def commit(self, writes):
                return False

        store = AlwaysStale()
        outcome = Repository(store).transact(lambda: ([], None), retries=3)
        assert outcome.error.code == "write_contention"
        assert outcome.error.kind == ErrorKind.INFRASTRUCTURE_FAILURE

    def test_lost_commits_are_retried(self):
        """A commit that loses a few races should land once the contention clears."""
        class LosesTwice(InMemoryDocumentStore):
            def __init__(self):
                super().__init__()
                self.losses = 2

            def commit(self, writes):
                if self.losses:
                    self.losses -= 1
                    return False
                return super().commit(writes)

        calls = []
        store = LosesTwice()

        def attempt():
            calls.append(1)
            return [ConditionalWrite(ACCOUNTS, doc_id, None, {"username": "kai"})], "kai"

        doc_id = uuid4()
        outcome = Repository(store).transact(attempt)
        assert outcome.value == "kai"
        assert len(calls) == 3
        assert store.find_by_id(ACCOUNTS, doc_id)["username"] == "kai"

    def test_outage_is_not_retried(self):
        """A store outage during a commit should surface on the first attempt."""
        calls = []

        def attempt():
            calls.append(1)
            return [ConditionalWrite(ACCOUNTS, uuid4(), None, {})], None

        with pytest.raises(StoreUnavailableError):
            Repository(UnavailableStore()).transact(attempt)
        assert len(calls) == 1
