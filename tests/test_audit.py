"""
Tests for the store reconciliation audit.

Validates:
- A store written only through the services reconciles cleanly
- Counter drift and broken club/admin pairs are reported
- The CLI exits non-zero on an inconsistent store
"""

from __future__ import annotations

import sys

import pytest

from council_factories import T0, make_account, make_active_election, make_club
from council_portal.clock import FrozenClock
from council_portal.domain.schema import Role
from council_portal.governance.elections import ElectionService
from council_portal.governance.repository import Repository
from council_portal.store import audit
from council_portal.store.audit import reconcile, run_audit
from council_portal.store.base import ACCOUNTS, CLUBS, ELECTIONS
from council_portal.store.memory import InMemoryDocumentStore
from council_portal.store.sql import SqlDocumentStore


class TestReconcile:
    def setup_method(self):
        self.store = InMemoryDocumentStore()
        self.election = make_active_election(self.store)

    def test_clean_store(self):
        """A store written only through the services should reconcile cleanly."""
        service = ElectionService(self.store, clock=FrozenClock(T0))
        for _ in range(3):
            service.cast_vote(make_account(self.store), self.election.id, self.election.candidates[1].id)
        report = reconcile(self.store)
        assert report.is_consistent
        assert report.elections_checked == 1

    def test_counter_drift(self):
        """A total that disagrees with the voter ledger should be reported."""
        self.election.total_votes = 4
        assert self.store.commit([Repository.write(ELECTIONS, self.election)])
        report = reconcile(self.store)
        assert not report.is_consistent
        assert str(self.election.id) in report.election_problems

    def test_one_sided_pairing(self):
        """A club naming an admin who does not point back should be reported."""
        club_admin = make_account(self.store, Role.CLUB_ADMIN)
        club = make_club(self.store, club_admin=club_admin.id)
        report = reconcile(self.store)
        assert report.clubs_checked == 1
        assert any(club.name in p for p in report.pairing_problems)

    def test_account_pointing_at_missing_club(self):
        """An account assigned to a deleted club should be reported."""
        make_account(self.store, Role.CLUB_ADMIN, assigned_club=make_club(self.store).id)
        for document in self.store.find(CLUBS):
            self.store.delete(CLUBS, document["id"], document["version"])
        report = reconcile(self.store)
        assert any("missing club" in p for p in report.pairing_problems)

    def test_stale_account_side(self):
        """An admin still pointing at a club that names someone else should be reported."""
        displaced = make_account(self.store, Role.CLUB_ADMIN)
        current = make_account(self.store, Role.CLUB_ADMIN)
        club = make_club(self.store, club_admin=current.id)
        current.assigned_club = club.id
        displaced.assigned_club = club.id
        assert self.store.commit([
            Repository.write(ACCOUNTS, current), Repository.write(ACCOUNTS, displaced),
        ])
        report = reconcile(self.store)
        assert report.pairing_problems == [
            f"account {displaced.username} is assigned to club {club.name!r}, "
            "which does not name it as admin"
        ]


class TestAuditCommand:
    def test_run_audit_on_sqlite(self, tmp_path):
        """run_audit should pass a clean database and fail a drifted one."""
        url = f"sqlite:///{tmp_path / 'council.db'}"
        store = SqlDocumentStore(url)
        store.initialize()
        election = make_active_election(store)
        store.close()
        assert run_audit(url, verbose=True)

        store = SqlDocumentStore(url)
        election.total_votes = 9
        store.commit([Repository.write(ELECTIONS, election)])
        store.close()
        assert not run_audit(url)

    def test_main_exit_code(self, tmp_path, monkeypatch):
        """The CLI should exit 0 on a consistent database."""
        url = f"sqlite:///{tmp_path / 'council.db'}"
        store = SqlDocumentStore(url)
        store.initialize()
        store.close()
        monkeypatch.setattr(sys, "argv", ["council-audit", "--database-url", url])
        with pytest.raises(SystemExit) as exit_info:
            audit.main()
        assert exit_info.value.code == 0
