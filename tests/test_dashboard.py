"""
Tests for the Web API.

Validates:
- Outcome kinds map to HTTP status codes
- The acting account comes from a signed, expiring bearer token
- Credential material never leaves the API
- End-to-end flows for voting, complaints and clubs
"""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

from fastapi.testclient import TestClient

from council_factories import FAST_HASHER, T0, make_account, make_active_election, make_club
from council_portal.clock import FrozenClock
from council_portal.dashboard.app import app, state
from council_portal.domain.schema import Role
from council_portal.governance.repository import Repository
from council_portal.governance.tokens import TokenManager
from council_portal.store.base import ACCOUNTS
from council_portal.store.memory import InMemoryDocumentStore


def as_account(account) -> dict[str, str]:
    token, _ = state.accounts.tokens.issue(account)
    return {"Authorization": f"Bearer {token}"}


class TestDashboardAPI:
    def setup_method(self):
        self.store = InMemoryDocumentStore()
        self.clock = FrozenClock(T0)
        state.configure(self.store, self.clock, hasher=FAST_HASHER)
        self.client = TestClient(app)
        self.student = make_account(self.store)
        self.president = make_account(self.store, Role.PRESIDENT_ADMIN)
        self.super_admin = make_account(self.store, Role.SUPER_ADMIN)

    def test_health(self):
        """Health should report a configured store."""
        body = self.client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["store_available"]

    def test_register_and_login(self):
        """Login should issue a bearer token that authenticates later requests."""
        resp = self.client.post("/api/auth/register", json={
            "name": "Noor", "username": "noor", "password": "long enough secret",
        })
        assert resp.status_code == 201
        assert "password_hash" not in resp.json()["data"]
        assert resp.json()["data"]["role"] == "student"

        ok = self.client.post("/api/auth/login", json={"username": "noor", "password": "long enough secret"})
        assert ok.status_code == 200
        session = ok.json()["data"]
        assert session["token_type"] == "bearer"
        assert "password_hash" not in session["account"]

        me = self.client.get("/api/accounts/me", headers={"Authorization": f"Bearer {session['token']}"})
        assert me.status_code == 200
        assert me.json()["data"]["username"] == "noor"

        bad = self.client.post("/api/auth/login", json={"username": "noor", "password": "wrong"})
        assert bad.status_code == 401
        assert bad.json()["message"] == "Invalid credentials"
        assert "token" not in bad.json()

    def test_me(self):
        """The me route should return the token's account without credentials."""
        resp = self.client.get("/api/accounts/me", headers=as_account(self.student))
        assert resp.json()["data"]["id"] == str(self.student.id)
        assert "password_hash" not in resp.json()["data"]

    def test_policy_denial_is_403(self):
        """A policy denial should map to 403."""
        resp = self.client.patch(
            f"/api/accounts/{self.student.id}/role",
            json={"role": "admin"},
            headers=as_account(self.president),
        )
        assert resp.status_code == 403
        assert resp.json()["kind"] == "policy_denied"

    def test_super_admin_changes_role(self):
        """A role change should return the re-derived permissions."""
        resp = self.client.patch(
            f"/api/accounts/{self.student.id}/role",
            json={"role": "academic_affairs"},
            headers=as_account(self.super_admin),
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["permissions"]["can_resolve_academic_complaints"]

    def test_create_election_validation_is_422(self):
        """Schedule violations should map to 422 with every error listed."""
        resp = self.client.post("/api/elections", headers=as_account(self.president), json={
            "title": "Treasurer",
            "description": "Treasurer election",
            "start_date": (T0 - timedelta(hours=1)).isoformat(),
            "end_date": (T0 - timedelta(hours=2)).isoformat(),
            "candidates": [{"name": "Ravi"}],
        })
        assert resp.status_code == 422
        assert "Start date must be in the future" in resp.json()["errors"]

    def test_create_election(self):
        """President Admin should create an upcoming election."""
        resp = self.client.post("/api/elections", headers=as_account(self.president), json={
            "title": "Treasurer",
            "description": "Treasurer election",
            "start_date": "2026-03-02T12:00:00Z",
            "end_date": "2026-03-03T12:00:00Z",
            "candidates": [{"name": "Ravi"}, {"name": "Mei"}],
        })
        assert resp.status_code == 201
        assert resp.json()["data"]["status"] == "upcoming"

    def test_vote_flow(self):
        """A vote should record the first forwarded hop and reject a repeat."""
        election = make_active_election(self.store)
        candidate_id = str(election.candidates[0].id)
        url = f"/api/elections/{election.id}/vote"
        headers = {**as_account(self.student), "X-Forwarded-For": "10.2.3.4, 172.16.0.1"}

        assert self.client.post(url, json={"candidate_id": candidate_id}, headers=headers).status_code == 200
        again = self.client.post(url, json={"candidate_id": candidate_id}, headers=headers)
        assert again.status_code == 409
        assert again.json()["message"] == "Already voted"

        denied = self.client.post(url, json={"candidate_id": candidate_id}, headers=as_account(self.president))
        assert denied.status_code == 403

        view = self.client.get(f"/api/elections/{election.id}", headers=as_account(self.super_admin)).json()
        assert view["data"]["election"]["total_votes"] == 1
        assert view["data"]["election"]["voters"][0]["ip_address"] == "10.2.3.4"

    def test_vote_without_forwarding_records_peer(self):
        """Without a forwarding header the connecting peer address is recorded."""
        election = make_active_election(self.store)
        resp = self.client.post(
            f"/api/elections/{election.id}/vote",
            json={"candidate_id": str(election.candidates[1].id)},
            headers=as_account(self.student),
        )
        assert resp.status_code == 200

        view = self.client.get(f"/api/elections/{election.id}", headers=as_account(self.super_admin)).json()
        assert view["data"]["election"]["voters"][0]["ip_address"] == "testclient"

    def test_unknown_election_is_404(self):
        """An unknown election should map to 404."""
        resp = self.client.get(f"/api/elections/{uuid4()}", headers=as_account(self.student))
        assert resp.status_code == 404

    def test_complaint_flow(self):
        """Complaints should be resolved only within the resolver's partition."""
        academic = make_account(self.store, Role.ACADEMIC_AFFAIRS)
        created = self.client.post("/api/complaints", headers=as_account(self.student), json={
            "title": "Lab access",
            "description": "The chemistry lab is closed during posted hours.",
            "complaint_type": "academic",
        })
        assert created.status_code == 201
        complaint_id = created.json()["data"]["id"]

        denied = self.client.put(
            f"/api/complaints/{complaint_id}/resolve", json={}, headers=as_account(self.president)
        )
        assert denied.status_code == 403
        assert denied.json()["message"] == "President admin cannot access academic complaints"

        resolved = self.client.put(
            f"/api/complaints/{complaint_id}/resolve",
            json={"resolution_notes": "Hours corrected"},
            headers=as_account(academic),
        )
        assert resolved.status_code == 200
        assert resolved.json()["data"]["resolution_type"] == "academic_affairs_resolved"

        mine = self.client.get("/api/complaints", headers=as_account(self.student)).json()["data"]
        assert [c["id"] for c in mine] == [complaint_id]

    def test_club_ownership(self):
        """Club admins should manage only their own club's members."""
        club_1 = make_club(self.store)
        club_2 = make_club(self.store)
        club_admin = make_account(self.store, Role.CLUB_ADMIN)
        assigned = self.client.put(
            f"/api/clubs/{club_1.id}/admin",
            json={"account_id": str(club_admin.id)},
            headers=as_account(self.super_admin),
        )
        assert assigned.status_code == 200

        self.client.post(f"/api/clubs/{club_2.id}/join", headers=as_account(self.student))
        members = self.client.get(f"/api/clubs/{club_2.id}/members", headers=as_account(club_admin))
        assert members.status_code == 403
        assert members.json()["message"] == "Access denied. You can only manage your assigned club."

        own = self.client.get(f"/api/clubs/{club_1.id}/members", headers=as_account(club_admin))
        assert own.status_code == 200
        assert own.json()["data"] == []


class TestBearerAuthentication:
    """Only a valid, unexpired token for an active account identifies the caller."""

    def setup_method(self):
        self.store = InMemoryDocumentStore()
        self.clock = FrozenClock(T0)
        state.configure(self.store, self.clock, hasher=FAST_HASHER)
        self.client = TestClient(app)
        self.student = make_account(self.store)
        self.super_admin = make_account(self.store, Role.SUPER_ADMIN)

    def _me(self, headers=None):
        return self.client.get("/api/accounts/me", headers=headers or {})

    def test_missing_token(self):
        """A request without a token should be rejected with a bearer challenge."""
        resp = self._me()
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_account_id_header_is_not_a_credential(self):
        """Naming an account in a header should not authenticate as it."""
        resp = self._me({"X-Account-Id": str(self.super_admin.id)})
        assert resp.status_code == 401

    def test_malformed_token(self):
        """A token that is not a JWT should be rejected."""
        assert self._me({"Authorization": "Bearer not-a-token"}).status_code == 401

    def test_forged_token(self):
        """A token signed with another key should be rejected."""
        forged, _ = TokenManager("another-deployment-key", clock=self.clock).issue(self.super_admin)
        resp = self._me({"Authorization": f"Bearer {forged}"})
        assert resp.status_code == 401
        denied = self.client.patch(
            f"/api/accounts/{self.student.id}/role",
            json={"role": "admin"},
            headers={"Authorization": f"Bearer {forged}"},
        )
        assert denied.status_code == 401

    def test_expired_token(self):
        """A token should stop working once its lifetime has passed."""
        headers = as_account(self.student)
        assert self._me(headers).status_code == 200
        self.clock.advance(minutes=61)
        assert self._me(headers).status_code == 401

    def test_token_for_unknown_account(self):
        """A validly signed token for a deleted account should be rejected."""
        ghost = make_account(InMemoryDocumentStore())
        assert self._me(as_account(ghost)).status_code == 401

    def test_token_for_deactivated_account(self):
        """Deactivating an account should invalidate its outstanding tokens."""
        headers = as_account(self.student)
        self.student.is_active = False
        assert self.store.commit([Repository.write(ACCOUNTS, self.student)])
        resp = self._me(headers)
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Account has been deactivated"
