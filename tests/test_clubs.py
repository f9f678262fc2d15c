"""
Tests for the Club Service.

Validates:
- Club creation is restricted and names are unique
- Club/admin pairs stay bidirectional through reassignment and replacement
- Club admins manage members of their own club only
- Membership decisions keep the member's joined clubs in step
"""

from __future__ import annotations

from uuid import uuid4

from council_factories import T0, make_account, make_club
from council_portal.clock import FrozenClock
from council_portal.domain.schema import (
    Account,
    Club,
    ClubMemberRole,
    ClubStatus,
    MembershipStatus,
    Role,
)
from council_portal.governance.clubs import ClubDraft, ClubService, ClubUpdate
from council_portal.governance.outcomes import ErrorKind
from council_portal.governance.repository import Repository
from council_portal.store.audit import reconcile
from council_portal.store.base import ACCOUNTS, CLUBS
from council_portal.store.memory import InMemoryDocumentStore


class TestClubAdministration:
    def setup_method(self):
        self.store = InMemoryDocumentStore()
        self.service = ClubService(self.store, clock=FrozenClock(T0))
        self.repo = Repository(self.store)
        self.super_admin = make_account(self.store, Role.SUPER_ADMIN)
        self.president = make_account(self.store, Role.PRESIDENT_ADMIN)

    def test_president_creates_club(self):
        """President Admin should be able to create a club."""
        club = self.service.create_club(self.president, ClubDraft(name="Chess Society")).value
        assert club.created_by == self.president.id
        assert self.repo.get(Club, CLUBS, club.id).name == "Chess Society"

    def test_duplicate_name(self):
        """Club names should be unique regardless of case."""
        self.service.create_club(self.president, ClubDraft(name="Chess Society"))
        outcome = self.service.create_club(self.president, ClubDraft(name="chess society"))
        assert outcome.error.reason == "Club with this name already exists"

    def test_student_cannot_create(self):
        """Students should NOT be able to create clubs."""
        student = make_account(self.store)
        assert self.service.create_club(student, ClubDraft(name="Rogue")).error.kind == ErrorKind.POLICY_DENIED

    def test_update_club(self):
        """Updating a club should change only the supplied fields."""
        club = make_club(self.store)
        updated = self.service.update_club(
            self.president, club.id, ClubUpdate(description="Weekly games", status=ClubStatus.INACTIVE)
        ).value
        assert updated.description == "Weekly games"
        assert updated.status == ClubStatus.INACTIVE
        assert updated.name == club.name

    def test_list_clubs_without_admin(self):
        """The without-admin filter should hide clubs that have an admin."""
        club_admin = make_account(self.store, Role.CLUB_ADMIN)
        taken = make_club(self.store, name="Astronomy")
        free = make_club(self.store, name="Baking")
        self.service.assign_club_admin(self.super_admin, taken.id, club_admin.id)
        assert [c.id for c in self.service.list_clubs(without_admin=True).value] == [free.id]


class TestClubAdminPairing:
    def setup_method(self):
        self.store = InMemoryDocumentStore()
        self.service = ClubService(self.store, clock=FrozenClock(T0))
        self.repo = Repository(self.store)
        self.super_admin = make_account(self.store, Role.SUPER_ADMIN)
        self.club_admin = make_account(self.store, Role.CLUB_ADMIN)
        self.club_1 = make_club(self.store)
        self.club_2 = make_club(self.store)

    def test_assignment_pairs_both_sides(self):
        """Assignment should set both the club's admin and the admin's club."""
        club, admin = self.service.assign_club_admin(self.super_admin, self.club_1.id, self.club_admin.id).value
        assert club.club_admin == self.club_admin.id
        assert admin.assigned_club == self.club_1.id
        assert reconcile(self.store).is_consistent

    def test_reassignment_clears_previous_club(self):
        """Moving an admin to a new club should clear the old club's admin."""
        self.service.assign_club_admin(self.super_admin, self.club_1.id, self.club_admin.id)
        self.service.assign_club_admin(self.super_admin, self.club_2.id, self.club_admin.id)

        assert self.repo.get(Club, CLUBS, self.club_1.id).club_admin is None
        assert self.repo.get(Club, CLUBS, self.club_2.id).club_admin == self.club_admin.id
        assert self.repo.get(Account, ACCOUNTS, self.club_admin.id).assigned_club == self.club_2.id
        assert reconcile(self.store).is_consistent

    def test_replacing_admin_releases_previous_admin(self):
        """A new admin for a managed club should release the displaced admin."""
        replacement = make_account(self.store, Role.CLUB_ADMIN)
        self.service.assign_club_admin(self.super_admin, self.club_1.id, self.club_admin.id)

        outcome = self.service.assign_club_admin(self.super_admin, self.club_1.id, replacement.id)
        assert outcome.ok
        assert self.repo.get(Club, CLUBS, self.club_1.id).club_admin == replacement.id
        assert self.repo.get(Account, ACCOUNTS, replacement.id).assigned_club == self.club_1.id
        assert self.repo.get(Account, ACCOUNTS, self.club_admin.id).assigned_club is None
        assert reconcile(self.store).is_consistent

    def test_replacement_moves_admin_from_other_club(self):
        """An admin taken from one club to replace another's should leave no stale side."""
        other = make_account(self.store, Role.CLUB_ADMIN)
        self.service.assign_club_admin(self.super_admin, self.club_1.id, self.club_admin.id)
        self.service.assign_club_admin(self.super_admin, self.club_2.id, other.id)

        assert self.service.assign_club_admin(self.super_admin, self.club_1.id, other.id).ok
        assert self.repo.get(Club, CLUBS, self.club_2.id).club_admin is None
        assert self.repo.get(Account, ACCOUNTS, self.club_admin.id).assigned_club is None
        assert reconcile(self.store).is_consistent

    def test_only_club_admins_can_be_paired(self):
        """Only existing club_admin accounts should be assignable."""
        student = make_account(self.store)
        outcome = self.service.assign_club_admin(self.super_admin, self.club_1.id, student.id)
        assert outcome.error.reason == "User is not a club admin"
        missing = self.service.assign_club_admin(self.super_admin, self.club_1.id, uuid4())
        assert missing.error.reason == "Admin user not found"

    def test_only_super_admin_assigns(self):
        """Admin should NOT be able to assign club admins."""
        admin = make_account(self.store, Role.ADMIN)
        outcome = self.service.assign_club_admin(admin, self.club_1.id, self.club_admin.id)
        assert outcome.error.reason == "Access denied. Super Admin privileges required."

    def test_unassign(self):
        """Unassigning should clear both sides, and fail on a club with no admin."""
        self.service.assign_club_admin(self.super_admin, self.club_1.id, self.club_admin.id)
        assert self.service.unassign_club_admin(self.super_admin, self.club_1.id).ok
        assert self.repo.get(Account, ACCOUNTS, self.club_admin.id).assigned_club is None
        again = self.service.unassign_club_admin(self.super_admin, self.club_1.id)
        assert again.error.code == "club_has_no_admin"


class TestMembership:
    """Ownership-gated member management."""

    def setup_method(self):
        self.store = InMemoryDocumentStore()
        self.service = ClubService(self.store, clock=FrozenClock(T0))
        self.repo = Repository(self.store)
        super_admin = make_account(self.store, Role.SUPER_ADMIN)
        self.club_1 = make_club(self.store)
        self.club_2 = make_club(self.store)
        _, self.club_admin = self.service.assign_club_admin(
            super_admin, self.club_1.id, make_account(self.store, Role.CLUB_ADMIN).id
        ).value
        self.super_admin = super_admin
        self.student = make_account(self.store)

    def _join(self, club):
        updated = self.service.join_club(self.student, club.id).value
        return updated.membership_of(self.student.id)

    def test_join_is_pending(self):
        """A join request should start pending and not be repeatable."""
        member = self._join(self.club_1)
        assert member.status == MembershipStatus.PENDING
        again = self.service.join_club(self.student, self.club_1.id)
        assert again.error.code == "already_member"

    def test_club_admin_cannot_join(self):
        """Club admins should NOT be able to join clubs."""
        assert not self.service.join_club(self.club_admin, self.club_2.id).ok

    def test_approve_own_club(self):
        """A club admin approving a member of their club should update joined clubs."""
        member = self._join(self.club_1)
        approved = self.service.update_member_status(
            self.club_admin, self.club_1.id, member.id, "approved"
        ).value
        assert approved.status == MembershipStatus.APPROVED
        account = self.repo.get(Account, ACCOUNTS, self.student.id)
        assert account.joined_clubs == [self.club_1.id]

    def test_other_club_is_denied(self):
        """A club admin should NOT manage members of another club."""
        member = self._join(self.club_2)
        outcome = self.service.update_member_status(
            self.club_admin, self.club_2.id, member.id, MembershipStatus.APPROVED
        )
        assert outcome.error.kind == ErrorKind.POLICY_DENIED
        assert outcome.error.reason == "Access denied. You can only manage your assigned club."
        stored = self.repo.get(Club, CLUBS, self.club_2.id)
        assert stored.membership_of(self.student.id).status == MembershipStatus.PENDING

    def test_super_admin_manages_any_club(self):
        """Super Admin should bypass club ownership."""
        member = self._join(self.club_2)
        assert self.service.update_member_status(
            self.super_admin, self.club_2.id, member.id, "approved"
        ).ok

    def test_invalid_status(self):
        """Only approved and rejected are valid membership decisions."""
        member = self._join(self.club_1)
        outcome = self.service.update_member_status(self.club_admin, self.club_1.id, member.id, "pending")
        assert outcome.error.reason == "Invalid status. Must be approved or rejected."

    def test_rejection_removes_joined_club(self):
        """Rejecting an approved member should drop the club from their account."""
        member = self._join(self.club_1)
        self.service.update_member_status(self.club_admin, self.club_1.id, member.id, "approved")
        self.service.update_member_status(self.club_admin, self.club_1.id, member.id, "rejected")
        assert self.repo.get(Account, ACCOUNTS, self.student.id).joined_clubs == []

    def test_member_role_and_removal(self):
        """Member roles should be validated, and removal should empty the roster."""
        member = self._join(self.club_1)
        assert self.service.update_member_role(self.club_admin, self.club_1.id, member.id, "chancellor").error.reason == "Invalid role"
        updated = self.service.update_member_role(self.club_admin, self.club_1.id, member.id, "treasurer").value
        assert updated.role == ClubMemberRole.TREASURER

        assert self.service.remove_member(self.club_admin, self.club_1.id, member.id).ok
        assert self.service.list_members(self.club_admin, self.club_1.id).value == []
