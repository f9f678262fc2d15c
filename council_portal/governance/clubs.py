"""
Club Service — club administration and membership.

A club has at most one club admin. The club's ``club_admin`` and the admin
account's ``assigned_club`` are kept as a consistent pair: every reassignment
clears the stale side in the same commit as the new pairing.

Day-to-day membership management is ownership-gated: a club admin may only
act on their assigned club; super_admin may act on any club.
"""

from __future__ import annotations

import logging
from uuid import UUID

from pydantic import BaseModel, Field

from council_portal.clock import Clock, SystemClock
from council_portal.domain.schema import (
    Account,
    Club,
    ClubMember,
    ClubMemberRole,
    ClubStatus,
    MembershipStatus,
    Role,
)
from council_portal.governance.access_control import (
    AccessControl,
    Action,
    Resource,
    access_control,
)
from council_portal.governance.outcomes import CoreError, Outcome
from council_portal.governance.repository import COMMIT_ATTEMPTS, Repository, store_guard
from council_portal.store.base import ACCOUNTS, CLUBS, DocumentStore

logger = logging.getLogger(__name__)

DECIDABLE_STATUSES = (MembershipStatus.APPROVED, MembershipStatus.REJECTED)


class ClubDraft(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=1000)
    category: str = ""


class ClubUpdate(BaseModel):
    name: str | None = Field(default=None, max_length=100)
    description: str | None = Field(default=None, max_length=1000)
    category: str | None = None
    status: ClubStatus | None = None


class ClubService:
    """Store-backed club operations."""

    def __init__(
        self,
        store: DocumentStore,
        clock: Clock | None = None,
        access: AccessControl | None = None,
        commit_retries: int = COMMIT_ATTEMPTS,
    ) -> None:
        self.repo = Repository(store)
        self.clock = clock or SystemClock()
        self.access = access or access_control
        self.commit_retries = commit_retries

    # ── Clubs ───────────────────────────────────────────────────

    @store_guard
    def create_club(self, actor: Account, draft: ClubDraft) -> Outcome[Club]:
        decision = self.access.authorize(actor, Action.CREATE_CLUB)
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())

        name = draft.name.strip()
        if any(c.name.lower() == name.lower() for c in self.repo.all(Club, CLUBS)):
            return Outcome.failure(
                CoreError.conflict("club_exists", "Club with this name already exists")
            )

        club = Club(
            name=name,
            description=draft.description,
            category=draft.category,
            created_by=actor.id,
            created_at=self.clock.now(),
        )
        outcome = self.repo.transact(
            lambda: ([self.repo.write(CLUBS, club, insert=True)], club), self.commit_retries
        )
        if outcome.ok:
            logger.info("Club created: id=%s name=%r", str(club.id)[:8], club.name)
        return outcome

    @store_guard
    def update_club(self, actor: Account, club_id: UUID, changes: ClubUpdate) -> Outcome[Club]:
        decision = self.access.authorize(actor, Action.UPDATE_CLUB, Resource.for_club(club_id))
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())

        def attempt():
            club = self.repo.get(Club, CLUBS, club_id)
            if club is None:
                return _club_not_found()
            for field, value in changes.model_dump(exclude_none=True).items():
                setattr(club, field, value)
            return [self.repo.write(CLUBS, club)], club

        return self.repo.transact(attempt, self.commit_retries)

    @store_guard
    def get_club(self, club_id: UUID) -> Outcome[Club]:
        club = self.repo.get(Club, CLUBS, club_id)
        return Outcome.success(club) if club is not None else _club_not_found()

    @store_guard
    def list_clubs(self, without_admin: bool = False) -> Outcome[list[Club]]:
        clubs = self.repo.all(Club, CLUBS)
        if without_admin:
            clubs = [c for c in clubs if c.club_admin is None]
        return Outcome.success(sorted(clubs, key=lambda c: c.name.lower()))

    # ── Club admin pairing ──────────────────────────────────────

    @store_guard
    def assign_club_admin(
        self, actor: Account, club_id: UUID, account_id: UUID
    ) -> Outcome[tuple[Club, Account]]:
        """
        Pair a club admin account with a club.

        Both stale sides are cleared in the same commit: the club the account
        managed before, and the account that managed this club before.
        """
        decision = self.access.authorize(actor, Action.ASSIGN_CLUB_ADMIN)
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())

        def attempt():
            club = self.repo.get(Club, CLUBS, club_id)
            if club is None:
                return _club_not_found()
            admin = self.repo.get(Account, ACCOUNTS, account_id)
            if admin is None:
                return Outcome.failure(
                    CoreError.not_found("account_not_found", "Admin user not found")
                )
            if admin.role != Role.CLUB_ADMIN:
                return Outcome.failure(CoreError.invalid("User is not a club admin"))

            writes = []
            if club.club_admin is not None and club.club_admin != admin.id:
                displaced = self.repo.get(Account, ACCOUNTS, club.club_admin)
                if displaced is not None and displaced.assigned_club == club.id:
                    displaced.assigned_club = None
                    writes.append(self.repo.write(ACCOUNTS, displaced))
            if admin.assigned_club is not None and admin.assigned_club != club.id:
                previous = self.repo.get(Club, CLUBS, admin.assigned_club)
                if previous is not None and previous.club_admin == admin.id:
                    previous.club_admin = None
                    writes.append(self.repo.write(CLUBS, previous))

            club.club_admin = admin.id
            admin.assigned_club = club.id
            writes += [self.repo.write(CLUBS, club), self.repo.write(ACCOUNTS, admin)]
            return writes, (club, admin)

        outcome = self.repo.transact(attempt, self.commit_retries)
        if outcome.ok:
            logger.info(
                "Club admin assigned: club=%s admin=%s",
                str(club_id)[:8], str(account_id)[:8],
            )
        return outcome

    @store_guard
    def unassign_club_admin(self, actor: Account, club_id: UUID) -> Outcome[Club]:
        decision = self.access.authorize(actor, Action.ASSIGN_CLUB_ADMIN)
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())

        def attempt():
            club = self.repo.get(Club, CLUBS, club_id)
            if club is None:
                return _club_not_found()
            if club.club_admin is None:
                return Outcome.failure(
                    CoreError.conflict("club_has_no_admin", "This club has no assigned admin")
                )
            writes = []
            admin = self.repo.get(Account, ACCOUNTS, club.club_admin)
            if admin is not None and admin.assigned_club == club.id:
                admin.assigned_club = None
                writes.append(self.repo.write(ACCOUNTS, admin))
            club.club_admin = None
            writes.append(self.repo.write(CLUBS, club))
            return writes, club

        return self.repo.transact(attempt, self.commit_retries)

    # ── Membership ──────────────────────────────────────────────

    @store_guard
    def join_club(self, actor: Account, club_id: UUID) -> Outcome[Club]:
        """Request membership. The request waits for the club admin's decision."""
        decision = self.access.authorize(actor, Action.JOIN_CLUB)
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())

        def attempt():
            club = self.repo.get(Club, CLUBS, club_id)
            if club is None:
                return _club_not_found()
            if club.status != ClubStatus.ACTIVE:
                return Outcome.failure(
                    CoreError.conflict("club_inactive", "Club is not accepting members")
                )
            existing = club.membership_of(actor.id)
            if existing is not None and existing.status != MembershipStatus.REJECTED:
                return Outcome.failure(CoreError.conflict(
                    "already_member", "You have already requested to join this club"
                ))
            if existing is not None:
                existing.status = MembershipStatus.PENDING
                existing.joined_at = self.clock.now()
            else:
                club.members.append(ClubMember(user=actor.id, joined_at=self.clock.now()))
            return [self.repo.write(CLUBS, club)], club

        return self.repo.transact(attempt, self.commit_retries)

    @store_guard
    def list_members(self, actor: Account, club_id: UUID) -> Outcome[list[ClubMember]]:
        denied = self.access.require(actor, Action.MANAGE_CLUB_MEMBERS, Resource.for_club(club_id))
        if denied:
            return Outcome.failure(denied)
        club = self.repo.get(Club, CLUBS, club_id)
        if club is None:
            return _club_not_found()
        return Outcome.success(list(club.members))

    @store_guard
    def update_member_status(
        self,
        actor: Account,
        club_id: UUID,
        member_id: UUID,
        status: MembershipStatus | str,
    ) -> Outcome[ClubMember]:
        """Approve or reject a membership and keep the member's joined clubs in step."""
        try:
            status = MembershipStatus(status)
        except ValueError:
            status = None
        if status not in DECIDABLE_STATUSES:
            return Outcome.failure(CoreError.invalid("Invalid status. Must be approved or rejected."))

        denied = self.access.require(actor, Action.MANAGE_CLUB_MEMBERS, Resource.for_club(club_id))
        if denied:
            return Outcome.failure(denied)

        def attempt():
            club = self.repo.get(Club, CLUBS, club_id)
            if club is None:
                return _club_not_found()
            member = club.member(member_id)
            if member is None:
                return _member_not_found()
            member.status = status

            writes = [self.repo.write(CLUBS, club)]
            account = self.repo.get(Account, ACCOUNTS, member.user)
            if account is not None:
                joined = club.id in account.joined_clubs
                if status == MembershipStatus.APPROVED and not joined:
                    account.joined_clubs.append(club.id)
                    writes.append(self.repo.write(ACCOUNTS, account))
                elif status == MembershipStatus.REJECTED and joined:
                    account.joined_clubs.remove(club.id)
                    writes.append(self.repo.write(ACCOUNTS, account))
            return writes, member

        return self.repo.transact(attempt, self.commit_retries)

    @store_guard
    def update_member_role(
        self,
        actor: Account,
        club_id: UUID,
        member_id: UUID,
        role: ClubMemberRole | str,
    ) -> Outcome[ClubMember]:
        try:
            role = ClubMemberRole(role)
        except ValueError:
            return Outcome.failure(CoreError.invalid("Invalid role"))

        denied = self.access.require(actor, Action.MANAGE_CLUB_MEMBERS, Resource.for_club(club_id))
        if denied:
            return Outcome.failure(denied)

        def attempt():
            club = self.repo.get(Club, CLUBS, club_id)
            if club is None:
                return _club_not_found()
            member = club.member(member_id)
            if member is None:
                return _member_not_found()
            member.role = role
            return [self.repo.write(CLUBS, club)], member

        return self.repo.transact(attempt, self.commit_retries)

    @store_guard
    def remove_member(self, actor: Account, club_id: UUID, member_id: UUID) -> Outcome[UUID]:
        denied = self.access.require(actor, Action.MANAGE_CLUB_MEMBERS, Resource.for_club(club_id))
        if denied:
            return Outcome.failure(denied)

        def attempt():
            club = self.repo.get(Club, CLUBS, club_id)
            if club is None:
                return _club_not_found()
            member = club.member(member_id)
            if member is None:
                return _member_not_found()
            club.members = [m for m in club.members if m.id != member_id]

            writes = [self.repo.write(CLUBS, club)]
            account = self.repo.get(Account, ACCOUNTS, member.user)
            if account is not None and club.id in account.joined_clubs:
                account.joined_clubs.remove(club.id)
                writes.append(self.repo.write(ACCOUNTS, account))
            return writes, member.id

        return self.repo.transact(attempt, self.commit_retries)


def _club_not_found() -> Outcome:
    return Outcome.failure(CoreError.not_found("club_not_found", "Club not found"))


def _member_not_found() -> Outcome:
    return Outcome.failure(CoreError.not_found("member_not_found", "Member not found"))
