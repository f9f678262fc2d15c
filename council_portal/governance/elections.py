"""
Election Service — store-backed election administration and voting.

Wraps the pure lifecycle engine (``governance.lifecycle``) with persistence:
- every read re-derives status from the clock and persists a changed status
  opportunistically (a lost race is harmless)
- a vote is one conditional commit covering the election and the voter, so
  the eligibility check and the four vote updates are applied atomically
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from council_portal.clock import Clock, SystemClock
from council_portal.domain.schema import (
    Account,
    AcademicYear,
    Candidate,
    Election,
    ElectionStatus,
    ElectionTimer,
    ElectionType,
    Role,
    VotingEligibility,
)
from council_portal.governance.access_control import (
    ELECTION_CREATORS,
    AccessControl,
    Action,
    access_control,
)
from council_portal.governance.lifecycle import (
    MIN_ELECTION_DURATION,
    apply_vote,
    election_status,
    election_timer,
    format_time_remaining,
    get_winner,
    is_eligible,
    parse_instant,
    validate_schedule,
)
from council_portal.governance.outcomes import CoreError, Outcome
from council_portal.governance.permissions import derive_permissions
from council_portal.governance.repository import COMMIT_ATTEMPTS, Repository, store_guard
from council_portal.store.base import ACCOUNTS, ELECTIONS, DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_ELIGIBLE_ROLES = [Role.STUDENT, Role.CLUB_ADMIN, Role.ACADEMIC_AFFAIRS]


# ════════════════════════════════════════════════════════════════
# Payloads and views
# ════════════════════════════════════════════════════════════════


class CandidateDraft(BaseModel):
    name: str = Field(min_length=1)
    username: str = ""
    department: str = ""
    year: AcademicYear | None = None
    position: str = ""
    platform: list[str] = Field(default_factory=list)
    biography: str = Field(default="", max_length=1000)

    def to_candidate(self) -> Candidate:
        return Candidate(**self.model_dump())


class ElectionDraft(BaseModel):
    """
    Payload for creating an election.

    Dates are accepted as ISO-8601 strings or datetimes; parsing happens
    during schedule validation so every problem is reported together.
    """

    title: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1, max_length=1000)
    start_date: str | datetime
    end_date: str | datetime
    candidates: list[CandidateDraft] = Field(min_length=1)
    election_type: ElectionType = ElectionType.GENERAL
    rules: list[str] = Field(default_factory=list)
    is_public: bool = True
    voting_eligibility: VotingEligibility | None = None

    @field_validator("title", "description")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


class ElectionUpdate(BaseModel):
    """Partial update of an upcoming election. ``None`` leaves a field alone."""

    title: str | None = Field(default=None, max_length=200)
    description: str | None = Field(default=None, max_length=1000)
    start_date: str | datetime | None = None
    end_date: str | datetime | None = None
    candidates: list[CandidateDraft] | None = None
    rules: list[str] | None = None
    is_public: bool | None = None
    voting_eligibility: VotingEligibility | None = None


class ElectionView(BaseModel):
    """What a viewer sees: the election plus everything derived from the clock."""

    election: Election
    status: ElectionStatus
    timer: ElectionTimer
    time_remaining: str
    can_vote: bool
    eligibility_reason: str
    has_voted: bool
    turnout_percentage: float
    winner: Candidate | None = None


# ════════════════════════════════════════════════════════════════
# Election Service
# ════════════════════════════════════════════════════════════════


class ElectionService:
    """
    Election administration, viewing and voting.

    Usage:
        service = ElectionService(store, clock=SystemClock())
        outcome = service.cast_vote(voter, election_id, candidate_id, "10.0.0.7")
        if not outcome.ok:
            ...  # outcome.error.kind decides how to render it
    """

    def __init__(
        self,
        store: DocumentStore,
        clock: Clock | None = None,
        access: AccessControl | None = None,
        commit_retries: int = COMMIT_ATTEMPTS,
        min_duration: timedelta = MIN_ELECTION_DURATION,
        upcoming_window: timedelta = timedelta(hours=24),
        ending_soon_window: timedelta = timedelta(hours=2),
    ) -> None:
        self.repo = Repository(store)
        self.clock = clock or SystemClock()
        self.access = access or access_control
        self.commit_retries = commit_retries
        self.min_duration = min_duration
        self.upcoming_window = upcoming_window
        self.ending_soon_window = ending_soon_window

    # ── Administration ──────────────────────────────────────────

    @store_guard
    def create_election(self, actor: Account, draft: ElectionDraft) -> Outcome[Election]:
        decision = self.access.authorize(actor, Action.CREATE_ELECTION)
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())

        now = self.clock.now()
        schedule = validate_schedule(draft.start_date, draft.end_date, now, self.min_duration)
        if not schedule.ok:
            return schedule

        eligibility = draft.voting_eligibility or VotingEligibility(
            roles=list(DEFAULT_ELIGIBLE_ROLES)
        )
        election = Election(
            title=draft.title,
            description=draft.description,
            start_date=parse_instant(draft.start_date),
            end_date=parse_instant(draft.end_date),
            status=ElectionStatus.UPCOMING,
            election_type=draft.election_type,
            candidates=[c.to_candidate() for c in draft.candidates],
            rules=draft.rules,
            is_public=draft.is_public,
            voting_eligibility=eligibility,
            eligible_voters=self._count_eligible(eligibility),
            created_by=actor.id,
            created_at=now,
        )

        outcome = self.repo.transact(
            lambda: ([self.repo.write(ELECTIONS, election, insert=True)], election),
            self.commit_retries,
        )
        if outcome.ok:
            logger.info(
                "Election created: id=%s title=%r eligible=%d",
                str(election.id)[:8], election.title, election.eligible_voters,
            )
        return outcome

    @store_guard
    def update_election(
        self, actor: Account, election_id: UUID, changes: ElectionUpdate
    ) -> Outcome[Election]:
        decision = self.access.authorize(actor, Action.UPDATE_ELECTION)
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())

        def attempt():
            election = self.repo.get(Election, ELECTIONS, election_id)
            if election is None:
                return _not_found()
            now = self.clock.now()
            if election_status(election, now) != ElectionStatus.UPCOMING:
                return Outcome.failure(CoreError.conflict(
                    "election_locked", "Cannot update active or completed elections"
                ))

            if changes.start_date is not None or changes.end_date is not None:
                start = changes.start_date if changes.start_date is not None else election.start_date
                end = changes.end_date if changes.end_date is not None else election.end_date
                schedule = validate_schedule(start, end, now, self.min_duration)
                if not schedule.ok:
                    return schedule
                election.start_date = parse_instant(start)
                election.end_date = parse_instant(end)

            if changes.title:
                election.title = changes.title
            if changes.description:
                election.description = changes.description
            if changes.candidates is not None:
                if not changes.candidates:
                    return Outcome.failure(CoreError.invalid("At least one candidate is required"))
                election.candidates = [c.to_candidate() for c in changes.candidates]
            if changes.rules is not None:
                election.rules = changes.rules
            if changes.is_public is not None:
                election.is_public = changes.is_public
            if changes.voting_eligibility is not None:
                election.voting_eligibility = changes.voting_eligibility
                election.eligible_voters = self._count_eligible(changes.voting_eligibility)

            election.status = ElectionStatus.UPCOMING
            return [self.repo.write(ELECTIONS, election)], election

        return self.repo.transact(attempt, self.commit_retries)

    @store_guard
    def delete_election(self, actor: Account, election_id: UUID) -> Outcome[UUID]:
        decision = self.access.authorize(actor, Action.DELETE_ELECTION)
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())

        def attempt():
            election = self.repo.get(Election, ELECTIONS, election_id)
            if election is None:
                return _not_found()
            if election_status(election, self.clock.now()) == ElectionStatus.ACTIVE:
                return Outcome.failure(
                    CoreError.conflict("election_active", "Cannot delete active elections")
                )
            return [self.repo.removal(ELECTIONS, election)], election.id

        outcome = self.repo.transact(attempt, self.commit_retries)
        if outcome.ok:
            logger.info("Election deleted: id=%s by=%s", str(election_id)[:8], str(actor.id)[:8])
        return outcome

    @store_guard
    def cancel_election(self, actor: Account, election_id: UUID) -> Outcome[Election]:
        decision = self.access.authorize(actor, Action.CANCEL_ELECTION)
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())

        def attempt():
            election = self.repo.get(Election, ELECTIONS, election_id)
            if election is None:
                return _not_found()
            now = self.clock.now()
            status = election_status(election, now)
            if status not in (ElectionStatus.UPCOMING, ElectionStatus.ACTIVE):
                return Outcome.failure(CoreError.conflict(
                    "election_finished", f"Cannot cancel a {status.value} election"
                ))
            election.status = ElectionStatus.CANCELLED
            election.cancelled_at = now
            return [self.repo.write(ELECTIONS, election)], election

        outcome = self.repo.transact(attempt, self.commit_retries)
        if outcome.ok:
            logger.info("Election cancelled: id=%s", str(election_id)[:8])
        return outcome

    @store_guard
    def publish_results(self, actor: Account, election_id: UUID) -> Outcome[dict[str, Any]]:
        decision = self.access.authorize(actor, Action.PUBLISH_RESULTS)
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())

        def attempt():
            election = self.repo.get(Election, ELECTIONS, election_id)
            if election is None:
                return _not_found()
            now = self.clock.now()
            if election_status(election, now) != ElectionStatus.COMPLETED:
                return Outcome.failure(CoreError.conflict(
                    "election_not_completed", "Can only publish results for completed elections"
                ))
            if election.results_published:
                return Outcome.failure(
                    CoreError.conflict("results_already_published", "Results are already published")
                )
            election.status = ElectionStatus.COMPLETED
            election.results_published = True
            election.published_at = now
            return [self.repo.write(ELECTIONS, election)], election

        outcome = self.repo.transact(attempt, self.commit_retries)
        if not outcome.ok:
            return outcome

        election = outcome.value
        winner = get_winner(election)
        return Outcome.success({
            "election_id": str(election.id),
            "title": election.title,
            "results_published": True,
            "published_at": election.published_at,
            "total_votes": election.total_votes,
            "turnout_percentage": election.turnout_percentage,
            "winner": winner.model_dump(mode="json", exclude={"voters"}) if winner else None,
        })

    # ── Voting ──────────────────────────────────────────────────

    @store_guard
    def cast_vote(
        self,
        actor: Account,
        election_id: UUID,
        candidate_id: UUID,
        origin_address: str | None = None,
    ) -> Outcome[Election]:
        """
        Cast ``actor``'s vote.

        Each attempt re-reads the election and the voter, re-checks
        eligibility, and commits both documents against the versions it
        read. A concurrent vote bumps the election version, so the loser
        retries against fresh state and sees the winner's ledger entry.
        """

        def attempt():
            voter = self.repo.get(Account, ACCOUNTS, actor.id)
            if voter is None:
                return Outcome.failure(CoreError.not_found("account_not_found", "Account not found"))
            decision = self.access.authorize(voter, Action.CAST_VOTE)
            if not decision.is_allowed:
                return Outcome.failure(decision.to_error())

            election = self.repo.get(Election, ELECTIONS, election_id)
            if election is None:
                return _not_found()

            applied = apply_vote(election, voter, candidate_id, self.clock.now(), origin_address)
            if not applied.ok:
                return applied
            updated_election, updated_voter = applied.value
            writes = [
                self.repo.write(ELECTIONS, updated_election),
                self.repo.write(ACCOUNTS, updated_voter),
            ]
            return writes, updated_election

        outcome = self.repo.transact(attempt, self.commit_retries)
        if outcome.ok:
            logger.info(
                "Vote recorded: election=%s total=%d",
                str(election_id)[:8], outcome.value.total_votes,
            )
        return outcome

    # ── Views ───────────────────────────────────────────────────

    @store_guard
    def get_election_view(self, viewer: Account, election_id: UUID) -> Outcome[ElectionView]:
        election = self.repo.get(Election, ELECTIONS, election_id)
        if election is None or (not election.is_public and not self._is_privileged(viewer)):
            return _not_found()
        return Outcome.success(self._view(viewer, self._sync_status(election)))

    @store_guard
    def list_elections(
        self, viewer: Account, status: ElectionStatus | None = None
    ) -> Outcome[list[ElectionView]]:
        privileged = self._is_privileged(viewer)
        views = []
        for election in self.repo.all(Election, ELECTIONS):
            if not election.is_public and not privileged:
                continue
            election = self._sync_status(election)
            if status is not None and election.status != status:
                continue
            views.append(self._view(viewer, election))
        views.sort(key=lambda v: v.election.start_date, reverse=True)
        return Outcome.success(views)

    @store_guard
    def election_stats(self, actor: Account) -> Outcome[dict[str, Any]]:
        decision = self.access.authorize(actor, Action.VIEW_ELECTION_STATS)
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())

        now = self.clock.now()
        elections = self.repo.all(Election, ELECTIONS)
        by_status = Counter(election_status(e, now).value for e in elections)
        return Outcome.success({
            "total": len(elections),
            "by_status": {s.value: by_status.get(s.value, 0) for s in ElectionStatus},
            "total_votes": sum(e.total_votes for e in elections),
            "results_published": sum(1 for e in elections if e.results_published),
        })

    # ── Sweeps ──────────────────────────────────────────────────

    @store_guard
    def refresh_statuses(self) -> Outcome[dict[str, int]]:
        """
        Persist derived status for every election whose stored status is stale.

        Returns counts of elections moved to each status. Conflicting writes
        are skipped; the next read or sweep re-derives anyway.
        """
        now = self.clock.now()
        moved: Counter[str] = Counter()
        for election in self.repo.all(Election, ELECTIONS):
            derived = election_status(election, now)
            if derived == election.status:
                continue
            previous = election.status
            election.status = derived
            if self.repo.store.commit([self.repo.write(ELECTIONS, election)]):
                moved[derived.value] += 1
                logger.info(
                    "Election status advanced: id=%s %s -> %s",
                    str(election.id)[:8], previous.value, derived.value,
                )
        return Outcome.success(dict(moved))

    @store_guard
    def elections_starting_soon(self) -> Outcome[list[Election]]:
        now = self.clock.now()
        horizon = now + self.upcoming_window
        return Outcome.success([
            e for e in self.repo.all(Election, ELECTIONS)
            if election_status(e, now) == ElectionStatus.UPCOMING and e.start_date <= horizon
        ])

    @store_guard
    def elections_ending_soon(self) -> Outcome[list[Election]]:
        now = self.clock.now()
        horizon = now + self.ending_soon_window
        return Outcome.success([
            e for e in self.repo.all(Election, ELECTIONS)
            if election_status(e, now) == ElectionStatus.ACTIVE and e.end_date <= horizon
        ])

    # ── Internal ────────────────────────────────────────────────

    def _sync_status(self, election: Election) -> Election:
        derived = election_status(election, self.clock.now())
        if derived != election.status:
            election.status = derived
            if self.repo.store.commit([self.repo.write(ELECTIONS, election)]):
                election.version += 1
        return election

    def _view(self, viewer: Account, election: Election) -> ElectionView:
        now = self.clock.now()
        timer = election_timer(election, now)
        eligibility = is_eligible(viewer, election, now)
        can_vote = (
            eligibility.eligible
            and self.access.authorize(viewer, Action.CAST_VOTE).is_allowed
        )
        has_voted = election.has_voted(viewer.id)
        show_winner = election.results_published or self._is_privileged(viewer)

        shown = election
        if not self.access.authorize(viewer, Action.VIEW_VOTER_LEDGER).is_allowed:
            shown = election.model_copy(deep=True)
            shown.voters = []
            for candidate in shown.candidates:
                candidate.voters = []

        return ElectionView(
            election=shown,
            status=election.status,
            timer=timer,
            time_remaining=format_time_remaining(timer),
            can_vote=can_vote,
            eligibility_reason=eligibility.reason,
            has_voted=has_voted,
            turnout_percentage=election.turnout_percentage,
            winner=(
                get_winner(shown)
                if show_winner and election.status == ElectionStatus.COMPLETED
                else None
            ),
        )

    def _count_eligible(self, eligibility: VotingEligibility) -> int:
        roles = eligibility.roles or [
            role for role in Role if derive_permissions(role).can_vote_elections
        ]
        return sum(
            1
            for account in self.repo.all(Account, ACCOUNTS, is_active=True)
            if account.role in roles
            and (not eligibility.departments or account.department in eligibility.departments)
            and (not eligibility.years or account.year in eligibility.years)
        )

    @staticmethod
    def _is_privileged(viewer: Account) -> bool:
        return viewer.role in ELECTION_CREATORS


def _not_found() -> Outcome:
    return Outcome.failure(CoreError.not_found("election_not_found", "Election not found"))
