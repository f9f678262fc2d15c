"""
Election Lifecycle Engine — time-driven election state and the vote protocol.

Elections move through:
    UPCOMING  --(now >= start_date)-->  ACTIVE  --(now >= end_date)-->  COMPLETED

CANCELLED is absorbing and is only ever reached by an explicit
administrative action, never by a timer. Status is a pure function of the
clock and ``[start_date, end_date)``: the stored value is a cache that every
read re-derives.

Everything in this module is pure. Persisting a derived status, and applying
a vote atomically against the store, are the job of
``council_portal.governance.elections``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

from council_portal.domain.schema import (
    Account,
    Candidate,
    Election,
    ElectionStatus,
    ElectionTimer,
    TimerType,
    VoteRecord,
)
from council_portal.governance.outcomes import CoreError, Outcome

logger = logging.getLogger(__name__)

MIN_ELECTION_DURATION = timedelta(hours=1)

_MS_PER_SECOND = 1000
_MS_PER_MINUTE = 60 * _MS_PER_SECOND
_MS_PER_HOUR = 60 * _MS_PER_MINUTE
_MS_PER_DAY = 24 * _MS_PER_HOUR

_STATUS_ORDER = {
    ElectionStatus.UPCOMING: 0,
    ElectionStatus.ACTIVE: 1,
    ElectionStatus.COMPLETED: 2,
}


# ════════════════════════════════════════════════════════════════
# Time helpers
# ════════════════════════════════════════════════════════════════


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_instant(value: datetime | str | None) -> datetime | None:
    """Parse an ISO-8601 string (``Z`` suffix allowed). None when unparseable."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def status_rank(status: ElectionStatus) -> int:
    """Position in the upcoming -> active -> completed sequence."""
    return _STATUS_ORDER.get(status, len(_STATUS_ORDER))


# ════════════════════════════════════════════════════════════════
# Status and timer
# ════════════════════════════════════════════════════════════════


def derive_status(
    now: datetime,
    start_date: datetime,
    end_date: datetime,
    current_status: ElectionStatus = ElectionStatus.UPCOMING,
) -> ElectionStatus:
    """Derive the lifecycle status at ``now``. Cancelled elections never change."""
    if current_status == ElectionStatus.CANCELLED:
        return ElectionStatus.CANCELLED
    now, start_date, end_date = ensure_utc(now), ensure_utc(start_date), ensure_utc(end_date)
    if now < start_date:
        return ElectionStatus.UPCOMING
    if now < end_date:
        return ElectionStatus.ACTIVE
    return ElectionStatus.COMPLETED


def election_status(election: Election, now: datetime) -> ElectionStatus:
    return derive_status(now, election.start_date, election.end_date, election.status)


def compute_timer(
    now: datetime,
    status: ElectionStatus,
    start_date: datetime,
    end_date: datetime,
) -> ElectionTimer:
    """
    Countdown to the next boundary.

    ``starts_in`` counts down to ``start_date`` while upcoming, ``ends_in`` to
    ``end_date`` while active. Completed and cancelled elections report
    ``ended``. Components come from floor division of the millisecond delta.
    """
    if status == ElectionStatus.UPCOMING:
        timer_type, target = TimerType.STARTS_IN, start_date
    elif status == ElectionStatus.ACTIVE:
        timer_type, target = TimerType.ENDS_IN, end_date
    else:
        return ElectionTimer(type=TimerType.ENDED, expired=True)

    delta = ensure_utc(target) - ensure_utc(now)
    total_ms = (delta.days * 86_400 + delta.seconds) * _MS_PER_SECOND + delta.microseconds // 1000
    if total_ms <= 0:
        return ElectionTimer(type=timer_type, expired=True)

    return ElectionTimer(
        type=timer_type,
        days=total_ms // _MS_PER_DAY,
        hours=(total_ms % _MS_PER_DAY) // _MS_PER_HOUR,
        minutes=(total_ms % _MS_PER_HOUR) // _MS_PER_MINUTE,
        seconds=(total_ms % _MS_PER_MINUTE) // _MS_PER_SECOND,
        expired=False,
        total_ms=total_ms,
    )


def election_timer(election: Election, now: datetime) -> ElectionTimer:
    return compute_timer(
        now, election_status(election, now), election.start_date, election.end_date
    )


def format_time_remaining(timer: ElectionTimer) -> str:
    """Human-readable countdown, e.g. ``"2 days, 3 hours, 15 minutes"``."""
    if timer.expired:
        return "Election has ended" if timer.type == TimerType.ENDED else "Election is starting"

    parts = []
    if timer.days > 0:
        parts.append(_plural(timer.days, "day"))
    if timer.hours > 0:
        parts.append(_plural(timer.hours, "hour"))
    if timer.minutes > 0:
        parts.append(_plural(timer.minutes, "minute"))
    # Seconds only matter in the final hour
    if timer.seconds > 0 and timer.days == 0 and timer.hours == 0:
        parts.append(_plural(timer.seconds, "second"))

    return ", ".join(parts) if parts else "Less than a minute"


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'}"


# ════════════════════════════════════════════════════════════════
# Schedule validation
# ════════════════════════════════════════════════════════════════


def validate_schedule(
    start_date: datetime | str | None,
    end_date: datetime | str | None,
    now: datetime,
    min_duration: timedelta = MIN_ELECTION_DURATION,
) -> Outcome[None]:
    """
    Validate an election schedule at creation time.

    Reports every violated rule, not only the first. Unparseable dates are
    reported on their own since the remaining rules cannot be evaluated.
    """
    start = parse_instant(start_date)
    end = parse_instant(end_date)

    errors: list[str] = []
    if start is None:
        errors.append("Invalid start date")
    if end is None:
        errors.append("Invalid end date")
    if errors:
        return Outcome.failure(CoreError.invalid("Invalid election schedule", errors))

    now = ensure_utc(now)
    if end <= start:
        errors.append("End date must be after start date")
    if start <= now:
        errors.append("Start date must be in the future")
    if end - start < min_duration:
        errors.append(f"Election must run for at least {_describe(min_duration)}")

    if errors:
        return Outcome.failure(CoreError.invalid("Invalid election schedule", errors))
    return Outcome.success()


def _describe(duration: timedelta) -> str:
    minutes = int(duration.total_seconds() // 60)
    if minutes % 60 == 0:
        return _plural(minutes // 60, "hour")
    return _plural(minutes, "minute")


# ════════════════════════════════════════════════════════════════
# Eligibility and vote protocol
# ════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: str
    code: str = "eligible"

    def to_error(self) -> CoreError:
        if self.code in ("already_voted", "election_not_active"):
            return CoreError.conflict(self.code, self.reason)
        return CoreError.denied(self.code, self.reason)


def is_eligible(voter: Account, election: Election, now: datetime) -> Eligibility:
    """
    Decide whether ``voter`` may vote in ``election`` at ``now``.

    Checks run in order of precedence: prior vote, election status, then the
    role, department and year restrictions. An empty restriction is open.
    """
    if election.has_voted(voter.id):
        return Eligibility(False, "Already voted", "already_voted")

    if election_status(election, now) != ElectionStatus.ACTIVE:
        return Eligibility(False, "Election not active", "election_not_active")

    rules = election.voting_eligibility
    if rules.roles and voter.role not in rules.roles:
        return Eligibility(False, "Role not eligible", "role_not_eligible")
    if rules.departments and voter.department not in rules.departments:
        return Eligibility(False, "Department not eligible", "department_not_eligible")
    if rules.years and voter.year not in rules.years:
        return Eligibility(False, "Academic year not eligible", "year_not_eligible")

    return Eligibility(True, "Eligible to vote")


def apply_vote(
    election: Election,
    voter: Account,
    candidate_id: UUID,
    now: datetime,
    origin_address: str | None = None,
) -> Outcome[tuple[Election, Account]]:
    """
    Compute the election and voter after one accepted vote.

    Returns updated copies; the inputs are not modified. The caller must
    persist both copies as a single conditional commit against the versions
    that were read, so the eligibility check and the mutation stay atomic.
    """
    eligibility = is_eligible(voter, election, now)
    if not eligibility.eligible:
        return Outcome.failure(eligibility.to_error())

    if election.candidate(candidate_id) is None:
        return Outcome.failure(
            CoreError.not_found("candidate_not_found", "Candidate not found")
        )

    updated = election.model_copy(deep=True)
    candidate = updated.candidate(candidate_id)
    updated.voters.append(
        VoteRecord(user=voter.id, candidate=candidate_id, voted_at=now, ip_address=origin_address)
    )
    candidate.votes += 1
    candidate.voters.append(voter.id)
    updated.total_votes += 1
    updated.status = ElectionStatus.ACTIVE

    updated_voter = voter.model_copy(deep=True)
    if election.id not in updated_voter.voted_elections:
        updated_voter.voted_elections.append(election.id)

    return Outcome.success((updated, updated_voter))


# ════════════════════════════════════════════════════════════════
# Results
# ════════════════════════════════════════════════════════════════


def get_winner(election: Election) -> Candidate | None:
    """Candidate with the most votes. Ties go to the first listed candidate."""
    if not election.candidates:
        return None
    winner = election.candidates[0]
    for candidate in election.candidates[1:]:
        if candidate.votes > winner.votes:
            winner = candidate
    return winner


def turnout_percentage(total_votes: int, eligible_voters: int) -> float:
    """Percentage of eligible voters who voted, rounded to 2 places. 0 when none."""
    if eligible_voters <= 0:
        return 0.0
    return round(total_votes / eligible_voters * 100, 2)


def reconcile_election(election: Election) -> list[str]:
    """
    Check the vote counters against the eligibility ledger.

    Returns a list of discrepancies; empty when consistent.
    """
    problems: list[str] = []
    ledger_size = len(election.voters)
    counted = sum(c.votes for c in election.candidates)

    if election.total_votes != ledger_size:
        problems.append(
            f"total_votes={election.total_votes} but ledger has {ledger_size} entries"
        )
    if counted != ledger_size:
        problems.append(f"candidate votes sum to {counted} but ledger has {ledger_size} entries")

    seen: set[UUID] = set()
    for record in election.voters:
        if record.user in seen:
            problems.append(f"voter {str(record.user)[:8]} appears more than once")
        seen.add(record.user)

    for candidate in election.candidates:
        from_ledger = sorted(str(r.user) for r in election.voters if r.candidate == candidate.id)
        if sorted(str(v) for v in candidate.voters) != from_ledger:
            problems.append(f"candidate {candidate.name!r} voter list disagrees with ledger")
        if candidate.votes != len(candidate.voters):
            problems.append(
                f"candidate {candidate.name!r} has votes={candidate.votes} "
                f"but {len(candidate.voters)} voters"
            )

    known = {c.id for c in election.candidates}
    for record in election.voters:
        if record.candidate not in known:
            problems.append(f"ledger entry references unknown candidate {str(record.candidate)[:8]}")

    return problems
