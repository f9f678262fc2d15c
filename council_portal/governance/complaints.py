"""
Complaint Routing Engine — resolver partitions and resolution provenance.

Every complaint belongs to one partition, chosen by its type:
- ACADEMIC -> academic_affairs, admin, super_admin
- GENERAL  -> president_admin, admin, super_admin

Only roles in a complaint's resolver set may respond to it, move it along,
or resolve it. Status moves one way only:

    SUBMITTED -> UNDER_REVIEW -> RESOLVED -> CLOSED
    SUBMITTED ---------------> RESOLVED

The first official response or assignment moves a submitted complaint to
UNDER_REVIEW. Resolution provenance (who, when, and as which role) is set
exactly once.
"""

from __future__ import annotations

import logging
import secrets
from collections import Counter
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from council_portal.clock import Clock, SystemClock
from council_portal.domain.schema import (
    Account,
    Complaint,
    ComplaintCategory,
    ComplaintDocument,
    ComplaintPriority,
    ComplaintResponse,
    ComplaintStatus,
    ComplaintType,
    ResolutionType,
    Role,
)
from council_portal.governance.access_control import (
    AccessControl,
    Action,
    Resource,
    access_control,
    complaint_partitions,
)
from council_portal.governance.outcomes import CoreError, Outcome
from council_portal.governance.repository import COMMIT_ATTEMPTS, Repository, store_guard
from council_portal.store.base import ACCOUNTS, COMPLAINTS, DocumentStore

logger = logging.getLogger(__name__)

ACADEMIC_RESOLVERS = [Role.ACADEMIC_AFFAIRS, Role.ADMIN, Role.SUPER_ADMIN]
GENERAL_RESOLVERS = [Role.PRESIDENT_ADMIN, Role.ADMIN, Role.SUPER_ADMIN]

# Allowed forward moves; anything else is a state conflict
TRANSITIONS: dict[ComplaintStatus, set[ComplaintStatus]] = {
    ComplaintStatus.SUBMITTED: {ComplaintStatus.UNDER_REVIEW, ComplaintStatus.RESOLVED},
    ComplaintStatus.UNDER_REVIEW: {ComplaintStatus.RESOLVED},
    ComplaintStatus.RESOLVED: {ComplaintStatus.CLOSED},
    ComplaintStatus.CLOSED: set(),
}

_FINISHED = (ComplaintStatus.RESOLVED, ComplaintStatus.CLOSED)


# ════════════════════════════════════════════════════════════════
# Routing rules
# ════════════════════════════════════════════════════════════════


def derive_resolver_set(complaint_type: ComplaintType | str) -> list[Role]:
    """Roles allowed to resolve a complaint of the given type."""
    if ComplaintType(complaint_type) == ComplaintType.ACADEMIC:
        return list(ACADEMIC_RESOLVERS)
    return list(GENERAL_RESOLVERS)


def can_resolve(role: Role, complaint: Complaint) -> bool:
    return role in complaint.can_be_resolved_by


def resolution_type_for(role: Role) -> ResolutionType:
    if role == Role.ACADEMIC_AFFAIRS:
        return ResolutionType.ACADEMIC_AFFAIRS_RESOLVED
    if role == Role.PRESIDENT_ADMIN:
        return ResolutionType.PRESIDENT_ADMIN_RESOLVED
    return ResolutionType.ADMIN_RESOLVED


def resolve(
    complaint: Complaint,
    resolver: Account,
    now: datetime,
    notes: str = "",
) -> Outcome[Complaint]:
    """
    Resolve a complaint on behalf of ``resolver``.

    Policy is checked before state: a role outside the resolver set is
    denied even if the complaint is already resolved. Returns a resolved
    copy; the input is left untouched.
    """
    if not resolver.is_active:
        return Outcome.failure(CoreError.denied("account_inactive", "Account has been deactivated"))
    if not can_resolve(resolver.role, complaint):
        return Outcome.failure(
            CoreError.denied("not_a_resolver", "You are not authorized to resolve this complaint")
        )
    if complaint.status in _FINISHED:
        return Outcome.failure(
            CoreError.conflict(
                "already_resolved", f"Complaint is already {complaint.status.value}"
            )
        )

    resolved = complaint.model_copy(deep=True)
    resolved.status = ComplaintStatus.RESOLVED
    resolved.resolved_at = now
    resolved.resolved_by = resolver.id
    resolved.resolution_type = resolution_type_for(resolver.role)
    resolved.resolution_notes = notes.strip()
    return Outcome.success(resolved)


def generate_case_id(now: datetime) -> str:
    return f"CASE-{now:%Y%m%d}-{secrets.randbelow(10_000):04d}"


# ════════════════════════════════════════════════════════════════
# Payloads
# ════════════════════════════════════════════════════════════════


class ComplaintDraft(BaseModel):
    """Fields a complainant supplies. Routing fields are derived, never accepted."""

    title: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1, max_length=2000)
    category: ComplaintCategory = ComplaintCategory.GENERAL
    complaint_type: ComplaintType = ComplaintType.GENERAL
    priority: ComplaintPriority = ComplaintPriority.MEDIUM
    tags: list[str] = Field(default_factory=list)
    is_urgent: bool = False

    @field_validator("title", "description")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


# ════════════════════════════════════════════════════════════════
# Complaint Service
# ════════════════════════════════════════════════════════════════


class ComplaintService:
    """
    Store-backed complaint operations.

    Every mutation re-reads the complaint, authorizes against its current
    partition, and commits against the version it read.
    """

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

    # ── Queries ─────────────────────────────────────────────────

    @store_guard
    def get(self, actor: Account, complaint_id: UUID) -> Outcome[Complaint]:
        complaint = self.repo.get(Complaint, COMPLAINTS, complaint_id)
        if complaint is None:
            return _not_found()
        decision = self.access.authorize(actor, Action.VIEW_COMPLAINT, Resource.for_complaint(complaint))
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())
        return Outcome.success(complaint)

    @store_guard
    def list_visible(
        self,
        actor: Account,
        status: ComplaintStatus | None = None,
        complaint_type: ComplaintType | None = None,
        category: ComplaintCategory | None = None,
        priority: ComplaintPriority | None = None,
        search: str | None = None,
    ) -> Outcome[list[Complaint]]:
        """
        Complaints the actor may see, newest first.

        Resolver roles see their partitions; everyone else sees only what
        they submitted.
        """
        filters: dict[str, Any] = {}
        if status is not None:
            filters["status"] = status
        if category is not None:
            filters["category"] = category
        if priority is not None:
            filters["priority"] = priority

        partitions = complaint_partitions(actor.role)
        if not partitions:
            filters["submitted_by"] = actor.id

        complaints = self.repo.all(Complaint, COMPLAINTS, **filters)
        if partitions:
            complaints = [c for c in complaints if c.complaint_type in partitions]
        if complaint_type is not None:
            complaints = [c for c in complaints if c.complaint_type == complaint_type]
        if search:
            needle = search.lower()
            complaints = [
                c for c in complaints
                if needle in c.title.lower()
                or needle in c.description.lower()
                or needle in c.case_id.lower()
            ]

        complaints.sort(key=lambda c: c.created_at, reverse=True)
        return Outcome.success(complaints)

    @store_guard
    def partition_dashboard(
        self, actor: Account, complaint_type: ComplaintType
    ) -> Outcome[dict[str, Any]]:
        """Open complaints and counts for one partition."""
        decision = self.access.authorize(
            actor, Action.VIEW_PARTITION_DASHBOARD, Resource.for_partition(complaint_type)
        )
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())

        complaints = self.repo.all(Complaint, COMPLAINTS, complaint_type=complaint_type)
        by_status = Counter(c.status.value for c in complaints)
        open_cases = [c for c in complaints if c.status not in _FINISHED]
        open_cases.sort(key=lambda c: c.created_at, reverse=True)
        return Outcome.success({
            "complaint_type": complaint_type.value,
            "total": len(complaints),
            "by_status": {s.value: by_status.get(s.value, 0) for s in ComplaintStatus},
            "open": open_cases,
        })

    @store_guard
    def complaint_stats(self, actor: Account) -> Outcome[dict[str, Any]]:
        decision = self.access.authorize(actor, Action.VIEW_COMPLAINT_STATS)
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())

        complaints = self.repo.all(Complaint, COMPLAINTS)
        now = self.clock.now()
        by_status = Counter(c.status.value for c in complaints)

        resolved = [c for c in complaints if c.resolved_at is not None]
        avg_days = 0
        if resolved:
            total_seconds = sum((c.resolved_at - c.created_at).total_seconds() for c in resolved)
            avg_days = round(total_seconds / len(resolved) / 86_400)

        return Outcome.success({
            "total": len(complaints),
            "submitted": by_status.get(ComplaintStatus.SUBMITTED.value, 0),
            "under_review": by_status.get(ComplaintStatus.UNDER_REVIEW.value, 0),
            "resolved": by_status.get(ComplaintStatus.RESOLVED.value, 0),
            "closed": by_status.get(ComplaintStatus.CLOSED.value, 0),
            "recent_30_days": sum(
                1 for c in complaints if (now - c.created_at).days < 30
            ),
            "avg_resolution_days": avg_days,
            "by_category": dict(Counter(c.category.value for c in complaints).most_common()),
            "by_priority": dict(Counter(c.priority.value for c in complaints)),
            "by_type": dict(Counter(c.complaint_type.value for c in complaints)),
        })

    # ── Mutations ───────────────────────────────────────────────

    @store_guard
    def submit(self, actor: Account, draft: ComplaintDraft) -> Outcome[Complaint]:
        decision = self.access.authorize(actor, Action.SUBMIT_COMPLAINT)
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())

        def attempt():
            now = self.clock.now()
            complaint = Complaint(
                **draft.model_dump(),
                submitted_by=actor.id,
                case_id=self._unique_case_id(now),
                created_at=now,
            )
            return [self.repo.write(COMPLAINTS, complaint, insert=True)], complaint

        outcome = self.repo.transact(attempt, self.commit_retries)
        if outcome.ok:
            logger.info(
                "Complaint submitted: case=%s type=%s by=%s",
                outcome.value.case_id, outcome.value.complaint_type.value, str(actor.id)[:8],
            )
        return outcome

    @store_guard
    def change_type(
        self, actor: Account, complaint_id: UUID, complaint_type: ComplaintType
    ) -> Outcome[Complaint]:
        """Move a complaint to another partition and recompute its resolver set."""

        def attempt():
            complaint = self.repo.get(Complaint, COMPLAINTS, complaint_id)
            if complaint is None:
                return _not_found()
            denied = self.access.require(
                actor, Action.UPDATE_COMPLAINT_STATUS, Resource.for_complaint(complaint)
            )
            if denied:
                return Outcome.failure(denied)
            if complaint.status in _FINISHED:
                return Outcome.failure(CoreError.conflict(
                    "complaint_finished",
                    f"Cannot change the type of a {complaint.status.value} complaint",
                ))
            complaint.change_type(complaint_type)
            return [self.repo.write(COMPLAINTS, complaint)], complaint

        return self.repo.transact(attempt, self.commit_retries)

    @store_guard
    def add_response(self, actor: Account, complaint_id: UUID, message: str) -> Outcome[Complaint]:
        """Add an official response. The first one starts the review."""
        text = (message or "").strip()
        if not text:
            return Outcome.failure(CoreError.invalid("Response message is required"))

        def attempt():
            complaint = self.repo.get(Complaint, COMPLAINTS, complaint_id)
            if complaint is None:
                return _not_found()
            denied = self.access.require(
                actor, Action.RESPOND_TO_COMPLAINT, Resource.for_complaint(complaint)
            )
            if denied:
                return Outcome.failure(denied)
            if complaint.status == ComplaintStatus.CLOSED:
                return Outcome.failure(
                    CoreError.conflict("complaint_closed", "Cannot respond to a closed complaint")
                )

            complaint.responses.append(ComplaintResponse(
                author=actor.name,
                author_id=actor.id,
                message=text,
                is_official=True,
                timestamp=self.clock.now(),
            ))
            if complaint.status == ComplaintStatus.SUBMITTED:
                complaint.status = ComplaintStatus.UNDER_REVIEW
                complaint.assigned_to = actor.id
            return [self.repo.write(COMPLAINTS, complaint)], complaint

        return self.repo.transact(attempt, self.commit_retries)

    @store_guard
    def assign(self, actor: Account, complaint_id: UUID, assignee_id: UUID) -> Outcome[Complaint]:
        decision = self.access.authorize(actor, Action.ASSIGN_COMPLAINT)
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())

        assignee = self.repo.get(Account, ACCOUNTS, assignee_id)
        if assignee is None or not assignee.is_admin_tier or not assignee.is_active:
            return Outcome.failure(CoreError.invalid("Invalid user assignment"))

        def attempt():
            complaint = self.repo.get(Complaint, COMPLAINTS, complaint_id)
            if complaint is None:
                return _not_found()
            if complaint.status in _FINISHED:
                return Outcome.failure(CoreError.conflict(
                    "complaint_finished", f"Cannot assign a {complaint.status.value} complaint"
                ))
            complaint.assigned_to = assignee.id
            if complaint.status == ComplaintStatus.SUBMITTED:
                complaint.status = ComplaintStatus.UNDER_REVIEW
            return [self.repo.write(COMPLAINTS, complaint)], complaint

        return self.repo.transact(attempt, self.commit_retries)

    @store_guard
    def update_status(
        self, actor: Account, complaint_id: UUID, status: ComplaintStatus
    ) -> Outcome[Complaint]:
        """
        Move a complaint forward one step.

        Moving to RESOLVED records provenance exactly as ``resolve`` does.
        """
        if status == ComplaintStatus.RESOLVED:
            return self.resolve(actor, complaint_id)
        if status == ComplaintStatus.CLOSED:
            return self.close(actor, complaint_id)

        def attempt():
            complaint = self.repo.get(Complaint, COMPLAINTS, complaint_id)
            if complaint is None:
                return _not_found()
            denied = self.access.require(
                actor, Action.UPDATE_COMPLAINT_STATUS, Resource.for_complaint(complaint)
            )
            if denied:
                return Outcome.failure(denied)
            if status not in TRANSITIONS[complaint.status]:
                return Outcome.failure(_bad_transition(complaint.status, status))

            complaint.status = status
            if status == ComplaintStatus.UNDER_REVIEW and complaint.assigned_to is None:
                complaint.assigned_to = actor.id
            return [self.repo.write(COMPLAINTS, complaint)], complaint

        return self.repo.transact(attempt, self.commit_retries)

    @store_guard
    def resolve(self, actor: Account, complaint_id: UUID, notes: str = "") -> Outcome[Complaint]:
        def attempt():
            complaint = self.repo.get(Complaint, COMPLAINTS, complaint_id)
            if complaint is None:
                return _not_found()
            denied = self.access.require(
                actor, Action.RESOLVE_COMPLAINT, Resource.for_complaint(complaint)
            )
            if denied:
                return Outcome.failure(denied)
            outcome = resolve(complaint, actor, self.clock.now(), notes)
            if not outcome.ok:
                return outcome
            return [self.repo.write(COMPLAINTS, outcome.value)], outcome.value

        outcome = self.repo.transact(attempt, self.commit_retries)
        if outcome.ok:
            logger.info(
                "Complaint resolved: case=%s resolution=%s",
                outcome.value.case_id, outcome.value.resolution_type.value,
            )
        return outcome

    @store_guard
    def close(self, actor: Account, complaint_id: UUID) -> Outcome[Complaint]:
        def attempt():
            complaint = self.repo.get(Complaint, COMPLAINTS, complaint_id)
            if complaint is None:
                return _not_found()
            denied = self.access.require(
                actor, Action.UPDATE_COMPLAINT_STATUS, Resource.for_complaint(complaint)
            )
            if denied:
                return Outcome.failure(denied)
            if ComplaintStatus.CLOSED not in TRANSITIONS[complaint.status]:
                return Outcome.failure(_bad_transition(complaint.status, ComplaintStatus.CLOSED))
            complaint.status = ComplaintStatus.CLOSED
            complaint.closed_at = self.clock.now()
            return [self.repo.write(COMPLAINTS, complaint)], complaint

        return self.repo.transact(attempt, self.commit_retries)

    @store_guard
    def add_document(
        self, actor: Account, complaint_id: UUID, document: ComplaintDocument
    ) -> Outcome[Complaint]:
        """Attach file metadata. Allowed for the complainant and partition resolvers."""

        def attempt():
            complaint = self.repo.get(Complaint, COMPLAINTS, complaint_id)
            if complaint is None:
                return _not_found()
            denied = self.access.require(
                actor, Action.ADD_COMPLAINT_DOCUMENT, Resource.for_complaint(complaint)
            )
            if denied:
                return Outcome.failure(denied)
            attached = document.model_copy(
                update={"uploaded_by": actor.id, "uploaded_at": self.clock.now()}
            )
            complaint.documents.append(attached)
            return [self.repo.write(COMPLAINTS, complaint)], complaint

        return self.repo.transact(attempt, self.commit_retries)

    @store_guard
    def delete(self, actor: Account, complaint_id: UUID) -> Outcome[UUID]:
        decision = self.access.authorize(actor, Action.DELETE_COMPLAINT)
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())

        def attempt():
            complaint = self.repo.get(Complaint, COMPLAINTS, complaint_id)
            if complaint is None:
                return _not_found()
            return [self.repo.removal(COMPLAINTS, complaint)], complaint.id

        return self.repo.transact(attempt, self.commit_retries)

    # ── Internal ────────────────────────────────────────────────

    def _unique_case_id(self, now: datetime) -> str:
        while True:
            case_id = generate_case_id(now)
            if self.repo.count(COMPLAINTS, case_id=case_id) == 0:
                return case_id


def _not_found() -> Outcome:
    return Outcome.failure(CoreError.not_found("complaint_not_found", "Complaint not found"))


def _bad_transition(current: ComplaintStatus, target: ComplaintStatus) -> CoreError:
    if current == target:
        return CoreError.conflict("status_unchanged", f"Complaint is already {current.value}")
    return CoreError.conflict(
        "invalid_transition",
        f"Cannot move complaint from {current.value} to {target.value}",
    )
