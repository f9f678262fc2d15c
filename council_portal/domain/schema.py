"""
Council Schema — Pydantic models for every student council entity.

These models are the canonical data structures for accounts, elections,
complaints and clubs. They govern the shape of documents in the store, the
payloads exchanged with the service layer, and the dashboard API.

Stored documents are the JSON form of these models (``model_dump(mode="json")``)
and carry a ``version`` counter used for optimistic concurrency.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class Role(str, enum.Enum):
    """Account roles, from least to most privileged."""

    STUDENT = "student"
    CLUB_ADMIN = "club_admin"
    ACADEMIC_AFFAIRS = "academic_affairs"
    PRESIDENT_ADMIN = "president_admin"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class AcademicYear(str, enum.Enum):
    FIRST = "1st Year"
    SECOND = "2nd Year"
    THIRD = "3rd Year"
    FOURTH = "4th Year"
    FIFTH = "5th Year"


class ElectionStatus(str, enum.Enum):
    """Election lifecycle states. ``cancelled`` is absorbing."""

    UPCOMING = "upcoming"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ElectionType(str, enum.Enum):
    PRESIDENT = "president"
    VICE_PRESIDENT = "vice_president"
    SECRETARY = "secretary"
    TREASURER = "treasurer"
    BRANCH_LEADER = "branch_leader"
    GENERAL = "general"


class TimerType(str, enum.Enum):
    STARTS_IN = "starts_in"
    ENDS_IN = "ends_in"
    ENDED = "ended"


class ComplaintType(str, enum.Enum):
    """Resolver partition of a complaint."""

    GENERAL = "general"
    ACADEMIC = "academic"


class ComplaintStatus(str, enum.Enum):
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    CLOSED = "closed"


class ComplaintCategory(str, enum.Enum):
    ACADEMIC = "academic"
    DINING = "dining"
    HOUSING = "housing"
    FACILITIES = "facilities"
    DISCIPLINARY = "disciplinary"
    GENERAL = "general"
    CLUB_RELATED = "club_related"
    ELECTION_RELATED = "election_related"


class ComplaintPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ResolutionType(str, enum.Enum):
    """Provenance of a resolution, derived from the resolver's role."""

    PRESIDENT_ADMIN_RESOLVED = "president_admin_resolved"
    ACADEMIC_AFFAIRS_RESOLVED = "academic_affairs_resolved"
    ADMIN_RESOLVED = "admin_resolved"


class DocumentType(str, enum.Enum):
    EVIDENCE = "evidence"
    RESOLUTION_DOCUMENT = "resolution_document"
    ADDITIONAL_INFO = "additional_info"


class ClubStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING_APPROVAL = "pending_approval"


class MembershipStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ClubMemberRole(str, enum.Enum):
    MEMBER = "member"
    OFFICER = "officer"
    PRESIDENT = "president"
    VICE_PRESIDENT = "vice_president"
    SECRETARY = "secretary"
    TREASURER = "treasurer"


# ════════════════════════════════════════════════════════════════
# Accounts
# ════════════════════════════════════════════════════════════════


class Permissions(BaseModel):
    """
    The capability vector of an account.

    Always derived from the account's role (see
    ``council_portal.governance.permissions``); never accepted from a client.
    """

    can_create_clubs: bool = False
    can_manage_clubs: bool = False
    can_create_elections: bool = False
    can_vote_elections: bool = True
    can_post_news: bool = False
    can_view_news: bool = True
    can_write_complaints: bool = True
    can_resolve_complaints: bool = False
    can_resolve_academic_complaints: bool = False
    can_upload_documents: bool = False
    can_join_clubs: bool = True


class Account(BaseModel):
    """
    A user account: a student, a club admin or one of the administrative roles.

    ``permissions`` is recomputed from ``role`` whenever the model is
    validated, so a stored or client-supplied vector is never trusted.
    Use :meth:`assign_role` to change the role of a live instance.
    """

    id: UUID = Field(default_factory=uuid4)
    version: int = 0
    name: str
    username: str
    email: str | None = None
    password_hash: str = Field(default="", repr=False)
    department: str = ""
    year: AcademicYear | None = None
    role: Role = Role.STUDENT
    permissions: Permissions = Field(default_factory=Permissions)

    is_active: bool = True
    is_locked: bool = False
    login_attempts: int = 0
    lock_until: datetime | None = None
    last_login: datetime | None = None

    joined_clubs: list[UUID] = Field(default_factory=list)
    voted_elections: list[UUID] = Field(default_factory=list)
    assigned_club: UUID | None = Field(
        default=None, description="Club managed by this account (club_admin only)"
    )
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("role", mode="before")
    @classmethod
    def _coerce_role(cls, value: Any) -> Role:
        from council_portal.governance.permissions import coerce_role

        return coerce_role(value)

    @model_validator(mode="after")
    def _derive_permissions(self) -> Account:
        from council_portal.governance.permissions import derive_permissions

        self.permissions = derive_permissions(self.role)
        return self

    def assign_role(self, role: Role) -> None:
        """Change the role and recompute the capability vector."""
        from council_portal.governance.permissions import derive_permissions

        self.role = role
        self.permissions = derive_permissions(role)

    @property
    def is_admin_tier(self) -> bool:
        return self.role in (Role.ADMIN, Role.SUPER_ADMIN)

    def public_view(self) -> dict[str, Any]:
        """Serializable form without credential material."""
        return self.model_dump(mode="json", exclude={"password_hash"})


# ════════════════════════════════════════════════════════════════
# Elections
# ════════════════════════════════════════════════════════════════


class Candidate(BaseModel):
    """A candidate standing in an election, with a mutable vote counter."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    username: str = ""
    department: str = ""
    year: AcademicYear | None = None
    position: str = ""
    platform: list[str] = Field(default_factory=list)
    biography: str = Field(default="", max_length=1000)
    votes: int = 0
    voters: list[UUID] = Field(default_factory=list)


class VoteRecord(BaseModel):
    """One entry of the eligibility ledger: a single accepted vote."""

    user: UUID
    candidate: UUID
    voted_at: datetime = Field(default_factory=utcnow)
    ip_address: str | None = None


class VotingEligibility(BaseModel):
    """Voter restrictions. An empty list places no restriction."""

    roles: list[Role] = Field(default_factory=list)
    departments: list[str] = Field(default_factory=list)
    years: list[AcademicYear] = Field(default_factory=list)


class Election(BaseModel):
    """
    A council election.

    ``status`` is stored, but it is only a cache of the value derived from
    the clock and ``[start_date, end_date)``; reads always re-derive it.
    """

    id: UUID = Field(default_factory=uuid4)
    version: int = 0
    title: str = Field(max_length=200)
    description: str = Field(default="", max_length=1000)
    start_date: datetime
    end_date: datetime
    status: ElectionStatus = ElectionStatus.UPCOMING
    election_type: ElectionType = ElectionType.GENERAL
    candidates: list[Candidate] = Field(default_factory=list)

    total_votes: int = 0
    eligible_voters: int = Field(
        default=0, description="Snapshot count of eligible voters taken at creation"
    )
    voters: list[VoteRecord] = Field(default_factory=list)
    voting_eligibility: VotingEligibility = Field(default_factory=VotingEligibility)

    rules: list[str] = Field(default_factory=list)
    is_public: bool = True
    results_published: bool = False
    published_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_by: UUID | None = None
    created_at: datetime = Field(default_factory=utcnow)

    def has_voted(self, account_id: UUID) -> bool:
        return any(record.user == account_id for record in self.voters)

    def candidate(self, candidate_id: UUID) -> Candidate | None:
        return next((c for c in self.candidates if c.id == candidate_id), None)

    @computed_field
    @property
    def turnout_percentage(self) -> float:
        from council_portal.governance.lifecycle import turnout_percentage

        return turnout_percentage(self.total_votes, self.eligible_voters)


class ElectionTimer(BaseModel):
    """Countdown to the next lifecycle boundary of an election."""

    type: TimerType
    days: int = 0
    hours: int = 0
    minutes: int = 0
    seconds: int = 0
    expired: bool = False
    total_ms: int = 0


# ════════════════════════════════════════════════════════════════
# Complaints
# ════════════════════════════════════════════════════════════════


class ComplaintResponse(BaseModel):
    """A message in a complaint's response thread."""

    id: UUID = Field(default_factory=uuid4)
    author: str
    author_id: UUID
    message: str
    is_official: bool = False
    timestamp: datetime = Field(default_factory=utcnow)


class ComplaintDocument(BaseModel):
    """Metadata of a file held by the external file-storage service."""

    filename: str
    original_name: str = ""
    mimetype: str = ""
    size: int = 0
    url: str = ""
    uploaded_by: UUID | None = None
    uploaded_at: datetime = Field(default_factory=utcnow)
    document_type: DocumentType = DocumentType.ADDITIONAL_INFO


class Complaint(BaseModel):
    """
    A complaint submitted by a member of the council.

    ``can_be_resolved_by`` is derived from ``complaint_type`` on every
    validation; callers changing the type go through ``change_type``.
    """

    id: UUID = Field(default_factory=uuid4)
    version: int = 0
    case_id: str = ""
    title: str = Field(max_length=200)
    description: str = Field(max_length=2000)
    category: ComplaintCategory = ComplaintCategory.GENERAL
    complaint_type: ComplaintType = ComplaintType.GENERAL
    priority: ComplaintPriority = ComplaintPriority.MEDIUM
    status: ComplaintStatus = ComplaintStatus.SUBMITTED

    submitted_by: UUID
    assigned_to: UUID | None = None
    resolved_by: UUID | None = None
    resolution_type: ResolutionType | None = None
    resolution_notes: str = Field(default="", max_length=1000)
    can_be_resolved_by: list[Role] = Field(default_factory=list)

    responses: list[ComplaintResponse] = Field(default_factory=list)
    documents: list[ComplaintDocument] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    is_urgent: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: datetime | None = None
    closed_at: datetime | None = None

    @model_validator(mode="after")
    def _derive_resolvers(self) -> Complaint:
        from council_portal.governance.complaints import derive_resolver_set

        self.can_be_resolved_by = derive_resolver_set(self.complaint_type)
        return self

    def change_type(self, complaint_type: ComplaintType) -> None:
        from council_portal.governance.complaints import derive_resolver_set

        self.complaint_type = complaint_type
        self.can_be_resolved_by = derive_resolver_set(complaint_type)


# ════════════════════════════════════════════════════════════════
# Clubs
# ════════════════════════════════════════════════════════════════


class ClubMember(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    user: UUID
    status: MembershipStatus = MembershipStatus.PENDING
    role: ClubMemberRole = ClubMemberRole.MEMBER
    joined_at: datetime = Field(default_factory=utcnow)


class ClubLeadership(BaseModel):
    president: UUID | None = None
    vice_president: UUID | None = None
    secretary: UUID | None = None
    treasurer: UUID | None = None


class Club(BaseModel):
    """
    A student club.

    ``club_admin`` and the admin account's ``assigned_club`` form a
    bidirectional pair; reassignment clears the stale side in the same commit.
    """

    id: UUID = Field(default_factory=uuid4)
    version: int = 0
    name: str
    description: str = ""
    category: str = ""
    status: ClubStatus = ClubStatus.ACTIVE
    club_admin: UUID | None = None
    members: list[ClubMember] = Field(default_factory=list)
    leadership: ClubLeadership = Field(default_factory=ClubLeadership)
    created_by: UUID | None = None
    created_at: datetime = Field(default_factory=utcnow)

    def member(self, member_id: UUID) -> ClubMember | None:
        return next((m for m in self.members if m.id == member_id), None)

    def membership_of(self, account_id: UUID) -> ClubMember | None:
        return next((m for m in self.members if m.user == account_id), None)
