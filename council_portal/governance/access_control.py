"""
Access Control Core — the single policy-evaluation point.

Every mutating route handler asks ``authorize(subject, action, resource)``
before acting. The decision combines four kinds of gate, evaluated in order:

- ROLE: the subject's role must be in the action's role set
- CAPABILITY: the role's derived capability vector must grant the action
- OWNERSHIP: a club admin may only act on their assigned club
  (``super_admin`` bypasses every ownership check)
- PARTITION: complaint-domain roles only see their own partition
  (academic_affairs -> academic, president_admin -> general)

A denial is an ordinary outcome, never an exception. The caller turns it
into a user-visible rejection.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from council_portal.domain.schema import Account, Club, Complaint, ComplaintType, Role
from council_portal.governance.outcomes import CoreError
from council_portal.governance.permissions import Capability, derive_permissions, has_capability

logger = logging.getLogger(__name__)


class DecisionType(str, Enum):
    """Result of an authorization check."""

    ALLOW = "allow"
    DENY = "deny"


class Action(str, Enum):
    """Named actions subject to authorization."""

    # Clubs
    CREATE_CLUB = "create_club"
    UPDATE_CLUB = "update_club"
    JOIN_CLUB = "join_club"
    MANAGE_CLUB_MEMBERS = "manage_club_members"
    ASSIGN_CLUB_ADMIN = "assign_club_admin"

    # Elections
    CREATE_ELECTION = "create_election"
    UPDATE_ELECTION = "update_election"
    DELETE_ELECTION = "delete_election"
    CANCEL_ELECTION = "cancel_election"
    PUBLISH_RESULTS = "publish_results"
    CAST_VOTE = "cast_vote"
    VIEW_VOTER_LEDGER = "view_voter_ledger"
    VIEW_ELECTION_STATS = "view_election_stats"
    REFRESH_ELECTION_STATUSES = "refresh_election_statuses"

    # Complaints
    SUBMIT_COMPLAINT = "submit_complaint"
    VIEW_COMPLAINT = "view_complaint"
    RESPOND_TO_COMPLAINT = "respond_to_complaint"
    UPDATE_COMPLAINT_STATUS = "update_complaint_status"
    RESOLVE_COMPLAINT = "resolve_complaint"
    ASSIGN_COMPLAINT = "assign_complaint"
    ADD_COMPLAINT_DOCUMENT = "add_complaint_document"
    DELETE_COMPLAINT = "delete_complaint"
    VIEW_COMPLAINT_STATS = "view_complaint_stats"
    VIEW_PARTITION_DASHBOARD = "view_partition_dashboard"

    # News and documents
    POST_NEWS = "post_news"
    VIEW_NEWS = "view_news"
    UPLOAD_DOCUMENTS = "upload_documents"

    # Accounts
    CHANGE_ROLE = "change_role"
    SET_ACCOUNT_ACTIVE = "set_account_active"


ADMIN_TIER = frozenset({Role.ADMIN, Role.SUPER_ADMIN})
SUPER_ADMIN_ONLY = frozenset({Role.SUPER_ADMIN})
PRESIDENT_OR_SUPER_ADMIN = frozenset({Role.PRESIDENT_ADMIN, Role.SUPER_ADMIN})
COMPLAINT_RESOLVERS = frozenset(
    {Role.ADMIN, Role.SUPER_ADMIN, Role.PRESIDENT_ADMIN, Role.ACADEMIC_AFFAIRS}
)
ELECTION_CREATORS = frozenset({Role.PRESIDENT_ADMIN, Role.ADMIN, Role.SUPER_ADMIN})
CLUB_MANAGERS = frozenset({Role.CLUB_ADMIN, Role.SUPER_ADMIN})

OWNERSHIP_BYPASS = frozenset({Role.SUPER_ADMIN})

# Fixed denial messages for the named role gates
_ROLE_GATE_MESSAGES: dict[frozenset[Role], str] = {
    ADMIN_TIER: "Access denied. Admin privileges required.",
    SUPER_ADMIN_ONLY: "Access denied. Super Admin privileges required.",
    PRESIDENT_OR_SUPER_ADMIN: (
        "Access denied. President Admin or Super Admin privileges required."
    ),
}

_CAPABILITY_MESSAGES: dict[Capability, str] = {
    Capability.CREATE_CLUBS: "You do not have permission to create clubs",
    Capability.MANAGE_CLUBS: "You do not have permission to manage clubs",
    Capability.CREATE_ELECTIONS: "You do not have permission to create elections",
    Capability.VOTE_ELECTIONS: "You do not have permission to vote in elections",
    Capability.POST_NEWS: "You do not have permission to post news",
    Capability.VIEW_NEWS: "You do not have permission to view news",
    Capability.WRITE_COMPLAINTS: "You do not have permission to write complaints",
    Capability.RESOLVE_COMPLAINTS: "You do not have permission to resolve complaints",
    Capability.RESOLVE_ACADEMIC_COMPLAINTS: (
        "You do not have permission to resolve academic complaints"
    ),
    Capability.UPLOAD_DOCUMENTS: "You do not have permission to upload documents",
    Capability.JOIN_CLUBS: "You do not have permission to join clubs",
}


def is_admin_tier(subject: Account) -> bool:
    return subject.role in ADMIN_TIER


def is_super_admin(subject: Account) -> bool:
    return subject.role == Role.SUPER_ADMIN


def is_president_or_super_admin(subject: Account) -> bool:
    return subject.role in PRESIDENT_OR_SUPER_ADMIN


def has_role(subject: Account, roles: frozenset[Role] | set[Role]) -> bool:
    return subject.role in roles


def complaint_partitions(role: Role) -> frozenset[ComplaintType]:
    """Complaint types visible to a role. Empty for roles outside the domain."""
    if role in ADMIN_TIER:
        return frozenset(ComplaintType)
    if role == Role.ACADEMIC_AFFAIRS:
        return frozenset({ComplaintType.ACADEMIC})
    if role == Role.PRESIDENT_ADMIN:
        return frozenset({ComplaintType.GENERAL})
    return frozenset()


@dataclass(frozen=True)
class Resource:
    """The parts of a target entity that authorization looks at."""

    club_id: UUID | None = None
    owner_id: UUID | None = None
    complaint_type: ComplaintType | None = None

    @classmethod
    def for_club(cls, club: Club | UUID) -> Resource:
        return cls(club_id=club.id if isinstance(club, Club) else club)

    @classmethod
    def for_complaint(cls, complaint: Complaint) -> Resource:
        return cls(owner_id=complaint.submitted_by, complaint_type=complaint.complaint_type)

    @classmethod
    def for_partition(cls, complaint_type: ComplaintType) -> Resource:
        return cls(complaint_type=complaint_type)


@dataclass(frozen=True)
class ActionRule:
    """Gates applied to one action."""

    roles: frozenset[Role] | None = None
    capability: Capability | None = None
    ownership: bool = False
    partitioned: bool = False
    owner_may_act: bool = False


ACTION_RULES: dict[Action, ActionRule] = {
    Action.CREATE_CLUB: ActionRule(capability=Capability.CREATE_CLUBS),
    Action.UPDATE_CLUB: ActionRule(roles=PRESIDENT_OR_SUPER_ADMIN),
    Action.JOIN_CLUB: ActionRule(capability=Capability.JOIN_CLUBS),
    Action.MANAGE_CLUB_MEMBERS: ActionRule(
        roles=CLUB_MANAGERS, capability=Capability.MANAGE_CLUBS, ownership=True
    ),
    Action.ASSIGN_CLUB_ADMIN: ActionRule(roles=SUPER_ADMIN_ONLY),
    Action.CREATE_ELECTION: ActionRule(
        roles=ELECTION_CREATORS, capability=Capability.CREATE_ELECTIONS
    ),
    Action.UPDATE_ELECTION: ActionRule(roles=PRESIDENT_OR_SUPER_ADMIN),
    Action.DELETE_ELECTION: ActionRule(roles=PRESIDENT_OR_SUPER_ADMIN),
    Action.CANCEL_ELECTION: ActionRule(roles=PRESIDENT_OR_SUPER_ADMIN),
    Action.PUBLISH_RESULTS: ActionRule(roles=PRESIDENT_OR_SUPER_ADMIN),
    Action.CAST_VOTE: ActionRule(capability=Capability.VOTE_ELECTIONS),
    Action.VIEW_VOTER_LEDGER: ActionRule(roles=ADMIN_TIER),
    Action.VIEW_ELECTION_STATS: ActionRule(roles=SUPER_ADMIN_ONLY),
    Action.REFRESH_ELECTION_STATUSES: ActionRule(roles=SUPER_ADMIN_ONLY),
    Action.SUBMIT_COMPLAINT: ActionRule(capability=Capability.WRITE_COMPLAINTS),
    Action.VIEW_COMPLAINT: ActionRule(partitioned=True, owner_may_act=True),
    Action.RESPOND_TO_COMPLAINT: ActionRule(roles=COMPLAINT_RESOLVERS, partitioned=True),
    Action.UPDATE_COMPLAINT_STATUS: ActionRule(roles=COMPLAINT_RESOLVERS, partitioned=True),
    Action.RESOLVE_COMPLAINT: ActionRule(roles=COMPLAINT_RESOLVERS, partitioned=True),
    Action.ASSIGN_COMPLAINT: ActionRule(roles=ADMIN_TIER),
    Action.ADD_COMPLAINT_DOCUMENT: ActionRule(partitioned=True, owner_may_act=True),
    Action.DELETE_COMPLAINT: ActionRule(roles=ADMIN_TIER),
    Action.VIEW_COMPLAINT_STATS: ActionRule(roles=ADMIN_TIER),
    Action.VIEW_PARTITION_DASHBOARD: ActionRule(roles=COMPLAINT_RESOLVERS, partitioned=True),
    Action.POST_NEWS: ActionRule(capability=Capability.POST_NEWS),
    Action.VIEW_NEWS: ActionRule(capability=Capability.VIEW_NEWS),
    Action.UPLOAD_DOCUMENTS: ActionRule(capability=Capability.UPLOAD_DOCUMENTS),
    Action.CHANGE_ROLE: ActionRule(roles=SUPER_ADMIN_ONLY),
    Action.SET_ACCOUNT_ACTIVE: ActionRule(roles=SUPER_ADMIN_ONLY),
}


@dataclass
class Decision:
    """Outcome of ``authorize``: allow, or deny with a fixed reason."""

    decision: DecisionType
    action: Action
    role: Role
    reason: str
    code: str = "allowed"

    @property
    def is_allowed(self) -> bool:
        return self.decision == DecisionType.ALLOW

    def to_error(self) -> CoreError:
        return CoreError.denied(self.code, self.reason)


class AccessControl:
    """
    Central authorization engine.

    Holds the action rule table. ``authorize`` is pure: it reads the subject
    and the resource, and performs no I/O.
    """

    def __init__(self, rules: dict[Action, ActionRule] | None = None) -> None:
        self.rules = rules or dict(ACTION_RULES)

    def authorize(
        self,
        subject: Account,
        action: Action,
        resource: Resource | None = None,
    ) -> Decision:
        """
        Decide whether ``subject`` may perform ``action`` on ``resource``.

        Args:
            subject: The acting account.
            action: The action being attempted.
            resource: Ownership and partition facts of the target, if any.

        Returns:
            A Decision. Denials carry a stable ``code`` and a fixed message.
        """
        rule = self.rules.get(action)
        if rule is None:
            return self._deny(subject, action, "unknown_action", f"Unknown action: {action}")

        if not subject.is_active:
            return self._deny(
                subject, action, "account_inactive", "Account has been deactivated"
            )

        if rule.roles is not None and subject.role not in rule.roles:
            message = _ROLE_GATE_MESSAGES.get(
                rule.roles,
                f"User role {subject.role.value} is not authorized to {action.value.replace('_', ' ')}",
            )
            return self._deny(subject, action, "role_not_permitted", message)

        if rule.capability is not None:
            # Recomputed from the role; the cached vector on the account is not consulted.
            if not has_capability(derive_permissions(subject.role), rule.capability):
                return self._deny(
                    subject, action, "missing_capability",
                    _CAPABILITY_MESSAGES[rule.capability],
                )

        if rule.ownership and subject.role not in OWNERSHIP_BYPASS:
            club_id = resource.club_id if resource else None
            if club_id is None:
                return self._deny(subject, action, "club_required", "Club ID is required")
            if subject.assigned_club is None or subject.assigned_club != club_id:
                return self._deny(
                    subject, action, "ownership_mismatch",
                    "Access denied. You can only manage your assigned club.",
                )

        if rule.partitioned:
            if rule.owner_may_act and resource is not None and resource.owner_id == subject.id:
                return self._allow(subject, action, "Complaint owner")
            complaint_type = resource.complaint_type if resource else None
            visible = complaint_partitions(subject.role)
            if complaint_type is None or complaint_type not in visible:
                return self._deny(
                    subject, action, "partition_mismatch",
                    _partition_message(subject.role, complaint_type),
                )

        return self._allow(subject, action, "Authorized")

    def require(
        self,
        subject: Account,
        action: Action,
        resource: Resource | None = None,
    ) -> CoreError | None:
        """Convenience for services: ``None`` when allowed, else the error."""
        decision = self.authorize(subject, action, resource)
        return None if decision.is_allowed else decision.to_error()

    @staticmethod
    def _allow(subject: Account, action: Action, reason: str) -> Decision:
        return Decision(DecisionType.ALLOW, action, subject.role, reason)

    @staticmethod
    def _deny(subject: Account, action: Action, code: str, reason: str) -> Decision:
        logger.info(
            "Access denied: account=%s role=%s action=%s code=%s",
            str(subject.id)[:8], subject.role.value, action.value, code,
        )
        return Decision(DecisionType.DENY, action, subject.role, reason, code)


def _partition_message(role: Role, complaint_type: ComplaintType | None) -> str:
    if role == Role.PRESIDENT_ADMIN and complaint_type == ComplaintType.ACADEMIC:
        return "President admin cannot access academic complaints"
    if role == Role.ACADEMIC_AFFAIRS and complaint_type == ComplaintType.GENERAL:
        return "Academic affairs cannot access general complaints"
    return "Not authorized to access this complaint"


# Global access control instance
access_control = AccessControl()


def authorize(subject: Account, action: Action, resource: Resource | None = None) -> Decision:
    return access_control.authorize(subject, action, resource)
