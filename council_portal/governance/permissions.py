"""
Permission Matrix — the fixed capability vector of every role.

Each role maps to exactly one row of eleven boolean capabilities. The
mapping is total: an unrecognized role falls back to the ``student`` row.
Permissions are re-derived from the role at every role change and on every
load of an account; a stored or client-supplied vector is only a cache.
"""

from __future__ import annotations

import logging
from enum import Enum

from council_portal.domain.schema import Permissions, Role

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    """One flag of the capability vector."""

    CREATE_CLUBS = "can_create_clubs"
    MANAGE_CLUBS = "can_manage_clubs"
    CREATE_ELECTIONS = "can_create_elections"
    VOTE_ELECTIONS = "can_vote_elections"
    POST_NEWS = "can_post_news"
    VIEW_NEWS = "can_view_news"
    WRITE_COMPLAINTS = "can_write_complaints"
    RESOLVE_COMPLAINTS = "can_resolve_complaints"
    RESOLVE_ACADEMIC_COMPLAINTS = "can_resolve_academic_complaints"
    UPLOAD_DOCUMENTS = "can_upload_documents"
    JOIN_CLUBS = "can_join_clubs"


_STUDENT_ROW = Permissions(
    can_create_clubs=False,
    can_manage_clubs=False,
    can_create_elections=False,
    can_vote_elections=True,
    can_post_news=False,
    can_view_news=True,
    can_write_complaints=True,
    can_resolve_complaints=False,
    can_resolve_academic_complaints=False,
    can_upload_documents=False,
    can_join_clubs=True,
)

_ADMIN_ROW = Permissions(
    can_create_clubs=True,
    can_manage_clubs=True,
    can_create_elections=True,
    can_vote_elections=False,
    can_post_news=True,
    can_view_news=True,
    can_write_complaints=False,
    can_resolve_complaints=True,
    can_resolve_academic_complaints=True,
    can_upload_documents=True,
    can_join_clubs=False,
)

ROLE_PERMISSIONS: dict[Role, Permissions] = {
    Role.STUDENT: _STUDENT_ROW,
    Role.CLUB_ADMIN: Permissions(
        can_create_clubs=False,
        can_manage_clubs=True,  # manages clubs created by the president
        can_create_elections=False,
        can_vote_elections=True,
        can_post_news=False,
        can_view_news=True,
        can_write_complaints=True,
        can_resolve_complaints=False,
        can_resolve_academic_complaints=False,
        can_upload_documents=False,
        can_join_clubs=False,
    ),
    Role.ACADEMIC_AFFAIRS: Permissions(
        can_create_clubs=False,
        can_manage_clubs=False,
        can_create_elections=False,
        can_vote_elections=True,
        can_post_news=False,
        can_view_news=True,
        can_write_complaints=True,
        can_resolve_complaints=False,
        can_resolve_academic_complaints=True,
        can_upload_documents=True,
        can_join_clubs=True,
    ),
    Role.PRESIDENT_ADMIN: Permissions(
        can_create_clubs=True,
        can_manage_clubs=False,  # creates clubs, does not run them
        can_create_elections=True,
        can_vote_elections=False,
        can_post_news=True,
        can_view_news=True,
        can_write_complaints=False,
        can_resolve_complaints=True,
        can_resolve_academic_complaints=False,
        can_upload_documents=True,
        can_join_clubs=False,
    ),
    Role.ADMIN: _ADMIN_ROW,
    Role.SUPER_ADMIN: _ADMIN_ROW,
}


def coerce_role(role: Role | str) -> Role:
    """Map a raw role value to ``Role``, falling back to ``student``."""
    if isinstance(role, Role):
        return role
    try:
        return Role(role)
    except ValueError:
        logger.warning("Unrecognized role %r; using the student row", role)
        return Role.STUDENT


def derive_permissions(role: Role | str) -> Permissions:
    """
    Return the capability vector for a role.

    Always returns a fresh copy so callers may not mutate the matrix.
    """
    return ROLE_PERMISSIONS[coerce_role(role)].model_copy()


def has_capability(permissions: Permissions, capability: Capability) -> bool:
    return getattr(permissions, capability.value) is True
