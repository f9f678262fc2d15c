"""
Council Portal — Web API for the student council administration.

FastAPI application exposing:
- Accounts (registration, login, role and activation management)
- Elections (administration, live status and timers, voting)
- Complaints (submission, partitioned review and resolution)
- Clubs (club admin pairing and membership management)

Route handlers are thin: each one resolves the acting account, calls one
service operation and renders its outcome. Authorization happens inside the
services through the access control core.

Every route except registration, login and health requires an
``Authorization: Bearer`` token issued by ``/api/auth/login``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from council_portal.clock import Clock, SystemClock
from council_portal.config import settings
from council_portal.domain.schema import (
    Account,
    ClubMemberRole,
    ComplaintDocument,
    ComplaintStatus,
    ComplaintType,
    ElectionStatus,
    MembershipStatus,
    Role,
)
from council_portal.governance.access_control import Action, access_control
from council_portal.governance.accounts import AccountDraft, AccountService, Registration
from council_portal.governance.clubs import ClubDraft, ClubService, ClubUpdate
from council_portal.governance.complaints import ComplaintDraft, ComplaintService
from council_portal.governance.elections import ElectionDraft, ElectionService, ElectionUpdate
from council_portal.governance.outcomes import ErrorKind, Outcome
from council_portal.governance.tokens import TokenManager
from council_portal.store.base import DocumentStore

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.POLICY_DENIED: 403,
    ErrorKind.VALIDATION_FAILED: 422,
    ErrorKind.STATE_CONFLICT: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INFRASTRUCTURE_FAILURE: 503,
}


# ── Pydantic request models ────────────────────────────────────


class LoginRequest(BaseModel):
    username: str
    password: str


class PasswordChangeRequest(BaseModel):
    current_password: str
    new_password: str


class RoleChangeRequest(BaseModel):
    role: Role


class ActiveRequest(BaseModel):
    is_active: bool


class VoteRequest(BaseModel):
    candidate_id: UUID


class ResponseRequest(BaseModel):
    message: str


class StatusRequest(BaseModel):
    status: ComplaintStatus


class TypeRequest(BaseModel):
    complaint_type: ComplaintType


class AssignRequest(BaseModel):
    assigned_to: UUID


class ResolveRequest(BaseModel):
    resolution_notes: str = ""


class ClubAdminRequest(BaseModel):
    account_id: UUID


class MemberStatusRequest(BaseModel):
    status: MembershipStatus


class MemberRoleRequest(BaseModel):
    role: ClubMemberRole


class DashboardState:
    """Mutable application state injected at startup."""

    def __init__(self) -> None:
        self.store: DocumentStore | None = None
        self.accounts: AccountService | None = None
        self.elections: ElectionService | None = None
        self.complaints: ComplaintService | None = None
        self.clubs: ClubService | None = None
        self.startup_time: datetime = datetime.now(timezone.utc)

    def configure(self, store: DocumentStore, clock: Clock | None = None, **account_options: Any) -> None:
        """Build every service over one store and clock."""
        clock = clock or SystemClock()
        retries = settings.commit_attempts
        account_options.setdefault("tokens", TokenManager(
            settings.jwt_secret_key,
            settings.jwt_algorithm,
            _minutes(settings.access_token_expire_minutes),
            clock,
        ))
        self.store = store
        self.accounts = AccountService(
            store,
            clock,
            max_login_attempts=settings.max_login_attempts,
            lock_duration=_minutes(settings.lock_duration_minutes),
            min_password_length=settings.min_password_length,
            commit_retries=retries,
            **account_options,
        )
        self.elections = ElectionService(
            store,
            clock,
            commit_retries=retries,
            min_duration=_minutes(settings.election_min_duration_minutes),
            upcoming_window=_minutes(settings.upcoming_window_hours * 60),
            ending_soon_window=_minutes(settings.ending_soon_window_hours * 60),
        )
        self.complaints = ComplaintService(store, clock, commit_retries=retries)
        self.clubs = ClubService(store, clock, commit_retries=retries)

    @property
    def ready(self) -> bool:
        return self.store is not None


state = DashboardState()
bearer = HTTPBearer(auto_error=False)


def _minutes(value: int) -> timedelta:
    return timedelta(minutes=value)


# ── Application lifecycle ──────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup & shutdown lifecycle: connect to the document store."""
    logger.info("Council Portal API starting")

    if not state.ready:
        try:
            from council_portal.store.sql import SqlDocumentStore

            store = SqlDocumentStore(settings.database_url_sync, pool_pre_ping=True)
            store.initialize()
            state.configure(store)
            logger.info("API connected to document store")
        except Exception as exc:
            logger.warning("API could not connect to document store: %s", type(exc).__name__)

    yield

    if state.store is not None:
        state.store.close()
    logger.info("Council Portal API shut down")


app = FastAPI(
    title="Council Portal — Student Council Administration",
    description="Accounts, elections, complaints and clubs for the student council",
    version="0.1.0",
    lifespan=lifespan,
)


# ── Helpers ────────────────────────────────────────────────────


def _serialize(value: Any) -> Any:
    if isinstance(value, Account):
        return value.public_view()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    return jsonable_encoder(value)


def _respond(outcome: Outcome, status_code: int = 200) -> JSONResponse:
    """Render a service outcome."""
    if outcome.ok:
        return JSONResponse({"success": True, "data": _serialize(outcome.value)}, status_code=status_code)

    error = outcome.error
    code = STATUS_BY_KIND[error.kind]
    if error.code == "invalid_credentials":
        code = 401
    if error.kind == ErrorKind.INFRASTRUCTURE_FAILURE:
        logger.error("Request failed on infrastructure: %s", error.code)
    return JSONResponse({"success": False, **error.to_dict()}, status_code=code)


def _services() -> DashboardState:
    if not state.ready:
        raise HTTPException(status_code=503, detail="Document store not initialized")
    return state


def current_account(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
) -> Account:
    """Resolve the acting account from the bearer token."""
    services = _services()
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise _unauthorized("Not authorized, no token")
    outcome = services.accounts.resolve_token(credentials.credentials)
    if not outcome.ok:
        if outcome.error.kind == ErrorKind.INFRASTRUCTURE_FAILURE:
            raise HTTPException(status_code=503, detail=outcome.error.reason)
        raise _unauthorized(outcome.error.reason)
    return outcome.value


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


# ── Accounts ───────────────────────────────────────────────────


@app.post("/api/auth/register")
def register(req: Registration):
    return _respond(_services().accounts.register(req), status_code=201)


@app.post("/api/auth/login")
def login(req: LoginRequest):
    return _respond(_services().accounts.login(req.username, req.password))


@app.get("/api/accounts/me")
def me(actor: Account = Depends(current_account)):
    return _respond(Outcome.success(actor))


@app.post("/api/accounts/me/password")
def change_password(req: PasswordChangeRequest, actor: Account = Depends(current_account)):
    return _respond(
        _services().accounts.change_password(actor, req.current_password, req.new_password)
    )


@app.post("/api/accounts")
def create_account(req: AccountDraft, actor: Account = Depends(current_account)):
    return _respond(_services().accounts.create_account(actor, req), status_code=201)


@app.patch("/api/accounts/{account_id}/role")
def change_role(account_id: UUID, req: RoleChangeRequest, actor: Account = Depends(current_account)):
    return _respond(_services().accounts.change_role(actor, account_id, req.role))


@app.patch("/api/accounts/{account_id}/active")
def set_active(account_id: UUID, req: ActiveRequest, actor: Account = Depends(current_account)):
    return _respond(_services().accounts.set_active(actor, account_id, req.is_active))


# ── Elections ──────────────────────────────────────────────────


@app.get("/api/elections")
def list_elections(status: ElectionStatus | None = None, actor: Account = Depends(current_account)):
    return _respond(_services().elections.list_elections(actor, status))


@app.get("/api/elections/stats/overview")
def election_stats(actor: Account = Depends(current_account)):
    return _respond(_services().elections.election_stats(actor))


@app.post("/api/elections/refresh-statuses")
def refresh_statuses(actor: Account = Depends(current_account)):
    decision = access_control.authorize(actor, Action.REFRESH_ELECTION_STATUSES)
    if not decision.is_allowed:
        return _respond(Outcome.failure(decision.to_error()))
    return _respond(_services().elections.refresh_statuses())


@app.post("/api/elections")
def create_election(req: ElectionDraft, actor: Account = Depends(current_account)):
    return _respond(_services().elections.create_election(actor, req), status_code=201)


@app.get("/api/elections/{election_id}")
def get_election(election_id: UUID, actor: Account = Depends(current_account)):
    return _respond(_services().elections.get_election_view(actor, election_id))


@app.put("/api/elections/{election_id}")
def update_election(election_id: UUID, req: ElectionUpdate, actor: Account = Depends(current_account)):
    return _respond(_services().elections.update_election(actor, election_id, req))


@app.delete("/api/elections/{election_id}")
def delete_election(election_id: UUID, actor: Account = Depends(current_account)):
    return _respond(_services().elections.delete_election(actor, election_id))


@app.post("/api/elections/{election_id}/cancel")
def cancel_election(election_id: UUID, actor: Account = Depends(current_account)):
    return _respond(_services().elections.cancel_election(actor, election_id))


@app.post("/api/elections/{election_id}/publish-results")
def publish_results(election_id: UUID, actor: Account = Depends(current_account)):
    return _respond(_services().elections.publish_results(actor, election_id))


@app.post("/api/elections/{election_id}/vote")
def cast_vote(
    election_id: UUID,
    req: VoteRequest,
    request: Request,
    actor: Account = Depends(current_account),
    x_forwarded_for: str | None = Header(default=None),
):
    origin = _client_address(request, x_forwarded_for)
    return _respond(_services().elections.cast_vote(actor, election_id, req.candidate_id, origin))


def _client_address(request: Request, forwarded_for: str | None) -> str | None:
    """First forwarded hop when behind a proxy, else the connecting peer."""
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


# ── Complaints ─────────────────────────────────────────────────


@app.get("/api/complaints")
def list_complaints(
    status: ComplaintStatus | None = None,
    complaint_type: ComplaintType | None = None,
    search: str | None = None,
    actor: Account = Depends(current_account),
):
    return _respond(
        _services().complaints.list_visible(
            actor, status=status, complaint_type=complaint_type, search=search
        )
    )


@app.get("/api/complaints/stats/overview")
def complaint_stats(actor: Account = Depends(current_account)):
    return _respond(_services().complaints.complaint_stats(actor))


@app.get("/api/complaints/partition/{complaint_type}")
def partition_dashboard(complaint_type: ComplaintType, actor: Account = Depends(current_account)):
    return _respond(_services().complaints.partition_dashboard(actor, complaint_type))


@app.post("/api/complaints")
def submit_complaint(req: ComplaintDraft, actor: Account = Depends(current_account)):
    return _respond(_services().complaints.submit(actor, req), status_code=201)


@app.get("/api/complaints/{complaint_id}")
def get_complaint(complaint_id: UUID, actor: Account = Depends(current_account)):
    return _respond(_services().complaints.get(actor, complaint_id))


@app.patch("/api/complaints/{complaint_id}/status")
def update_complaint_status(
    complaint_id: UUID, req: StatusRequest, actor: Account = Depends(current_account)
):
    return _respond(_services().complaints.update_status(actor, complaint_id, req.status))


@app.patch("/api/complaints/{complaint_id}/type")
def change_complaint_type(
    complaint_id: UUID, req: TypeRequest, actor: Account = Depends(current_account)
):
    return _respond(_services().complaints.change_type(actor, complaint_id, req.complaint_type))


@app.post("/api/complaints/{complaint_id}/responses")
def add_response(complaint_id: UUID, req: ResponseRequest, actor: Account = Depends(current_account)):
    return _respond(_services().complaints.add_response(actor, complaint_id, req.message))


@app.patch("/api/complaints/{complaint_id}/assign")
def assign_complaint(complaint_id: UUID, req: AssignRequest, actor: Account = Depends(current_account)):
    return _respond(_services().complaints.assign(actor, complaint_id, req.assigned_to))


@app.put("/api/complaints/{complaint_id}/resolve")
def resolve_complaint(complaint_id: UUID, req: ResolveRequest, actor: Account = Depends(current_account)):
    return _respond(_services().complaints.resolve(actor, complaint_id, req.resolution_notes))


@app.post("/api/complaints/{complaint_id}/documents")
def add_document(
    complaint_id: UUID, req: ComplaintDocument, actor: Account = Depends(current_account)
):
    return _respond(_services().complaints.add_document(actor, complaint_id, req))


@app.delete("/api/complaints/{complaint_id}")
def delete_complaint(complaint_id: UUID, actor: Account = Depends(current_account)):
    return _respond(_services().complaints.delete(actor, complaint_id))


# ── Clubs ──────────────────────────────────────────────────────


@app.get("/api/clubs")
def list_clubs(without_admin: bool = False, actor: Account = Depends(current_account)):
    return _respond(_services().clubs.list_clubs(without_admin=without_admin))


@app.post("/api/clubs")
def create_club(req: ClubDraft, actor: Account = Depends(current_account)):
    return _respond(_services().clubs.create_club(actor, req), status_code=201)


@app.put("/api/clubs/{club_id}")
def update_club(club_id: UUID, req: ClubUpdate, actor: Account = Depends(current_account)):
    return _respond(_services().clubs.update_club(actor, club_id, req))


@app.post("/api/clubs/{club_id}/join")
def join_club(club_id: UUID, actor: Account = Depends(current_account)):
    return _respond(_services().clubs.join_club(actor, club_id))


@app.put("/api/clubs/{club_id}/admin")
def assign_club_admin(club_id: UUID, req: ClubAdminRequest, actor: Account = Depends(current_account)):
    return _respond(_services().clubs.assign_club_admin(actor, club_id, req.account_id))


@app.delete("/api/clubs/{club_id}/admin")
def unassign_club_admin(club_id: UUID, actor: Account = Depends(current_account)):
    return _respond(_services().clubs.unassign_club_admin(actor, club_id))


@app.get("/api/clubs/{club_id}/members")
def list_members(club_id: UUID, actor: Account = Depends(current_account)):
    return _respond(_services().clubs.list_members(actor, club_id))


@app.patch("/api/clubs/{club_id}/members/{member_id}/status")
def update_member_status(
    club_id: UUID, member_id: UUID, req: MemberStatusRequest,
    actor: Account = Depends(current_account),
):
    return _respond(_services().clubs.update_member_status(actor, club_id, member_id, req.status))


@app.patch("/api/clubs/{club_id}/members/{member_id}/role")
def update_member_role(
    club_id: UUID, member_id: UUID, req: MemberRoleRequest,
    actor: Account = Depends(current_account),
):
    return _respond(_services().clubs.update_member_role(actor, club_id, member_id, req.role))


@app.delete("/api/clubs/{club_id}/members/{member_id}")
def remove_member(club_id: UUID, member_id: UUID, actor: Account = Depends(current_account)):
    return _respond(_services().clubs.remove_member(actor, club_id, member_id))


# ── Health Check ───────────────────────────────────────────────


@app.get("/health")
async def health():
    """Health check endpoint."""
    return JSONResponse({
        "status": "healthy" if state.ready else "degraded",
        "uptime_seconds": (datetime.now(timezone.utc) - state.startup_time).total_seconds(),
        "store_available": state.ready,
    })
