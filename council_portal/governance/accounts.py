"""
Account Service — registration, roles, activation and authentication.

Roles are the single source of truth for permissions: every role or
password change re-derives the capability vector from the matrix.

Failed logins are counted per account. Each attempt's counter update is a
single version-guarded write, so concurrent failures cannot lose increments.
Reaching the attempt limit locks the account until ``lock_until``; an
elapsed lock is cleared on the next check.

Passwords are hashed with Argon2 and never logged.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from uuid import UUID

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from pydantic import BaseModel, Field, field_validator

from council_portal.clock import Clock, SystemClock
from council_portal.domain.schema import AcademicYear, Account, Club, Role
from council_portal.governance.access_control import AccessControl, Action, access_control
from council_portal.governance.outcomes import CoreError, Outcome
from council_portal.governance.repository import COMMIT_ATTEMPTS, Repository, store_guard
from council_portal.governance.tokens import TokenManager
from council_portal.store.base import ACCOUNTS, CLUBS, DocumentStore

logger = logging.getLogger(__name__)

_INVALID_CREDENTIALS = "Invalid credentials"
_LOCKED = "Account temporarily locked due to too many failed login attempts"


class Registration(BaseModel):
    """Self-service sign-up. Always creates a student account."""

    name: str = Field(min_length=1)
    username: str = Field(min_length=3, max_length=64)
    email: str | None = None
    password: str = Field(repr=False)
    department: str = ""
    year: AcademicYear | None = None

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        return value.strip().lower()


class AccountDraft(Registration):
    """Administrative account creation with an explicit role."""

    role: Role = Role.STUDENT


class AccountService:
    """Store-backed account operations."""

    def __init__(
        self,
        store: DocumentStore,
        clock: Clock | None = None,
        access: AccessControl | None = None,
        hasher: PasswordHasher | None = None,
        max_login_attempts: int = 5,
        lock_duration: timedelta = timedelta(minutes=30),
        min_password_length: int = 8,
        commit_retries: int = COMMIT_ATTEMPTS,
        tokens: TokenManager | None = None,
    ) -> None:
        self.repo = Repository(store)
        self.clock = clock or SystemClock()
        self.access = access or access_control
        self.hasher = hasher or PasswordHasher()
        self.max_login_attempts = max_login_attempts
        self.lock_duration = lock_duration
        self.min_password_length = min_password_length
        self.commit_retries = commit_retries
        # An unkeyed service signs with a per-process key
        self.tokens = tokens or TokenManager(secrets.token_urlsafe(32), clock=self.clock)

    # ── Password primitives ─────────────────────────────────────

    def hash_password(self, password: str) -> str:
        return self.hasher.hash(password)

    def verify_password(self, password_hash: str, password: str) -> bool:
        if not password_hash:
            return False
        try:
            return self.hasher.verify(password_hash, password)
        except (VerificationError, InvalidHashError):
            return False

    def _check_password_policy(self, password: str) -> CoreError | None:
        if len(password or "") < self.min_password_length:
            return CoreError.invalid(
                f"Password must be at least {self.min_password_length} characters long"
            )
        return None

    # ── Creation ────────────────────────────────────────────────

    @store_guard
    def register(self, registration: Registration) -> Outcome[Account]:
        return self._create(registration, Role.STUDENT)

    @store_guard
    def create_account(self, actor: Account, draft: AccountDraft) -> Outcome[Account]:
        decision = self.access.authorize(actor, Action.CHANGE_ROLE)
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())
        return self._create(draft, draft.role)

    def _create(self, registration: Registration, role: Role) -> Outcome[Account]:
        invalid = self._check_password_policy(registration.password)
        if invalid:
            return Outcome.failure(invalid)

        if self.repo.count(ACCOUNTS, username=registration.username) or (
            registration.email and self.repo.count(ACCOUNTS, email=registration.email)
        ):
            return Outcome.failure(
                CoreError.conflict("account_exists", "Username or email already exists")
            )

        account = Account(
            name=registration.name,
            username=registration.username,
            email=registration.email,
            password_hash=self.hash_password(registration.password),
            department=registration.department,
            year=registration.year,
            role=role,
            created_at=self.clock.now(),
        )
        outcome = self.repo.transact(
            lambda: ([self.repo.write(ACCOUNTS, account, insert=True)], account),
            self.commit_retries,
        )
        if outcome.ok:
            logger.info("Account created: id=%s role=%s", str(account.id)[:8], role.value)
        return outcome

    # ── Queries ─────────────────────────────────────────────────

    @store_guard
    def get_account(self, account_id: UUID) -> Outcome[Account]:
        account = self.repo.get(Account, ACCOUNTS, account_id)
        return Outcome.success(account) if account is not None else _not_found()

    @store_guard
    def list_accounts(self, role: Role | None = None) -> Outcome[list[Account]]:
        filters = {"role": role} if role is not None else {}
        return Outcome.success(self.repo.all(Account, ACCOUNTS, **filters))

    # ── Administration ──────────────────────────────────────────

    @store_guard
    def change_role(self, actor: Account, account_id: UUID, role: Role) -> Outcome[Account]:
        """
        Change an account's role and re-derive its permissions.

        Moving a club admin to another role releases their club in the same
        commit.
        """
        decision = self.access.authorize(actor, Action.CHANGE_ROLE)
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())
        if account_id == actor.id:
            return Outcome.failure(
                CoreError.conflict("own_role", "You cannot change your own role")
            )

        def attempt():
            account = self.repo.get(Account, ACCOUNTS, account_id)
            if account is None:
                return _not_found()
            previous = account.role
            writes = []
            if previous == Role.CLUB_ADMIN and role != Role.CLUB_ADMIN and account.assigned_club:
                club = self.repo.get(Club, CLUBS, account.assigned_club)
                if club is not None and club.club_admin == account.id:
                    club.club_admin = None
                    writes.append(self.repo.write(CLUBS, club))
                account.assigned_club = None
            account.assign_role(role)
            writes.append(self.repo.write(ACCOUNTS, account))
            return writes, account

        outcome = self.repo.transact(attempt, self.commit_retries)
        if outcome.ok:
            logger.info(
                "Role changed: account=%s role=%s by=%s",
                str(account_id)[:8], role.value, str(actor.id)[:8],
            )
        return outcome

    @store_guard
    def set_active(self, actor: Account, account_id: UUID, active: bool) -> Outcome[Account]:
        decision = self.access.authorize(actor, Action.SET_ACCOUNT_ACTIVE)
        if not decision.is_allowed:
            return Outcome.failure(decision.to_error())
        if account_id == actor.id and not active:
            return Outcome.failure(
                CoreError.conflict("own_account", "You cannot deactivate your own account")
            )

        def attempt():
            account = self.repo.get(Account, ACCOUNTS, account_id)
            if account is None:
                return _not_found()
            account.is_active = active
            return [self.repo.write(ACCOUNTS, account)], account

        return self.repo.transact(attempt, self.commit_retries)

    def deactivate(self, actor: Account, account_id: UUID) -> Outcome[Account]:
        return self.set_active(actor, account_id, False)

    def activate(self, actor: Account, account_id: UUID) -> Outcome[Account]:
        return self.set_active(actor, account_id, True)

    @store_guard
    def change_password(
        self, actor: Account, current_password: str, new_password: str
    ) -> Outcome[Account]:
        invalid = self._check_password_policy(new_password)
        if invalid:
            return Outcome.failure(invalid)

        def attempt():
            account = self.repo.get(Account, ACCOUNTS, actor.id)
            if account is None:
                return _not_found()
            if not self.verify_password(account.password_hash, current_password):
                return Outcome.failure(
                    CoreError.denied("invalid_credentials", "Current password is incorrect")
                )
            account.password_hash = self.hash_password(new_password)
            account.assign_role(account.role)
            return [self.repo.write(ACCOUNTS, account)], account

        outcome = self.repo.transact(attempt, self.commit_retries)
        if outcome.ok:
            logger.info("Password changed: account=%s", str(actor.id)[:8])
        return outcome

    # ── Authentication ──────────────────────────────────────────

    @store_guard
    def authenticate(self, username: str, password: str) -> Outcome[Account]:
        """
        Check credentials and update the account's login state.

        A wrong password and an unknown username produce the same denial.
        """
        username = (username or "").strip().lower()

        def attempt():
            matches = self.repo.all(Account, ACCOUNTS, username=username)
            if not matches:
                return Outcome.failure(CoreError.denied("invalid_credentials", _INVALID_CREDENTIALS))
            account = matches[0]
            if not account.is_active:
                return Outcome.failure(
                    CoreError.denied("account_inactive", "Account has been deactivated")
                )

            now = self.clock.now()
            if account.is_locked:
                if account.lock_until is not None and account.lock_until > now:
                    return Outcome.failure(CoreError.conflict("account_locked", _LOCKED))
                account.is_locked = False
                account.lock_until = None
                account.login_attempts = 0

            verified = self.verify_password(account.password_hash, password)
            if verified:
                account.login_attempts = 0
                account.last_login = now
                if self.hasher.check_needs_rehash(account.password_hash):
                    account.password_hash = self.hash_password(password)
            else:
                account.login_attempts += 1
                if account.login_attempts >= self.max_login_attempts:
                    account.is_locked = True
                    account.lock_until = now + self.lock_duration
            return [self.repo.write(ACCOUNTS, account)], (account, verified)

        outcome = self.repo.transact(attempt, self.commit_retries)
        if not outcome.ok:
            return outcome

        account, verified = outcome.value
        if not verified:
            if account.is_locked:
                logger.warning("Account locked after failed logins: id=%s", str(account.id)[:8])
            return Outcome.failure(CoreError.denied("invalid_credentials", _INVALID_CREDENTIALS))
        return Outcome.success(account)

    @store_guard
    def login(self, username: str, password: str) -> Outcome[dict]:
        """Authenticate and issue a bearer token for the account."""
        outcome = self.authenticate(username, password)
        if not outcome.ok:
            return outcome
        account = outcome.value
        token, expires_at = self.tokens.issue(account)
        logger.info("Access token issued: account=%s", str(account.id)[:8])
        return Outcome.success({
            "token": token,
            "token_type": "bearer",
            "expires_at": expires_at,
            "account": account,
        })

    @store_guard
    def resolve_token(self, token: str) -> Outcome[Account]:
        """Load the active account a bearer token was issued to."""
        account_id = self.tokens.verify(token)
        if account_id is None:
            return Outcome.failure(CoreError.denied("invalid_token", "Not authorized, token failed"))
        account = self.repo.get(Account, ACCOUNTS, account_id)
        if account is None:
            return Outcome.failure(
                CoreError.denied("invalid_token", "Not authorized, account not found")
            )
        if not account.is_active:
            return Outcome.failure(
                CoreError.denied("account_inactive", "Account has been deactivated")
            )
        return Outcome.success(account)


def _not_found() -> Outcome:
    return Outcome.failure(CoreError.not_found("account_not_found", "Account not found"))
