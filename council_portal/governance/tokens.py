"""
Access tokens for the web API.

Tokens are HS256-signed JWTs carrying the account id as ``sub`` and a
``type`` of ``access``. Expiry is judged against the injected clock so that
lock windows and token lifetimes move together in tests.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import UUID

import jwt

from council_portal.clock import Clock, SystemClock
from council_portal.domain.schema import Account

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"


class TokenManager:
    """Issue and verify signed access tokens."""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        ttl: timedelta = timedelta(hours=1),
        clock: Clock | None = None,
    ) -> None:
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.ttl = ttl
        self.clock = clock or SystemClock()

    def issue(self, account: Account) -> tuple[str, datetime]:
        """Return ``(token, expires_at)`` for ``account``."""
        now = self.clock.now()
        expires_at = now + self.ttl
        payload = {
            "sub": str(account.id),
            "role": account.role.value,
            "type": ACCESS_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm), expires_at

    def verify(self, token: str) -> UUID | None:
        """Return the account id carried by a valid, unexpired token."""
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"require": ["sub", "exp", "iat"], "verify_exp": False, "verify_iat": False},
            )
        except jwt.InvalidTokenError as exc:
            logger.info("Rejected access token: %s", type(exc).__name__)
            return None

        if payload.get("type") != ACCESS_TOKEN_TYPE:
            return None
        if payload["exp"] <= self.clock.now().timestamp():
            logger.info("Rejected expired access token")
            return None
        try:
            return UUID(payload["sub"])
        except (TypeError, ValueError):
            return None
