"""
auth/sessions.py -- Session Manager: server-side record of each login.

A session answers "is this login still alive?" independently of token expiry,
so a login can be killed before its tokens run out.

Security design decisions:
  [S1] Only SHA-256(refresh_token) is stored. Access tokens are never
       persisted in any form; their validity rests on the JTI + blacklist.

  [S2] Rotation is update-if-unchanged on (refresh hash, version). Two
       concurrent refreshes with the same refresh token race on one row and
       exactly one wins; the loser gets UnauthorizedError.

  [S3] An inactive or refresh-expired session is a hard 401. It is never
       silently replaced by a new session.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable
from datetime import datetime

from auth.errors import UnauthorizedError
from auth.models import UserSession
from auth.schema import utcnow
from auth.store import SessionStore

logger = logging.getLogger("warden.auth.sessions")


def hash_refresh_token(raw_token: str) -> str:
    """SHA-256 hex of a raw refresh token. Deterministic so it can be looked up."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


class SessionManager:
    """Create, rotate, revoke and sweep UserSession rows.

    rotation_enabled mirrors TOKEN_ROTATION_ENABLED: when false, rotate()
    leaves the refresh hash alone and the same refresh token stays valid for
    its full lifetime.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        rotation_enabled: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self.rotation_enabled = rotation_enabled
        self._clock = clock

    def create(
        self,
        user_id: str,
        refresh_token_hash: str,
        jti: str,
        access_expires_at: datetime,
        refresh_expires_at: datetime,
        *,
        device_info: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> UserSession:
        session = self._store.create(
            UserSession(
                user_id=user_id,
                refresh_token_hash=refresh_token_hash,
                current_jti=jti,
                expires_at=access_expires_at,
                refresh_expires_at=refresh_expires_at,
                device_info=device_info,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        logger.info("Session created (session_id=%s, user_id=%s)", session.id, user_id)
        return session

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_by_refresh_token_hash(self, refresh_token_hash: str) -> UserSession:
        """Return the live session for a refresh hash [S3].

        Raises UnauthorizedError when the hash is unknown, the session was
        revoked, or its refresh window has closed.
        """
        session = self._store.get_by_refresh_token_hash(refresh_token_hash)
        if session is None:
            raise UnauthorizedError("Session not found.", error_code="session_not_found")
        self._ensure_alive(session)
        return session

    def get_by_id(self, session_id: str) -> UserSession | None:
        return self._store.get_by_id(session_id)

    def get_by_jti(self, jti: str) -> UserSession | None:
        return self._store.get_by_jti(jti)

    def list_active(self, user_id: str) -> list[UserSession]:
        return self._store.list_active(user_id, self._clock())

    def _ensure_alive(self, session: UserSession) -> None:
        if not session.is_active:
            raise UnauthorizedError("Session has been revoked.", error_code="session_revoked")
        if session.refresh_expires_at <= self._clock():
            raise UnauthorizedError("Session has expired.", error_code="session_expired")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def rotate(
        self,
        session: UserSession,
        new_jti: str,
        new_access_expires_at: datetime,
        new_refresh_token_hash: str | None = None,
        new_refresh_expires_at: datetime | None = None,
    ) -> UserSession:
        """Move the session to a new access JTI [S2].

        The refresh hash (and refresh expiry) change only when rotation is
        enabled and a new hash is supplied. With rotation on, the CAS pins the
        version read by the caller; with rotation off, concurrent refreshes are
        allowed to both succeed (last writer wins on current_jti).

        Raises UnauthorizedError if another writer rotated or revoked the
        session after `session` was read.
        """
        rotating = self.rotation_enabled and new_refresh_token_hash is not None
        updated = self._store.rotate(
            session.id,
            expected_hash=session.refresh_token_hash,
            expected_version=session.refresh_token_version if self.rotation_enabled else None,
            new_jti=new_jti,
            new_expires_at=new_access_expires_at,
            new_refresh_token_hash=new_refresh_token_hash if rotating else None,
            new_refresh_expires_at=new_refresh_expires_at if rotating else None,
        )
        if not updated:
            logger.warning("Session rotation lost a race (session_id=%s)", session.id)
            raise UnauthorizedError("Refresh token has already been used.", error_code="refresh_conflict")

        session.current_jti = new_jti
        session.expires_at = new_access_expires_at
        session.refresh_token_version += 1
        if rotating:
            session.refresh_token_hash = new_refresh_token_hash
            if new_refresh_expires_at is not None:
                session.refresh_expires_at = new_refresh_expires_at
        return session

    def mark_used(self, session: UserSession) -> None:
        """Stamp last_used_at. Best effort: a failure is logged, never raised."""
        try:
            self._store.touch(session.id)
        except Exception:
            logger.warning("Could not mark session used (session_id=%s)", session.id, exc_info=True)

    def revoke(self, session_id: str) -> bool:
        revoked = self._store.revoke(session_id)
        if revoked:
            logger.info("Session revoked (session_id=%s)", session_id)
        return revoked

    def revoke_by_jti(self, jti: str) -> int:
        return self._store.revoke_by_jti(jti)

    def revoke_all(self, user_id: str) -> int:
        count = self._store.revoke_all(user_id)
        logger.info("Revoked %d session(s) for user_id=%s", count, user_id)
        return count

    def cleanup_expired(self) -> int:
        """Delete sessions past both expiries. Background use only."""
        count = self._store.delete_expired(self._clock())
        if count:
            logger.info("Deleted %d expired session(s)", count)
        return count
