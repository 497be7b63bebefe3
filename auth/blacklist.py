"""
auth/blacklist.py -- Revocation Registry: JTI denylist + per-user cutoffs.

Two independent revocation axes; a token is rejected if EITHER applies:

  Individual  one row per revoked JTI (logout, refresh rotation, targeted
              revoke). expires_at equals the token's own expiry, so the row
              can be pruned once the token would be dead anyway.

  User-wide   one row per "revoke everything issued up to T" request
              (log out everywhere, password change, compliance revoke).
              O(1) regardless of how many sessions the user has. T is kept
              in milliseconds and compared with the issue instant encoded in
              the token JTI; a token minted in the cutoff millisecond is
              revoked too.

Expired rows count as absent even before the sweep removes them.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.ids import datetime_to_ms, ms_to_datetime, new_ulid
from auth.models import BLACKLIST_INDIVIDUAL, BLACKLIST_USER_WIDE, BlacklistedToken
from auth.schema import utcnow
from auth.store import BlacklistStore

logger = logging.getLogger("warden.auth.blacklist")

REASON_LOGOUT = "user_logout"
REASON_ROTATION = "token_rotation"
REASON_PASSWORD_CHANGE = "password_change"
REASON_SESSION_REVOKED = "session_revoked"
REASON_ADMIN = "admin_revoke"

# A user-wide cutoff only has to outlive every token issued before it.
# Access tokens live minutes; a day is comfortably longer.
USER_CUTOFF_RETENTION = timedelta(hours=24)


class RevocationRegistry:
    def __init__(self, store: BlacklistStore, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    # ------------------------------------------------------------------
    # Individual JTIs
    # ------------------------------------------------------------------

    def blacklist(self, jti: str, user_id: str, expires_at: datetime, reason: str) -> bool:
        """Deny one JTI until expires_at. Idempotent.

        Returns True when a new entry was written, False when the JTI was
        already blacklisted (not an error).
        """
        added = self._store.add(
            BlacklistedToken(
                jti=jti,
                user_id=user_id,
                expires_at=expires_at,
                reason=reason,
                token_type=BLACKLIST_INDIVIDUAL,
                revoked_at=self._clock(),
            )
        )
        if added:
            logger.info("Token blacklisted (jti=%s, user_id=%s, reason=%s)", jti, user_id, reason)
        return added

    def revoke_user_token_by_jti(
        self, jti: str, user_id: str, expires_at: datetime, reason: str = REASON_ADMIN
    ) -> bool:
        return self.blacklist(jti, user_id, expires_at, reason)

    def is_blacklisted(self, jti: str) -> bool:
        return self._store.is_blacklisted(jti, self._clock())

    def get_entry(self, jti: str) -> BlacklistedToken | None:
        return self._store.get(jti)

    # ------------------------------------------------------------------
    # User-wide cutoffs
    # ------------------------------------------------------------------

    def blacklist_all_user_tokens(self, user_id: str, reason: str) -> int:
        """Record "every token of user_id issued up to now is revoked".

        Returns the cutoff as Unix milliseconds.
        """
        now = self._clock()
        cutoff = datetime_to_ms(now)
        self._store.add(
            BlacklistedToken(
                jti=new_ulid(),
                user_id=user_id,
                expires_at=now + USER_CUTOFF_RETENTION,
                reason=reason,
                token_type=BLACKLIST_USER_WIDE,
                blacklist_timestamp=cutoff,
                revoked_at=now,
            )
        )
        logger.info("User-wide revocation recorded (user_id=%s, cutoff_ms=%d, reason=%s)", user_id, cutoff, reason)
        return cutoff

    def get_user_cutoff(self, user_id: str) -> datetime | None:
        cutoff = self._store.latest_user_cutoff(user_id, self._clock())
        if cutoff is None:
            return None
        return ms_to_datetime(cutoff)

    def is_user_revoked_after(self, user_id: str, token_issued_at_ms: int) -> bool:
        """True if a live cutoff for user_id is at or after token_issued_at_ms (Unix milliseconds)."""
        cutoff = self._store.latest_user_cutoff(user_id, self._clock())
        return cutoff is not None and token_issued_at_ms <= cutoff

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def cleanup_expired(self) -> int:
        count = self._store.delete_expired(self._clock())
        if count:
            logger.info("Pruned %d expired blacklist entr%s", count, "y" if count == 1 else "ies")
        return count

    def cleanup_older_than(self, cutoff: datetime) -> int:
        return self._store.delete_older_than(cutoff)
