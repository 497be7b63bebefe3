"""
auth/passwords.py -- bcrypt hashing for login passwords and key-pair secrets.

bcrypt is used directly (no passlib wrapper). Its cost factor makes brute force
expensive for low-entropy secrets; the same hasher protects key-pair secrets so
a leaked key_pairs table is as hard to exploit as a leaked users table.

The _DUMMY_HASH constant enables timing equalization: verify against it
whenever there is no real hash to check, so response time does not reveal
whether an account exists [C1].

Layer rule: no imports from api/.
"""

from __future__ import annotations

from functools import lru_cache

import bcrypt

DEFAULT_COST = 12

# bcrypt refuses (or silently truncates, depending on version) input past 72 bytes.
MAX_PASSWORD_BYTES = 72


def hash_password(plain: str, cost: int = DEFAULT_COST) -> str:
    """Return a salted bcrypt hash of plain at the given cost factor."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Constant-time check of plain against a bcrypt hash.

    Malformed hashes count as a mismatch rather than an error.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


@lru_cache(maxsize=None)
def _dummy_hash(cost: int) -> str:
    return hash_password("warden_timing_dummy", cost=cost)


# Timing equalization dummy hash [C1], computed at module load so the first
# failed login at the default cost is not measurably slower than later ones.
_DUMMY_HASH: str = _dummy_hash(DEFAULT_COST)


def burn_verification(plain: str, cost: int = DEFAULT_COST) -> None:
    """Spend one bcrypt verification at `cost` without a real hash to compare against."""
    verify_password(plain, _dummy_hash(cost))
