"""
auth/ephemeral.py -- SQLite-backed key/value store with per-entry TTL.

Holds the short-lived handshake state of the OAuth flow:
  oauth_state:<state>    CSRF state between redirect and callback (5 min)
  login_token:<token>    one-time post-OAuth token handoff (5 min, read once)
  oauth_signup:<token>   pending signup for an unknown OAuth email (15 min)

Entries are JSON dicts. An expired entry reads as missing even before
purge_expired() removes it.

Usage:
    store = EphemeralStore(":memory:")
    store.set("oauth_state:abc", {"provider": "github"}, ttl=300)
    store.pop("oauth_state:abc")   # returns the dict once, then None
    store.purge_expired()          # call periodically to trim old entries
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from collections.abc import Callable
from pathlib import Path

_DDL = """
CREATE TABLE IF NOT EXISTS ephemeral_entries (
    key         TEXT PRIMARY KEY,
    data        TEXT NOT NULL,
    expires_at  REAL NOT NULL
);
"""


class EphemeralStore:
    def __init__(self, db_path: Path | str = ":memory:", clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        # pop() is read-then-delete; the lock makes it one step for every thread.
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def set(self, key: str, data: dict, ttl: int) -> None:
        """Store data under key for ttl seconds, replacing any existing entry."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO ephemeral_entries (key, data, expires_at) VALUES (?, ?, ?)",
                (key, json.dumps(data), self._clock() + ttl),
            )
            self._conn.commit()

    def get(self, key: str) -> dict | None:
        """Return the entry for key if it exists and hasn't expired."""
        with self._lock:
            return self._get_locked(key)

    def pop(self, key: str) -> dict | None:
        """Return the entry and delete it. A second pop() of the same key gets None."""
        with self._lock:
            data = self._get_locked(key)
            if data is not None:
                self._delete_locked(key)
            return data

    def delete(self, key: str) -> None:
        with self._lock:
            self._delete_locked(key)

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM ephemeral_entries WHERE expires_at <= ?", (self._clock(),))
            self._conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()

    def _get_locked(self, key: str) -> dict | None:
        row = self._conn.execute("SELECT data, expires_at FROM ephemeral_entries WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        data, expires_at = row
        if self._clock() >= expires_at:
            self._delete_locked(key)
            return None
        return json.loads(data)

    def _delete_locked(self, key: str) -> None:
        self._conn.execute("DELETE FROM ephemeral_entries WHERE key = ?", (key,))
        self._conn.commit()
