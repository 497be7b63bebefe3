"""
auth/deadline.py -- Caller-supplied deadlines for credential-store lookups.

A deadline is an absolute time.monotonic() value held in a ContextVar, so it
follows the request through sync code and across awaits without threading a
parameter through every repository method.

    with deadline(0.5):
        service.validate_token(token)   # store calls abort after 0.5s

Store code calls check_deadline() before each round-trip (see
auth/schema.connect). SQLite connections also get a progress handler that
interrupts a statement already running when the deadline passes.

Layer rule: stdlib + auth.errors only.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from auth.errors import DeadlineExceededError

_deadline: ContextVar[float | None] = ContextVar("warden_deadline", default=None)


@contextmanager
def deadline(timeout: float | None) -> Iterator[None]:
    """Bound every store lookup inside the block to `timeout` seconds.

    timeout=None leaves any enclosing deadline in place. A nested deadline can
    only tighten the enclosing one, never extend it.
    """
    if timeout is None:
        yield
        return
    target = time.monotonic() + timeout
    current = _deadline.get()
    if current is not None:
        target = min(target, current)
    token = _deadline.set(target)
    try:
        yield
    finally:
        _deadline.reset(token)


def remaining() -> float | None:
    """Seconds left before the active deadline, or None when unbounded."""
    current = _deadline.get()
    if current is None:
        return None
    return current - time.monotonic()


def expired() -> bool:
    left = remaining()
    return left is not None and left <= 0


def check_deadline() -> None:
    """Raise DeadlineExceededError if the active deadline has passed."""
    if expired():
        raise DeadlineExceededError("Deadline exceeded before the store lookup completed.")
