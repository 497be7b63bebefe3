"""
auth/tasks.py -- Fire-and-forget background work off the request path.

Used for "mark credential last used": a slow or failing write there must never
add latency to, or fail, the authorization decision that triggered it.

Contract:
  - submit() never blocks on the task and never raises because of it.
  - Task failures are logged at WARNING and dropped.
  - No ordering guarantee relative to the request or to other tasks.
  - After shutdown(), submit() drops work silently (logged at DEBUG).

Layer rule: stdlib only.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor

logger = logging.getLogger("warden.auth.tasks")


class BackgroundTaskQueue:
    def __init__(self, max_workers: int = 2, name: str = "warden-bg") -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._closed = False

    def submit(self, label: str, fn: Callable[..., object], *args, **kwargs) -> Future | None:
        """Queue fn(*args, **kwargs). Returns the Future, or None if dropped."""
        if self._closed:
            logger.debug("Background queue closed; dropping %s", label)
            return None
        try:
            return self._executor.submit(self._run, label, fn, *args, **kwargs)
        except RuntimeError:
            # Executor shut down between the check and the submit.
            logger.debug("Background queue closed; dropping %s", label)
            return None

    @staticmethod
    def _run(label: str, fn: Callable[..., object], *args, **kwargs) -> None:
        try:
            fn(*args, **kwargs)
        except Exception:
            logger.warning("Background task %s failed", label, exc_info=True)

    def shutdown(self, wait: bool = True) -> None:
        self._closed = True
        self._executor.shutdown(wait=wait)
