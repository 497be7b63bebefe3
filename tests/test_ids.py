"""
tests/test_ids.py -- Unit tests for auth/ids.py (ULIDs) and auth/tasks.py.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone

import pytest

from auth.ids import ULID_LENGTH, datetime_to_ms, is_valid_ulid, ms_to_datetime, new_ulid, ulid_timestamp_ms
from auth.tasks import BackgroundTaskQueue


class TestULID:
    def test_shape(self) -> None:
        value = new_ulid()
        assert len(value) == ULID_LENGTH
        assert is_valid_ulid(value)

    def test_strictly_increasing(self) -> None:
        values = [new_ulid() for _ in range(500)]
        assert values == sorted(values)
        assert len(set(values)) == len(values)

    def test_timestamp_round_trip(self) -> None:
        before = time.time_ns() // 1_000_000
        value = new_ulid()
        after = time.time_ns() // 1_000_000
        assert before <= ulid_timestamp_ms(value) <= after + 1

    def test_pinned_timestamp(self) -> None:
        pinned = 1_772_366_400_123
        first, second = new_ulid(pinned), new_ulid(pinned)
        assert ulid_timestamp_ms(first) == ulid_timestamp_ms(second) == pinned
        assert first != second

    def test_pinned_timestamp_leaves_the_process_sequence_alone(self) -> None:
        before = new_ulid()
        new_ulid(0)
        assert new_ulid() > before

    def test_millisecond_conversions(self) -> None:
        moment = datetime(2026, 3, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)
        assert datetime_to_ms(moment) == 1_772_366_400_123
        assert ms_to_datetime(1_772_366_400_123) == moment.replace(microsecond=123000)
        assert datetime_to_ms(datetime(1970, 1, 1, tzinfo=timezone.utc)) == 0

    @pytest.mark.parametrize(
        "value",
        ["", "short", "01ARZ3NDEKTSV4RRFFQ69G5FA", "01ARZ3NDEKTSV4RRFFQ69G5FAVV", "8ZZZZZZZZZZZZZZZZZZZZZZZZZ",
         "01ARZ3NDEKTSV4RRFFQ69G5FAU", "01arz3ndektsv4rrffq69g5fav", None],
    )
    def test_invalid(self, value) -> None:
        assert is_valid_ulid(value) is False

    def test_timestamp_of_invalid(self) -> None:
        with pytest.raises(ValueError):
            ulid_timestamp_ms("nope")

    def test_unique_across_threads(self) -> None:
        results: list[str] = []
        lock = threading.Lock()

        def mint() -> None:
            batch = [new_ulid() for _ in range(200)]
            with lock:
                results.extend(batch)

        threads = [threading.Thread(target=mint) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(set(results)) == 800


class TestBackgroundTaskQueue:
    def test_runs_submitted_work(self) -> None:
        queue = BackgroundTaskQueue(max_workers=1)
        seen: list[int] = []
        future = queue.submit("append", seen.append, 7)
        future.result(timeout=5)
        queue.shutdown()
        assert seen == [7]

    def test_failures_are_logged_not_raised(self, caplog) -> None:
        queue = BackgroundTaskQueue(max_workers=1)

        def boom() -> None:
            raise RuntimeError("write failed")

        with caplog.at_level("WARNING", logger="warden.auth.tasks"):
            queue.submit("boom", boom).result(timeout=5)
            queue.shutdown()
        assert "Background task boom failed" in caplog.text

    def test_submit_after_shutdown_is_dropped(self) -> None:
        queue = BackgroundTaskQueue(max_workers=1)
        queue.shutdown()
        assert queue.submit("late", print, "never") is None
