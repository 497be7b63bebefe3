"""
tests/test_deadline.py -- Unit tests for auth/deadline.py and its store hook.
"""

from __future__ import annotations

import pytest

from auth.deadline import check_deadline, deadline, expired, remaining
from auth.errors import DeadlineExceededError


class TestDeadline:
    def test_unbounded_by_default(self) -> None:
        assert remaining() is None
        assert expired() is False
        check_deadline()

    def test_none_leaves_no_deadline(self) -> None:
        with deadline(None):
            assert remaining() is None

    def test_generous_deadline(self) -> None:
        with deadline(30):
            left = remaining()
            assert left is not None and 0 < left <= 30
            check_deadline()
        assert remaining() is None

    def test_past_deadline_raises(self) -> None:
        with deadline(0):
            assert expired()
            with pytest.raises(DeadlineExceededError):
                check_deadline()

    def test_nested_deadline_only_tightens(self) -> None:
        with deadline(5):
            with deadline(60):
                assert remaining() <= 5
            with deadline(1):
                assert remaining() <= 1
            assert 1 < remaining() <= 5

    def test_store_call_respects_deadline(self, env) -> None:
        with deadline(0):
            with pytest.raises(DeadlineExceededError):
                env.registry.is_blacklisted("01ARZ3NDEKTSV4RRFFQ69G5FAV")
        assert env.registry.is_blacklisted("01ARZ3NDEKTSV4RRFFQ69G5FAV") is False

    def test_error_shape(self) -> None:
        with deadline(0), pytest.raises(DeadlineExceededError) as exc_info:
            check_deadline()
        assert exc_info.value.status_code == 504
        assert exc_info.value.error_code == "deadline_exceeded"
