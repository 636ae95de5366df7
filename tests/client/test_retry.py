"""Tests for retry backoff and per-path locks."""

from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock

import pytest

from librarysync.client.api import NetworkError, ProtocolError
from librarysync.client.sync.locks import PathLocks
from librarysync.client.sync.retry import backoff_delay, retry_with_backoff


class TestBackoffDelay:
    """Tests for backoff_delay."""

    @pytest.mark.parametrize(
        ("attempt", "expected"), [(0, 0.0), (1, 1.0), (2, 2.0), (3, 4.0), (6, 30.0), (20, 30.0)]
    )
    def test_doubles_and_caps(self, attempt: int, expected: float) -> None:
        """Delays grow 1s, 2s, 4s... up to the cap."""
        assert backoff_delay(attempt) == expected

    def test_custom_bounds(self) -> None:
        assert backoff_delay(3, initial_backoff=0.5, max_backoff=1.0) == 1.0


class TestRetryWithBackoff:
    """Tests for retry_with_backoff."""

    def test_returns_first_success(self) -> None:
        func = MagicMock(return_value=42)

        assert retry_with_backoff(func) == 42
        assert func.call_count == 1

    def test_retries_retryable(self) -> None:
        """Retryable errors are retried until success."""
        func = MagicMock(side_effect=[NetworkError("a"), NetworkError("b"), "ok"])

        result = retry_with_backoff(
            func, initial_backoff=0.001, retryable_exceptions=(NetworkError,)
        )

        assert result == "ok"
        assert func.call_count == 3

    def test_non_retryable_raised_immediately(self) -> None:
        func = MagicMock(side_effect=ProtocolError("bad"))

        with pytest.raises(ProtocolError):
            retry_with_backoff(func, retryable_exceptions=(NetworkError,))
        assert func.call_count == 1

    def test_gives_up_after_max_retries(self) -> None:
        func = MagicMock(side_effect=NetworkError("down"))

        with pytest.raises(NetworkError):
            retry_with_backoff(func, max_retries=2, initial_backoff=0.001)
        assert func.call_count == 3

    def test_stop_event_interrupts_wait(self) -> None:
        """A set stop event raises the last error instead of waiting."""
        stop = threading.Event()
        stop.set()
        func = MagicMock(side_effect=NetworkError("down"))
        start = time.monotonic()

        with pytest.raises(NetworkError):
            retry_with_backoff(func, initial_backoff=10.0, stop_event=stop)

        assert time.monotonic() - start < 1.0
        assert func.call_count == 1


class TestPathLocks:
    """Tests for PathLocks."""

    def test_same_path_exclusive(self) -> None:
        """A second holder of the same path waits for the first."""
        locks = PathLocks()
        order: list[str] = []
        inside = threading.Event()

        def second() -> None:
            with locks.hold("a.md"):
                order.append("second")

        with locks.hold("a.md"):
            thread = threading.Thread(target=second)
            thread.start()
            inside.wait(0.1)
            order.append("first")
        thread.join(1.0)

        assert order == ["first", "second"]

    def test_different_paths_independent(self) -> None:
        """Different paths can be held at the same time."""
        locks = PathLocks()
        acquired = threading.Event()

        def other() -> None:
            with locks.hold("b.md"):
                acquired.set()

        with locks.hold("a.md"):
            thread = threading.Thread(target=other)
            thread.start()
            assert acquired.wait(1.0)
        thread.join(1.0)

    def test_locks_released(self) -> None:
        """Unused locks are discarded."""
        locks = PathLocks()

        with locks.hold("a.md"):
            assert locks.is_held("a.md") is True

        assert locks.is_held("a.md") is False
