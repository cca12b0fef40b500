"""Cancellation, deadlines and backoff delays shared by all phases of a run."""
from __future__ import annotations

import threading
import time

from .errors import RunCancelled


class RunContext:
    """Caller-supplied deadline plus an explicit cancellation signal.

    Children share the parent's deadline and observe its cancellation, but
    cancelling a child does not cancel the parent. The engine uses a child to
    stop the sibling source fetch when one of them fails.
    """

    def __init__(
        self,
        *,
        timeout: float | None = None,
        deadline: float | None = None,
        parent: "RunContext | None" = None,
    ) -> None:
        if timeout is not None:
            deadline = time.monotonic() + timeout
        self._deadline = deadline
        self._event = threading.Event()
        self._parent = parent
        self.reason: str | None = None

    def child(self) -> "RunContext":
        return RunContext(deadline=self._deadline, parent=self)

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def deadline(self) -> float | None:
        return self._deadline

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.reason = self.reason or "deadline exceeded"
            return True
        if self._parent is not None and self._parent.cancelled:
            self.reason = self.reason or self._parent.reason
            return True
        return False

    def check(self, step: str) -> None:
        """Raise :class:`RunCancelled` if the run must not start ``step``."""

        if self.cancelled:
            raise RunCancelled(f"{self.reason or 'cancelled'} before {step}")

    def sleep(self, seconds: float) -> bool:
        """Wait up to ``seconds``; return ``False`` if cancelled meanwhile."""

        if seconds <= 0:
            return not self.cancelled
        end = time.monotonic() + seconds
        if self._deadline is not None:
            end = min(end, self._deadline)
        # Poll in slices so a parent cancellation is noticed as well.
        while True:
            left = end - time.monotonic()
            if left <= 0:
                return not self.cancelled
            if self._event.wait(min(left, 0.25)) or self.cancelled:
                return False


def backoff_delay(attempt: int, base_ms: float, hint_ms: float | None = None) -> float:
    """Delay in seconds before retry ``attempt`` (0-based).

    The store's retry hint wins when present, otherwise the base delay doubles
    per attempt.
    """

    if hint_ms is not None and hint_ms >= 0:
        return hint_ms / 1000.0
    return (base_ms * (2 ** attempt)) / 1000.0
