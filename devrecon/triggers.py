"""Manual and scheduled entry points around the reconciliation engine.

The manual trigger receives the results of the caller's authentication and
rate-limiting middleware and maps the run outcome to an HTTP-style response.
The scheduled trigger is fire-and-forget: it never raises, so a failing run
cannot stop the schedule.
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .context import RunContext
from .errors import ReconciliationInProgressError, ReconError
from .models import ReconciliationResult, RunStatus, format_timestamp, utcnow

LOGGER = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 60
# A scheduled run starting later than this is reported as past due.
PAST_DUE_GRACE_SECONDS = 60.0


@dataclass(slots=True)
class AuthResult:
    authenticated: bool
    user_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(slots=True)
class RateLimitResult:
    allowed: bool
    remaining: int = 0
    retry_after: Optional[int] = None


@dataclass(slots=True)
class TriggerResponse:
    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)


def _envelope(success: bool, message: str, data: Any, invocation_id: str) -> Dict[str, Any]:
    return {
        "success": success,
        "message": message,
        "data": data,
        "timestamp": format_timestamp(utcnow()),
        "invocationId": invocation_id,
    }


def handle_manual_trigger(
    engine,
    auth: AuthResult,
    rate_limit: RateLimitResult,
    *,
    invocation_id: str | None = None,
    timeout: float | None = None,
) -> TriggerResponse:
    invocation_id = invocation_id or str(uuid.uuid4())

    if not auth.authenticated:
        LOGGER.warning("Rejected manual reconciliation (invocation %s): %s", invocation_id, auth.error)
        return TriggerResponse(
            401,
            _envelope(False, auth.error or "Authentication required", None, invocation_id),
            {"WWW-Authenticate": 'Bearer realm="devrecon"'},
        )

    if not rate_limit.allowed:
        retry_after = rate_limit.retry_after or DEFAULT_RETRY_AFTER_SECONDS
        LOGGER.warning("Rate limited manual reconciliation for %s (retry in %ds)", auth.user_id, retry_after)
        return TriggerResponse(
            429,
            _envelope(False, "Too many requests", {"retryAfter": retry_after}, invocation_id),
            {"Retry-After": str(retry_after), "X-RateLimit-Remaining": str(rate_limit.remaining)},
        )

    LOGGER.info("Manual reconciliation requested by %s (invocation %s)", auth.user_id, invocation_id)
    headers = {"X-RateLimit-Remaining": str(rate_limit.remaining)}
    try:
        result = engine.run(RunContext(timeout=timeout), trigger="manual")
    except ReconciliationInProgressError as exc:
        return TriggerResponse(409, _envelope(False, str(exc), None, invocation_id), headers)
    except ReconError as exc:
        LOGGER.error("Manual reconciliation %s crashed: %s", invocation_id, exc)
        return TriggerResponse(500, _envelope(False, f"Reconciliation failed: {exc}", None, invocation_id), headers)
    except Exception:
        LOGGER.exception("Manual reconciliation %s crashed", invocation_id)
        return TriggerResponse(500, _envelope(False, "Reconciliation failed: internal error", None, invocation_id), headers)

    data = result.as_json()
    if result.status is RunStatus.FAILED:
        if any(error.kind == "source_fetch" for error in result.errors):
            message = "Reconciliation failed: a device inventory could not be fetched"
            status_code = 502
        else:
            message = "Reconciliation cancelled before the store was updated"
            status_code = 504
        return TriggerResponse(status_code, _envelope(False, message, data, invocation_id), headers)

    if result.status is RunStatus.PARTIAL:
        message = f"Device reconciliation completed with {len(result.errors)} error(s)"
    else:
        message = "Device reconciliation completed successfully"
    return TriggerResponse(200, _envelope(True, message, data, invocation_id), headers)


def handle_scheduled_trigger(engine, *, is_past_due: bool = False) -> ReconciliationResult | None:
    if is_past_due:
        LOGGER.warning("Scheduled reconciliation is running late")
    try:
        result = engine.run(RunContext(), trigger="scheduled")
    except ReconciliationInProgressError as exc:
        LOGGER.warning("Skipping scheduled reconciliation: %s", exc)
        return None
    except Exception:
        # Run failures are already recorded in the metadata singleton.
        LOGGER.exception("Scheduled reconciliation failed")
        return None
    if result.status is not RunStatus.SUCCESS:
        LOGGER.warning(
            "Scheduled reconciliation %s ended %s with %d error(s)",
            result.run_id,
            result.status.value,
            len(result.errors),
        )
    return result


class IntervalScheduler:
    """Runs the scheduled trigger on a daemon thread at a fixed interval."""

    def __init__(self, engine, interval: float, *, run_immediately: bool = True) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.engine = engine
        self.interval = interval
        self.run_immediately = run_immediately
        self.runs = 0
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="devrecon-scheduler", daemon=True)
        self._thread.start()
        LOGGER.info("Scheduler started, every %.0fs", self.interval)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        LOGGER.info("Scheduler stopped after %d run(s)", self.runs)

    def run_forever(self) -> None:
        self.start()
        try:
            while self.running:
                self._thread.join(1.0)
        except KeyboardInterrupt:
            LOGGER.info("Interrupted, stopping scheduler")
        finally:
            self.stop()

    def _loop(self) -> None:
        next_due = time.monotonic() + (0.0 if self.run_immediately else self.interval)
        while not self._stop.is_set():
            wait = next_due - time.monotonic()
            if wait > 0 and self._stop.wait(wait):
                return
            late = time.monotonic() - next_due
            handle_scheduled_trigger(self.engine, is_past_due=late > PAST_DUE_GRACE_SECONDS)
            self.runs += 1
            next_due += self.interval
            now = time.monotonic()
            if next_due < now:
                # Missed slots are skipped rather than run back to back.
                next_due = now + self.interval
