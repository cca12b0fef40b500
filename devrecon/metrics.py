"""Per-phase latency and request-charge accounting for a run."""
from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator

PHASES = ("fetchProtection", "fetchMdm", "matching", "clear", "upsert")
COSTED_PHASES = ("fetchProtection", "fetchMdm", "clear", "upsert")


class PhaseTimer:
    __slots__ = ("name", "cost")

    def __init__(self, name: str) -> None:
        self.name = name
        self.cost = 0.0

    def add_cost(self, value: float) -> None:
        self.cost += value


class MetricsRecorder:
    """Thread-safe accumulator; the two fetch threads record concurrently."""

    def __init__(self, phases: Iterable[str] = PHASES, costed: Iterable[str] = COSTED_PHASES) -> None:
        self._lock = threading.Lock()
        self._elapsed: Dict[str, float] = {name: 0.0 for name in phases}
        self._costs: Dict[str, float] = {name: 0.0 for name in costed}
        self._started = time.perf_counter()

    @contextmanager
    def phase(self, name: str) -> Iterator[PhaseTimer]:
        timer = PhaseTimer(name)
        started = time.perf_counter()
        try:
            yield timer
        finally:
            self.record(name, (time.perf_counter() - started) * 1000.0, timer.cost)

    def record(self, name: str, elapsed_ms: float, cost: float = 0.0) -> None:
        with self._lock:
            self._elapsed[name] = self._elapsed.get(name, 0.0) + elapsed_ms
            if cost or name in self._costs:
                self._costs[name] = self._costs.get(name, 0.0) + cost

    @property
    def elapsed_ms(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._elapsed)

    @property
    def costs(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._costs)

    @property
    def total_cost(self) -> float:
        with self._lock:
            return sum(self._costs.values())

    def total_elapsed_ms(self) -> float:
        return (time.perf_counter() - self._started) * 1000.0

    @staticmethod
    def percentages(matched: int, only_protection: int, only_mdm: int) -> Dict[str, float]:
        total = matched + only_protection + only_mdm
        if total == 0:
            return {"matched": 0.0, "onlyProtection": 0.0, "onlyMdm": 0.0}
        return {
            "matched": round(matched * 100.0 / total, 2),
            "onlyProtection": round(only_protection * 100.0 / total, 2),
            "onlyMdm": round(only_mdm * 100.0 / total, 2),
        }
