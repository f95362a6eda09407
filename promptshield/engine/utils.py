# promptshield/engine/utils.py
"""
Timing and logging helpers for the scan pipeline.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Sequence

logger = logging.getLogger("promptshield.scan")


class Timer:
    """Stage latencies for one scan, in milliseconds."""

    def __init__(self):
        self._stages: Dict[str, float] = {}
        self._start = time.perf_counter()

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            self._stages[name] = round((time.perf_counter() - started) * 1000, 3)

    def total(self) -> float:
        """Elapsed ms since the timer was created."""
        return (time.perf_counter() - self._start) * 1000

    def results(self) -> Dict[str, float]:
        return {**self._stages, "total": round(self.total(), 3)}


def log_scan(
    session_id: str,
    decision: str,
    confidence: float,
    match_ids: Sequence[str],
    cache_hit: bool,
    degraded: Sequence[str],
    timings: Dict[str, float],
) -> None:
    """One summary line per scan; stage timings at DEBUG."""
    logger.info(
        f"session={session_id} decision={decision} confidence={confidence:.2f} "
        f"matches={list(match_ids)} cache_hit={cache_hit} degraded={list(degraded)}"
    )
    logger.debug(f"session={session_id} timings={timings}")
