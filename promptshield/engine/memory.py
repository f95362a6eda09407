# promptshield/engine/memory.py
"""
Session tracker for drip (incremental) attack detection.

Features:
- Keeps the last N inputs per session id (bounded deque, FIFO)
- Scores the window by sensitivity-keyword hits; a fixed alert score once
  the hit count exceeds the threshold
- Per-session lock serialises updates to one session; different sessions
  never contend beyond the short registry lock
- TTL sweep on access and an LRU cap on the number of sessions

Usage:
    tracker = SessionTracker()
    alert = tracker.record("sess-1", "what is the admin token?")
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

# Defaults
WINDOW_SIZE = 5
KEYWORD_THRESHOLD = 3
ALERT_SCORE = 0.5
TTL_SECONDS = 3600
MAX_SESSIONS = 10000
CLEANUP_INTERVAL = 300           # sweep at most every 5 min (on access)

SENSITIVE_KEYWORDS = ("password", "key", "secret", "token", "admin", "instruction")


@dataclass
class SessionRecord:
    """Window of recent inputs for one session."""
    session_id: str
    recent_inputs: Deque[str]
    last_seen: float
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class SessionTracker:
    """
    Thread-safe, bounded per-session history.
    """

    def __init__(
        self,
        window_size: int = WINDOW_SIZE,
        keyword_threshold: int = KEYWORD_THRESHOLD,
        alert_score: float = ALERT_SCORE,
        keywords: Iterable[str] = SENSITIVE_KEYWORDS,
        ttl_seconds: float = TTL_SECONDS,
        max_sessions: int = MAX_SESSIONS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_size = window_size
        self.keyword_threshold = keyword_threshold
        self.alert_score = alert_score
        self.keywords = tuple(k.lower() for k in keywords)
        self.ttl_seconds = ttl_seconds
        self.max_sessions = max_sessions
        self._clock = clock
        self._sessions: "OrderedDict[str, SessionRecord]" = OrderedDict()
        self._lock = threading.Lock()
        self._last_cleanup = clock()
        self._evicted = 0

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def _cleanup_expired(self, now: float) -> None:
        """Drop sessions idle longer than the TTL. Caller holds the registry lock."""
        if now - self._last_cleanup < CLEANUP_INTERVAL:
            return
        self._last_cleanup = now
        expired = [
            sid for sid, record in self._sessions.items()
            if now - record.last_seen > self.ttl_seconds
        ]
        for sid in expired:
            del self._sessions[sid]
        self._evicted += len(expired)

    def _get_or_create(self, session_id: str) -> SessionRecord:
        now = self._clock()
        with self._lock:
            self._cleanup_expired(now)
            record = self._sessions.get(session_id)
            if record is None:
                record = SessionRecord(
                    session_id=session_id,
                    recent_inputs=deque(maxlen=self.window_size),
                    last_seen=now,
                )
                self._sessions[session_id] = record
                # LRU cap: oldest-seen session goes first
                while len(self._sessions) > self.max_sessions:
                    self._sessions.popitem(last=False)
                    self._evicted += 1
            else:
                record.last_seen = now
                self._sessions.move_to_end(session_id)
            return record

    def _get(self, session_id: str) -> Optional[SessionRecord]:
        with self._lock:
            return self._sessions.get(session_id)

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def keyword_hits(self, text: str) -> int:
        """Number of distinct sensitivity keywords contained in one input."""
        lowered = text.lower()
        return sum(1 for kw in self.keywords if kw in lowered)

    def _score(self, inputs: List[str]) -> float:
        hits = sum(self.keyword_hits(t) for t in inputs)
        return self.alert_score if hits > self.keyword_threshold else 0.0

    def _window_with(self, record: Optional[SessionRecord], pending: Optional[str]) -> List[str]:
        history = list(record.recent_inputs) if record else []
        if pending is None:
            return history
        # pending counts as the newest input of a full window
        keep = self.window_size - 1
        return (history[-keep:] if keep > 0 else []) + [pending]

    def behavioral_alert(self, session_id: str, pending: Optional[str] = None) -> float:
        """
        Alert score for a session's window.

        With pending, the score is what the window would give once pending is
        observed, without observing it.
        """
        record = self._get(session_id)
        if record is None:
            return self._score(self._window_with(None, pending))
        with record.lock:
            return self._score(self._window_with(record, pending))

    def observe(self, session_id: str, text: str) -> None:
        record = self._get_or_create(session_id)
        with record.lock:
            record.recent_inputs.append(text)

    def record(self, session_id: str, text: str) -> float:
        """Observe text and return the alert for the updated window, atomically."""
        record = self._get_or_create(session_id)
        with record.lock:
            record.recent_inputs.append(text)
            return self._score(list(record.recent_inputs))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_recent_inputs(self, session_id: str) -> List[str]:
        record = self._get(session_id)
        if record is None:
            return []
        with record.lock:
            return list(record.recent_inputs)

    def clear(self, session_id: Optional[str] = None) -> None:
        """Remove one session, or all of them."""
        with self._lock:
            if session_id is None:
                self._sessions.clear()
            else:
                self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "sessions": len(self._sessions),
                "max_sessions": self.max_sessions,
                "window_size": self.window_size,
                "evicted": self._evicted,
            }
