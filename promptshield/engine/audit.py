# promptshield/engine/audit.py
"""
Audit record and metering figures emitted after every scan.

The core only builds the record and hands it to a sink; storage and querying
belong to whoever owns the sink. A sink is any callable taking an AuditRecord,
sync or async. Sink failures are logged and never reach the caller.
"""

from __future__ import annotations

import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from promptshield.engine.signals import SEVERITIES

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "/v1/enhanced/scan"
DEFAULT_METHOD = "POST"

# Synthetic metering: base units per scan, scaled by input size and entropy
BASE_COMPUTE_UNITS = 15
CHARS_PER_TOKEN = 4

AuditSink = Callable[["AuditRecord"], Any]


class AuditRecord(BaseModel):
    session_id: str
    endpoint: str = DEFAULT_ENDPOINT
    method: str = DEFAULT_METHOD
    event_type: Literal["allowed", "blocked"]
    severity: str = Field(default="info", description="Highest match severity, or info")
    pattern_matches: List[Dict[str, Any]] = Field(default_factory=list)
    semantic_matches: List[Dict[str, Any]] = Field(default_factory=list)
    behavioral_score: float = 0.0
    final_decision: Literal["allow", "block"]
    confidence: float
    reasons: List[str] = Field(default_factory=list)
    requires_human_review: bool = False
    processing_time_ms: float
    cache_hit: bool = False
    degraded_layers: List[str] = Field(default_factory=list)
    usage: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class LoggingAuditSink:
    """Default sink: one JSON line per record on the 'promptshield.audit' logger."""

    def __init__(self, logger_name: str = "promptshield.audit"):
        self._logger = logging.getLogger(logger_name)

    def __call__(self, record: AuditRecord) -> None:
        level = logging.WARNING if record.final_decision == "block" else logging.INFO
        self._logger.log(level, record.model_dump_json())


def highest_severity(matches: List[Dict[str, Any]]) -> str:
    present = {m.get("severity") for m in matches}
    for severity in reversed(SEVERITIES):
        if severity in present:
            return severity
    return "info"


def compute_usage(text: str, entropy: float) -> Dict[str, Any]:
    """
    Non-authoritative usage figures for a billing consumer.

    compute_units = 15 * (1 + length/1000 + entropy/5)
    """
    length = len(text)
    load_factor = 1 + length / 1000 + entropy / 5
    return {
        "input_length": length,
        "estimated_tokens": length // CHARS_PER_TOKEN,
        "compute_units": round(BASE_COMPUTE_UNITS * load_factor, 4),
    }


def build_audit_record(
    verdict: Any,
    session_id: str,
    endpoint: str = DEFAULT_ENDPOINT,
    method: str = DEFAULT_METHOD,
) -> AuditRecord:
    """Audit record from a ScanVerdict."""
    pattern_matches = [m.to_dict() for m in verdict.pattern_matches]
    semantic_matches = [m.to_dict() for m in verdict.semantic_matches]
    return AuditRecord(
        session_id=session_id,
        endpoint=endpoint,
        method=method,
        event_type="allowed" if verdict.safe else "blocked",
        severity=highest_severity(pattern_matches + semantic_matches),
        pattern_matches=pattern_matches,
        semantic_matches=semantic_matches,
        behavioral_score=verdict.behavioral_score,
        final_decision=verdict.decision,
        confidence=verdict.confidence,
        reasons=list(verdict.reasons),
        requires_human_review=verdict.requires_human_review,
        processing_time_ms=verdict.processing_time_ms,
        cache_hit=verdict.cache_hit,
        degraded_layers=list(verdict.degraded_layers),
        usage=dict(verdict.usage),
    )


async def emit_audit(sink: Optional[AuditSink], record: AuditRecord) -> bool:
    """Hand the record to the sink. Returns False if the sink failed."""
    if sink is None:
        return False
    try:
        result = sink(record)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"Audit sink failed for session {record.session_id}: {e}")
        return False
    return True
