# promptshield/engine/signals.py
"""
Evidence types shared by the detection layers.

Pattern and semantic layers both emit matches; fusion and the audit record
consume them. Matches are immutable and live only as long as the scan (or the
cache entry holding its verdict).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional, Union

SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"
SEVERITY_CRITICAL = "critical"

SEVERITIES = (SEVERITY_LOW, SEVERITY_MEDIUM, SEVERITY_HIGH, SEVERITY_CRITICAL)

SEVERITY_WEIGHTS: Dict[str, int] = {
    SEVERITY_CRITICAL: 4,
    SEVERITY_HIGH: 3,
    SEVERITY_MEDIUM: 2,
    SEVERITY_LOW: 1,
}

# Variant tags for matches found on a transformed copy of the input
VARIANT_LEETSPEAK = "leetspeak_normalized"
VARIANT_HOMOGLYPH = "homoglyph"
VARIANT_HOMOGLYPH_DECODED = "homoglyph_decoded"
VARIANT_KEYWORD_PROBE = "keyword_probe"


def severity_weight(severity: str) -> int:
    return SEVERITY_WEIGHTS.get(severity, 1)


@dataclass(frozen=True)
class PatternMatch:
    """A rule (or probe) hit from the pattern layer."""
    rule_id: str
    label: str
    severity: str
    confidence: float
    matched_text: str
    position: int
    variant: Optional[str] = None

    @property
    def score(self) -> float:
        return self.confidence

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatternMatch":
        return cls(
            rule_id=str(data["rule_id"]),
            label=str(data["label"]),
            severity=str(data["severity"]),
            confidence=float(data["confidence"]),
            matched_text=str(data["matched_text"]),
            position=int(data["position"]),
            variant=data.get("variant"),
        )


@dataclass(frozen=True)
class SemanticMatch:
    """An exemplar whose embedding is close enough to the input."""
    exemplar_id: str
    label: str
    severity: str
    similarity: float
    threshold: float
    matched_exemplar: str

    @property
    def score(self) -> float:
        return self.similarity

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SemanticMatch":
        return cls(
            exemplar_id=str(data["exemplar_id"]),
            label=str(data["label"]),
            severity=str(data["severity"]),
            similarity=float(data["similarity"]),
            threshold=float(data["threshold"]),
            matched_exemplar=str(data["matched_exemplar"]),
        )


Match = Union[PatternMatch, SemanticMatch]


def with_severity(matches: Iterable[Match], severity: str) -> List[Match]:
    """Filter matches down to one severity level, keeping order."""
    return [m for m in matches if m.severity == severity]


def get_match_ids(matches: Iterable[Match]) -> set:
    """Rule ids / exemplar ids as a set."""
    return {m.rule_id if isinstance(m, PatternMatch) else m.exemplar_id for m in matches}
