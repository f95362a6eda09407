# promptshield/engine/policy.py
"""
Decision fusion: pattern matches + semantic matches + session alert -> verdict.

Resolution order, first applicable rule wins:
1. critical pattern             -> unsafe, confidence 0.1, no review
2. critical semantic            -> unsafe, confidence 0.2, no review
3. high pattern or semantic     -> confidence 0.3, human review
4. session alert >= threshold   -> confidence 0.5, human review
5. weak matches                 -> confidence capped at 0.7 (pattern) / 0.8 (semantic)
6. nothing                      -> safe, confidence 1.0

safe = confidence >= 0.5 and not requires_human_review
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

from promptshield.engine.signals import (
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    PatternMatch,
    SemanticMatch,
    severity_weight,
    with_severity,
)

# Rule names (reported in Decision.rule, handy in logs)
RULE_CRITICAL_PATTERN = "critical_pattern"
RULE_CRITICAL_SEMANTIC = "critical_semantic"
RULE_HIGH_SEVERITY = "high_severity"
RULE_BEHAVIORAL = "behavioral"
RULE_WEAK_EVIDENCE = "weak_evidence"
RULE_CLEAN = "clean"

CONFIDENCE_CRITICAL_PATTERN = 0.1
CONFIDENCE_CRITICAL_SEMANTIC = 0.2
CONFIDENCE_HIGH_SEVERITY = 0.3
CONFIDENCE_BEHAVIORAL = 0.5
CAP_WEAK_PATTERN = 0.7
CAP_WEAK_SEMANTIC = 0.8

SAFE_CONFIDENCE_FLOOR = 0.5

REASON_CLEAN = "no suspicious patterns detected"
REASON_FORCED_REVIEW = "human review required by configuration"


@dataclass(frozen=True)
class Decision:
    safe: bool
    confidence: float
    reasons: Tuple[str, ...]
    requires_human_review: bool
    rule: str


def _finish(confidence: float, reasons: list, review: bool, rule: str, forced_review: bool) -> Decision:
    if forced_review and not review:
        review = True
        reasons.append(REASON_FORCED_REVIEW)
    return Decision(
        safe=confidence >= SAFE_CONFIDENCE_FLOOR and not review,
        confidence=confidence,
        reasons=tuple(reasons),
        requires_human_review=review,
        rule=rule,
    )


def decide(
    pattern_matches: Sequence[PatternMatch],
    semantic_matches: Sequence[SemanticMatch],
    behavioral_score: float,
    *,
    behavioral_threshold: float = 0.6,
    pattern_confidence_threshold: float = 0.7,
    semantic_similarity_threshold: float = 0.8,
    require_human_review: bool = False,
) -> Decision:
    """
    Fuse per-layer evidence into one decision.

    require_human_review forces review on everything not auto-blocked by a
    critical match (rules 1-2 stay final).
    """
    # ---- Rule 1: critical pattern, certain enough to auto-block
    critical_patterns = with_severity(pattern_matches, SEVERITY_CRITICAL)
    if critical_patterns:
        return Decision(
            safe=False,
            confidence=CONFIDENCE_CRITICAL_PATTERN,
            reasons=(f"critical pattern detected: {critical_patterns[0].label}",),
            requires_human_review=False,
            rule=RULE_CRITICAL_PATTERN,
        )

    # ---- Rule 2: critical semantic
    critical_semantic = with_severity(semantic_matches, SEVERITY_CRITICAL)
    if critical_semantic:
        return Decision(
            safe=False,
            confidence=CONFIDENCE_CRITICAL_SEMANTIC,
            reasons=(f"critical semantic match: {critical_semantic[0].label}",),
            requires_human_review=False,
            rule=RULE_CRITICAL_SEMANTIC,
        )

    # ---- Rule 3: high severity from either layer
    high_patterns = with_severity(pattern_matches, SEVERITY_HIGH)
    high_semantic = with_severity(semantic_matches, SEVERITY_HIGH)
    if high_patterns or high_semantic:
        reasons = []
        if high_patterns:
            reasons.append(f"high severity pattern: {high_patterns[0].label}")
        if high_semantic:
            reasons.append(f"high severity semantic match: {high_semantic[0].label}")
        return _finish(CONFIDENCE_HIGH_SEVERITY, reasons, True, RULE_HIGH_SEVERITY, require_human_review)

    # ---- Rule 4: drip signal from the session window
    if behavioral_score >= behavioral_threshold:
        reasons = [f"behavioral score exceeds threshold: {behavioral_score:.2f}"]
        return _finish(CONFIDENCE_BEHAVIORAL, reasons, True, RULE_BEHAVIORAL, require_human_review)

    # ---- Rule 5: weak evidence lowers trust without blocking
    confidence = 1.0
    reasons = []
    if any(m.confidence < pattern_confidence_threshold for m in pattern_matches):
        reasons.append("low confidence pattern matches detected")
        confidence = min(confidence, CAP_WEAK_PATTERN)
    if any(m.similarity < semantic_similarity_threshold for m in semantic_matches):
        reasons.append("low similarity semantic matches detected")
        confidence = min(confidence, CAP_WEAK_SEMANTIC)
    if reasons:
        return _finish(confidence, reasons, False, RULE_WEAK_EVIDENCE, require_human_review)

    # ---- Rule 6: clean
    return _finish(1.0, [REASON_CLEAN], False, RULE_CLEAN, require_human_review)


def consensus_score(
    pattern_matches: Sequence[PatternMatch],
    semantic_matches: Sequence[SemanticMatch],
) -> float:
    """
    Severity-weighted mean of match confidences and similarities.

    Weights: critical 4, high 3, medium 2, low 1. 0.0 with no matches.
    Reported for observability; it does not change the decision.
    """
    total = 0.0
    weight = 0
    for m in list(pattern_matches) + list(semantic_matches):
        w = severity_weight(m.severity)
        total += m.score * w
        weight += w
    return round(total / weight, 4) if weight else 0.0
