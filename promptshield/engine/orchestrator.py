# promptshield/engine/orchestrator.py
"""
Scan orchestrator - the public entry point of the detection core.

Flow per scan:
    preprocess -> cache lookup -> [pattern layer || embedding layer]
    -> session tracker -> fusion -> cache write -> audit

The pattern matcher (worker thread) and the embedding matcher run
concurrently; the embedding layer is bounded by the latency budget. Any layer
that fails or times out contributes no evidence and is listed in
ScanVerdict.degraded_layers, so a verdict is always rendered. Only a
catalogue that fails to load is fatal, at construction time.

Usage:
    from promptshield.engine.orchestrator import Shield

    shield = Shield()
    verdict = await shield.scan("user input here", context="all", session_id="sess-1")
    verdict = shield.scan_sync("user input here")      # outside an event loop
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from promptshield.engine import catalogue
from promptshield.engine.audit import (
    DEFAULT_ENDPOINT,
    DEFAULT_METHOD,
    AuditSink,
    LoggingAuditSink,
    build_audit_record,
    compute_usage,
    emit_audit,
)
from promptshield.engine.cache import ResultCache, fingerprint
from promptshield.engine.catalogue import AttackExemplar, DetectionRule, KeywordProbe
from promptshield.engine.config import ShieldConfig
from promptshield.engine.errors import CacheCorruption, InvalidInput, ModelUnavailable
from promptshield.engine.matcher import PatternMatcher
from promptshield.engine.memory import SessionTracker
from promptshield.engine.policy import consensus_score, decide
from promptshield.engine.preprocess import preprocess
from promptshield.engine.semantic import EmbeddingMatcher, ModelLoader
from promptshield.engine.signals import PatternMatch, SemanticMatch, get_match_ids
from promptshield.engine.utils import Timer, log_scan

logger = logging.getLogger(__name__)

LAYER_PATTERN = "pattern"
LAYER_SEMANTIC = "semantic"
LAYER_SESSION = "session"

REASON_EMPTY_INPUT = "empty input"


@dataclass(frozen=True)
class ScanVerdict:
    """Fused result of one scan. Immutable; the only part meant to be persisted."""
    safe: bool
    confidence: float
    reasons: Tuple[str, ...]
    pattern_matches: Tuple[PatternMatch, ...] = ()
    semantic_matches: Tuple[SemanticMatch, ...] = ()
    behavioral_score: float = 0.0
    consensus_score: float = 0.0
    requires_human_review: bool = False
    processing_time_ms: float = 0.0
    cache_hit: bool = False
    degraded_layers: Tuple[str, ...] = ()
    structural_analysis: Dict[str, Any] = field(default_factory=dict)
    usage: Dict[str, Any] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        """True when some layer produced no evidence because it failed."""
        return bool(self.degraded_layers)

    @property
    def decision(self) -> str:
        return "allow" if self.safe else "block"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "safe": self.safe,
            "decision": self.decision,
            "confidence": self.confidence,
            "reasons": list(self.reasons),
            "pattern_matches": [m.to_dict() for m in self.pattern_matches],
            "semantic_matches": [m.to_dict() for m in self.semantic_matches],
            "behavioral_score": self.behavioral_score,
            "consensus_score": self.consensus_score,
            "requires_human_review": self.requires_human_review,
            "processing_time_ms": self.processing_time_ms,
            "cache_hit": self.cache_hit,
            "degraded_layers": list(self.degraded_layers),
            "structural_analysis": self.structural_analysis,
            "usage": self.usage,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: Any) -> "ScanVerdict":
        """Rebuild a verdict from to_json() output. Raises CacheCorruption."""
        try:
            data = json.loads(raw)
            return cls(
                safe=bool(data["safe"]),
                confidence=float(data["confidence"]),
                reasons=tuple(str(r) for r in data["reasons"]),
                pattern_matches=tuple(PatternMatch.from_dict(m) for m in data["pattern_matches"]),
                semantic_matches=tuple(SemanticMatch.from_dict(m) for m in data["semantic_matches"]),
                behavioral_score=float(data["behavioral_score"]),
                consensus_score=float(data["consensus_score"]),
                requires_human_review=bool(data["requires_human_review"]),
                processing_time_ms=float(data["processing_time_ms"]),
                cache_hit=bool(data["cache_hit"]),
                degraded_layers=tuple(data["degraded_layers"]),
                structural_analysis=dict(data["structural_analysis"]),
                usage=dict(data["usage"]),
            )
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            raise CacheCorruption(f"cached verdict could not be decoded: {e}") from e


class Shield:
    """
    Multi-layer prompt-injection detector.

    Collaborators can be injected for tests or custom deployments; by default
    everything is built from the config and the packaged catalogues.
    """

    def __init__(
        self,
        config: Optional[ShieldConfig] = None,
        *,
        rules: Optional[Sequence[DetectionRule]] = None,
        probes: Optional[Sequence[KeywordProbe]] = None,
        exemplars: Optional[Sequence[AttackExemplar]] = None,
        model_loader: Optional[ModelLoader] = None,
        audit_sink: Optional[AuditSink] = None,
        cache: Optional[ResultCache] = None,
        session_tracker: Optional[SessionTracker] = None,
    ):
        self.config = config or ShieldConfig()
        cfg = self.config

        # Catalogue failures propagate: no scans on a partial ruleset
        if rules is None:
            loaded_rules, loaded_probes = self._load_rules(cfg.rules_path)
            rules = loaded_rules
            if probes is None:
                probes = loaded_probes
        if exemplars is None:
            exemplars = self._load_exemplars(cfg.exemplars_path)

        self.pattern_matcher = PatternMatcher(rules, probes or ())
        self.embedding_matcher = EmbeddingMatcher(exemplars, cfg.embedding_model, model_loader)

        if cache is None:
            cache = ResultCache(max_size=cfg.cache_max_size, default_ttl=cfg.cache_ttl_seconds)
        self.cache = cache

        if session_tracker is None:
            session_tracker = SessionTracker(
                window_size=cfg.session_window,
                keyword_threshold=cfg.session_keyword_threshold,
                alert_score=cfg.session_alert_score,
                ttl_seconds=cfg.session_ttl_seconds,
                max_sessions=cfg.max_sessions,
            )
        self.sessions = session_tracker

        self.audit_sink = audit_sink if audit_sink is not None else LoggingAuditSink()

        logger.info(
            f"Shield ready: {len(self.pattern_matcher.rules)} rules, "
            f"{len(self.pattern_matcher.probes)} probes, "
            f"{len(self.embedding_matcher.exemplars)} exemplars"
        )

    @staticmethod
    def _load_rules(path: Optional[str]):
        return catalogue.load_rules(path) if path else catalogue.get_default_rules()

    @staticmethod
    def _load_exemplars(path: Optional[str]):
        return catalogue.load_exemplars(path) if path else catalogue.get_default_exemplars()

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    async def scan(
        self,
        text: Any,
        context: str = "all",
        session_id: Optional[str] = None,
        *,
        endpoint: str = DEFAULT_ENDPOINT,
        method: str = DEFAULT_METHOD,
    ) -> ScanVerdict:
        timer = Timer()
        session_id = session_id or f"sess_{uuid.uuid4().hex[:12]}"

        try:
            with timer.stage("preprocess"):
                prepared = preprocess(text)
        except InvalidInput as e:
            logger.debug(f"session={session_id} neutral verdict: {e}")
            verdict = ScanVerdict(
                safe=True,
                confidence=1.0,
                reasons=(REASON_EMPTY_INPUT,),
                processing_time_ms=round(timer.total(), 3),
                usage=compute_usage("", 0.0),
            )
            await self._emit(verdict, session_id, endpoint, method, timer)
            return verdict

        clean_text = prepared["clean_text"]
        structure = prepared["structural_analysis"]
        key = fingerprint(clean_text, context)
        behavioral: Optional[float] = None
        degraded: List[str] = []

        # ---- Cache
        if self.config.enable_caching:
            with timer.stage("cache"):
                cached = self._cache_lookup(key)
            if cached is not None:
                behavioral = self._session_alert(session_id, clean_text, degraded)
                if behavioral == 0 and not degraded:
                    verdict = replace(cached, cache_hit=True, processing_time_ms=round(timer.total(), 3))
                    await self._emit(verdict, session_id, endpoint, method, timer)
                    return verdict
                # Session evidence is per-session: fall through to a full scan
                logger.debug(f"session={session_id} cached verdict bypassed (behavioral={behavioral})")

        # ---- Evidence
        pattern_matches, semantic_matches = await self._collect_evidence(clean_text, context, timer, degraded)

        # ---- Session (observed exactly once per scan)
        if behavioral is None:
            with timer.stage("session"):
                behavioral = self._session_alert(session_id, clean_text, degraded)

        # ---- Fusion
        with timer.stage("fusion"):
            cfg = self.config
            decision = decide(
                pattern_matches,
                semantic_matches,
                behavioral,
                behavioral_threshold=cfg.behavioral_threshold,
                pattern_confidence_threshold=cfg.pattern_confidence_threshold,
                semantic_similarity_threshold=cfg.semantic_similarity_threshold,
                require_human_review=cfg.require_human_review,
            )
            consensus = consensus_score(pattern_matches, semantic_matches)

        verdict = ScanVerdict(
            safe=decision.safe,
            confidence=decision.confidence,
            reasons=decision.reasons,
            pattern_matches=tuple(pattern_matches),
            semantic_matches=tuple(semantic_matches),
            behavioral_score=behavioral,
            consensus_score=consensus,
            requires_human_review=decision.requires_human_review,
            processing_time_ms=round(timer.total(), 3),
            cache_hit=False,
            degraded_layers=tuple(degraded),
            structural_analysis=structure,
            usage=compute_usage(clean_text, structure["entropy"]),
        )

        if self._cacheable(verdict):
            self.cache.set(key, verdict.to_json(), ttl=self._cache_ttl(verdict))

        await self._emit(verdict, session_id, endpoint, method, timer)
        return verdict

    def scan_sync(self, text: Any, context: str = "all", session_id: Optional[str] = None, **kwargs: Any) -> ScanVerdict:
        """Blocking scan for callers without an event loop."""
        return asyncio.run(self.scan(text, context, session_id, **kwargs))

    async def _pattern_layer(self, text: str, context: str, timer: Timer) -> List[PatternMatch]:
        if not self.config.enable_pattern_matching:
            return []
        with timer.stage("patterns"):
            return await asyncio.to_thread(self.pattern_matcher.match, text, context)

    async def _semantic_layer(self, text: str, context: str, timer: Timer) -> List[SemanticMatch]:
        if not self.config.enable_semantic_detection:
            return []
        with timer.stage("semantic"):
            return await asyncio.wait_for(
                self.embedding_matcher.compare(text, context),
                timeout=self.config.latency_budget_seconds,
            )

    async def _collect_evidence(
        self,
        text: str,
        context: str,
        timer: Timer,
        degraded: List[str],
    ) -> Tuple[List[PatternMatch], List[SemanticMatch]]:
        """Run both matchers concurrently; failures become degraded layers."""
        pattern_result, semantic_result = await asyncio.gather(
            self._pattern_layer(text, context, timer),
            self._semantic_layer(text, context, timer),
            return_exceptions=True,
        )

        if isinstance(pattern_result, BaseException):
            if not isinstance(pattern_result, Exception):
                raise pattern_result
            logger.warning(f"Pattern layer failed, no pattern evidence: {pattern_result!r}")
            degraded.append(LAYER_PATTERN)
            pattern_result = []

        if isinstance(semantic_result, BaseException):
            if isinstance(semantic_result, asyncio.TimeoutError):
                logger.warning(
                    f"Embedding layer exceeded {self.config.latency_budget_seconds}s budget, "
                    f"continuing without semantic evidence"
                )
            elif isinstance(semantic_result, ModelUnavailable):
                logger.warning(f"Embedding layer unavailable: {semantic_result}")
            elif isinstance(semantic_result, Exception):
                logger.warning(f"Embedding layer failed: {semantic_result!r}")
            else:
                raise semantic_result
            degraded.append(LAYER_SEMANTIC)
            semantic_result = []

        return list(pattern_result), list(semantic_result)

    def _session_alert(self, session_id: str, text: str, degraded: List[str]) -> float:
        try:
            return self.sessions.record(session_id, text)
        except Exception as e:
            logger.warning(f"Session tracker failed for {session_id}: {e!r}")
            degraded.append(LAYER_SESSION)
            return 0.0

    # ------------------------------------------------------------------
    # Cache / audit
    # ------------------------------------------------------------------

    def _cache_lookup(self, key: str) -> Optional[ScanVerdict]:
        raw = self.cache.get(key)
        if raw is None:
            return None
        try:
            return ScanVerdict.from_json(raw)
        except CacheCorruption as e:
            logger.warning(f"Dropping corrupt cache entry {key}: {e}")
            self.cache.delete(key)
            return None

    def _cacheable(self, verdict: ScanVerdict) -> bool:
        return (
            self.config.enable_caching
            and not verdict.requires_human_review
            and verdict.behavioral_score == 0
        )

    def _cache_ttl(self, verdict: ScanVerdict) -> Optional[float]:
        # A degraded verdict is kept only briefly, so a recovered layer is consulted again
        if verdict.degraded:
            return min(self.config.degraded_cache_ttl_seconds, self.cache.default_ttl)
        return None

    async def _emit(self, verdict: ScanVerdict, session_id: str, endpoint: str, method: str, timer: Timer) -> None:
        match_ids = sorted(get_match_ids(verdict.pattern_matches + verdict.semantic_matches))
        log_scan(
            session_id,
            verdict.decision,
            verdict.confidence,
            match_ids,
            verdict.cache_hit,
            verdict.degraded_layers,
            timer.results(),
        )
        if not self.config.enable_audit_logging:
            return
        try:
            record = build_audit_record(verdict, session_id, endpoint, method)
        except Exception as e:
            logger.error(f"Could not build audit record for {session_id}: {e}")
            return
        await emit_audit(self.audit_sink, record)

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def reload_catalogues(self, rules_path: Optional[str] = None, exemplars_path: Optional[str] = None) -> None:
        """
        Load fresh catalogues and swap them in between scans.

        Both files are loaded before anything is swapped; on failure the
        current catalogues stay active and CatalogueLoadFailure propagates.
        """
        rules, probes = catalogue.load_rules(rules_path or self.config.rules_path)
        exemplars = catalogue.load_exemplars(exemplars_path or self.config.exemplars_path)
        self.pattern_matcher.replace_rules(rules, probes)
        self.embedding_matcher.replace_exemplars(exemplars)
        # Verdicts rendered under the old catalogue are stale
        self.cache.clear()
        logger.info(f"Catalogues reloaded: {len(rules)} rules, {len(probes)} probes, {len(exemplars)} exemplars")

    async def warm_up(self) -> bool:
        """Load the embedding model eagerly. Returns availability."""
        if not self.config.enable_semantic_detection:
            return False
        return await self.embedding_matcher.warm_up()

    def get_status(self) -> Dict[str, Any]:
        """Get the status of all layers."""
        cfg = self.config
        return {
            "pattern": {
                "enabled": cfg.enable_pattern_matching,
                **self.pattern_matcher.get_pattern_stats(),
            },
            "semantic": {
                "enabled": cfg.enable_semantic_detection,
                "latency_budget_seconds": cfg.latency_budget_seconds,
                **self.embedding_matcher.get_status(),
            },
            "session": self.sessions.stats(),
            "cache": {"enabled": cfg.enable_caching, **self.cache.stats()},
            "thresholds": {
                "pattern_confidence": cfg.pattern_confidence_threshold,
                "semantic_similarity": cfg.semantic_similarity_threshold,
                "behavioral": cfg.behavioral_threshold,
                "require_human_review": cfg.require_human_review,
            },
        }


# =============================================================================
# Convenience function for simple usage
# =============================================================================

_default_shield: Optional[Shield] = None


def get_shield() -> Shield:
    """Process-wide Shield configured from the environment, built on first use."""
    global _default_shield
    if _default_shield is None:
        _default_shield = Shield(ShieldConfig.from_env())
    return _default_shield


def scan_prompt(text: Any, context: str = "all", session_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Scan a prompt with the default shield.

    Returns the verdict as a dictionary.
    """
    return get_shield().scan_sync(text, context, session_id).to_dict()
