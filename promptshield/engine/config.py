# promptshield/engine/config.py
"""
Runtime configuration for the Shield.

Values come from keyword arguments, or from the environment via
ShieldConfig.from_env(), which loads a .env file first and then reads
PROMPTSHIELD_<FIELD_NAME> variables:

    PROMPTSHIELD_BEHAVIORAL_THRESHOLD=0.5
    PROMPTSHIELD_EMBEDDING_MODEL=all-MiniLM-L6-v2
    PROMPTSHIELD_ENABLE_SEMANTIC_DETECTION=false
"""

from __future__ import annotations

import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ENV_PREFIX = "PROMPTSHIELD_"


class ShieldConfig(BaseModel):
    # Layer switches
    enable_pattern_matching: bool = Field(default=True, description="Run the rule catalogue")
    enable_semantic_detection: bool = Field(default=True, description="Run the embedding layer")
    enable_caching: bool = Field(default=True, description="Memoize verdicts by fingerprint")
    enable_audit_logging: bool = Field(default=True, description="Emit an audit record per scan")

    # Fusion thresholds
    pattern_confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    semantic_similarity_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    behavioral_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    require_human_review: bool = Field(
        default=False,
        description="Force review on every verdict not auto-blocked by a critical match",
    )

    # Result cache
    cache_ttl_seconds: float = Field(default=300.0, gt=0)
    cache_max_size: int = Field(default=1000, ge=1)
    degraded_cache_ttl_seconds: float = Field(
        default=5.0, gt=0, description="TTL for verdicts rendered with a degraded layer"
    )

    # Embedding layer
    latency_budget_seconds: float = Field(
        default=2.0, gt=0, description="Max wait for the embedding layer per scan"
    )
    embedding_model: str = Field(default="all-MiniLM-L6-v2")

    # Session tracker
    session_window: int = Field(default=5, ge=1)
    session_keyword_threshold: int = Field(default=3, ge=0)
    session_alert_score: float = Field(default=0.5, ge=0.0, le=1.0)
    session_ttl_seconds: float = Field(default=3600.0, gt=0)
    max_sessions: int = Field(default=10000, ge=1)

    # Catalogue overrides (None = packaged data files)
    rules_path: Optional[str] = None
    exemplars_path: Optional[str] = None

    model_config = {"frozen": True, "extra": "forbid"}

    @classmethod
    def from_env(cls, **overrides: Any) -> "ShieldConfig":
        """Build a config from .env / environment, with explicit overrides on top."""
        load_dotenv()
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.environ.get(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        values.update(overrides)
        # pydantic coerces "false"/"0.5"/"1000" into the declared types
        return cls(**values)
