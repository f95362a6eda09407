# promptshield/engine/__init__.py
"""
Detection engine - pattern, embedding and session layers fused into one verdict.
"""

from promptshield.engine.config import ShieldConfig
from promptshield.engine.errors import (
    CacheCorruption,
    CatalogueLoadFailure,
    InvalidInput,
    ModelUnavailable,
    ShieldError,
)
from promptshield.engine.orchestrator import ScanVerdict, Shield, get_shield, scan_prompt
from promptshield.engine.policy import decide

__all__ = [
    'Shield',
    'ScanVerdict',
    'ShieldConfig',
    'get_shield',
    'scan_prompt',
    'decide',
    'ShieldError',
    'ModelUnavailable',
    'InvalidInput',
    'CacheCorruption',
    'CatalogueLoadFailure',
]
