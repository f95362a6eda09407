"""
promptshield - multi-layer prompt-injection detection core.

    from promptshield import Shield

    shield = Shield()
    verdict = shield.scan_sync("Hello, how are you today?")
    verdict.safe, verdict.confidence, verdict.reasons
"""

from promptshield.engine import (
    CacheCorruption,
    CatalogueLoadFailure,
    InvalidInput,
    ModelUnavailable,
    ScanVerdict,
    Shield,
    ShieldConfig,
    ShieldError,
    get_shield,
    scan_prompt,
)

__version__ = "0.2.0"

__all__ = [
    'Shield',
    'ScanVerdict',
    'ShieldConfig',
    'get_shield',
    'scan_prompt',
    'ShieldError',
    'ModelUnavailable',
    'InvalidInput',
    'CacheCorruption',
    'CatalogueLoadFailure',
]
