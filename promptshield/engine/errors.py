# promptshield/engine/errors.py
"""
Error taxonomy for the detection core.

Only CatalogueLoadFailure is meant to escape to callers (at startup or on a
catalogue reload). The others are raised by individual layers and absorbed by
the orchestrator, which records the affected layer as degraded.
"""


class ShieldError(Exception):
    """Base class for all detection-core errors."""


class ModelUnavailable(ShieldError):
    """Embedding backend failed to initialize, failed inference, or timed out."""


class InvalidInput(ShieldError):
    """Input is empty or not text."""


class CacheCorruption(ShieldError):
    """A cached value could not be decoded back into a verdict."""


class CatalogueLoadFailure(ShieldError):
    """Rule or exemplar catalogue could not be loaded. Fatal."""
