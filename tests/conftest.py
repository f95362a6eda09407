# tests/conftest.py
"""
Shared fixtures.

The real sentence-transformers model is replaced by a deterministic
bag-of-words encoder: identical texts embed identically (similarity 1.0),
unrelated texts share few tokens. No network access needed.
"""

import re
import threading
import time
import zlib

import numpy as np
import pytest

from promptshield.engine.config import ShieldConfig
from promptshield.engine.orchestrator import Shield

TOKEN_PATTERN = re.compile(r"[a-z0-9']+")


class FakeEncoder:
    """Hashes tokens into a fixed-size count vector."""

    dim = 4096

    def __init__(self):
        self.encode_calls = 0

    def encode(self, texts, **kwargs):
        self.encode_calls += 1
        vectors = np.zeros((len(texts), self.dim), dtype=np.float32)
        for row, text in enumerate(texts):
            for token in TOKEN_PATTERN.findall(text.lower()):
                vectors[row, zlib.crc32(token.encode("utf-8")) % self.dim] += 1.0
        return vectors


class CountingLoader:
    """Model loader that records how often it was called."""

    def __init__(self, delay: float = 0.0, error: Exception = None):
        self.delay = delay
        self.error = error
        self.calls = 0
        self.model_names = []
        self.encoder = FakeEncoder()
        self._lock = threading.Lock()

    def __call__(self, model_name):
        with self._lock:
            self.calls += 1
            self.model_names.append(model_name)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.encoder


@pytest.fixture
def fake_loader():
    return CountingLoader()


@pytest.fixture
def failing_loader():
    return CountingLoader(error=OSError("model download failed"))


@pytest.fixture
def audit_records():
    return []


@pytest.fixture
def make_shield(fake_loader, audit_records):
    """Factory: Shield with the fake model and a list-backed audit sink."""

    def _make(loader=None, **config_overrides):
        return Shield(
            ShieldConfig(**config_overrides),
            model_loader=loader or fake_loader,
            audit_sink=audit_records.append,
        )

    return _make


@pytest.fixture
def shield(make_shield):
    return make_shield()
