# promptshield/engine/semantic.py
"""
Embedding layer: cosine similarity between the input and known-attack
exemplars.

The sentence-transformers model ('all-MiniLM-L6-v2' by default) is loaded
lazily on first use, in a worker thread of its own that outlives any single
event loop. Concurrent first callers (on any loop) share that one load; a
failed load is remembered and not retried until reset(), so a broken backend
costs one attempt rather than one per scan. Exemplar embeddings are computed
on demand and kept for the lifetime of the catalogue.

compare() raises ModelUnavailable; detect() absorbs it and returns [] so the
rest of the pipeline keeps working on pattern and behavioral evidence.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from promptshield.engine.catalogue import AttackExemplar, get_default_exemplars
from promptshield.engine.errors import ModelUnavailable
from promptshield.engine.signals import SemanticMatch

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "all-MiniLM-L6-v2"

STATUS_IDLE = "idle"
STATUS_LOADING = "loading"
STATUS_READY = "ready"
STATUS_UNAVAILABLE = "unavailable"

ModelLoader = Callable[[str], Any]


def load_sentence_transformer(model_name: str) -> Any:
    """Default loader. Imported here so the package imports without the model stack."""
    from sentence_transformers import SentenceTransformer

    return SentenceTransformer(model_name)


def cosine_similarity(u: Any, v: Any) -> float:
    """(u.v) / (|u| |v|), 0.0 when either vector has zero norm."""
    a = np.asarray(u, dtype=np.float64).ravel()
    b = np.asarray(v, dtype=np.float64).ravel()
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.clip(np.dot(a, b) / (norm_a * norm_b), -1.0, 1.0))


class EmbeddingMatcher:
    """
    Similarity matcher over an exemplar catalogue.

    model_loader takes a model name and returns an object with
    encode(texts, **kwargs) -> array of shape (len(texts), dim).
    """

    def __init__(
        self,
        exemplars: Optional[Sequence[AttackExemplar]] = None,
        model_name: str = DEFAULT_MODEL,
        model_loader: Optional[ModelLoader] = None,
    ):
        self.model_name = model_name
        self._loader = model_loader or load_sentence_transformer
        self._state_lock = threading.Lock()
        self._model: Any = None
        self._load_future: Optional[concurrent.futures.Future] = None
        self._status = STATUS_IDLE
        self._unavailable_reason: Optional[str] = None
        self.replace_exemplars(exemplars if exemplars is not None else get_default_exemplars())

    # ------------------------------------------------------------------
    # Catalogue
    # ------------------------------------------------------------------

    def replace_exemplars(self, exemplars: Sequence[AttackExemplar]) -> None:
        """Swap the catalogue together with a fresh embedding cache."""
        self._catalogue: Tuple[Tuple[AttackExemplar, ...], Dict[str, np.ndarray]] = (
            tuple(exemplars),
            {},
        )

    @property
    def exemplars(self) -> Tuple[AttackExemplar, ...]:
        return self._catalogue[0]

    # ------------------------------------------------------------------
    # Model lifecycle
    # ------------------------------------------------------------------

    @property
    def status(self) -> str:
        return self._status

    @property
    def available(self) -> bool:
        return self._status == STATUS_READY

    @property
    def unavailable_reason(self) -> Optional[str]:
        return self._unavailable_reason

    def _load_in_thread(self, future: "concurrent.futures.Future") -> None:
        """Worker-thread body of the shared load; settles future and matcher state."""
        try:
            model = self._loader(self.model_name)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            with self._state_lock:
                if self._load_future is future:
                    self._unavailable_reason = reason
                    self._status = STATUS_UNAVAILABLE
            logger.error(f"Failed to load embedding model '{self.model_name}': {e}")
            future.set_exception(ModelUnavailable(reason))
            return
        with self._state_lock:
            if self._load_future is future:
                self._model = model
                self._status = STATUS_READY
        logger.info(f"Embedding model '{self.model_name}' ready")
        future.set_result(model)

    async def _ensure_model(self) -> Any:
        if self._model is not None:
            return self._model

        with self._state_lock:
            if self._unavailable_reason is not None:
                raise ModelUnavailable(self._unavailable_reason)
            future = self._load_future
            if future is None:
                # Marked running before the thread starts, so no waiter can cancel it
                future = concurrent.futures.Future()
                future.set_running_or_notify_cancel()
                self._load_future = future
                self._status = STATUS_LOADING
                logger.info(f"Loading embedding model '{self.model_name}'...")
                threading.Thread(
                    target=self._load_in_thread,
                    args=(future,),
                    name="promptshield-model-load",
                    daemon=True,
                ).start()

        # The load lives in its own thread, not in this event loop: a caller
        # that times out, or an asyncio.run that tears down, only drops its waiter
        return await asyncio.wrap_future(future)

    async def warm_up(self) -> bool:
        """Load the model now. Returns availability."""
        try:
            await self._ensure_model()
        except ModelUnavailable:
            return False
        return True

    def reset(self) -> None:
        """Forget the model and any cached failure; next use reloads."""
        with self._state_lock:
            self._model = None
            self._load_future = None
            self._unavailable_reason = None
            self._status = STATUS_IDLE
            self.replace_exemplars(self.exemplars)

    # ------------------------------------------------------------------
    # Similarity
    # ------------------------------------------------------------------

    @staticmethod
    def _encode(model: Any, texts: List[str]) -> np.ndarray:
        vectors = model.encode(texts, show_progress_bar=False)
        return np.atleast_2d(np.asarray(vectors, dtype=np.float32))

    async def _exemplar_embeddings(
        self,
        model: Any,
        exemplars: Sequence[AttackExemplar],
        cache: Dict[str, np.ndarray],
    ) -> Dict[str, np.ndarray]:
        missing = [e for e in exemplars if e.id not in cache]
        if missing:
            vectors = await asyncio.to_thread(self._encode, model, [e.text for e in missing])
            for exemplar, vector in zip(missing, vectors):
                cache.setdefault(exemplar.id, vector)
            logger.debug(f"Embedded {len(missing)} exemplars")
        return cache

    async def compare(self, text: str, context: str = "all") -> List[SemanticMatch]:
        """
        Match the input against every applicable exemplar.

        Raises ModelUnavailable if the model cannot be loaded or inference fails.
        """
        model = await self._ensure_model()
        exemplars, cache = self._catalogue
        applicable = [e for e in exemplars if e.applies_to(context)]
        if not applicable:
            return []

        try:
            embeddings = await self._exemplar_embeddings(model, applicable, cache)
            input_vector = (await asyncio.to_thread(self._encode, model, [text]))[0]
        except Exception as e:
            raise ModelUnavailable(f"embedding inference failed: {e}") from e

        matches = []
        for exemplar in applicable:
            similarity = cosine_similarity(input_vector, embeddings[exemplar.id])
            if similarity >= exemplar.threshold:
                matches.append(SemanticMatch(
                    exemplar_id=exemplar.id,
                    label=exemplar.label,
                    severity=exemplar.severity,
                    similarity=similarity,
                    threshold=exemplar.threshold,
                    matched_exemplar=exemplar.text,
                ))

        matches.sort(key=lambda m: m.similarity, reverse=True)
        if matches:
            top = matches[0]
            logger.warning(
                f"Semantic match: {top.similarity:.3f} to '{top.exemplar_id}' "
                f"({len(matches)} above threshold)"
            )
        return matches

    async def detect(self, text: str, context: str = "all") -> List[SemanticMatch]:
        """compare(), degrading to no evidence when the model is unavailable."""
        try:
            return await self.compare(text, context)
        except ModelUnavailable as e:
            logger.warning(f"Embedding layer degraded, no semantic evidence: {e}")
            return []

    def get_status(self) -> Dict[str, Any]:
        exemplars, cache = self._catalogue
        return {
            "status": self._status,
            "model": self.model_name,
            "exemplars": len(exemplars),
            "embedded_exemplars": len(cache),
            "unavailable_reason": self._unavailable_reason,
        }
