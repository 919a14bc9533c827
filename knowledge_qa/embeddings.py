"""Embedding model construction and vector similarity."""

from __future__ import annotations

import math
import threading
from typing import Any, Dict, Sequence

import numpy as np
from llama_index.core.base.embeddings.base import BaseEmbedding
from llama_index.embeddings.gemini import GeminiEmbedding

from .logger import LOGGER
from .models import EmbeddingConfig


class EmbeddingModelFactory:
    """Build and cache one embedding model per distinct user configuration."""

    def __init__(self) -> None:
        self._models: Dict[EmbeddingConfig, BaseEmbedding] = {}
        self._lock = threading.Lock()

    def get(self, config: EmbeddingConfig) -> BaseEmbedding:
        with self._lock:
            model = self._models.get(config)
            if model is None:
                model = self._build(config)
                self._models[config] = model
            return model

    @staticmethod
    def _build(config: EmbeddingConfig) -> BaseEmbedding:
        if not config.api_key:
            raise RuntimeError(f"No API key configured for embedding model {config.model_id}")
        kwargs: Dict[str, Any] = {"model_name": config.model_id, "api_key": config.api_key}
        if config.base_url:
            kwargs["api_base"] = config.base_url
        LOGGER.debug("Building embedding model %s", config.model_id)
        return GeminiEmbedding(**kwargs)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity clamped to [-1, 1].

    Mismatched lengths, empty or zero-norm vectors and non-finite results
    all score 0.0.
    """
    if a is None or b is None or len(a) != len(b) or len(a) == 0:
        return 0.0

    vec_a = np.asarray(a, dtype=float)
    vec_b = np.asarray(b, dtype=float)
    norm_a = np.linalg.norm(vec_a)
    norm_b = np.linalg.norm(vec_b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    value = float(np.dot(vec_a, vec_b) / (norm_a * norm_b))
    if not math.isfinite(value):
        return 0.0
    return max(-1.0, min(1.0, value))


__all__ = ["EmbeddingModelFactory", "cosine_similarity"]
