"""
Retrieval-augmented question answering over knowledge sources.

The orchestrator streams relevance, rewrite, retrieval and answer
progress to a push channel; the modules below hold the individual
pipeline stages.
"""

from __future__ import annotations

__all__ = [
    "channel",
    "config",
    "constants",
    "coverage",
    "embeddings",
    "logger",
    "models",
    "orchestrator",
    "providers",
    "query_understanding",
    "retrieval",
    "snapshot",
    "streaming",
    "user_settings",
    "vector_store",
]  # pragma: no cover
