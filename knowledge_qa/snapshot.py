"""Ranking for frozen knowledge snapshots that have no live index.

A snapshot is a JSON file under the snapshot directory holding the
document units captured when the knowledge source was installed::

    [{"id": "...", "source_id": "...", "file_name": "...", "page": 1, "content": "..."}]
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import List, Optional, Sequence

from llama_index.core.schema import NodeWithScore

from .embeddings import EmbeddingModelFactory, cosine_similarity
from .logger import LOGGER
from .models import EmbeddingConfig, doc_id, doc_text, make_evidence
from .retrieval import apply_diversity_limit


class SnapshotNotFoundError(Exception):
    """Raised when a snapshot id has no stored document file."""
    pass


class SnapshotRepository:
    """Loads snapshot document units from ``<snapshot_dir>/<id>.json``."""

    def __init__(self, snapshot_dir: Path) -> None:
        self.snapshot_dir = snapshot_dir

    def _path_for(self, snapshot_id: str) -> Path:
        # Ids are used as file names; refuse anything that could escape the directory
        if not snapshot_id or Path(snapshot_id).name != snapshot_id:
            raise SnapshotNotFoundError(f"Invalid snapshot id: {snapshot_id!r}")
        return self.snapshot_dir / f"{snapshot_id}.json"

    def load(self, snapshot_id: str) -> List[NodeWithScore]:
        path = self._path_for(snapshot_id)
        if not path.exists():
            raise SnapshotNotFoundError(f"Snapshot not found: {snapshot_id}")

        with open(path, "r", encoding="utf-8") as f:
            records = json.load(f)

        documents = [
            make_evidence(
                doc_id=str(record.get("id") or f"{snapshot_id}-{index}"),
                text=record.get("content") or "",
                source_id=str(record.get("source_id") or ""),
                page=record.get("page"),
                file_name=record.get("file_name"),
            )
            for index, record in enumerate(records or [])
        ]
        LOGGER.debug("Loaded snapshot %s: %d documents", snapshot_id, len(documents))
        return documents


class SnapshotRanker:
    """Score snapshot documents against one or more queries by embedding similarity."""

    def __init__(self, embedding_factory: EmbeddingModelFactory) -> None:
        self.embedding_factory = embedding_factory

    def rank(
        self,
        documents: Sequence[NodeWithScore],
        queries: Sequence[str],
        max_results: Optional[int],
        embedding_config: EmbeddingConfig,
    ) -> List[NodeWithScore]:
        """Rank ``documents`` by their best cosine similarity to any query.

        A document whose embedding fails scores 0. If the model or the query
        embeddings cannot be produced, the first ``max_results`` documents are
        returned unscored in their original order.
        """
        if not documents or not queries:
            return []

        try:
            embed_model = self.embedding_factory.get(embedding_config)
            query_embeddings = [
                embed_model.get_query_embedding(query)
                for query in queries
                if query and query.strip()
            ]
        except Exception as exc:
            LOGGER.error("Snapshot ranking failed: %s, returning unranked documents", exc)
            limit = len(documents) if max_results is None else min(max_results, len(documents))
            return list(documents)[:limit]

        if not query_embeddings:
            return []

        scored: List[NodeWithScore] = []
        for doc in documents:
            try:
                doc_embedding = embed_model.get_text_embedding(doc_text(doc))
                best = 0.0
                for query_embedding in query_embeddings:
                    best = max(best, cosine_similarity(query_embedding, doc_embedding))
            except Exception as exc:
                LOGGER.warning("Snapshot embedding failed for %s: %s", doc_id(doc), exc)
                best = 0.0
            scored.append(NodeWithScore(node=doc.node, score=best))

        scored.sort(key=lambda d: -d.score)
        if max_results is not None:
            scored = scored[:max_results]
        return apply_diversity_limit(scored, max_results)


__all__ = ["SnapshotNotFoundError", "SnapshotRanker", "SnapshotRepository"]
