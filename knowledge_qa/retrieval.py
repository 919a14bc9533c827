"""Vector retrieval over live knowledge sources.

Three layers:

- ``QdrantDocumentRetriever``: one embedded query against the Qdrant
  collection, scoped to datasets (and optionally a single file), with
  optional Cohere rerank and neighbouring-chunk expansion.
- ``MultiQueryRetriever``: runs the primitive once per query, merges by
  document id keeping the best score and applies the per-source
  diversity cap.
- ``RelevanceGate``: a cheap single-query probe that decides whether the
  question is answerable from the sources at all.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

from llama_index.core.schema import NodeWithScore, TextNode
from qdrant_client import QdrantClient
from qdrant_client.models import FieldCondition, Filter, MatchAny, MatchValue

from .constants import (
    MAX_DOCS_PER_SOURCE,
    MULTI_QUERY_CANDIDATE_MULTIPLIER,
    RELEVANCE_CANDIDATE_MULTIPLIER,
    RELEVANCE_MAX_RESULTS,
    RELEVANCE_MIN_SCORE,
    RELEVANCE_THRESHOLD,
    RERANK_MODEL,
)
from .embeddings import EmbeddingModelFactory
from .logger import LOGGER
from .models import (
    EmbeddingConfig,
    ExpansionSet,
    RelevanceVerdict,
    doc_id,
    doc_score,
    doc_source_id,
    doc_text,
)

if TYPE_CHECKING:
    from .snapshot import SnapshotRanker


# Payload keys that are storage details rather than document metadata
_INTERNAL_PAYLOAD_KEYS = frozenset({
    "_node_content", "_node_type", "doc_id", "ref_doc_id", "document_id", "text",
})


def _extract_text_from_payload(payload: dict) -> str:
    """Chunk text, from ``text`` or a serialised llama_index node."""
    text = payload.get("text")
    if text:
        return text
    node_content = payload.get("_node_content")
    if node_content:
        try:
            return json.loads(node_content).get("text", "") or ""
        except (json.JSONDecodeError, TypeError, AttributeError):
            return ""
    return ""


def _point_to_node(point, score: Optional[float]) -> NodeWithScore:
    payload = point.payload or {}
    metadata = {k: v for k, v in payload.items() if k not in _INTERNAL_PAYLOAD_KEYS}
    node = TextNode(
        id_=str(payload.get("document_id") or point.id),
        text=_extract_text_from_payload(payload),
        metadata=metadata,
    )
    return NodeWithScore(node=node, score=score)


# =============================================================================
# Retrieval primitive
# =============================================================================

class QdrantDocumentRetriever:
    """Single-query vector search scoped to datasets or one file."""

    def __init__(
        self,
        qdrant_client: QdrantClient,
        collection_name: str,
        embedding_factory: EmbeddingModelFactory,
        cohere_client=None,
    ) -> None:
        self.qdrant_client = qdrant_client
        self.collection_name = collection_name
        self.embedding_factory = embedding_factory
        self._cohere_client = cohere_client

    # -----------------------------------------------------------------
    # Filter builders
    # -----------------------------------------------------------------

    @staticmethod
    def _build_scope_filter(source_ids: Sequence[str], file_id: Optional[str]) -> Filter:
        must: List = []
        if source_ids:
            if len(source_ids) == 1:
                must.append(FieldCondition(key="dataset_id", match=MatchValue(value=source_ids[0])))
            else:
                must.append(FieldCondition(key="dataset_id", match=MatchAny(any=list(source_ids))))
        if file_id:
            must.append(FieldCondition(key="source_id", match=MatchValue(value=file_id)))
        return Filter(must=must)

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    def retrieve(
        self,
        source_ids: Sequence[str],
        query: str,
        max_results: int,
        min_score: float,
        rerank: bool,
        candidate_multiplier: int,
        embedding_config: EmbeddingConfig,
        expand_context: bool = False,
        file_id: Optional[str] = None,
    ) -> List[NodeWithScore]:
        """Return up to ``max_results`` chunks scoring at least ``min_score``.

        Qdrant and embedding errors propagate.
        """
        if not query or not query.strip() or (not source_ids and not file_id):
            return []

        embed_model = self.embedding_factory.get(embedding_config)
        query_embedding = embed_model.get_query_embedding(query)
        limit = max(1, max_results * max(1, candidate_multiplier))

        result = self.qdrant_client.query_points(
            collection_name=self.collection_name,
            query=query_embedding,
            query_filter=self._build_scope_filter(source_ids, file_id),
            limit=limit,
            score_threshold=min_score,
            with_payload=True,
        )
        nodes = [_point_to_node(point, point.score) for point in result.points]
        LOGGER.info(
            "Vector search: %d candidates (datasets=%d, file=%s, limit=%d, min_score=%.2f)",
            len(nodes), len(source_ids), file_id or "-", limit, min_score,
        )

        if rerank and len(nodes) > 1:
            nodes = self._rerank(nodes, query)
        nodes = nodes[:max_results]

        if expand_context and nodes:
            nodes = self._expand_neighbours(nodes)
        return nodes

    # -----------------------------------------------------------------
    # Cohere reranking
    # -----------------------------------------------------------------

    def _rerank(self, nodes: List[NodeWithScore], query: str) -> List[NodeWithScore]:
        """Reorder via Cohere, keeping vector scores. Original order on failure."""
        if not self._cohere_client:
            return nodes

        try:
            rerank_response = self._cohere_client.rerank(
                model=RERANK_MODEL,
                query=query,
                documents=[node.node.get_content()[:1000] for node in nodes],
                top_n=len(nodes),
            )
            reordered = [nodes[r.index] for r in rerank_response.results]
            seen = {id(node) for node in reordered}
            reordered.extend(node for node in nodes if id(node) not in seen)
            return reordered
        except Exception as exc:
            LOGGER.warning("Cohere rerank failed: %s, using vector order", exc)
            return nodes

    # -----------------------------------------------------------------
    # Context expansion
    # -----------------------------------------------------------------

    def _expand_neighbours(self, nodes: List[NodeWithScore]) -> List[NodeWithScore]:
        """Append the chunks adjacent to each hit within the same file."""
        result = list(nodes)
        seen = {doc_id(node) for node in nodes}

        for node in nodes:
            chunk_index = node.node.metadata.get("chunk_index")
            source_id = doc_source_id(node)
            if chunk_index is None or not source_id:
                continue
            try:
                neighbours, _ = self.qdrant_client.scroll(
                    collection_name=self.collection_name,
                    scroll_filter=Filter(must=[
                        FieldCondition(key="source_id", match=MatchValue(value=source_id)),
                        FieldCondition(
                            key="chunk_index",
                            match=MatchAny(any=[int(chunk_index) - 1, int(chunk_index) + 1]),
                        ),
                    ]),
                    limit=2,
                    with_payload=True,
                )
            except Exception as exc:
                LOGGER.warning("Neighbour expansion failed for %s: %s", doc_id(node), exc)
                continue

            for point in neighbours:
                neighbour = _point_to_node(point, node.score)
                if doc_id(neighbour) in seen:
                    continue
                seen.add(doc_id(neighbour))
                result.append(neighbour)

        LOGGER.debug("Neighbour expansion: %d -> %d chunks", len(nodes), len(result))
        return result


# =============================================================================
# Multi-query merge
# =============================================================================

def build_query_list(original: str, rewritten: Optional[str], expansion: Optional[ExpansionSet]) -> List[str]:
    """Ordered, de-duplicated queries for multi-query retrieval."""
    queries = [original]
    if rewritten and rewritten.strip() and rewritten != original:
        queries.append(rewritten)
    if expansion is not None:
        for query in expansion.queries:
            if query and query not in queries:
                queries.append(query)
        if expansion.keywords:
            keyword_query = " ".join(expansion.keywords)
            if keyword_query not in queries:
                queries.append(keyword_query)
    return queries


def merge_by_max_score(result_sets: Sequence[Sequence[NodeWithScore]]) -> List[NodeWithScore]:
    """Merge by document id keeping each document's best score.

    Output is sorted by score descending; equal scores keep first-seen order.
    """
    merged: Dict[str, NodeWithScore] = {}
    for docs in result_sets:
        for doc in docs:
            key = doc_id(doc)
            existing = merged.get(key)
            if existing is None:
                merged[key] = NodeWithScore(node=doc.node, score=doc_score(doc))
            elif doc_score(doc) > doc_score(existing):
                existing.score = doc_score(doc)
    return sorted(merged.values(), key=lambda d: -doc_score(d))


def apply_diversity_limit(
    documents: Sequence[NodeWithScore],
    max_results: Optional[int],
    per_source: int = MAX_DOCS_PER_SOURCE,
) -> List[NodeWithScore]:
    """Admit documents in order, at most ``per_source`` per source id."""
    limit = max_results if max_results is not None else len(documents)
    per_source_count: Dict[str, int] = {}
    result: List[NodeWithScore] = []
    for doc in documents:
        if len(result) >= limit:
            break
        source_id = doc_source_id(doc)
        count = per_source_count.get(source_id, 0)
        if count >= per_source:
            continue
        result.append(doc)
        per_source_count[source_id] = count + 1
    return result


class MultiQueryRetriever:
    """Fan a query list out over the retrieval primitive and merge."""

    def __init__(self, primitive: QdrantDocumentRetriever) -> None:
        self.primitive = primitive

    def retrieve(
        self,
        source_ids: Sequence[str],
        queries: Sequence[str],
        max_results: int,
        min_score: float,
        rerank: bool,
        embedding_config: EmbeddingConfig,
    ) -> List[NodeWithScore]:
        if not queries:
            return []

        result_sets = []
        for query in queries:
            docs = self.primitive.retrieve(
                source_ids,
                query,
                max_results,
                min_score,
                rerank,
                MULTI_QUERY_CANDIDATE_MULTIPLIER,
                embedding_config,
                expand_context=False,
            )
            LOGGER.debug("MultiQuery: '%s' -> %d docs", query[:60], len(docs))
            result_sets.append(docs)

        merged = merge_by_max_score(result_sets)
        limited = apply_diversity_limit(merged, max_results)
        LOGGER.info(
            "MultiQuery: %d queries, %d unique docs, %d after diversity limit",
            len(queries), len(merged), len(limited),
        )
        return limited


# =============================================================================
# Relevance gate
# =============================================================================

class RelevanceGate:
    """Decide whether the sources can plausibly answer the question."""

    def __init__(self, primitive: QdrantDocumentRetriever, snapshot_ranker: Optional["SnapshotRanker"] = None) -> None:
        self.primitive = primitive
        self.snapshot_ranker = snapshot_ranker

    @staticmethod
    def verdict_from(documents: List[NodeWithScore]) -> RelevanceVerdict:
        if not documents:
            return RelevanceVerdict.empty()
        max_score = max(doc_score(doc) for doc in documents)
        return RelevanceVerdict(
            relevant=max_score >= RELEVANCE_THRESHOLD,
            max_score=max_score,
            doc_count=len(documents),
            documents=documents,
        )

    def check(
        self,
        source_ids: Sequence[str],
        question: str,
        embedding_config: EmbeddingConfig,
        file_id: Optional[str] = None,
    ) -> RelevanceVerdict:
        if not source_ids and not file_id:
            return RelevanceVerdict.empty()
        try:
            documents = self.primitive.retrieve(
                source_ids,
                question,
                RELEVANCE_MAX_RESULTS,
                RELEVANCE_MIN_SCORE,
                False,
                RELEVANCE_CANDIDATE_MULTIPLIER,
                embedding_config,
                file_id=file_id,
            )
        except Exception as exc:
            LOGGER.warning("Relevance check failed: %s, treating as irrelevant", exc)
            return RelevanceVerdict.empty()

        verdict = self.verdict_from(documents)
        LOGGER.info(
            "RelevanceGate: relevant=%s max_score=%.3f docs=%d",
            verdict.relevant, verdict.max_score, verdict.doc_count,
        )
        return verdict

    def check_snapshot(
        self,
        documents: Sequence[NodeWithScore],
        question: str,
        embedding_config: EmbeddingConfig,
    ) -> RelevanceVerdict:
        if not documents or self.snapshot_ranker is None:
            return RelevanceVerdict.empty()
        try:
            ranked = self.snapshot_ranker.rank(documents, [question], RELEVANCE_MAX_RESULTS, embedding_config)
        except Exception as exc:
            LOGGER.warning("Snapshot relevance check failed: %s, treating as irrelevant", exc)
            return RelevanceVerdict.empty()
        return self.verdict_from(ranked)


def document_preview(doc: NodeWithScore, limit: int) -> str:
    """Whitespace-collapsed document text, truncated with an ellipsis."""
    cleaned = " ".join(doc_text(doc).split())
    if len(cleaned) > limit:
        return cleaned[:limit] + "..."
    return cleaned


__all__ = [
    "MultiQueryRetriever",
    "QdrantDocumentRetriever",
    "RelevanceGate",
    "apply_diversity_limit",
    "build_query_list",
    "document_preview",
    "merge_by_max_score",
]
