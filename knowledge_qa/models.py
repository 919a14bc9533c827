"""Shared data types for the RAG pipeline.

Evidence documents are llama_index ``NodeWithScore`` objects wrapping a
``TextNode``; the helpers here build them and read the metadata fields the
pipeline relies on (``source_id``, ``page``, ``file_name``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from llama_index.core.schema import NodeWithScore, TextNode


# =============================================================================
# Evidence documents
# =============================================================================

def make_evidence(
    doc_id: str,
    text: str,
    source_id: str,
    score: Optional[float] = None,
    page: Optional[int] = None,
    file_name: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> NodeWithScore:
    """Build an evidence document with the metadata keys used downstream."""
    metadata: Dict[str, Any] = dict(extra or {})
    metadata["source_id"] = source_id
    if page is not None:
        metadata["page"] = page
    if file_name:
        metadata["file_name"] = file_name
    return NodeWithScore(node=TextNode(id_=doc_id, text=text, metadata=metadata), score=score)


def doc_id(doc: NodeWithScore) -> str:
    return doc.node.node_id


def doc_text(doc: NodeWithScore) -> str:
    return doc.node.get_content() or ""


def doc_source_id(doc: NodeWithScore) -> str:
    return str(doc.node.metadata.get("source_id", ""))


def doc_page(doc: NodeWithScore) -> Optional[int]:
    return doc.node.metadata.get("page")


def doc_file_name(doc: NodeWithScore) -> Optional[str]:
    return doc.node.metadata.get("file_name")


def doc_score(doc: NodeWithScore) -> float:
    return float(doc.score) if doc.score is not None else 0.0


# =============================================================================
# Pipeline results
# =============================================================================

@dataclass(frozen=True)
class EmbeddingConfig:
    """Per-user embedding model settings."""

    api_key: Optional[str]
    model_id: str
    base_url: Optional[str] = None


@dataclass(frozen=True)
class RelevanceVerdict:
    relevant: bool
    max_score: float
    doc_count: int
    documents: List[NodeWithScore] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "RelevanceVerdict":
        return cls(relevant=False, max_score=0.0, doc_count=0, documents=[])


@dataclass(frozen=True)
class IntentResult:
    intent: str
    confidence: float


@dataclass
class ExpansionSet:
    queries: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "ExpansionSet":
        return cls()

    def is_empty(self) -> bool:
        return not self.queries and not self.keywords


@dataclass(frozen=True)
class CoverageReport:
    sentence_count: int
    covered_count: int
    ratio: float  # percentage, 0-100


@dataclass
class RagChatRequest:
    """One question against exactly one retrieval scope."""

    question: str
    dataset_ids: List[str] = field(default_factory=list)
    file_id: Optional[str] = None
    snapshot_id: Optional[str] = None
    max_results: int = 5
    min_score: float = 0.5
    enable_rerank: bool = True


__all__ = [
    "CoverageReport",
    "EmbeddingConfig",
    "ExpansionSet",
    "IntentResult",
    "RagChatRequest",
    "RelevanceVerdict",
    "doc_file_name",
    "doc_id",
    "doc_page",
    "doc_score",
    "doc_source_id",
    "doc_text",
    "make_evidence",
]
