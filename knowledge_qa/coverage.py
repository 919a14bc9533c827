"""Post-hoc scoring of how well an answer is backed by its evidence."""

from __future__ import annotations

import re
from typing import List, Optional, Sequence

from llama_index.core.schema import NodeWithScore

from .channel import ChatEvent, EventChannel, Stage
from .constants import (
    COVERAGE_MAX_DOCS,
    COVERAGE_SIMILARITY_THRESHOLD,
    MSG_COVERAGE_TITLE,
    SENTENCE_DELIMITERS,
)
from .embeddings import EmbeddingModelFactory, cosine_similarity
from .logger import LOGGER
from .models import CoverageReport, EmbeddingConfig, doc_id, doc_text

_SENTENCE_SPLIT = re.compile("[" + re.escape(SENTENCE_DELIMITERS) + "]")


def split_sentences(answer: str) -> List[str]:
    """Split on CJK and ASCII sentence terminators and newlines, dropping blanks."""
    return [part.strip() for part in _SENTENCE_SPLIT.split(answer or "") if part.strip()]


def format_coverage_summary(report: CoverageReport) -> str:
    return (
        f"### {MSG_COVERAGE_TITLE}\n"
        f"- Sentences: {report.sentence_count}\n"
        f"- Coverage: {report.ratio:.0f}%"
    )


class EvidenceCoverageScorer:
    """Fraction of answer sentences that closely match some evidence document."""

    def __init__(
        self,
        embedding_factory: EmbeddingModelFactory,
        threshold: float = COVERAGE_SIMILARITY_THRESHOLD,
        max_docs: int = COVERAGE_MAX_DOCS,
    ) -> None:
        self.embedding_factory = embedding_factory
        self.threshold = threshold
        self.max_docs = max_docs

    def score(
        self,
        answer: Optional[str],
        documents: Sequence[NodeWithScore],
        embedding_config: EmbeddingConfig,
        channel: Optional[EventChannel] = None,
    ) -> Optional[CoverageReport]:
        """Score ``answer`` and, when a channel is given, emit the summary.

        Returns None when there is nothing to score or embedding fails.
        """
        if not answer or not answer.strip() or not documents:
            return None

        try:
            embed_model = self.embedding_factory.get(embedding_config)

            doc_embeddings = []
            for doc in list(documents)[: self.max_docs]:
                text = doc_text(doc)
                if not text.strip():
                    continue
                try:
                    doc_embeddings.append(embed_model.get_text_embedding(text))
                except Exception as exc:
                    LOGGER.warning("Coverage: embedding failed for %s: %s", doc_id(doc), exc)
            if not doc_embeddings:
                return None

            sentences = split_sentences(answer)
            covered = 0
            for sentence in sentences:
                sentence_embedding = embed_model.get_text_embedding(sentence)
                best = max(cosine_similarity(sentence_embedding, emb) for emb in doc_embeddings)
                if best >= self.threshold:
                    covered += 1
        except Exception as exc:
            LOGGER.warning("Evidence coverage failed: %s, skipping", exc)
            return None

        total = len(sentences)
        if total == 0:
            return None

        report = CoverageReport(
            sentence_count=total,
            covered_count=covered,
            ratio=covered * 100.0 / total,
        )
        LOGGER.info("Evidence coverage: %d/%d sentences (%.0f%%)", covered, total, report.ratio)

        if channel is not None:
            channel.send(ChatEvent(MSG_COVERAGE_TITLE, Stage.THINKING_PROGRESS))
            channel.send(ChatEvent(format_coverage_summary(report), Stage.THINKING_PROGRESS))
        return report


__all__ = ["EvidenceCoverageScorer", "format_coverage_summary", "split_sentences"]
