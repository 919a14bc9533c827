"""End-to-end RAG chat run: gate, understand, retrieve, answer, score.

``RagOrchestrator.start_chat`` hands back an ``EventChannel`` at once and
runs the pipeline on a worker thread::

    retrieval_start -> retrieval_progress
      -> thinking_start -> thinking_progress (analysis summary) -> thinking_end
      -> retrieval_end (evidence payload)
      -> answer_start -> [model reasoning] -> answer_progress*
      -> [coverage] -> answer_end
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from llama_index.core.schema import NodeWithScore

from .channel import ChatEvent, EventChannel, Stage
from .constants import (
    FILE_SCOPE_CANDIDATE_MULTIPLIER,
    FILE_SCOPE_MIN_SCORE,
    MSG_ANALYSIS_DONE,
    MSG_ANALYSIS_TITLE,
    MSG_ANSWER_END,
    MSG_ANSWER_START,
    MSG_NO_DOCUMENTS,
    MSG_NO_SCOPE,
    MSG_RETRIEVAL_DATASETS,
    MSG_RETRIEVAL_DONE,
    MSG_RETRIEVAL_FILE,
    MSG_RETRIEVAL_SNAPSHOT,
    MSG_RETRIEVAL_START,
    RAG_PROMPT_TEMPLATE,
    RELEVANCE_THRESHOLD,
    SNIPPET_MAX_CHARS,
    UNKNOWN_FILE_NAME,
)
from .coverage import EvidenceCoverageScorer
from .logger import LOGGER
from .models import (
    EmbeddingConfig,
    ExpansionSet,
    IntentResult,
    RagChatRequest,
    RelevanceVerdict,
    doc_file_name,
    doc_id,
    doc_page,
    doc_score,
    doc_source_id,
    doc_text,
)
from .query_understanding import QueryUnderstanding
from .retrieval import (
    MultiQueryRetriever,
    QdrantDocumentRetriever,
    RelevanceGate,
    build_query_list,
    document_preview,
)
from .snapshot import SnapshotRanker, SnapshotRepository
from .streaming import StreamingAnswerGenerator
from .user_settings import SettingsStore


# =============================================================================
# Formatting helpers
# =============================================================================

def build_context(documents: List[NodeWithScore]) -> str:
    """Numbered document fragments for the answer prompt."""
    if not documents:
        return MSG_NO_DOCUMENTS

    parts = ["The following are relevant document fragments:\n\n"]
    for index, doc in enumerate(documents, start=1):
        parts.append(f"Document fragment {index}:\n")
        parts.append(doc_text(doc))
        parts.append("\n\n")
    return "".join(parts)


def build_rag_prompt(question: str, context: str) -> str:
    return RAG_PROMPT_TEMPLATE.format(context=context, question=question)


def build_evidence_payload(documents: List[NodeWithScore]) -> List[Dict[str, Any]]:
    """Serializable evidence list sent with ``retrieval_end``."""
    return [
        {
            "fileId": doc_source_id(doc),
            "fileName": doc_file_name(doc) or UNKNOWN_FILE_NAME,
            "documentId": doc_id(doc),
            "score": doc_score(doc),
            "page": doc_page(doc),
            "snippet": document_preview(doc, SNIPPET_MAX_CHARS),
        }
        for doc in documents
    ]


def describe_query_strategy(original: str, effective: str, rewritten: bool, expansion: ExpansionSet) -> str:
    used = effective if rewritten else original
    if not expansion.queries:
        return f"- Query mode: single query\n- Question used: {used}"

    lines = [
        f"- Query mode: multi-query ({len(expansion.queries) + 1} queries)",
        f"- Question used: {used}",
        f"- Expansion queries: {'；'.join(expansion.queries)}",
    ]
    if expansion.keywords:
        lines.append(f"- Keywords: {' / '.join(expansion.keywords)}")
    return "\n".join(lines)


def build_analysis_summary(
    intent: IntentResult,
    original: str,
    effective: str,
    relevance: RelevanceVerdict,
    expansion: ExpansionSet,
) -> str:
    rewritten = relevance.relevant
    return (
        "### Relevance\n"
        f"- Result: {'relevant' if relevance.relevant else 'not relevant'}\n"
        f"- Max similarity: {relevance.max_score:.2f} (threshold {RELEVANCE_THRESHOLD:.2f})\n"
        f"- Recalled: {relevance.doc_count}\n\n"
        "### Intent\n"
        f"- Intent: {intent.intent or 'unknown'}\n"
        f"- Confidence: {intent.confidence:.2f}\n\n"
        "### Rewrite\n"
        f"- Rewritten: {'yes' if rewritten else 'no'}\n"
        f"- Original: {original}\n"
        f"- Rewrite: {effective}\n\n"
        "### Retrieval strategy\n"
        f"{describe_query_strategy(original, effective, rewritten, expansion)}"
    )


# =============================================================================
# Run state
# =============================================================================

@dataclass
class RunContext:
    """Mutable state for one pipeline run."""

    request: RagChatRequest
    user_id: str
    embedding_config: EmbeddingConfig
    snapshot_documents: List[NodeWithScore] = field(default_factory=list)
    intent: IntentResult = field(default_factory=lambda: IntentResult("other", 0.0))
    relevance: RelevanceVerdict = field(default_factory=RelevanceVerdict.empty)
    effective_question: str = ""
    expansion: ExpansionSet = field(default_factory=ExpansionSet.empty)
    evidence: List[NodeWithScore] = field(default_factory=list)
    answer: Optional[str] = None


# =============================================================================
# RagOrchestrator
# =============================================================================

class RagOrchestrator:
    """Coordinates one RAG chat run per request."""

    def __init__(
        self,
        settings: SettingsStore,
        primitive: QdrantDocumentRetriever,
        understanding: QueryUnderstanding,
        snapshot_ranker: SnapshotRanker,
        snapshots: SnapshotRepository,
        generator: StreamingAnswerGenerator,
        coverage: EvidenceCoverageScorer,
        executor: ThreadPoolExecutor,
        channel_timeout_seconds: Optional[float] = None,
    ) -> None:
        self.settings = settings
        self.primitive = primitive
        self.multi_query = MultiQueryRetriever(primitive)
        self.gate = RelevanceGate(primitive, snapshot_ranker)
        self.understanding = understanding
        self.snapshot_ranker = snapshot_ranker
        self.snapshots = snapshots
        self.generator = generator
        self.coverage = coverage
        self.executor = executor
        self.channel_timeout_seconds = channel_timeout_seconds

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    def start_chat(self, request: RagChatRequest, user_id: str) -> EventChannel:
        """Start a run in the background and return its event channel."""
        channel = EventChannel(timeout_seconds=self.channel_timeout_seconds)
        channel.on_complete(lambda: LOGGER.debug("RAG run for %s completed", user_id))
        channel.on_timeout(lambda: LOGGER.warning("RAG run for %s timed out", user_id))
        channel.on_error(lambda exc: LOGGER.warning("RAG run for %s aborted: %s", user_id, exc))
        self.executor.submit(self.run, request, user_id, channel)
        return channel

    def run(self, request: RagChatRequest, user_id: str, channel: EventChannel) -> None:
        """Execute the full pipeline; the channel is always completed."""
        with channel.run_scope():
            LOGGER.info(
                "RAG chat: user=%s datasets=%s file=%s snapshot=%s question='%s'",
                user_id, request.dataset_ids, request.file_id, request.snapshot_id, request.question[:80],
            )
            ctx = RunContext(
                request=request,
                user_id=user_id,
                embedding_config=self.settings.get_embedding_config(user_id),
                effective_question=request.question,
            )

            channel.send(ChatEvent(MSG_RETRIEVAL_START, Stage.RETRIEVAL_START))
            self._announce_scope(ctx, channel)

            self._analyze(ctx)
            channel.send(ChatEvent(MSG_ANALYSIS_TITLE, Stage.THINKING_START))
            channel.send(ChatEvent(
                build_analysis_summary(ctx.intent, request.question, ctx.effective_question, ctx.relevance, ctx.expansion),
                Stage.THINKING_PROGRESS,
            ))
            channel.send(ChatEvent(MSG_ANALYSIS_DONE, Stage.THINKING_END))

            ctx.evidence = self._retrieve(ctx)
            channel.send(ChatEvent(
                MSG_RETRIEVAL_DONE % len(ctx.evidence),
                Stage.RETRIEVAL_END,
                payload=build_evidence_payload(ctx.evidence),
            ))

            channel.send(ChatEvent(MSG_ANSWER_START, Stage.ANSWER_START))
            prompt = build_rag_prompt(ctx.effective_question, build_context(ctx.evidence))
            ctx.answer = self.generator.generate(prompt, user_id, channel)
            self.coverage.score(ctx.answer, ctx.evidence, ctx.embedding_config, channel)

            channel.send(ChatEvent(MSG_ANSWER_END, Stage.ANSWER_END, done=True))

    # -----------------------------------------------------------------
    # Pipeline steps
    # -----------------------------------------------------------------

    def _announce_scope(self, ctx: RunContext, channel: EventChannel) -> None:
        request = ctx.request
        if request.file_id:
            channel.send(ChatEvent(MSG_RETRIEVAL_FILE, Stage.RETRIEVAL_PROGRESS))
        elif request.dataset_ids:
            channel.send(ChatEvent(MSG_RETRIEVAL_DATASETS, Stage.RETRIEVAL_PROGRESS))
        elif request.snapshot_id:
            ctx.snapshot_documents = self.snapshots.load(request.snapshot_id)
            channel.send(ChatEvent(MSG_RETRIEVAL_SNAPSHOT, Stage.RETRIEVAL_PROGRESS))
        else:
            raise ValueError(MSG_NO_SCOPE)

    def _analyze(self, ctx: RunContext) -> None:
        """Intent, relevance gate and, when relevant, rewrite and expansion."""
        request = ctx.request
        ctx.intent = self.understanding.classify_intent(request.question, ctx.user_id)

        if request.file_id or request.dataset_ids:
            ctx.relevance = self.gate.check(
                request.dataset_ids, request.question, ctx.embedding_config, file_id=request.file_id,
            )
        else:
            ctx.relevance = self.gate.check_snapshot(ctx.snapshot_documents, request.question, ctx.embedding_config)

        if not ctx.relevance.relevant:
            return

        ctx.effective_question = self.understanding.rewrite_question(
            request.question, ctx.relevance.documents, ctx.user_id,
        )
        ctx.expansion = self.understanding.expand_queries(
            request.question, ctx.relevance.documents, ctx.user_id, rewritten=ctx.effective_question,
        )

    def _retrieve(self, ctx: RunContext) -> List[NodeWithScore]:
        request = ctx.request
        if request.file_id:
            return self.primitive.retrieve(
                request.dataset_ids,
                ctx.effective_question,
                request.max_results,
                FILE_SCOPE_MIN_SCORE,
                True,
                FILE_SCOPE_CANDIDATE_MULTIPLIER,
                ctx.embedding_config,
                expand_context=False,
                file_id=request.file_id,
            )

        queries = build_query_list(request.question, ctx.effective_question, ctx.expansion)
        if request.dataset_ids:
            return self.multi_query.retrieve(
                request.dataset_ids,
                queries,
                request.max_results,
                request.min_score,
                request.enable_rerank,
                ctx.embedding_config,
            )

        if not ctx.snapshot_documents:
            return []
        return self.snapshot_ranker.rank(ctx.snapshot_documents, queries, request.max_results, ctx.embedding_config)


__all__ = [
    "RagOrchestrator",
    "RunContext",
    "build_analysis_summary",
    "build_context",
    "build_evidence_payload",
    "build_rag_prompt",
]
