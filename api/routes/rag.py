"""RAG endpoints: streamed chat over knowledge sources and plain search."""

from __future__ import annotations

import json
import logging
from typing import Any, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, model_validator
from starlette.responses import StreamingResponse

from api.dependencies import get_current_user, get_orchestrator
from knowledge_qa.channel import EventChannel
from knowledge_qa.constants import DEFAULT_MAX_RESULTS, DEFAULT_MIN_SCORE, MSG_NO_SCOPE
from knowledge_qa.models import RagChatRequest
from knowledge_qa.orchestrator import RagOrchestrator, build_evidence_payload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/rag", tags=["rag"])


# --- Request / Response Models ---

class ChatStreamRequest(BaseModel):
    question: str = Field(..., min_length=1, max_length=4000)
    dataset_ids: List[str] = Field(default_factory=list)
    file_id: Optional[str] = None
    snapshot_id: Optional[str] = Field(
        default=None,
        description="Installed snapshot to answer from when the source has no live index.",
    )
    max_results: int = Field(default=DEFAULT_MAX_RESULTS, ge=1, le=50)
    min_score: float = Field(default=DEFAULT_MIN_SCORE, ge=0.0, le=1.0)
    enable_rerank: bool = True

    @model_validator(mode="after")
    def _require_scope(self) -> "ChatStreamRequest":
        if not (self.file_id or self.dataset_ids or self.snapshot_id):
            raise ValueError(MSG_NO_SCOPE)
        return self

    def to_domain(self) -> RagChatRequest:
        return RagChatRequest(
            question=self.question,
            dataset_ids=list(self.dataset_ids),
            file_id=self.file_id,
            snapshot_id=self.snapshot_id,
            max_results=self.max_results,
            min_score=self.min_score,
            enable_rerank=self.enable_rerank,
        )


class SearchRequest(BaseModel):
    question: str = Field(..., min_length=1, max_length=4000)
    dataset_ids: List[str] = Field(..., min_length=1)
    max_results: int = Field(default=15, ge=1, le=100)
    min_score: float = Field(default=0.7, ge=0.0, le=1.0)
    enable_rerank: bool = True
    candidate_multiplier: int = Field(default=2, ge=1, le=10)
    enable_query_expansion: bool = Field(
        default=False,
        description="Append neighbouring chunks of each hit.",
    )


class EvidenceInfo(BaseModel):
    fileId: str
    fileName: str
    documentId: str
    score: float
    page: Optional[int] = None
    snippet: str = ""


# --- Helpers ---

def _sse_event(event: str, data: Any) -> str:
    """Format a Server-Sent Event.

    Returns:
        SSE-formatted string: "event: {type}\ndata: {json}\n\n"
    """
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def _stream_channel(channel: EventChannel):
    """Relay channel events as SSE frames; abort the run if the client leaves."""
    try:
        for event in channel.events():
            yield _sse_event(event.stage.value, event.to_dict())
    finally:
        if not channel.completed:
            channel.fail(ConnectionError("client disconnected"))


# --- Endpoints ---

@router.post("/chat/stream")
def rag_chat_stream(
    request: ChatStreamRequest,
    user_id: str = Depends(get_current_user),
    orchestrator: RagOrchestrator = Depends(get_orchestrator),
):
    """Answer a question against datasets, a file or a snapshot as SSE.

    Event types follow the run stages: retrieval_*, thinking_*, answer_*,
    plus error and timeout. Every frame's data is the JSON event
    ``{content, stage, payload, done}``.
    """
    logger.info("API rag stream: user=%s question='%s'", user_id, request.question[:80])
    channel = orchestrator.start_chat(request.to_domain(), user_id)
    return StreamingResponse(
        _stream_channel(channel),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",  # Disable nginx buffering if proxied
        },
    )


@router.post("/search", response_model=List[EvidenceInfo])
def rag_search(
    request: SearchRequest,
    user_id: str = Depends(get_current_user),
    orchestrator: RagOrchestrator = Depends(get_orchestrator),
):
    """Single-query retrieval over datasets without answer generation."""
    embedding_config = orchestrator.settings.get_embedding_config(user_id)
    documents = orchestrator.primitive.retrieve(
        request.dataset_ids,
        request.question,
        request.max_results,
        request.min_score,
        request.enable_rerank,
        request.candidate_multiplier,
        embedding_config,
        expand_context=request.enable_query_expansion,
    )
    logger.info("API rag search: user=%s results=%d", user_id, len(documents))
    return build_evidence_payload(documents)
