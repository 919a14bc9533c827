"""LLM-backed question analysis: intent, rewrite and query expansion.

Every operation degrades to a fixed fallback (``other``/0.0, the original
question, an empty expansion set) when the user has no default model, the
provider cannot be selected, the call fails or the reply cannot be parsed.
"""

from __future__ import annotations

import json
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from llama_index.core.schema import NodeWithScore

from .constants import (
    EXPANSION_MAX_KEYWORDS,
    EXPANSION_MAX_QUERIES,
    EXPANSION_SYSTEM_PROMPT,
    FALLBACK_INTENT,
    INTENT_LABELS,
    INTENT_SYSTEM_PROMPT,
    MSG_NO_SNIPPETS,
    REWRITE_CONTEXT_MAX_CHARS,
    REWRITE_CONTEXT_MAX_DOCS,
    REWRITE_SYSTEM_PROMPT,
)
from .logger import LOGGER
from .models import ExpansionSet, IntentResult, doc_text
from .providers import ChatMessage, HighAvailabilitySelector
from .user_settings import SettingsStore


class SessionPurpose(str, Enum):
    """Purpose tag used to build provider-affinity session keys."""

    INTENT = "rag-intent"
    REWRITE = "rag-rewrite"
    EXPAND = "rag-expand"
    ANSWER = "rag-session"

    def key_for(self, user_id: str) -> str:
        return f"{self.value}-{user_id}"


# =============================================================================
# JSON parsing
# =============================================================================

@dataclass(frozen=True)
class JsonParseResult:
    ok: bool
    value: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


def _as_object(text: str) -> JsonParseResult:
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        return JsonParseResult(ok=False, error=str(exc))
    if not isinstance(value, dict):
        return JsonParseResult(ok=False, error=f"expected a JSON object, got {type(value).__name__}")
    return JsonParseResult(ok=True, value=value)


def parse_json_object(raw: Optional[str]) -> JsonParseResult:
    """Parse a model reply as a JSON object.

    Tries the whole text first, then the span between the first ``{`` and
    the last ``}`` to tolerate prose or code fences around the object.
    """
    if raw is None or not raw.strip():
        return JsonParseResult(ok=False, error="empty reply")

    text = raw.strip()
    strict = _as_object(text)
    if strict.ok:
        return strict

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return JsonParseResult(ok=False, error=strict.error)
    return _as_object(text[start:end + 1])


def _string_list(value: Any, limit: Optional[int] = None) -> List[str]:
    if not isinstance(value, list):
        return []
    items = [str(item).strip() for item in value if item is not None]
    items = [item for item in items if item]
    return items[:limit] if limit is not None else items


# =============================================================================
# Context helpers
# =============================================================================

def build_rewrite_context(documents: Sequence[NodeWithScore]) -> str:
    """Bullet list of the top snippets, each truncated for the prompt."""
    if not documents:
        return MSG_NO_SNIPPETS

    lines = []
    for doc in list(documents)[:REWRITE_CONTEXT_MAX_DOCS]:
        content = doc_text(doc)
        if len(content) > REWRITE_CONTEXT_MAX_CHARS:
            content = content[:REWRITE_CONTEXT_MAX_CHARS] + "..."
        lines.append(f"- {content}\n")
    return "".join(lines)


def _question_with_context(question: str, context: str) -> str:
    return f"User question:\n{question}\n\nKnowledge-base snippets:\n{context}"


# =============================================================================
# QueryUnderstanding
# =============================================================================

class QueryUnderstanding:
    """Intent classification, question rewriting and query expansion."""

    def __init__(self, settings: SettingsStore, selector: HighAvailabilitySelector) -> None:
        self._settings = settings
        self._selector = selector

    def _ask(self, purpose: SessionPurpose, user_id: str, messages: List[ChatMessage]) -> Optional[str]:
        """Send one chat request for ``purpose``; None when no model is configured.

        Selection and provider failures propagate to the caller, which
        applies its own fallback.
        """
        model = self._settings.get_default_model(user_id)
        if model is None:
            LOGGER.debug("QueryUnderstanding: no default model for %s, skipping %s", user_id, purpose.value)
            return None

        selection = self._selector.select_provider(
            model,
            user_id,
            purpose.key_for(user_id),
            self._settings.get_fallback_chain(user_id),
        )
        started = time.monotonic()
        try:
            reply = selection.provider.chat(messages, selection.model)
        except Exception as exc:
            self._selector.report_outcome(
                selection.instance_id,
                selection.model.model_id,
                False,
                (time.monotonic() - started) * 1000,
                str(exc),
            )
            raise
        self._selector.report_outcome(
            selection.instance_id,
            selection.model.model_id,
            True,
            (time.monotonic() - started) * 1000,
        )
        return reply

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    def classify_intent(self, question: str, user_id: str) -> IntentResult:
        fallback = IntentResult(FALLBACK_INTENT, 0.0)
        try:
            reply = self._ask(
                SessionPurpose.INTENT,
                user_id,
                [ChatMessage.system(INTENT_SYSTEM_PROMPT), ChatMessage.user(question)],
            )
        except Exception as exc:
            LOGGER.warning("Intent classification failed: %s, using fallback", exc)
            return fallback
        if reply is None:
            return fallback

        parsed = parse_json_object(reply)
        if not parsed.ok:
            LOGGER.warning("Intent reply unparseable (%s): %.200s", parsed.error, reply)
            return fallback

        intent = str(parsed.value.get("intent") or "").strip().lower()
        if intent not in INTENT_LABELS:
            intent = FALLBACK_INTENT
        try:
            confidence = float(parsed.value.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0
        if not math.isfinite(confidence):
            confidence = 0.0
        confidence = max(0.0, min(1.0, confidence))

        LOGGER.info("QueryUnderstanding: intent=%s confidence=%.2f", intent, confidence)
        return IntentResult(intent, confidence)

    def rewrite_question(self, question: str, context_docs: Sequence[NodeWithScore], user_id: str) -> str:
        try:
            reply = self._ask(
                SessionPurpose.REWRITE,
                user_id,
                [
                    ChatMessage.system(REWRITE_SYSTEM_PROMPT),
                    ChatMessage.user(_question_with_context(question, build_rewrite_context(context_docs))),
                ],
            )
        except Exception as exc:
            LOGGER.warning("Question rewrite failed: %s, keeping original", exc)
            return question
        if reply is None:
            return question

        parsed = parse_json_object(reply)
        if not parsed.ok:
            LOGGER.warning("Rewrite reply unparseable (%s): %.200s", parsed.error, reply)
            return question

        rewritten = parsed.value.get("rewrittenQuestion")
        if not isinstance(rewritten, str) or not rewritten.strip():
            return question

        rewritten = rewritten.strip()
        LOGGER.info("QueryUnderstanding: rewrote '%s' -> '%s'", question[:80], rewritten[:80])
        return rewritten

    def expand_queries(
        self,
        question: str,
        context_docs: Sequence[NodeWithScore],
        user_id: str,
        rewritten: Optional[str] = None,
    ) -> ExpansionSet:
        try:
            reply = self._ask(
                SessionPurpose.EXPAND,
                user_id,
                [
                    ChatMessage.system(EXPANSION_SYSTEM_PROMPT),
                    ChatMessage.user(_question_with_context(question, build_rewrite_context(context_docs))),
                ],
            )
        except Exception as exc:
            LOGGER.warning("Query expansion failed: %s, skipping expansion", exc)
            return ExpansionSet.empty()
        if reply is None:
            return ExpansionSet.empty()

        parsed = parse_json_object(reply)
        if not parsed.ok:
            LOGGER.warning("Expansion reply unparseable (%s): %.200s", parsed.error, reply)
            return ExpansionSet.empty()

        excluded = {question.strip()}
        if rewritten:
            excluded.add(rewritten.strip())

        queries: List[str] = []
        for query in _string_list(parsed.value.get("queries")):
            if query in excluded or query in queries:
                continue
            queries.append(query)
        keywords: List[str] = []
        for keyword in _string_list(parsed.value.get("keywords"), EXPANSION_MAX_KEYWORDS):
            if keyword not in keywords:
                keywords.append(keyword)

        expansion = ExpansionSet(queries=queries[:EXPANSION_MAX_QUERIES], keywords=keywords)
        LOGGER.info(
            "QueryUnderstanding: expansion queries=%d keywords=%d",
            len(expansion.queries), len(expansion.keywords),
        )
        return expansion


__all__ = [
    "JsonParseResult",
    "QueryUnderstanding",
    "SessionPurpose",
    "build_rewrite_context",
    "parse_json_object",
]
