"""Intent classification, rewriting, expansion and reply parsing."""

import json

import pytest

from knowledge_qa.query_understanding import (
    QueryUnderstanding,
    SessionPurpose,
    build_rewrite_context,
    parse_json_object,
)
from tests.fixtures.fakes import doc


@pytest.fixture
def understanding(settings, selector):
    return QueryUnderstanding(settings, selector)


# --- parse_json_object ---

def test_parse_strict_object():
    result = parse_json_object('{"intent": "howto", "confidence": 0.5}')
    assert result.ok
    assert result.value == {"intent": "howto", "confidence": 0.5}


def test_parse_embedded_object_in_prose():
    result = parse_json_object('Sure! ```json\n{"intent": "lookup"}\n``` hope that helps')
    assert result.ok
    assert result.value["intent"] == "lookup"


@pytest.mark.parametrize("raw", [None, "", "   ", "no json here", "[1, 2]", "{broken", "} {"])
def test_parse_failures_are_reported_not_raised(raw):
    result = parse_json_object(raw)
    assert result.ok is False
    assert result.value is None
    assert result.error


# --- session keys ---

def test_session_keys_per_purpose():
    assert SessionPurpose.INTENT.key_for("u1") == "rag-intent-u1"
    assert SessionPurpose.REWRITE.key_for("u1") == "rag-rewrite-u1"
    assert SessionPurpose.EXPAND.key_for("u1") == "rag-expand-u1"
    assert SessionPurpose.ANSWER.key_for("u1") == "rag-session-u1"


# --- rewrite context ---

def test_rewrite_context_uses_two_truncated_documents():
    docs = [doc("a", "s", text="x" * 300), doc("b", "s", text="short"), doc("c", "s", text="ignored")]
    context = build_rewrite_context(docs)
    assert context == "- " + "x" * 240 + "...\n- short\n"


def test_rewrite_context_without_documents():
    assert build_rewrite_context([]) == "No relevant snippets."


# --- classify_intent ---

def test_classify_intent_parses_reply(understanding, provider):
    provider.replies = ['{"intent": "Comparison", "confidence": 0.83}']

    result = understanding.classify_intent("A vs B?", "u1")

    assert (result.intent, result.confidence) == ("comparison", 0.83)
    messages = provider.chat_calls[0]
    assert messages[0].role == "system"
    assert messages[1].content == "A vs B?"


def test_classify_intent_unknown_label_and_clamped_confidence(understanding, provider):
    provider.replies = ['{"intent": "poetry", "confidence": 7}']
    result = understanding.classify_intent("q", "u1")
    assert (result.intent, result.confidence) == ("other", 1.0)


def test_classify_intent_provider_failure_falls_back(understanding, provider, selector):
    provider.chat_error = RuntimeError("503")

    result = understanding.classify_intent("q", "u1")

    assert (result.intent, result.confidence) == ("other", 0.0)
    assert selector.health_of("primary:main-model").consecutive_failures == 1


def test_classify_intent_unparseable_reply_falls_back(understanding, provider):
    provider.replies = ["I think it's a how-to question"]
    assert understanding.classify_intent("q", "u1").intent == "other"


def test_no_default_model_never_calls_provider(understanding, provider):
    assert understanding.classify_intent("q", "nomodel").intent == "other"
    assert understanding.rewrite_question("q", [], "nomodel") == "q"
    assert understanding.expand_queries("q", [], "nomodel").is_empty()
    assert provider.chat_calls == []


def test_successful_call_reports_success(understanding, provider, selector):
    provider.replies = ['{"intent": "howto", "confidence": 0.5}']
    understanding.classify_intent("q", "u1")
    health = selector.health_of("primary:main-model")
    assert health.total_calls == 1
    assert health.total_failures == 0


# --- rewrite_question ---

def test_rewrite_returns_rewritten_question(understanding, provider):
    provider.replies = [json.dumps({"originalQuestion": "q", "rewrittenQuestion": "  better q  "})]
    docs = [doc("d1", "s", text="snippet")]

    assert understanding.rewrite_question("q", docs, "u1") == "better q"
    user_message = provider.chat_calls[0][1].content
    assert "q" in user_message
    assert "- snippet" in user_message


@pytest.mark.parametrize("reply", [
    '{"originalQuestion": "q", "rewrittenQuestion": ""}',
    '{"originalQuestion": "q"}',
    '{"rewrittenQuestion": 42}',
    "not json",
])
def test_rewrite_falls_back_to_original(understanding, provider, reply):
    provider.replies = [reply]
    assert understanding.rewrite_question("q", [], "u1") == "q"


# --- expand_queries ---

def test_expansion_dedups_and_caps(understanding, provider):
    provider.replies = [json.dumps({
        "queries": ["q", "rq", "alt 1", "alt 1", "alt 2", "alt 3", "alt 4", "alt 5"],
        "keywords": ["k1", "", "k2", "k3", "k4", "k5", "k6", "k7"],
    })]

    expansion = understanding.expand_queries("q", [], "u1", rewritten="rq")

    assert expansion.queries == ["alt 1", "alt 2", "alt 3", "alt 4"]
    assert expansion.keywords == ["k1", "k2", "k3", "k4", "k5", "k6"]


def test_expansion_failure_is_empty(understanding, provider):
    provider.replies = ['{"queries": "not a list"}']
    expansion = understanding.expand_queries("q", [], "u1")
    assert expansion.queries == []
    assert expansion.keywords == []


def test_expansion_selection_failure_is_empty(settings, registry):
    from knowledge_qa.providers import HighAvailabilitySelector

    tripped = HighAvailabilitySelector(settings, registry, failure_threshold=1, cooldown_seconds=60)
    for instance in ("primary:main-model", "backup:main-model", "primary:lite-model"):
        tripped.report_outcome(instance, "m", False, 10, "down")

    assert QueryUnderstanding(settings, tripped).expand_queries("q", [], "u1").is_empty()
