"""Evidence coverage scoring."""

import pytest

from knowledge_qa.channel import Stage
from knowledge_qa.coverage import EvidenceCoverageScorer, split_sentences
from knowledge_qa.embeddings import cosine_similarity
from tests.fixtures.fakes import EMBEDDING_CONFIG, FakeEmbedModel, FakeEmbeddingFactory, doc, drain


def test_split_sentences_on_mixed_terminators():
    answer = "First point。Second！Third? Fourth!\n\n  Fifth?"
    assert split_sentences(answer) == ["First point", "Second", "Third", "Fourth", "Fifth"]


def test_split_sentences_blank():
    assert split_sentences("  \n ?! ") == []


def _scorer(vectors, failing=()):
    model = FakeEmbedModel(vectors=vectors, default=[0.0, 1.0], failing=failing)
    return EvidenceCoverageScorer(FakeEmbeddingFactory(model)), model


def test_coverage_ratio_and_events(channel):
    scorer, _ = _scorer({
        "evidence": [1.0, 0.0],
        "Supported claim": [0.95, 0.05],
        "Made up": [0.0, 1.0],
    })

    report = scorer.score("Supported claim!\nMade up?", [doc("d", "s", text="evidence")], EMBEDDING_CONFIG, channel)

    assert (report.sentence_count, report.covered_count, report.ratio) == (2, 1, 50.0)
    events = drain(channel)
    assert [e.stage for e in events] == [Stage.THINKING_PROGRESS, Stage.THINKING_PROGRESS]
    assert events[0].content == "Evidence coverage"
    assert events[1].content == "### Evidence coverage\n- Sentences: 2\n- Coverage: 50%"


def test_coverage_counts_sentences_above_threshold():
    scorer, _ = _scorer({
        "evidence": [1.0, 0.0],
        "covered": [1.0, 0.0],
        "uncovered": [0.0, 1.0],
        "also covered": [0.7, 0.7],
    })

    report = scorer.score("covered。uncovered。also covered", [doc("d", "s", text="evidence")], EMBEDDING_CONFIG)

    assert (report.sentence_count, report.covered_count) == (3, 2)
    assert report.ratio == pytest.approx(200 / 3)


def test_coverage_uses_only_top_five_documents():
    scorer, model = _scorer({"match": [1.0, 0.0]})
    docs = [doc(f"d{i}", "s", text=f"doc {i}") for i in range(5)] + [doc("d5", "s", text="match")]

    report = scorer.score("match", docs, EMBEDDING_CONFIG)

    assert model.calls == ["doc 0", "doc 1", "doc 2", "doc 3", "doc 4", "match"]
    assert report.covered_count == 0


def test_coverage_skips_failed_documents():
    scorer, _ = _scorer({"good": [1.0, 0.0], "claim": [1.0, 0.0]}, failing=["bad"])
    report = scorer.score("claim", [doc("b", "s", text="bad"), doc("g", "s", text="good")], EMBEDDING_CONFIG)
    assert (report.sentence_count, report.covered_count) == (1, 1)


def test_coverage_skipped_for_empty_inputs(channel):
    scorer, model = _scorer({})
    assert scorer.score("", [doc("d", "s")], EMBEDDING_CONFIG, channel) is None
    assert scorer.score(None, [doc("d", "s")], EMBEDDING_CONFIG, channel) is None
    assert scorer.score("answer", [], EMBEDDING_CONFIG, channel) is None
    assert model.calls == []
    assert drain(channel) == []


def test_coverage_no_sentences_emits_nothing(channel):
    scorer, _ = _scorer({})
    assert scorer.score("?!。", [doc("d", "s")], EMBEDDING_CONFIG, channel) is None
    assert drain(channel) == []


def test_coverage_embedding_failure_is_swallowed(channel):
    scorer = EvidenceCoverageScorer(FakeEmbeddingFactory(error=RuntimeError("no key")))
    assert scorer.score("answer", [doc("d", "s")], EMBEDDING_CONFIG, channel) is None
    assert drain(channel) == []


# --- cosine_similarity ---

@pytest.mark.parametrize("a, b, expected", [
    ([1.0, 0.0], [1.0, 0.0], 1.0),
    ([1.0, 0.0], [0.0, 1.0], 0.0),
    ([1.0, 0.0], [-1.0, 0.0], -1.0),
    ([1.0, 0.0], [1.0, 0.0, 0.0], 0.0),
    ([0.0, 0.0], [1.0, 0.0], 0.0),
    ([], [], 0.0),
    ([float("nan"), 1.0], [1.0, 1.0], 0.0),
])
def test_cosine_similarity_edge_cases(a, b, expected):
    assert cosine_similarity(a, b) == pytest.approx(expected)
