"""Snapshot ranking and snapshot storage."""

import json

import pytest

from knowledge_qa.models import doc_id, doc_score
from knowledge_qa.retrieval import RelevanceGate
from knowledge_qa.snapshot import SnapshotNotFoundError, SnapshotRanker, SnapshotRepository
from tests.fixtures.fakes import EMBEDDING_CONFIG, FakeEmbedModel, FakeEmbeddingFactory, FakePrimitive, doc


def _ranker(**model_kwargs):
    model = FakeEmbedModel(**model_kwargs)
    return SnapshotRanker(FakeEmbeddingFactory(model)), model


def test_rank_scores_by_best_query_match():
    ranker, _ = _ranker(vectors={
        "q1": [1.0, 0.0],
        "q2": [0.0, 1.0],
        "about one": [1.0, 0.0],
        "about two": [0.6, 0.8],
        "unrelated": [-1.0, 0.0],
    })
    docs = [
        doc("u", "A", text="unrelated"),
        doc("two", "B", text="about two"),
        doc("one", "C", text="about one"),
    ]

    ranked = ranker.rank(docs, ["q1", "q2"], 5, EMBEDDING_CONFIG)

    assert [doc_id(d) for d in ranked] == ["one", "two", "u"]
    assert doc_score(ranked[0]) == pytest.approx(1.0)
    assert doc_score(ranked[1]) == pytest.approx(0.8)
    assert doc_score(ranked[2]) == 0.0


def test_rank_skips_blank_queries():
    ranker, model = _ranker(vectors={"q": [1.0, 0.0]})
    ranker.rank([doc("d", "A", text="t")], ["", "   ", "q"], 5, EMBEDDING_CONFIG)
    assert model.calls[0] == "q"


def test_rank_per_document_failure_scores_zero():
    ranker, _ = _ranker(vectors={"q": [1.0, 0.0], "good": [1.0, 0.0]}, failing=["bad"])
    ranked = ranker.rank([doc("bad", "A", text="bad"), doc("good", "B", text="good")], ["q"], 5, EMBEDDING_CONFIG)

    assert [doc_id(d) for d in ranked] == ["good", "bad"]
    assert doc_score(ranked[1]) == 0.0


def test_rank_model_failure_returns_first_documents_unscored():
    ranker = SnapshotRanker(FakeEmbeddingFactory(error=RuntimeError("no key")))
    docs = [doc(f"d{i}", f"s{i}") for i in range(4)]

    ranked = ranker.rank(docs, ["q"], 2, EMBEDDING_CONFIG)

    assert [doc_id(d) for d in ranked] == ["d0", "d1"]
    assert all(d.score is None for d in ranked)


def test_rank_empty_inputs():
    ranker, _ = _ranker()
    assert ranker.rank([], ["q"], 5, EMBEDDING_CONFIG) == []
    assert ranker.rank([doc("d", "A")], [], 5, EMBEDDING_CONFIG) == []
    assert ranker.rank([doc("d", "A")], ["  "], 5, EMBEDDING_CONFIG) == []


def test_rank_applies_diversity_limit():
    ranker, _ = _ranker(default=[1.0, 0.0])
    docs = [doc(f"d{i}", "same", text=f"t{i}") for i in range(4)]

    ranked = ranker.rank(docs, ["q"], 4, EMBEDDING_CONFIG)

    assert [doc_id(d) for d in ranked] == ["d0", "d1"]


def test_snapshot_relevance_uses_single_question():
    ranker, model = _ranker(vectors={"q": [1.0, 0.0], "close": [0.9, 0.1]})
    gate = RelevanceGate(FakePrimitive(), ranker)

    verdict = gate.check_snapshot([doc("d", "A", text="close")], "q", EMBEDDING_CONFIG)

    assert verdict.relevant is True
    assert verdict.doc_count == 1
    assert model.calls == ["q", "close"]


def test_snapshot_relevance_empty_snapshot():
    ranker, _ = _ranker()
    verdict = RelevanceGate(FakePrimitive(), ranker).check_snapshot([], "q", EMBEDDING_CONFIG)
    assert verdict.relevant is False
    assert verdict.doc_count == 0


# --- SnapshotRepository ---

def test_repository_loads_documents(tmp_path):
    (tmp_path / "snap1.json").write_text(json.dumps([
        {"id": "u1", "source_id": "f1", "file_name": "guide.pdf", "page": 3, "content": "hello"},
        {"source_id": "f2", "content": "world"},
    ]))

    docs = SnapshotRepository(tmp_path).load("snap1")

    assert [doc_id(d) for d in docs] == ["u1", "snap1-1"]
    assert docs[0].node.metadata == {"source_id": "f1", "page": 3, "file_name": "guide.pdf"}
    assert docs[1].node.get_content() == "world"


def test_repository_missing_snapshot(tmp_path):
    with pytest.raises(SnapshotNotFoundError):
        SnapshotRepository(tmp_path).load("nope")


def test_repository_rejects_path_like_ids(tmp_path):
    with pytest.raises(SnapshotNotFoundError):
        SnapshotRepository(tmp_path).load("../etc/passwd")
