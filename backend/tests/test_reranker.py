"""
リランキングのテスト（件数が少ない場合の素通し・失敗時の類似度フォールバック）
"""
import pytest

from textbook_qa.core.errors import RankingError
from textbook_qa.rag.models import RetrievedChunk
from textbook_qa.search.reranker import CrossEncoderRanker, Reranker


def _candidates(n: int):
    return [
        RetrievedChunk(id=f"c{i}", document_id="d", content=f"text {i}", similarity=s)
        for i, s in enumerate([0.3, 0.9, 0.5, 0.7, 0.1][:n])
    ]


async def test_small_candidate_sets_pass_through(make_ranker):
    ranker = make_ranker()
    candidates = _candidates(3)

    result = await Reranker(ranker, top_n=3).rerank("q", candidates)

    assert result == candidates
    assert ranker.calls == 0


async def test_reranker_uses_ranking_order(make_ranker):
    ranker = make_ranker([("c4", 0.99), ("c0", 0.5)])
    result = await Reranker(ranker, top_n=2).rerank("q", _candidates(5))

    assert [c.id for c in result] == ["c4", "c0"]
    assert result[0].rerank_score == 0.99


@pytest.mark.parametrize("outcome", [
    RankingError("service down"),
    [],
    [("unknown", 0.9)],
])
async def test_reranker_falls_back_to_similarity(outcome, make_ranker):
    ranker = make_ranker(outcome)
    result = await Reranker(ranker, top_n=2).rerank("q", _candidates(5))

    assert [c.id for c in result] == ["c1", "c3"]


async def test_cross_encoder_failure_is_wrapped(monkeypatch):
    def boom(*args, **kwargs):
        raise OSError("model files missing")

    ranker = CrossEncoderRanker(model_name="test-model", batch_size=2)
    monkeypatch.setattr(ranker, "_rank_sync", boom)

    with pytest.raises(RankingError):
        await ranker.rank("q", [("a", "Cells", "text")], 1)
