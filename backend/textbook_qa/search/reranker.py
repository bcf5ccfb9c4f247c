"""
リランキング（回答生成前の候補絞り込み）

【初心者向け】
- (質問, チャンク本文) のペアごとに関連度スコアを出し、上位N件に絞る
- 候補がN件以下ならそのまま返す（並べ替えもしない）
- ランキングが失敗・空・ID不一致のときは「類似度順の上位N件」で代替する
  → リランクの失敗で回答が止まることはない
"""
import asyncio
import logging
from functools import lru_cache
from typing import Any, Dict, List, Protocol, Sequence, Tuple

from textbook_qa.core.errors import RankingError
from textbook_qa.core.settings import settings
from textbook_qa.rag.models import RetrievedChunk

logger = logging.getLogger(__name__)


class RankingClient(Protocol):
    """ランキングサービスの共通インターフェース"""

    async def rank(
        self,
        query: str,
        records: Sequence[Tuple[str, str, str]],
        top_n: int,
    ) -> List[Tuple[str, float]]:
        """[(id, 見出し, 本文), ...] を受け取り [(id, score), ...]（スコア降順）を返す"""
        ...


@lru_cache(maxsize=1)
def _load_cross_encoder(model_name: str) -> Any:
    """
    Cross-Encoderモデルをロード（キャッシュ）

    Args:
        model_name: モデル名

    Returns:
        CrossEncoderモデル
    """
    from sentence_transformers import CrossEncoder

    logger.info(f"Cross-Encoderモデルをロード中: {model_name}")
    model = CrossEncoder(model_name)
    logger.info(f"Cross-Encoderモデルロード完了: {model_name}")
    return model


class CrossEncoderRanker:
    """sentence-transformers の Cross-Encoder で採点するランキングクライアント"""

    def __init__(self, model_name: str | None = None, batch_size: int | None = None):
        self.model_name = model_name or settings.rerank_model
        self.batch_size = batch_size or settings.rerank_batch_size

    def _rank_sync(self, query: str, records: Sequence[Tuple[str, str, str]], top_n: int) -> List[Tuple[str, float]]:
        model = _load_cross_encoder(self.model_name)
        pairs = [(query, f"{title}\n{content}" if title else content) for _, title, content in records]
        scores = model.predict(pairs, batch_size=self.batch_size, show_progress_bar=False)
        results = [(record_id, float(score)) for (record_id, _, _), score in zip(records, scores)]
        results.sort(key=lambda x: x[1], reverse=True)
        return results[:top_n]

    async def rank(
        self,
        query: str,
        records: Sequence[Tuple[str, str, str]],
        top_n: int,
    ) -> List[Tuple[str, float]]:
        try:
            # 推論はCPUを占有するのでスレッドに逃がす
            return await asyncio.to_thread(self._rank_sync, query, records, top_n)
        except Exception as e:
            logger.error(f"Cross-Encoderリランキングに失敗: {type(e).__name__}: {e}")
            raise RankingError(str(e)) from e


def similarity_fallback(candidates: List[RetrievedChunk], top_n: int) -> List[RetrievedChunk]:
    """類似度の降順で上位N件（リランク失敗時の代替）"""
    return sorted(candidates, key=lambda c: c.similarity, reverse=True)[:top_n]


class Reranker:
    """
    候補チャンクを上位N件に絞る

    Args:
        ranking_client: RankingClient 実装（デフォルトは Cross-Encoder）
        top_n: 残す件数（デフォルト8）
    """

    def __init__(self, ranking_client: RankingClient | None = None, top_n: int | None = None):
        self.ranking_client = ranking_client or CrossEncoderRanker()
        self.top_n = top_n or settings.rerank_top_n

    async def rerank(
        self,
        question: str,
        candidates: List[RetrievedChunk],
        top_n: int | None = None,
    ) -> List[RetrievedChunk]:
        """
        候補をリランクして上位N件を返す

        Args:
            question: 質問文
            candidates: 検索結果
            top_n: 残す件数

        Returns:
            リランク済みのチャンク（rerank_score 付き）。失敗時は類似度順の上位N件
        """
        n = top_n or self.top_n
        if len(candidates) <= n:
            return candidates

        by_id: Dict[str, RetrievedChunk] = {c.id: c for c in candidates}
        try:
            ranked = await self.ranking_client.rank(
                question, [(c.id, c.topic or c.chapter, c.content) for c in candidates], n
            )
        except Exception as e:
            logger.warning(f"リランキングに失敗したため類似度順を使います: {type(e).__name__}: {e}")
            return similarity_fallback(candidates, n)

        results: List[RetrievedChunk] = []
        for chunk_id, score in ranked:
            chunk = by_id.get(chunk_id)
            if chunk is None:
                continue
            chunk.rerank_score = score
            results.append(chunk)

        if not results:
            logger.warning("リランキング結果が空（またはID不一致）のため類似度順を使います")
            return similarity_fallback(candidates, n)

        logger.info(
            f"リランキング完了: input={len(candidates)}, output={len(results[:n])}, "
            f"top3_scores={[round(c.rerank_score or 0.0, 3) for c in results[:3]]}"
        )
        return results[:n]
