"""
エンティティ・グラフ検索（GraphRAG）

【初心者向け】
- オフライン（バックフィル）: 各チャンクからLLMで概念・人物・場所などを抜き出し、
  エンティティとして保存し、チャンクと関連度つきで紐付ける
- 質問時: ①質問に出てくる概念名をLLMで特定 と ②ベクトル検索 を並行に実行し、
  ③概念名に紐付くチャンクを引いて、グラフ由来 → ベクトル由来 の順に重複除去して融合する
- グラフ由来のチャンクは類似度の代わりに「関連度」（なければ0.5）を使う
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import List

from textbook_qa.core.settings import settings
from textbook_qa.db.store import Store
from textbook_qa.llm.base import LLMClient, generate_structured
from textbook_qa.llm.prompt import (
    ENTITY_CATEGORIES,
    EntityExtraction,
    ExtractedEntity,
    QueryEntities,
    build_entity_extraction_messages,
    build_query_entities_messages,
)
from textbook_qa.rag.models import RetrievalFilters, RetrievedChunk
from textbook_qa.rag.retrieval import VectorRetriever

# ロガー設定
logger = logging.getLogger(__name__)

# リランカーに少し多めの候補を渡す
FUSION_EXTRA = 4
DEFAULT_RELEVANCE = 0.5

_CATEGORY_LOOKUP = {c.lower(): c for c in ENTITY_CATEGORIES}


def normalize_category(category: str) -> str:
    """カテゴリを固定の列挙に合わせる（該当なしは Other）"""
    return _CATEGORY_LOOKUP.get((category or "").strip().lower(), "Other")


async def extract_entities(llm_client: LLMClient, text: str) -> List[ExtractedEntity]:
    """
    チャンク本文からエンティティを抽出

    Raises:
        LLMError: 呼び出し失敗・スキーマ不一致（バックフィル側でチャンク単位に捕捉）
    """
    result = await generate_structured(llm_client, build_entity_extraction_messages(text), EntityExtraction)
    entities = []
    for entity in result.entities:
        name = entity.name.strip()
        if not name:
            continue
        entities.append(entity.model_copy(update={"name": name, "type": normalize_category(entity.type)}))
    return entities


def fuse_results(
    graph_chunks: List[RetrievedChunk],
    vector_chunks: List[RetrievedChunk],
    limit: int,
) -> List[RetrievedChunk]:
    """
    グラフ由来 → ベクトル由来 の順で連結し、IDの重複を除いて limit + 4 件に切る

    重複時は先に出た方（グラフ由来）を残す
    """
    seen: set[str] = set()
    fused: List[RetrievedChunk] = []
    for chunk in graph_chunks + vector_chunks:
        if chunk.id in seen:
            continue
        seen.add(chunk.id)
        fused.append(chunk)
    return fused[:limit + FUSION_EXTRA]


class EntityGraphRetriever:
    """エンティティ + ベクトルのハイブリッド検索"""

    def __init__(
        self,
        store: Store,
        vector_retriever: VectorRetriever,
        llm_client: LLMClient,
        limit: int | None = None,
    ):
        self.store = store
        self.vector_retriever = vector_retriever
        self.llm_client = llm_client
        self.limit = limit or settings.graph_limit

    async def identify_query_entities(self, question: str) -> List[str]:
        """質問に含まれる概念名（失敗・空なら [] でベクトル検索のみになる）"""
        try:
            result = await generate_structured(
                self.llm_client, build_query_entities_messages(question), QueryEntities
            )
        except Exception as e:
            logger.warning(f"質問のエンティティ特定に失敗: {type(e).__name__}: {e}")
            return []
        return [name.strip() for name in result.entity_names if name and name.strip()]

    async def retrieve(
        self,
        question: str,
        filters: RetrievalFilters | None = None,
        top_k: int | None = None,
    ) -> List[RetrievedChunk]:
        """
        グラフ検索とベクトル検索を融合した結果を返す

        Args:
            question: 質問文
            filters: 絞り込み条件（エンティティ検索は document_id のみ使用）
            top_k: 件数（デフォルト: GRAPH_LIMIT）

        Returns:
            RetrievedChunk のリスト（最大 limit + 4 件）
        """
        limit = top_k or self.limit
        entity_names, vector_chunks = await asyncio.gather(
            self.identify_query_entities(question),
            self.vector_retriever.retrieve(question, filters, limit),
        )

        graph_chunks: List[RetrievedChunk] = []
        if entity_names:
            try:
                rows = await self.store.find_chunks_by_entity_names(
                    entity_names,
                    document_id=filters.document_id if filters else None,
                    limit=limit,
                )
                graph_chunks = [
                    RetrievedChunk.from_row(
                        row,
                        relevance if relevance is not None else DEFAULT_RELEVANCE,
                        source="graph",
                    )
                    for row, relevance in rows
                ]
            except Exception as e:
                logger.error(f"エンティティ経由のチャンク取得に失敗: {type(e).__name__}: {e}", exc_info=True)

        fused = fuse_results(graph_chunks, vector_chunks, limit)
        logger.info(
            f"グラフ検索完了: entities={entity_names}, graph={len(graph_chunks)}, "
            f"vector={len(vector_chunks)}, fused={len(fused)}"
        )
        return fused


@dataclass
class BackfillStats:
    """バックフィルの集計"""
    processed: int = 0
    failed: int = 0
    entities: int = 0
    links: int = 0


async def backfill_entities(
    store: Store,
    llm_client: LLMClient,
    document_id: str | None = None,
    page_size: int = 50,
) -> BackfillStats:
    """
    全チャンクからエンティティを抽出して保存する（再実行しても重複しない）

    - 1チャンクの失敗はログに残して次へ進む

    Args:
        store: Store
        llm_client: LLMクライアント
        document_id: 指定した文書のチャンクだけ処理する
        page_size: 1回に読むチャンク数

    Returns:
        BackfillStats
    """
    stats = BackfillStats()
    offset = 0
    while True:
        chunks = await store.list_chunks(offset=offset, limit=page_size, document_id=document_id)
        if not chunks:
            break
        offset += len(chunks)

        for chunk in chunks:
            try:
                entities = await extract_entities(llm_client, chunk.content)
                for entity in entities:
                    entity_id = await store.upsert_entity(entity.name, entity.type, entity.description)
                    await store.link_chunk_entity(chunk.id, entity_id, entity.relevance)
                    stats.links += 1
                stats.entities += len(entities)
                stats.processed += 1
            except Exception as e:
                stats.failed += 1
                logger.warning(f"チャンクのエンティティ抽出に失敗（スキップ）: chunk_id={chunk.id}, {type(e).__name__}: {e}")

        logger.info(
            f"バックフィル進捗: processed={stats.processed}, failed={stats.failed}, "
            f"entities={stats.entities}, links={stats.links}"
        )

    return stats
