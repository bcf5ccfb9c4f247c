"""
ChromaDB Vector Store（近傍探索用）

【初心者向け】
- チャンクIDをキーに、Embeddingとメタデータ（document_id / subject / grade）を保存
- cosine空間で検索し、類似度 = 1 - 距離 として返す
- 本文や階層の正はDB（Store）側。ここは「近いIDを探す」だけの索引
"""
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

import chromadb
from chromadb.config import Settings as ChromaSettings

from textbook_qa.core.settings import settings
from textbook_qa.rag.models import RetrievalFilters

# ロガー設定
logger = logging.getLogger(__name__)


def get_collection(
    chroma_dir: str | None = None,
    collection_name: str | None = None,
    client: Any = None,
) -> chromadb.Collection:
    """
    ChromaDBコレクションを取得（なければ作成）

    Args:
        chroma_dir: 永続化ディレクトリ（client 未指定時に使用）
        collection_name: コレクション名
        client: 既存のChromaクライアント（テストでは EphemeralClient を渡す）

    Returns:
        ChromaDBコレクション

    Raises:
        KeyError: ChromaDBのDB互換問題が発生した場合（'_type'キーエラー）
    """
    if client is None:
        chroma_path = Path(chroma_dir or settings.chroma_dir)
        chroma_path.mkdir(parents=True, exist_ok=True)
        client = chromadb.PersistentClient(
            path=str(chroma_path),
            settings=ChromaSettings(anonymized_telemetry=False),
        )

    try:
        return client.get_or_create_collection(
            name=collection_name or settings.chroma_collection,
            metadata={"hnsw:space": "cosine"},
        )
    except KeyError as e:
        # KeyError '_type' は ChromaDB のバージョン不一致によるDB互換問題
        if "_type" in str(e):
            logger.error(
                f"ChromaDB互換エラーが発生しました（KeyError '_type'）。"
                f"ディレクトリ {chroma_dir or settings.chroma_dir} を削除して再取り込みしてください。"
            )
        raise


def build_where(filters: RetrievalFilters | None) -> Dict[str, Any] | None:
    """絞り込み条件をChromaのwhere句に変換（条件が複数なら $and）"""
    if filters is None:
        return None
    conditions = [{key: value} for key, value in filters.as_dict().items()]
    if not conditions:
        return None
    if len(conditions) == 1:
        return conditions[0]
    return {"$and": conditions}


class ChunkVectorStore:
    """チャンクの近傍探索インデックス"""

    def __init__(self, collection: chromadb.Collection):
        self.collection = collection

    def upsert(
        self,
        ids: Sequence[str],
        embeddings: Sequence[List[float]],
        metadatas: Sequence[Dict[str, Any]],
    ) -> None:
        """
        チャンクを保存（同じIDなら上書き）

        Args:
            ids: チャンクID
            embeddings: ベクトル
            metadatas: document_id / subject / grade / chunk_type（Noneの値は落とす）
        """
        if not ids:
            return
        cleaned = [{k: v for k, v in meta.items() if v is not None} for meta in metadatas]
        self.collection.upsert(ids=list(ids), embeddings=list(embeddings), metadatas=cleaned)

    def query(
        self,
        embedding: List[float],
        top_k: int,
        filters: RetrievalFilters | None = None,
    ) -> List[Tuple[str, float]]:
        """
        近いチャンクを検索

        Returns:
            [(chunk_id, similarity), ...]（類似度の降順）
        """
        if top_k <= 0 or self.collection.count() == 0:
            return []

        results = self.collection.query(
            query_embeddings=[embedding],
            n_results=top_k,
            where=build_where(filters),
            include=["distances"],
        )
        ids = results["ids"][0] if results.get("ids") else []
        distances = results["distances"][0] if results.get("distances") else []

        pairs = [(chunk_id, 1.0 - float(distance)) for chunk_id, distance in zip(ids, distances)]
        pairs.sort(key=lambda pair: pair[1], reverse=True)
        return pairs

    def delete(self, ids: Sequence[str]) -> None:
        if ids:
            self.collection.delete(ids=list(ids))

    def delete_document(self, document_id: str) -> None:
        self.collection.delete(where={"document_id": document_id})

    def count(self) -> int:
        return self.collection.count()


@lru_cache(maxsize=1)
def get_vector_store() -> ChunkVectorStore:
    """アプリ全体で共有するベクトルストア"""
    return ChunkVectorStore(get_collection())
