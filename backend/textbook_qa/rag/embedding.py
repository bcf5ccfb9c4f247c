"""
Embedding生成（テキスト→ベクトル変換）

【初心者向け】
- Embedding = 文や単語を数値ベクトル（例: 384次元）に変換したもの
- 似た意味の文は似たベクトルになるので、「意味で検索」するRAGの土台
- E5モデル: queryには "query: ", passageには "passage: " のprefixを付ける仕様
  → 「文書の索引用」か「質問の検索用」かをprefixで伝える
- EmbeddingClient: 取り込み時は100件ずつのバッチに分け、バッチを並行に投げる
  一時的な失敗は指数バックオフでリトライする
"""
import asyncio
import logging
from functools import lru_cache
from typing import List, Literal, Protocol, Sequence

from sentence_transformers import SentenceTransformer

from textbook_qa.core.retry import batched, with_retry
from textbook_qa.core.settings import settings

# ロガー設定
logger = logging.getLogger(__name__)

# document: 索引用（passage）、query: 検索用
EmbeddingTask = Literal["document", "query"]

_PREFIXES = {"document": "passage: ", "query": "query: "}


@lru_cache(maxsize=2)
def get_embedding_model(model_name: str | None = None) -> SentenceTransformer:
    """
    Embeddingモデルを取得（シングルトン）

    Args:
        model_name: モデル名（デフォルト: settingsから取得）

    Returns:
        SentenceTransformerインスタンス
    """
    name = model_name or settings.embedding_model
    logger.info(f"Embeddingモデルをロード中: {name}")
    model = SentenceTransformer(name)
    logger.info("Embeddingモデルのロード完了")
    return model


def embed_texts(texts: List[str], model_name: str | None = None) -> List[List[float]]:
    """
    テキストリストをEmbeddingに変換（正規化済み）
    """
    model = get_embedding_model(model_name)
    embeddings = model.encode(texts, normalize_embeddings=True, show_progress_bar=False)
    return embeddings.tolist()


class EmbeddingClient(Protocol):
    """Embeddingのインターフェース（テストではフェイクに差し替える）"""

    async def embed(self, texts: Sequence[str], task: EmbeddingTask) -> List[List[float]]:
        ...


class SentenceTransformerEmbeddingClient:
    """
    sentence-transformers を使うEmbeddingクライアント

    - encode は同期・CPU処理なので to_thread でイベントループから外す
    - バッチ単位で with_retry
    """

    def __init__(self, model_name: str | None = None, batch_size: int | None = None):
        self.model_name = model_name or settings.embedding_model
        self.batch_size = batch_size or settings.embedding_batch_size

    async def _embed_batch(self, batch: Sequence[str], task: EmbeddingTask, index: int) -> List[List[float]]:
        prefix = _PREFIXES[task]
        prefixed = [f"{prefix}{text}" for text in batch]
        return await with_retry(
            lambda: asyncio.to_thread(embed_texts, prefixed, self.model_name),
            label=f"Embeddingバッチ#{index}",
        )

    async def embed(self, texts: Sequence[str], task: EmbeddingTask) -> List[List[float]]:
        """
        テキストをまとめてEmbeddingに変換

        Args:
            texts: テキストのリスト
            task: "document"（索引用）または "query"（検索用）

        Returns:
            入力と同じ順番のベクトルのリスト
        """
        if not texts:
            return []
        batches = batched(list(texts), self.batch_size)
        results = await asyncio.gather(
            *(self._embed_batch(batch, task, i) for i, batch in enumerate(batches))
        )
        vectors = [vector for batch_vectors in results for vector in batch_vectors]
        logger.info(f"Embedding完了: task={task}, texts={len(texts)}, batches={len(batches)}")
        return vectors


@lru_cache(maxsize=1)
def get_embedding_client() -> EmbeddingClient:
    """Embeddingクライアントのシングルトンを取得"""
    return SentenceTransformerEmbeddingClient()
