"""
ベクトル検索と検索結果の補強

【初心者向け】
- VectorRetriever: 質問をEmbeddingにして、近いチャンクを上位K件取る（絞り込み条件つき）
  0件は「該当なし」という正常な結果（例外にしない）
- enrich_chunks: チャンクに 教科書名 / 章 / トピック を付ける（セクションの親をたどる）
- expand_with_siblings: 同じセクションの他のチャンクを候補に足す（類似度0として）
- expand_query: 短い質問に関連語を足してから検索する（失敗したら元の質問のまま）
"""
import asyncio
import logging
from typing import Dict, List, Protocol, Tuple

from textbook_qa.core.settings import settings
from textbook_qa.db.models import Section
from textbook_qa.db.store import Store
from textbook_qa.llm.base import LLMClient, generate_structured
from textbook_qa.llm.prompt import QueryExpansion, build_expansion_messages
from textbook_qa.rag.embedding import EmbeddingClient
from textbook_qa.rag.models import RetrievalFilters, RetrievedChunk
from textbook_qa.rag.vectorstore import ChunkVectorStore

# ロガー設定
logger = logging.getLogger(__name__)

# これより長い質問は拡張しない（意図が薄まるため）
EXPANSION_MAX_WORDS = 20


class Retriever(Protocol):
    """検索方式の共通インターフェース"""

    async def retrieve(
        self,
        question: str,
        filters: RetrievalFilters | None = None,
        top_k: int | None = None,
    ) -> List[RetrievedChunk]:
        ...


async def expand_query(llm_client: LLMClient, question: str) -> str:
    """
    質問を関連語で拡張する

    - 20語を超える質問はそのまま
    - 空・元より短い出力・失敗時は元の質問を返す

    Args:
        llm_client: LLMクライアント
        question: 質問文

    Returns:
        拡張後の質問文
    """
    word_count = len(question.split())
    if word_count > EXPANSION_MAX_WORDS:
        logger.debug(f"質問が十分に具体的なので拡張しません: words={word_count}")
        return question

    try:
        result = await generate_structured(
            llm_client, build_expansion_messages(question), QueryExpansion,
            temperature=0.2, max_tokens=150,
        )
    except Exception as e:
        logger.warning(f"クエリ拡張に失敗したため元の質問を使います: {type(e).__name__}: {e}")
        return question

    expanded = result.expanded_query.strip()
    if not expanded or len(expanded) < len(question):
        logger.warning("クエリ拡張の結果が空または短いため元の質問を使います")
        return question

    logger.info(f"クエリ拡張: original={question!r}, expanded={expanded[:100]!r}")
    return expanded


class VectorRetriever:
    """
    ベクトル検索（近傍探索）

    - 類似度の降順で返す
    - ベクトル側にあってDBにないID（削除済み等）は落とす
    """

    def __init__(
        self,
        store: Store,
        vector_store: ChunkVectorStore,
        embedder: EmbeddingClient,
        llm_client: LLMClient | None = None,
        top_k: int | None = None,
        query_expansion: bool | None = None,
    ):
        self.store = store
        self.vector_store = vector_store
        self.embedder = embedder
        self.llm_client = llm_client
        self.top_k = top_k or settings.retrieval_top_k
        self.query_expansion = (
            settings.query_expansion_enabled if query_expansion is None else query_expansion
        )

    async def retrieve(
        self,
        question: str,
        filters: RetrievalFilters | None = None,
        top_k: int | None = None,
    ) -> List[RetrievedChunk]:
        """
        質問に近いチャンクを取得

        Args:
            question: 質問文
            filters: 絞り込み条件（document_id / subject / grade）
            top_k: 取得件数（デフォルト20）

        Returns:
            RetrievedChunk のリスト（similarity 降順、0件もあり得る）
        """
        k = top_k or self.top_k
        search_text = question
        if self.query_expansion and self.llm_client is not None:
            search_text = await expand_query(self.llm_client, question)

        [query_vector] = await self.embedder.embed([search_text], task="query")
        pairs = await asyncio.to_thread(self.vector_store.query, query_vector, k, filters)
        if not pairs:
            logger.info(f"ベクトル検索: 該当なし (filters={filters.as_dict() if filters else {}})")
            return []

        rows = await self.store.get_chunks_by_ids(chunk_id for chunk_id, _ in pairs)
        chunks = [
            RetrievedChunk.from_row(rows[chunk_id], similarity)
            for chunk_id, similarity in pairs
            if chunk_id in rows
        ]
        if chunks:
            logger.info(
                f"ベクトル検索完了: count={len(chunks)}, "
                f"top_similarity={chunks[0].similarity:.3f}, "
                f"bottom_similarity={chunks[-1].similarity:.3f}"
            )
        return chunks


def resolve_chapter_topic(section: Section | None, sections: Dict[str, Section]) -> Tuple[str, str]:
    """
    セクションの親をたどって (章, トピック) を決める

    - level 1: 章 = 自分
    - level 2: トピック = 自分、章 = 親
    - level 3: トピック = 親、章 = 祖父
    """
    if section is None:
        return "", ""

    parent = sections.get(section.parent_id) if section.parent_id else None
    if section.level <= 1:
        return section.title, ""
    if section.level == 2:
        return (parent.title if parent else ""), section.title

    if parent is None:
        return "", section.title
    grandparent = sections.get(parent.parent_id) if parent.parent_id else None
    return (grandparent.title if grandparent else ""), parent.title


async def load_section_ancestry(store: Store, section_ids: List[str]) -> Dict[str, Section]:
    """セクションと、その親・祖父までをまとめて取得（最大2段）"""
    sections = await store.get_sections_by_ids(section_ids)
    for _ in range(2):
        missing = [s.parent_id for s in sections.values() if s.parent_id and s.parent_id not in sections]
        if not missing:
            break
        sections.update(await store.get_sections_by_ids(missing))
    return sections


async def enrich_chunks(store: Store, chunks: List[RetrievedChunk]) -> List[RetrievedChunk]:
    """
    チャンクに 教科書名 / 章 / トピック を付ける（入力をその場で更新して返す）

    Args:
        store: Store
        chunks: 検索結果

    Returns:
        同じリスト（book_title / chapter / topic が埋まる）
    """
    if not chunks:
        return chunks

    sections = await load_section_ancestry(store, [c.section_id for c in chunks if c.section_id])

    titles: Dict[str, str] = {}
    for document_id in {c.document_id for c in chunks}:
        document = await store.get_document(document_id)
        titles[document_id] = document.title if document else "Unknown"

    for chunk in chunks:
        chapter, topic = resolve_chapter_topic(sections.get(chunk.section_id or ""), sections)
        chunk.book_title = titles.get(chunk.document_id, "Unknown")
        chunk.chapter = chapter
        chunk.topic = topic
    return chunks


async def expand_with_siblings(
    store: Store,
    chunks: List[RetrievedChunk],
    max_total: int | None = None,
) -> List[RetrievedChunk]:
    """
    同じセクションの他のチャンクを候補に足す

    - 追加分の similarity は 0（検索で当たったものではないため）
    - 失敗しても元の結果をそのまま返す

    Args:
        store: Store
        chunks: 検索結果
        max_total: 追加後の上限件数

    Returns:
        元のチャンク + 兄弟チャンク
    """
    limit = max_total or settings.sibling_max_total
    remaining = limit - len(chunks)
    if not chunks or remaining <= 0:
        return chunks

    try:
        siblings = await store.get_chunks_by_sections(
            [c.section_id for c in chunks if c.section_id],
            exclude_ids=[c.id for c in chunks],
            limit=remaining,
        )
    except Exception as e:
        logger.warning(f"兄弟チャンクの取得に失敗したため元の結果を使います: {type(e).__name__}: {e}")
        return chunks

    expanded = chunks + [RetrievedChunk.from_row(row, 0.0, source="sibling") for row in siblings]
    logger.info(f"兄弟展開: before={len(chunks)}, added={len(siblings)}")
    return expanded
