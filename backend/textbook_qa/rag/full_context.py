"""
全文モード（CAG: Cache-Augmented Generation）

【初心者向け】
- 教科書1冊分のチャンクをページ順に並べ直して1本の長いテキストに戻す
- 章・トピックが変わったところにだけ見出し（## 章 / ### トピック）を入れ直す
- そのテキストをLLMの長文コンテキストキャッシュに載せ、ハンドルで質問する
- キャッシュは2種類（どちらもプロセス内・期限付き）
  - 全文テキスト: 30分
  - キャッシュハンドル: 1時間（期限の5分前からは使わず作り直す）
  - ハンドル作成は文書ごとにロックし、同時に来た質問で二重に作らない
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List

from textbook_qa.core.cache import TTLCache
from textbook_qa.core.settings import settings
from textbook_qa.db.store import Store
from textbook_qa.llm.context_cache import ContextCacheClient
from textbook_qa.llm.prompt import CAG_SYSTEM_PROMPT, build_cag_prompt
from textbook_qa.rag.retrieval import resolve_chapter_topic

# ロガー設定
logger = logging.getLogger(__name__)


@dataclass
class FullText:
    """組み立て済みの全文"""
    title: str
    text: str
    chunk_count: int


def format_page_ref(page_start: int | None, page_end: int | None) -> str:
    """本文中のページ表記（ [p. 3] / [p. 3-5]、ページ不明なら空）"""
    if not page_start:
        return ""
    if page_end and page_end != page_start:
        return f" [p. {page_start}-{page_end}]"
    return f" [p. {page_start}]"


class FullContextRetriever:
    """
    文書全体を長文コンテキストとして使う回答器

    Args:
        store: Store
        cache_client: 長文コンテキストキャッシュ
        text_cache: 全文テキストのキャッシュ（テストでは clock を差し替えたものを渡す）
        handle_cache: キャッシュハンドルのキャッシュ
    """

    def __init__(
        self,
        store: Store,
        cache_client: ContextCacheClient,
        text_cache: TTLCache[FullText] | None = None,
        handle_cache: TTLCache[str] | None = None,
    ):
        self.store = store
        self.cache_client = cache_client
        self.text_cache = text_cache or TTLCache(ttl_sec=settings.full_text_cache_ttl_sec)
        self.handle_cache = handle_cache or TTLCache(ttl_sec=settings.context_cache_ttl_sec)
        self.safety_margin_sec = settings.context_cache_safety_margin_sec
        self._handle_locks: Dict[str, asyncio.Lock] = {}

    async def build_full_text(self, document_id: str) -> FullText | None:
        """
        文書の全文を組み立てる（文書がない・チャンクが0件なら None）
        """
        cached = self.text_cache.get(document_id)
        if cached is not None:
            logger.info(f"全文テキストキャッシュを使用: document_id={document_id}")
            return cached

        document = await self.store.get_document(document_id)
        if document is None:
            logger.warning(f"文書が見つかりません: document_id={document_id}")
            return None

        chunks = await self.store.get_chunks_for_document(document_id)
        if not chunks:
            logger.warning(f"文書にチャンクがありません: document_id={document_id}")
            return None

        sections = {s.id: s for s in await self.store.get_sections(document_id)}

        parts: List[str] = []
        current_chapter = ""
        current_topic = ""
        for chunk in chunks:
            section = sections.get(chunk.section_id) if chunk.section_id else None
            if section is not None:
                chapter, topic = resolve_chapter_topic(section, sections)
                # 見出しは変わったときだけ入れる
                if chapter and chapter != current_chapter:
                    current_chapter = chapter
                    parts.append(f"\n\n## {chapter}")
                if topic and topic != current_topic:
                    current_topic = topic
                    parts.append(f"\n### {topic}")
            parts.append(f"{format_page_ref(chunk.page_start, chunk.page_end)}\n{chunk.content}")

        full_text = FullText(
            title=document.title,
            text=f"# {document.title}\n" + "\n".join(parts),
            chunk_count=len(chunks),
        )
        self.text_cache.set(document_id, full_text)
        logger.info(
            f"全文テキストを組み立てました: document_id={document_id}, "
            f"chunks={len(chunks)}, chars={len(full_text.text)}"
        )
        return full_text

    async def get_cache_handle(self, document_id: str, full_text: FullText) -> str:
        """
        有効なキャッシュハンドルを返す（なし・期限間近なら作り直す）
        """
        handle = self.handle_cache.get(document_id, margin=self.safety_margin_sec)
        if handle is not None:
            logger.info(f"コンテキストキャッシュ ヒット: document_id={document_id}")
            return handle

        lock = self._handle_locks.setdefault(document_id, asyncio.Lock())
        async with lock:
            # 待っている間に別のリクエストが作っていればそれを使う
            handle = self.handle_cache.get(document_id, margin=self.safety_margin_sec)
            if handle is not None:
                return handle

            logger.info(f"コンテキストキャッシュ ミス: document_id={document_id}（新規作成）")
            ttl = int(self.handle_cache.ttl_sec)
            handle = await self.cache_client.create(full_text.text, full_text.title, ttl)
            self.handle_cache.set(document_id, handle, ttl_sec=ttl)
            return handle

    async def answer(
        self,
        question: str,
        document_id: str,
        history: List[Dict[str, str]] | None = None,
    ) -> str | None:
        """
        文書全体を根拠に回答する

        Args:
            question: 質問文
            document_id: 対象の文書ID
            history: 会話履歴

        Returns:
            回答テキスト（文書がない・空なら None）
        """
        full_text = await self.build_full_text(document_id)
        if full_text is None:
            return None

        handle = await self.get_cache_handle(document_id, full_text)
        answer = await self.cache_client.generate(
            handle, build_cag_prompt(question, history), CAG_SYSTEM_PROMPT
        )
        logger.info(f"全文モードの回答を生成しました: document_id={document_id}, chars={len(answer)}")
        return answer
