"""
回答の組み立て（Answer Composer）

【初心者向け】
1問に答えるまでの流れをまとめる場所:
  ① 質問の種別を分類（失敗したら "other"）
  ② 検索方式（rag / graph / cag）で1回だけ分岐して検索
  ③ 0件なら「見つかりませんでした」を返す（LLMは呼ばない）
  ④ チャンクに 教科書名 / 章 / トピック を付ける
  ⑤ リランクで上位8件に絞る（cag はスキップ）
  ⑥ コンテキストを組み立ててLLMで回答生成
  ⑦ 信頼度（high / medium / low）を使ったチャンクの平均類似度から決める
  ⑧ 質問ログを保存（失敗しても回答は返す）

- 引用（citations）は「LLMに渡したチャンク」からだけ作る
  → 回答が見ていないチャンクを引用に出さない
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from textbook_qa.core.settings import settings
from textbook_qa.db.store import Store
from textbook_qa.llm.base import LLMClient, generate_structured
from textbook_qa.llm.prompt import (
    QUESTION_TYPES,
    QuestionClassification,
    build_answer_messages,
    build_classify_messages,
)
from textbook_qa.rag.full_context import FullContextRetriever
from textbook_qa.rag.models import RetrievalFilters, RetrievalMode, RetrievedChunk
from textbook_qa.rag.retrieval import Retriever, enrich_chunks, expand_with_siblings
from textbook_qa.schemas.common import Citation
from textbook_qa.search.reranker import Reranker

# ロガー設定
logger = logging.getLogger(__name__)

NOT_FOUND_ANSWER = (
    "I could not find any relevant information in the uploaded textbooks to answer your question."
)
FULL_CONTEXT_GUIDANCE = (
    "Full textbook mode requires a specific textbook to be selected. "
    "Please choose a textbook and ask again."
)


@dataclass
class ComposedAnswer:
    """1問分の回答"""
    answer: str
    citations: List[Citation]
    confidence: str
    mode: str
    question_type: str = "other"
    mean_similarity: float | None = None
    chunk_ids: List[str] = field(default_factory=list)


@dataclass
class ModeResult:
    """検索方式の比較結果（1方式分）"""
    mode: str
    result: ComposedAnswer | None = None
    error: str | None = None
    latency_ms: int = 0


def confidence_from_similarity(mean_similarity: float) -> str:
    """平均類似度を3段階に変換（>0.8 high, >0.6 medium, それ以外 low）"""
    if mean_similarity > settings.confidence_high:
        return "high"
    if mean_similarity > settings.confidence_medium:
        return "medium"
    return "low"


def build_citations(chunks: List[RetrievedChunk]) -> List[Citation]:
    """
    生成に使ったチャンクから引用を作る

    同じ (教科書, 章, トピック, ページ範囲) のチャンクは1件にまとめる
    """
    grouped: Dict[Tuple, Citation] = {}
    for chunk in chunks:
        key = (chunk.book_title, chunk.chapter, chunk.topic, chunk.page_start, chunk.page_end)
        citation = grouped.get(key)
        if citation is None:
            grouped[key] = Citation(
                chunk_id=chunk.id,
                chunk_ids=[chunk.id],
                book_title=chunk.book_title or "Unknown",
                chapter=chunk.chapter or "Unknown",
                topic=chunk.topic,
                page_start=chunk.page_start,
                page_end=chunk.page_end,
            )
        else:
            citation.chunk_ids.append(chunk.id)
    return list(grouped.values())


class AnswerComposer:
    """
    質問 → 回答 の全体を組み立てる

    Args:
        store: Store（ログ保存・チャンクの補強に使用）
        llm_client: 分類と回答生成に使うLLM
        vector_retriever: rag モードの検索
        graph_retriever: graph モードの検索
        full_context: cag モードの回答器
        reranker: リランカー
    """

    def __init__(
        self,
        store: Store,
        llm_client: LLMClient,
        vector_retriever: Retriever,
        graph_retriever: Retriever,
        full_context: FullContextRetriever,
        reranker: Reranker,
        sibling_expansion: bool | None = None,
    ):
        self.store = store
        self.llm_client = llm_client
        self.retrievers: Dict[RetrievalMode, Retriever] = {
            RetrievalMode.RAG: vector_retriever,
            RetrievalMode.GRAPH: graph_retriever,
        }
        self.full_context = full_context
        self.reranker = reranker
        self.sibling_expansion = (
            settings.sibling_expansion_enabled if sibling_expansion is None else sibling_expansion
        )

    async def classify_question(self, question: str) -> str:
        """質問種別を分類（想定外・失敗は "other"）"""
        try:
            result = await generate_structured(
                self.llm_client, build_classify_messages(question), QuestionClassification,
                temperature=0.0, max_tokens=20,
            )
        except Exception as e:
            logger.warning(f"質問の分類に失敗したため other とします: {type(e).__name__}: {e}")
            return "other"
        question_type = result.type.strip().lower()
        return question_type if question_type in QUESTION_TYPES else "other"

    async def answer(
        self,
        question: str,
        filters: RetrievalFilters | None = None,
        mode: RetrievalMode | str = RetrievalMode.RAG,
        top_k: int | None = None,
        history: List[Dict[str, str]] | None = None,
    ) -> ComposedAnswer:
        """
        質問に回答する

        Args:
            question: 質問文
            filters: 絞り込み条件
            mode: 検索方式（rag / graph / cag）
            top_k: 一次検索の件数
            history: 会話履歴

        Returns:
            ComposedAnswer

        Raises:
            LLMError: 回答生成の失敗（ルーター側でHTTPエラーに変換）
        """
        mode = RetrievalMode(mode)
        filters = filters or RetrievalFilters()
        logger.info(f"回答開始: mode={mode.value}, filters={filters.as_dict()}, question={question[:80]!r}")

        if mode is RetrievalMode.CAG:
            return await self._answer_full_context(question, filters, history)

        question_type = await self.classify_question(question)
        logger.info(f"質問種別: {question_type}")

        chunks = await self.retrievers[mode].retrieve(question, filters, top_k)
        if not chunks:
            logger.info("検索結果が0件のため回答生成をスキップします")
            result = ComposedAnswer(
                answer=NOT_FOUND_ANSWER,
                citations=[],
                confidence="low",
                mode=mode.value,
                question_type=question_type,
            )
            await self._log_query(question, filters, result)
            return result

        if self.sibling_expansion:
            chunks = await expand_with_siblings(self.store, chunks)

        chunks = await enrich_chunks(self.store, chunks)
        final_chunks = await self.reranker.rerank(question, chunks)

        messages = build_answer_messages(question, question_type, final_chunks, history)
        answer = await self.llm_client.chat(
            messages=messages,
            temperature=settings.answer_temperature,
            max_tokens=settings.answer_max_tokens,
        )

        mean_similarity = sum(c.similarity for c in final_chunks) / len(final_chunks)
        result = ComposedAnswer(
            answer=answer,
            citations=build_citations(final_chunks),
            confidence=confidence_from_similarity(mean_similarity),
            mode=mode.value,
            question_type=question_type,
            mean_similarity=round(mean_similarity, 4),
            chunk_ids=[c.id for c in final_chunks],
        )
        logger.info(
            f"回答生成完了: confidence={result.confidence}, mean_similarity={mean_similarity:.3f}, "
            f"chunks={len(final_chunks)}, citations={len(result.citations)}"
        )
        await self._log_query(question, filters, result)
        return result

    async def _answer_full_context(
        self,
        question: str,
        filters: RetrievalFilters,
        history: List[Dict[str, str]] | None,
    ) -> ComposedAnswer:
        """全文モード（文書IDが必須。なければ案内文だけ返す）"""
        if not filters.document_id:
            logger.info("全文モードで文書IDが指定されていないため案内文を返します")
            return ComposedAnswer(
                answer=FULL_CONTEXT_GUIDANCE,
                citations=[],
                confidence="low",
                mode=RetrievalMode.CAG.value,
            )

        answer = await self.full_context.answer(question, filters.document_id, history)
        if answer is None:
            result = ComposedAnswer(
                answer=NOT_FOUND_ANSWER, citations=[], confidence="low", mode=RetrievalMode.CAG.value
            )
        else:
            # 全文が根拠なので常に high（引用は本文中に書かせる）
            result = ComposedAnswer(
                answer=answer, citations=[], confidence="high", mode=RetrievalMode.CAG.value
            )
        await self._log_query(question, filters, result)
        return result

    async def _log_query(self, question: str, filters: RetrievalFilters, result: ComposedAnswer) -> None:
        """質問ログを保存（失敗しても握りつぶす）"""
        try:
            await self.store.insert_query_log(
                question=question,
                mode=result.mode,
                filters=filters.as_dict(),
                chunk_ids=result.chunk_ids,
                answer=result.answer,
                citations=[c.model_dump() for c in result.citations],
                confidence=result.confidence,
            )
        except Exception as e:
            logger.warning(f"質問ログの保存に失敗しました（回答は返します）: {type(e).__name__}: {e}")

    async def evaluate_modes(
        self,
        question: str,
        document_id: str,
        top_k: int | None = None,
    ) -> List[ModeResult]:
        """
        3つの検索方式を同時に実行して比較する

        - 1方式が失敗しても他の結果は返す（失敗は error に入る）
        """
        filters = RetrievalFilters(document_id=document_id)

        async def _run(mode: RetrievalMode) -> ModeResult:
            started = time.perf_counter()
            try:
                result = await self.answer(question, filters, mode, top_k)
                return ModeResult(
                    mode=mode.value,
                    result=result,
                    latency_ms=int((time.perf_counter() - started) * 1000),
                )
            except Exception as e:
                logger.error(f"方式比較で失敗: mode={mode.value}, {type(e).__name__}: {e}", exc_info=True)
                return ModeResult(
                    mode=mode.value,
                    error=f"{type(e).__name__}: {e}",
                    latency_ms=int((time.perf_counter() - started) * 1000),
                )

        results = await asyncio.gather(*(_run(mode) for mode in RetrievalMode))
        return list(results)
