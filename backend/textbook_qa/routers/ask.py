"""
QA (Ask) APIルーター

【初心者向け】
- POST /ask: 質問を受け取り、回答・引用・信頼度を返す
- 検索方式（mode）: rag=ベクトル検索, graph=エンティティ+ベクトル, cag=教科書全文
- 検索で何も見つからないのはエラーではない（「見つかりませんでした」という回答になる）
"""
import logging
import re

from fastapi import APIRouter, Depends

from textbook_qa.core.errors import raise_internal_error, raise_invalid_input, raise_timeout
from textbook_qa.llm.base import LLMError, LLMTimeoutError
from textbook_qa.rag.composer import AnswerComposer, ComposedAnswer
from textbook_qa.rag.models import RetrievalFilters
from textbook_qa.routers.deps import get_composer
from textbook_qa.schemas.ask import AskRequest, AskResponse

# ロガー設定
logger = logging.getLogger(__name__)

router = APIRouter()


def normalize_question(question: str) -> str:
    """
    質問文を正規化する（余計な空白を削除）

    Args:
        question: 質問文

    Returns:
        正規化された質問文
    """
    return re.sub(r"\s+", " ", question).strip()


def to_response(result: ComposedAnswer) -> AskResponse:
    return AskResponse(
        answer=result.answer,
        citations=result.citations,
        confidence=result.confidence,
        mode=result.mode,
        question_type=result.question_type,
        mean_similarity=result.mean_similarity,
    )


@router.post("", response_model=AskResponse)
async def ask_question(
    request: AskRequest,
    composer: AnswerComposer = Depends(get_composer),
) -> AskResponse:
    """
    質問を受け取り、回答を返す

    Args:
        request: 質問リクエスト

    Returns:
        回答レスポンス
    """
    question = normalize_question(request.question)
    if not question:
        raise_invalid_input("質問文が空です")

    filters = RetrievalFilters(**request.filters.model_dump()) if request.filters else RetrievalFilters()
    history = [m.model_dump() for m in request.history]

    try:
        result = await composer.answer(
            question,
            filters=filters,
            mode=request.mode,
            top_k=request.top_k,
            history=history,
        )
    except LLMTimeoutError as e:
        logger.warning(f"回答生成がタイムアウトしました: {e}")
        raise_timeout("回答生成がタイムアウトしました。しばらくしてから再度お試しください。")
    except LLMError as e:
        logger.error(f"回答生成に失敗しました: {type(e).__name__}: {e}")
        raise_internal_error("回答生成に失敗しました。")
    except Exception as e:
        logger.error(f"予期しないエラー: {type(e).__name__}: {e}", exc_info=True)
        raise_internal_error("予期しないエラーが発生しました。")

    return to_response(result)
