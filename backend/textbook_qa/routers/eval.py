"""
評価（Eval）APIルーター

- POST /eval/run: 同じ質問を rag / graph / cag で同時に実行して並べる
  1方式が失敗しても他の結果は返す
- POST /eval/generate-test-cases: 監査用Markdownからテスト質問を3つ作る
- POST /eval/analyze-results: 評価結果をLLMに分析させ、Markdownのレポートを返す
"""
import logging

from fastapi import APIRouter, Depends

from textbook_qa.core.errors import raise_internal_error, raise_invalid_input, raise_not_found, raise_timeout
from textbook_qa.db.store import Store
from textbook_qa.docs.storage import BlobStorage
from textbook_qa.llm.base import LLMClient, LLMError, LLMTimeoutError
from textbook_qa.rag.composer import AnswerComposer
from textbook_qa.rag.evaluation import analyze_eval_results, generate_test_questions
from textbook_qa.routers.ask import normalize_question, to_response
from textbook_qa.routers.deps import get_composer, get_llm, get_storage, get_store
from textbook_qa.schemas.eval import (
    AnalyzeResultsRequest,
    AnalyzeResultsResponse,
    EvalRequest,
    EvalResponse,
    GenerateTestCasesRequest,
    GenerateTestCasesResponse,
    ModeEvalResult,
)

# ロガー設定
logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/run", response_model=EvalResponse)
async def run_eval(
    request: EvalRequest,
    composer: AnswerComposer = Depends(get_composer),
) -> EvalResponse:
    question = normalize_question(request.question)
    if not question:
        raise_invalid_input("質問文が空です")

    results = await composer.evaluate_modes(question, request.document_id, request.top_k)
    logger.info(
        f"方式比較完了: document_id={request.document_id}, "
        f"errors={[r.mode for r in results if r.error]}"
    )
    return EvalResponse(
        question=question,
        results=[
            ModeEvalResult(
                mode=r.mode,
                result=to_response(r.result) if r.result else None,
                error=r.error,
                latency_ms=r.latency_ms,
            )
            for r in results
        ],
    )


@router.post("/generate-test-cases", response_model=GenerateTestCasesResponse)
async def generate_test_cases(
    request: GenerateTestCasesRequest,
    store: Store = Depends(get_store),
    storage: BlobStorage = Depends(get_storage),
    llm_client: LLMClient = Depends(get_llm),
) -> GenerateTestCasesResponse:
    """
    教科書からテスト質問を作る

    Raises:
        404: 文書がない・監査用Markdownのファイルがない
        400: 監査用Markdownが保存されていない文書
    """
    document = await store.get_document(request.document_id)
    if document is None:
        raise_not_found(f"文書が見つかりません: {request.document_id}")
    if not document.markdown_path:
        raise_invalid_input("この文書には監査用Markdownがありません")

    try:
        markdown = (await storage.get(document.markdown_path)).decode("utf-8")
    except FileNotFoundError:
        raise_not_found(f"監査用Markdownが見つかりません: {document.markdown_path}")
    if not markdown.strip():
        raise_invalid_input("監査用Markdownが空です")

    try:
        questions = await generate_test_questions(llm_client, document.title, markdown)
    except LLMTimeoutError as e:
        logger.warning(f"テスト質問の生成がタイムアウトしました: {e}")
        raise_timeout("テスト質問の生成がタイムアウトしました。")
    except LLMError as e:
        logger.error(f"テスト質問の生成に失敗しました: {type(e).__name__}: {e}")
        raise_internal_error("テスト質問の生成に失敗しました。")

    return GenerateTestCasesResponse(document_id=document.id, title=document.title, questions=questions)


@router.post("/analyze-results", response_model=AnalyzeResultsResponse)
async def analyze_results(
    request: AnalyzeResultsRequest,
    llm_client: LLMClient = Depends(get_llm),
) -> AnalyzeResultsResponse:
    if not request.results:
        raise_invalid_input("評価結果が空です")

    try:
        report = await analyze_eval_results(llm_client, [r.model_dump() for r in request.results])
    except LLMTimeoutError as e:
        logger.warning(f"評価結果の分析がタイムアウトしました: {e}")
        raise_timeout("評価結果の分析がタイムアウトしました。")
    except LLMError as e:
        logger.error(f"評価結果の分析に失敗しました: {type(e).__name__}: {e}")
        raise_internal_error("評価結果の分析に失敗しました。")

    return AnalyzeResultsResponse(report=report)
