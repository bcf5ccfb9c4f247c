"""
評価用の補助（テスト質問の生成・評価結果の分析）

【初心者向け】
- テスト質問: 取り込み時に保存した監査用Markdownから一部を切り出し、LLMに質問を3つ作らせる
  冒頭（目次など）に偏らないよう、切り出し位置はランダム
- 結果の分析: /eval/run などで集めた回答をまとめてLLMに渡し、Markdownのレポートを書かせる
"""
import logging
import random
from typing import Any, Dict, List

from textbook_qa.llm.base import LLMClient, LLMInternalError, generate_structured
from textbook_qa.llm.prompt import GeneratedQuestionSet, build_analysis_messages, build_test_case_messages

# ロガー設定
logger = logging.getLogger(__name__)

SNIPPET_CHARS = 8000
TEST_QUESTION_COUNT = 3


def pick_snippet(markdown: str, size: int = SNIPPET_CHARS, rng: random.Random | None = None) -> str:
    """本文から size 文字を切り出す（短ければ全文）"""
    rng = rng or random.Random()
    start = rng.randint(0, max(0, len(markdown) - size))
    return markdown[start:start + size]


async def generate_test_questions(
    llm_client: LLMClient,
    title: str,
    markdown: str,
    rng: random.Random | None = None,
) -> List[str]:
    """
    教科書の抜粋からテスト質問を作る

    Raises:
        LLMValidationError: 出力がJSONでない・形が合わない場合
        LLMTimeoutError / LLMInternalError: 呼び出し自体の失敗
    """
    snippet = pick_snippet(markdown, rng=rng)
    result = await generate_structured(
        llm_client,
        build_test_case_messages(title, snippet, TEST_QUESTION_COUNT),
        GeneratedQuestionSet,
        temperature=0.7,
        max_tokens=1024,
    )
    questions = [q.question.strip() for q in result.questions if q.question.strip()]
    logger.info(f"テスト質問を生成: title={title}, snippet_chars={len(snippet)}, questions={len(questions)}")
    return questions[:TEST_QUESTION_COUNT]


async def analyze_eval_results(llm_client: LLMClient, results: List[Dict[str, Any]]) -> str:
    """
    評価結果の品質レポート（Markdown）を作る

    Raises:
        LLMInternalError: 空の応答
    """
    report = await llm_client.chat(
        messages=build_analysis_messages(results),
        temperature=0.2,
        max_tokens=2048,
    )
    if not report or not report.strip():
        raise LLMInternalError("分析レポートが空でした")
    logger.info(f"評価結果を分析: results={len(results)}, report_chars={len(report)}")
    return report.strip()
