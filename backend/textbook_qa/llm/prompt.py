"""
プロンプト生成ロジック

【初心者向け】
- 回答生成: 与えたコンテキストだけを使い、主張ごとに [章, pp. X–Y] で出典を書かせる
  コンテキストで答えられないときは「分からない」と明言させる（捏造させない）
- 質問分類 / エンティティ抽出 / 質問中の概念抽出 / クエリ拡張: JSONで返させる
- 全文モード（CAG）: 教科書全体がキャッシュにある前提のプロンプト
- 教科書が英語なので、LLMへの指示文も英語で書く
"""
from typing import Dict, List

from pydantic import BaseModel, Field

from textbook_qa.rag.models import RetrievedChunk, format_pages

QUESTION_TYPES = ("definition", "explanation", "essay", "compare", "other")
ENTITY_CATEGORIES = ("Concept", "Definition", "Process", "Person", "Location", "Event", "Other")


# ---------------------------------------------------------------
# 構造化出力のスキーマ
# ---------------------------------------------------------------

class QuestionClassification(BaseModel):
    """質問の種別"""
    type: str


class ExtractedEntity(BaseModel):
    """チャンクから抽出したエンティティ"""
    name: str = Field(min_length=1)
    type: str
    description: str | None = None
    relevance: float = Field(ge=0.0, le=1.0)


class EntityExtraction(BaseModel):
    entities: List[ExtractedEntity] = Field(default_factory=list)


class QueryEntities(BaseModel):
    """質問に出てくる概念名"""
    entity_names: List[str] = Field(default_factory=list, alias="entityNames")

    model_config = {"populate_by_name": True}


class QueryExpansion(BaseModel):
    expanded_query: str


# ---------------------------------------------------------------
# 回答生成
# ---------------------------------------------------------------

ANSWER_SYSTEM_PROMPT = """You are a study assistant that answers student questions using ONLY the textbook context provided.

Rules:
- Use only the information in the numbered context sources. Do not use outside knowledge.
- Cite every claim with a reference in the form [Chapter, pp. X–Y] taken from the source header.
- If the context does not contain enough information to answer, say clearly that the provided textbook context is insufficient to answer the question. Never invent facts, chapters or page numbers.
- Match the answer to the question type: short and precise for definitions, step by step for explanations, structured paragraphs for essays, point-by-point for comparisons."""


def build_context_block(chunks: List[RetrievedChunk]) -> str:
    """
    コンテキストブロックを作る（番号・章/トピック・ページ範囲つき）

    Args:
        chunks: 生成に使うチャンク（この順番が番号になる）

    Returns:
        LLMに渡すテキスト
    """
    parts = []
    for i, chunk in enumerate(chunks, 1):
        chapter = chunk.chapter or "Unknown chapter"
        header = f"[Source {i}] ({chapter}"
        if chunk.topic:
            header += f", {chunk.topic}"
        header += f", {format_pages(chunk.page_start, chunk.page_end)})"
        parts.append(f"{header}\n{chunk.content}")
    return "\n\n---\n\n".join(parts)


def format_history(history: List[Dict[str, str]] | None) -> str:
    if not history:
        return "No previous history."
    return "\n".join(f"{m.get('role', 'user').upper()}: {m.get('content', '')}" for m in history)


def build_answer_messages(
    question: str,
    question_type: str,
    chunks: List[RetrievedChunk],
    history: List[Dict[str, str]] | None = None,
) -> List[Dict[str, str]]:
    """
    回答生成用のメッセージリストを構築

    Args:
        question: 質問文
        question_type: 質問種別（definition / explanation / essay / compare / other）
        chunks: リランク後のチャンク
        history: これまでの会話

    Returns:
        LLM用メッセージリスト
    """
    user_content = f"""Question type: {question_type}

Textbook context:
{build_context_block(chunks)}

Conversation history:
{format_history(history)}

Question: "{question}"

Answer the question now, citing sources as [Chapter, pp. X–Y]."""

    return [
        {"role": "system", "content": ANSWER_SYSTEM_PROMPT},
        {"role": "user", "content": user_content},
    ]


# ---------------------------------------------------------------
# 質問分類
# ---------------------------------------------------------------

def build_classify_messages(question: str) -> List[Dict[str, str]]:
    """質問種別の分類用メッセージ"""
    content = f"""Classify the following student question into ONE of these types:

- definition: asks for the meaning or definition of a term
- explanation: asks to explain a concept or process
- essay: requires a long-form answer (describe, discuss, analyze)
- compare: asks to compare, contrast, or differentiate
- other: does not fit the above categories

Question: "{question}"

Respond with JSON only: {{"type": "<one of definition|explanation|essay|compare|other>"}}"""
    return [{"role": "user", "content": content}]


# ---------------------------------------------------------------
# エンティティ（グラフ検索）
# ---------------------------------------------------------------

def build_entity_extraction_messages(text: str) -> List[Dict[str, str]]:
    """チャンク本文からのエンティティ抽出用メッセージ"""
    categories = ", ".join(ENTITY_CATEGORIES)
    content = f"""You are an educational content analyzer.
Extract the key academic entities, definitions and concepts from the textbook text below.
Focus on terms that are central to the subject and useful for connecting this text to related topics.

Return JSON only in this shape:
{{"entities": [{{"name": "...", "type": "<{categories}>", "description": "...", "relevance": 0.0}}]}}
- type must be one of: {categories}
- relevance is how central the entity is to this text, from 0.0 to 1.0

TEXT:
\"\"\"
{text}
\"\"\""""
    return [{"role": "user", "content": content}]


def build_query_entities_messages(question: str) -> List[Dict[str, str]]:
    """質問に含まれる概念名の抽出用メッセージ"""
    content = f"""Identify the key subjects, concepts or terms in this student question.
Return only the names of the most relevant entities to look up in a textbook knowledge base.

QUESTION: "{question}"

Respond with JSON only: {{"entityNames": ["...", "..."]}}"""
    return [{"role": "user", "content": content}]


# ---------------------------------------------------------------
# クエリ拡張
# ---------------------------------------------------------------

EXPANSION_SYSTEM_PROMPT = """You are a search query optimizer for an educational textbook retrieval system.
Expand the student's query with relevant synonyms, related terms and textbook vocabulary so the search engine finds more relevant passages.

Rules:
- Keep it under 80 words
- Include the original terms plus synonyms and related concepts
- Use terminology likely found in secondary school textbooks"""


def build_expansion_messages(question: str) -> List[Dict[str, str]]:
    """クエリ拡張用メッセージ"""
    return [
        {"role": "system", "content": EXPANSION_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": f'Expand this student query for textbook search:\n\n"{question}"\n\n'
                       'Respond with JSON only: {"expanded_query": "..."}',
        },
    ]


# ---------------------------------------------------------------
# 全文モード（CAG）
# ---------------------------------------------------------------

CAG_SYSTEM_PROMPT = """You are a study assistant operating in Full Textbook Mode. The complete textbook is loaded in your context.

Rules:
- Search the whole textbook for the most relevant information and connect chapters when it helps.
- Cite every claim inline as (Chapter Name, p. XX) using the chapter headers and [p. X] markers in the text.
- If the question asks about something NOT in the textbook, say so explicitly.
- Do not fabricate page numbers or chapter names. Only cite what exists in the provided text."""


def build_cag_prompt(question: str, history: List[Dict[str, str]] | None = None) -> str:
    """全文モードのプロンプト"""
    return f"""You have the ENTIRE textbook loaded in your context. Use it to answer the following question.

Conversation history:
{format_history(history)}

Question: "{question}"

Answer thoroughly, citing (Chapter Name, p. XX) after each claim."""


# ---------------------------------------------------------------
# 評価用（テスト質問の生成・結果の分析）
# ---------------------------------------------------------------

class GeneratedQuestion(BaseModel):
    question: str = Field(min_length=1)


class GeneratedQuestionSet(BaseModel):
    """教科書の抜粋から作ったテスト質問"""
    questions: List[GeneratedQuestion] = Field(min_length=1)


def build_test_case_messages(title: str, snippet: str, count: int = 3) -> List[Dict[str, str]]:
    """テスト質問生成用メッセージ（事実・理由・概念の3種類）"""
    content = f"""You are an educational content creator for secondary school curricula.
Based on the following textbook snippet from "{title}", generate {count} diverse and high-quality test questions that a student might ask.

Snippet:
\"\"\"
{snippet}
\"\"\"

Requirements:
- Generate exactly {count} questions.
- Question 1: A direct fact-based question.
- Question 2: An explanatory "how" or "why" question.
- Question 3: A short answer conceptual question.
- Base the questions ONLY on the provided snippet.

Respond with JSON only: {{"questions": [{{"question": "..."}}]}}"""
    return [{"role": "user", "content": content}]


def format_eval_results(results: List[Dict[str, object]]) -> str:
    """評価結果を分析プロンプト用のテキストにする"""
    blocks = []
    for i, result in enumerate(results, start=1):
        blocks.append(
            f"Question {i}: {result.get('question', '')}\n"
            f"Answer: {result.get('answer', '')}\n"
            f"Confidence: {result.get('confidence', '')}\n"
            f"Citations count: {len(result.get('citations') or [])}"
        )
    return "\n---\n".join(blocks)


def build_analysis_messages(results: List[Dict[str, object]]) -> List[Dict[str, str]]:
    """評価結果の品質レポート作成用メッセージ（Markdownで返させる）"""
    content = f"""You are a quality assurance expert for retrieval-augmented question answering. Analyze the following evaluation results and write a professional report.

EVALUATION DATA:
{format_eval_results(results)}

REPORT STRUCTURE:
1. **Performance Overview**: overall performance and the approximate success rate (high confidence vs others).
2. **Confidence Analysis**: the distribution of confidence levels.
3. **Citation & Source Evaluation**: are there enough citations, and are they consistent?
4. **Key Strengths**: what the system did well.
5. **Identified Weaknesses & Issues**: specific questions where the answers were weak.
6. **Actionable Recommendations**: 3-5 concrete technical recommendations (chunk size, embedding model, reranking, system prompt).

Format the output in clean Markdown with headings and bullet points."""
    return [{"role": "user", "content": content}]
