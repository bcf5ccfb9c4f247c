"""
検索方式の比較（Eval）API用スキーマ
"""
from typing import Any, Optional

from pydantic import BaseModel, Field

from textbook_qa.schemas.ask import AskResponse


class EvalRequest(BaseModel):
    document_id: str = Field(..., min_length=1)
    question: str = Field(..., min_length=1)
    top_k: Optional[int] = Field(default=None, ge=1, le=100)


class ModeEvalResult(BaseModel):
    """1方式分の結果（失敗時は error のみ）"""
    mode: str
    result: Optional[AskResponse] = None
    error: Optional[str] = None
    latency_ms: int


class EvalResponse(BaseModel):
    question: str
    results: list[ModeEvalResult]


class GenerateTestCasesRequest(BaseModel):
    document_id: str = Field(..., min_length=1)


class GenerateTestCasesResponse(BaseModel):
    document_id: str
    title: str
    questions: list[str]


class EvalResultItem(BaseModel):
    """分析に渡す1件分の評価結果"""
    question: str
    answer: str
    confidence: str
    citations: list[Any] = Field(default_factory=list)


class AnalyzeResultsRequest(BaseModel):
    results: list[EvalResultItem] = Field(default_factory=list)


class AnalyzeResultsResponse(BaseModel):
    report: str
