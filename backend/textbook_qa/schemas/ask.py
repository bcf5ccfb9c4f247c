"""
QA (Ask) API用スキーマ
"""
from typing import Literal, Optional

from pydantic import BaseModel, Field

from textbook_qa.schemas.common import Citation, Confidence, Filters


class HistoryMessage(BaseModel):
    """会話履歴の1発言"""
    role: Literal["user", "assistant"]
    content: str


class AskRequest(BaseModel):
    """質問リクエスト"""
    question: str = Field(..., description="質問文")
    filters: Optional[Filters] = Field(None, description="絞り込み条件（cag では document_id 必須）")
    mode: Literal["rag", "graph", "cag"] = Field(default="rag", description="検索方式")
    top_k: Optional[int] = Field(default=None, ge=1, le=100, description="一次検索の件数（デフォルト20）")
    history: list[HistoryMessage] = Field(default_factory=list, description="これまでの会話")


class AskResponse(BaseModel):
    """質問レスポンス"""
    answer: str
    citations: list[Citation]
    confidence: Confidence
    mode: str
    question_type: str = "other"
    mean_similarity: Optional[float] = Field(default=None, description="使ったチャンクの平均類似度")
