"""
共通スキーマ定義（APIで共通利用する型）

【初心者向け】
- Citation: 引用（教科書名 / 章 / トピック / ページ範囲）。回答の根拠表示に使用
  同じ出典（章・トピック・ページが同じ）のチャンクは1件にまとめ、chunk_ids に全部入れる
- Filters: 検索の絞り込み条件（文書ID・教科・学年）
"""
from typing import Literal

from pydantic import BaseModel, Field

Confidence = Literal["high", "medium", "low"]


class Citation(BaseModel):
    """引用情報"""
    chunk_id: str  # 代表チャンク（まとめたうちの先頭）
    chunk_ids: list[str] = Field(default_factory=list)
    book_title: str
    chapter: str
    topic: str = ""
    page_start: int | None = None
    page_end: int | None = None


class Filters(BaseModel):
    """検索の絞り込み条件"""
    document_id: str | None = None
    subject: str | None = None
    grade: str | None = None


class ErrorResponse(BaseModel):
    """エラーレスポンス"""
    error: dict[str, str]
