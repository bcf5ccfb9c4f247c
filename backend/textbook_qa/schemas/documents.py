"""
文書管理 API用スキーマ
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class DocumentSummary(BaseModel):
    """文書一覧の1件"""
    id: str
    title: str
    subject: Optional[str] = None
    grade: Optional[str] = None
    language: Optional[str] = None
    publisher: Optional[str] = None
    chunk_count: int
    created_at: datetime


class DocumentListResponse(BaseModel):
    documents: list[DocumentSummary]


class DeleteDocumentResponse(BaseModel):
    id: str
    deleted: bool
