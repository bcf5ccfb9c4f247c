"""
取り込みジョブ API用スキーマ
"""
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class DocumentMetadata(BaseModel):
    """取り込む教科書の情報"""
    title: str = Field(..., min_length=1, description="教科書名")
    subject: Optional[str] = Field(None, description="教科")
    grade: Optional[str] = Field(None, description="学年")
    language: str = Field(default="en", description="言語")
    publisher: Optional[str] = Field(None, description="出版社")


class IngestRequest(BaseModel):
    """保存済みファイルの取り込みリクエスト"""
    storage_path: str = Field(..., min_length=1, description="Blobストレージ上のパス")
    metadata: DocumentMetadata


class JobResponse(BaseModel):
    """ジョブの状態"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    progress: int
    error: Optional[str] = None
    document_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="job_metadata")
    created_at: datetime
    updated_at: datetime


class JobListResponse(BaseModel):
    jobs: list[JobResponse]


class WorkerResponse(BaseModel):
    """ワーカー実行結果（処理待ちがなければ job は None）"""
    processed: bool
    job: Optional[JobResponse] = None
