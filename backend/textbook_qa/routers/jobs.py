"""
取り込みジョブ APIルーター

【初心者向け】
- POST /ingest: 保存済みファイルを取り込むジョブを作る（queued）
- POST /ingest/upload: ファイルをアップロードして保存し、ジョブを作る
- GET /jobs, GET /jobs/{id}: ジョブの一覧・状態（進捗%）
- POST /jobs/{id}/retry: failed のジョブだけ queued に戻す（それ以外は 409）
- 実際の処理はワーカー（POST /worker/ingest または scripts/run_worker.py）が行う
"""
import logging
import uuid
from pathlib import PurePosixPath
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile

from textbook_qa.core.errors import JobStateError, raise_conflict, raise_invalid_input, raise_not_found
from textbook_qa.db.store import Store
from textbook_qa.docs.parser import TEXT_SUFFIXES
from textbook_qa.docs.storage import BlobStorage
from textbook_qa.routers.deps import get_storage, get_store
from textbook_qa.schemas.jobs import DocumentMetadata, IngestRequest, JobListResponse, JobResponse

# ロガー設定
logger = logging.getLogger(__name__)

ingest_router = APIRouter()
jobs_router = APIRouter()

ALLOWED_SUFFIXES = {".pdf", *TEXT_SUFFIXES}


@ingest_router.post("", response_model=JobResponse, status_code=201)
async def create_ingest_job(
    request: IngestRequest,
    store: Store = Depends(get_store),
    storage: BlobStorage = Depends(get_storage),
) -> JobResponse:
    """保存済みファイルの取り込みジョブを作成"""
    try:
        exists = await storage.exists(request.storage_path)
    except ValueError as e:
        raise_invalid_input(str(e))
    if not exists:
        raise_not_found(f"ファイルが見つかりません: {request.storage_path}")

    metadata = {
        **request.metadata.model_dump(),
        "storage_path": request.storage_path,
        "filename": PurePosixPath(request.storage_path).name,
    }
    job = await store.create_job(metadata)
    logger.info(f"取り込みジョブ作成: job_id={job.id}, storage_path={request.storage_path}")
    return JobResponse.model_validate(job)


@ingest_router.post("/upload", response_model=JobResponse, status_code=201)
async def upload_and_ingest(
    file: UploadFile = File(...),
    title: str = Form(...),
    subject: Optional[str] = Form(None),
    grade: Optional[str] = Form(None),
    language: str = Form("en"),
    publisher: Optional[str] = Form(None),
    store: Store = Depends(get_store),
    storage: BlobStorage = Depends(get_storage),
) -> JobResponse:
    """ファイルを保存して取り込みジョブを作成"""
    filename = PurePosixPath(file.filename or "").name
    suffix = PurePosixPath(filename).suffix.lower()
    if suffix not in ALLOWED_SUFFIXES:
        raise_invalid_input(f"対応していないファイル形式です: {filename or '(no name)'}")
    if not title.strip():
        raise_invalid_input("教科書名（title）が空です")

    data = await file.read()
    if not data:
        raise_invalid_input("ファイルが空です")

    storage_path = f"uploads/{uuid.uuid4()}{suffix}"
    await storage.put(storage_path, data)

    metadata = DocumentMetadata(
        title=title.strip(), subject=subject, grade=grade, language=language, publisher=publisher
    )
    job = await store.create_job({
        **metadata.model_dump(),
        "storage_path": storage_path,
        "filename": filename,
    })
    logger.info(f"アップロード取り込みジョブ作成: job_id={job.id}, filename={filename}, bytes={len(data)}")
    return JobResponse.model_validate(job)


@jobs_router.get("", response_model=JobListResponse)
async def list_jobs(
    limit: int = 50,
    status: Optional[str] = None,
    store: Store = Depends(get_store),
) -> JobListResponse:
    jobs = await store.list_jobs(limit=max(1, min(limit, 200)), status=status)
    return JobListResponse(jobs=[JobResponse.model_validate(job) for job in jobs])


@jobs_router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, store: Store = Depends(get_store)) -> JobResponse:
    job = await store.get_job(job_id)
    if job is None:
        raise_not_found(f"ジョブが見つかりません: {job_id}")
    return JobResponse.model_validate(job)


@jobs_router.post("/{job_id}/retry", response_model=JobResponse)
async def retry_job(job_id: str, store: Store = Depends(get_store)) -> JobResponse:
    """failed のジョブを queued に戻す（進捗0・エラー消去）"""
    try:
        job = await store.retry_job(job_id)
    except JobStateError as e:
        raise_conflict(str(e))
    if job is None:
        raise_not_found(f"ジョブが見つかりません: {job_id}")
    logger.info(f"ジョブを再キュー: job_id={job_id}")
    return JobResponse.model_validate(job)
