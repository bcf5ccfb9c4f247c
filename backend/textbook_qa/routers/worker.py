"""
ワーカー APIルーター

【初心者向け】
- POST /worker/ingest: 最も古い queued ジョブを1件処理する
  （cron や外部スケジューラから定期的に叩く想定）
- ジョブが failed になってもHTTPとしては成功（結果はジョブの status を見る）
"""
import logging

from fastapi import APIRouter, Depends

from textbook_qa.rag.pipeline import IngestionOrchestrator
from textbook_qa.routers.deps import get_orchestrator
from textbook_qa.schemas.jobs import JobResponse, WorkerResponse

# ロガー設定
logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/ingest", response_model=WorkerResponse)
async def run_ingest_worker(
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
) -> WorkerResponse:
    job = await orchestrator.run_next()
    if job is None:
        return WorkerResponse(processed=False)
    return WorkerResponse(processed=True, job=JobResponse.model_validate(job))
