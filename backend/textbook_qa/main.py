"""
FastAPIアプリケーションのエントリーポイント（アプリの起動入口）

【初心者向け】
このファイルは教科書QAサービスのバックエンドAPIサーバーを起動する「玄関」です。
- 起動時に /ask, /ingest, /jobs, /documents などのルート（APIの窓口）を登録し、
  起動イベントでDBのテーブルを作成します
- 取り込み（PDF → チャンク → Embedding）はジョブとして積み、ワーカーが処理します

実行方法:
    venv有効化後:
    pip install -e .
    uvicorn textbook_qa.main:app --reload --port 8000 --app-dir backend
"""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from textbook_qa.core.settings import settings
from textbook_qa.db.session import get_engine, init_db
from textbook_qa.routers import ask, documents, eval, health, jobs, worker

# ロガー設定
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Textbook QA API",
    description="Question answering over uploaded textbooks (RAG / GraphRAG / full-context)",
    version="0.1.0",
)

# CORS設定: フロントエンドからAPIを呼ぶ際の跨域通信を許可
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ルーター登録
app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(ask.router, prefix="/ask", tags=["ask"])
app.include_router(jobs.ingest_router, prefix="/ingest", tags=["ingest"])
app.include_router(jobs.jobs_router, prefix="/jobs", tags=["jobs"])
app.include_router(worker.router, prefix="/worker", tags=["worker"])
app.include_router(documents.router, prefix="/documents", tags=["documents"])
app.include_router(eval.router, prefix="/eval", tags=["eval"])


@app.on_event("startup")
async def startup_event():
    """
    起動時の処理: テーブルがなければ作成する
    """
    try:
        init_db(get_engine())
    except Exception as e:
        # 失敗してもサーバ起動は落とさない（ログだけ出す）
        logger.error(f"起動時のDB初期化に失敗しました: {type(e).__name__}: {e}", exc_info=True)


@app.get("/")
async def root():
    """ルートエンドポイント"""
    return {"message": "Textbook QA API"}
