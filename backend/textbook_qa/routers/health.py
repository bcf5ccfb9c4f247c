"""
Health check APIルーター（死活確認用）

【初心者向け】
- GET /health: サーバーが生きているか確認するエンドポイント
- DBに届くかどうかも見る（届かなければ status=degraded）
"""
import logging

from fastapi import APIRouter, Depends

from textbook_qa.db.store import Store
from textbook_qa.routers.deps import get_store

# ロガー設定
logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("")
async def health_check(store: Store = Depends(get_store)):
    """ヘルスチェック用エンドポイント"""
    try:
        chunk_count = await store.count_chunks()
    except Exception as e:
        logger.warning(f"ヘルスチェックでDBに接続できません: {type(e).__name__}: {e}")
        return {"status": "degraded", "database": "unavailable"}
    return {"status": "ok", "database": "ok", "chunks": chunk_count}
