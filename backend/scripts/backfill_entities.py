"""
エンティティのバックフィル

全チャンク（または指定文書のチャンク）からエンティティを抽出して保存する。
再実行しても重複しない。1チャンクの失敗はスキップして続行する。
    python backend/scripts/backfill_entities.py [--document-id <ID>] [--page-size 50]
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

# プロジェクトルートをパスに追加
repo_root = Path(__file__).parent.parent
sys.path.insert(0, str(repo_root))

from textbook_qa.db.session import get_engine, init_db
from textbook_qa.llm import get_llm_client
from textbook_qa.rag.graph import backfill_entities
from textbook_qa.routers.deps import get_store

# ロガー設定
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def run(document_id: str | None, page_size: int) -> None:
    init_db(get_engine())
    store = get_store()
    total = await store.count_chunks(document_id)
    logger.info(f"=== バックフィル開始: chunks={total}, document_id={document_id or '(all)'} ===")

    stats = await backfill_entities(store, get_llm_client(), document_id=document_id, page_size=page_size)

    logger.info(
        f"=== バックフィル完了: processed={stats.processed}, failed={stats.failed}, "
        f"entities={stats.entities}, links={stats.links} ==="
    )


def main():
    parser = argparse.ArgumentParser(description="チャンクからエンティティを抽出して保存する")
    parser.add_argument("--document-id", help="この文書のチャンクだけ処理する")
    parser.add_argument("--page-size", type=int, default=50, help="1回に読むチャンク数")
    args = parser.parse_args()

    try:
        asyncio.run(run(args.document_id, args.page_size))
    except Exception as e:
        logger.error(f"バックフィル失敗: {type(e).__name__}: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
