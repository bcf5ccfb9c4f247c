"""
取り込みワーカー

queued のジョブを古い順に処理する。
    python backend/scripts/run_worker.py            # キューが空になるまで処理して終了
    python backend/scripts/run_worker.py --loop     # 空になっても待機して処理し続ける
    python backend/scripts/run_worker.py --job-id <ID>
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
from textbook_qa.db.store import JOB_SUCCEEDED
from textbook_qa.routers.deps import get_orchestrator

# ロガー設定
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def run(job_id: str | None, loop: bool, interval: float) -> int:
    """
    ジョブを処理する

    Returns:
        失敗したジョブの数
    """
    init_db(get_engine())
    orchestrator = get_orchestrator()

    if job_id:
        job = await orchestrator.run_job(job_id)
        if job is None:
            logger.error(f"ジョブを開始できませんでした: {job_id}")
            return 1
        return 0 if job.status == JOB_SUCCEEDED else 1

    failed = 0
    processed = 0
    while True:
        job = await orchestrator.run_next()
        if job is None:
            if not loop:
                break
            await asyncio.sleep(interval)
            continue
        processed += 1
        if job.status != JOB_SUCCEEDED:
            failed += 1
        logger.info(f"ジョブ結果: job_id={job.id}, status={job.status}, error={job.error}")

    logger.info(f"=== ワーカー終了: processed={processed}, failed={failed} ===")
    return failed


def main():
    parser = argparse.ArgumentParser(description="取り込みジョブを処理する")
    parser.add_argument("--job-id", help="このジョブだけ処理する")
    parser.add_argument("--loop", action="store_true", help="キューが空でも待機し続ける")
    parser.add_argument("--interval", type=float, default=10.0, help="待機間隔（秒）")
    args = parser.parse_args()

    failed = asyncio.run(run(args.job_id, args.loop, args.interval))
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
