"""
リトライ・バッチ処理ヘルパー

【初心者向け】
- 外部サービス（パース・Embedding等）の一時的な失敗を、指数バックオフで再試行する
- 待機時間 = base_delay * 2**attempt + ランダムなジッター
- 最後まで失敗したら最後のエラーをそのまま投げる
"""
import asyncio
import logging
import random
from typing import Awaitable, Callable, List, Sequence, Tuple, Type, TypeVar

from textbook_qa.core.settings import settings

# ロガー設定
logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int | None = None,
    base_delay: float | None = None,
    label: str = "operation",
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    非同期処理を指数バックオフ付きで実行する

    Args:
        fn: 実行する処理（呼ぶたびに新しいawaitableを返すこと）
        attempts: 最大試行回数（デフォルト: settingsから取得）
        base_delay: 基本待機時間（秒、デフォルト: settingsから取得）
        label: ログ用のラベル
        retry_on: リトライ対象の例外型
        sleep: 待機関数（テストで差し替え可能）

    Returns:
        fn の戻り値

    Raises:
        最後の試行で発生した例外
    """
    max_attempts = max(1, attempts or settings.retry_max_attempts)
    delay_base = settings.retry_base_delay_sec if base_delay is None else base_delay

    last_error: BaseException | None = None
    for attempt in range(max_attempts):
        try:
            return await fn()
        except retry_on as e:
            last_error = e
            if attempt < max_attempts - 1:
                wait_time = delay_base * (2 ** attempt) + random.uniform(0, delay_base / 4)
                logger.warning(
                    f"{label} 失敗（試行 {attempt + 1}/{max_attempts}）: "
                    f"{type(e).__name__}: {e}。{wait_time:.1f}秒後にリトライします"
                )
                await sleep(wait_time)
            else:
                logger.error(f"{label} がリトライ上限に達しました: {type(e).__name__}: {e}")

    assert last_error is not None
    raise last_error


def batched(items: Sequence[T], batch_size: int) -> List[Sequence[T]]:
    """
    リストを batch_size 件ずつに分割する

    Args:
        items: 分割対象
        batch_size: 1バッチの件数

    Returns:
        バッチのリスト
    """
    size = max(1, batch_size)
    return [items[i:i + size] for i in range(0, len(items), size)]
