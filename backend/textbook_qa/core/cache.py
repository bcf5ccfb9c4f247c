"""
期限付きキャッシュ（プロセス内）

【初心者向け】
- key -> (value, 期限) の単純なマップ。期限切れは「再計算」で解決する（無効化通知はしない）
- clock を差し替えられるので、テストで時間を進めてTTLの挙動を確認できる
- 全文テキストキャッシュ・コンテキストキャッシュのハンドル保持に使う
"""
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Optional, TypeVar

V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    """キャッシュの1エントリ"""
    value: V
    expires_at: float  # clock() 基準の期限（秒）


class TTLCache(Generic[V]):
    """
    TTL付きのインメモリキャッシュ

    - get(key, margin=...) で「期限まで margin 秒以上残っている」値だけ返す
    - マルチプロセス環境では「プロセスごとのキャッシュ」になる（再計算は冪等なので問題なし）
    """

    def __init__(self, ttl_sec: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_sec = ttl_sec
        self.clock = clock
        self._entries: Dict[str, CacheEntry[V]] = {}

    def get(self, key: str, margin: float = 0.0) -> Optional[V]:
        """
        有効な値を取得（期限切れ・期限直前なら None）

        Args:
            key: キー
            margin: 期限までに最低限残っていてほしい秒数

        Returns:
            値 または None
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self.clock() + margin:
            # 期限切れは削除して再計算させる
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: str, value: V, ttl_sec: float | None = None) -> CacheEntry[V]:
        """値を保存（ttl_sec 未指定ならキャッシュ既定のTTL）"""
        ttl = self.ttl_sec if ttl_sec is None else ttl_sec
        entry = CacheEntry(value=value, expires_at=self.clock() + ttl)
        self._entries[key] = entry
        return entry

    def purge(self) -> int:
        """期限切れのエントリを削除し、削除件数を返す"""
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
