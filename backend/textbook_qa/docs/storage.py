"""
Blobストレージ（アップロード原本・正規化テキストの保存）

【初心者向け】
- パス（例: uploads/xxx.pdf, markdown/<文書ID>.md）でバイト列を出し入れする
- 実体はローカルディスク。ファイルI/Oはスレッドで実行してイベントループを止めない
- ルートの外に出るパス（../ など）は拒否する
"""
import asyncio
import logging
from functools import lru_cache
from pathlib import Path

from textbook_qa.core.settings import settings

# ロガー設定
logger = logging.getLogger(__name__)


class BlobStorage:
    """ローカルファイルシステム上のBlobストレージ"""

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root or settings.blob_dir).resolve()

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValueError(f"ストレージの外を指すパスです: {path}")
        return target

    def _put(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    async def put(self, path: str, data: bytes) -> str:
        """保存してパスを返す（同じパスは上書き）"""
        await asyncio.to_thread(self._put, path, data)
        logger.info(f"Blob保存: path={path}, bytes={len(data)}")
        return path

    async def get(self, path: str) -> bytes:
        """
        読み込み

        Raises:
            FileNotFoundError: 存在しない場合
        """
        return await asyncio.to_thread(self._resolve(path).read_bytes)

    async def delete(self, path: str) -> bool:
        """削除（存在しなければ False）"""
        target = self._resolve(path)

        def _delete() -> bool:
            if not target.exists():
                return False
            target.unlink()
            return True

        deleted = await asyncio.to_thread(_delete)
        logger.info(f"Blob削除: path={path}, deleted={deleted}")
        return deleted

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(self._resolve(path).exists)


@lru_cache(maxsize=1)
def get_blob_storage() -> BlobStorage:
    """アプリ全体で共有するBlobストレージ"""
    return BlobStorage()
