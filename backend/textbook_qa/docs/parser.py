"""
文書パーサ（生ファイル → ページ区切りつきMarkdown風テキスト）

【初心者向け】
- どのパーサも ---PAGE_BREAK--- でページを区切ったテキストを返す約束
  → 後段の正規化でページ番号の対応表（PageMap）を作るため
- LocalPdfParser: PyMuPDF（fitz）でPDFからページごとにテキストを抜く。txt / md はそのまま
- LlamaParseClient: 外部のパースサービスに アップロード → 完了までポーリング → 結果取得
  ポーリングは5秒ごと最大120回（=10分）。超えたら ParseTimeoutError（この層では再試行しない）
"""
import asyncio
import logging
from functools import lru_cache
from pathlib import Path
from typing import Awaitable, Callable, Protocol

import fitz  # PyMuPDF
import httpx

from textbook_qa.core.errors import IngestionError, ParseTimeoutError
from textbook_qa.core.retry import with_retry
from textbook_qa.core.settings import settings
from textbook_qa.docs.normalize import PAGE_BREAK

# ロガー設定
logger = logging.getLogger(__name__)

PAGE_SEPARATOR = f"\n\n{PAGE_BREAK}\n\n"
TEXT_SUFFIXES = {".txt", ".md", ".markdown"}


class DocumentParser(Protocol):
    """パーサの共通インターフェース"""

    async def parse(self, data: bytes, filename: str) -> str:
        ...


def extract_pdf_pages(data: bytes, filename: str = "document.pdf") -> str:
    """
    PDFのバイト列からページ区切りつきテキストを作る

    - テキストのないページ（スキャン画像等）も空ページとして残す（ページ番号をずらさない）
    """
    pages = []
    empty_pages = 0
    with fitz.open(stream=data, filetype="pdf") as doc:
        total_pages = len(doc)
        for page in doc:
            text = page.get_text() or ""
            if not text.strip():
                empty_pages += 1
            pages.append(text.strip())

    total_text_len = sum(len(p) for p in pages)
    if total_text_len == 0:
        logger.warning(
            f"PDFからテキストが抽出できませんでした（画像PDFの可能性）: {filename} "
            f"(全{total_pages}ページ、抽出テキスト=0文字)"
        )
    else:
        logger.info(
            f"PDF読み込み: {filename} - {total_pages}ページ, "
            f"テキスト合計: {total_text_len}文字, 空ページ: {empty_pages}ページ"
        )
    return PAGE_SEPARATOR.join(pages)


class LocalPdfParser:
    """プロセス内で完結するパーサ（PyMuPDF）"""

    async def parse(self, data: bytes, filename: str) -> str:
        suffix = Path(filename).suffix.lower()
        if suffix in TEXT_SUFFIXES:
            return data.decode("utf-8", errors="replace")
        if suffix == ".pdf":
            # fitz は同期APIなのでスレッドで実行
            return await asyncio.to_thread(extract_pdf_pages, data, filename)
        raise IngestionError(f"対応していないファイル形式です: {filename}")


class LlamaParseClient:
    """
    LlamaParse（外部パースサービス）のクライアント

    Args:
        api_key: APIキー
        base_url: APIのベースURL
        poll_interval_sec: ポーリング間隔
        max_polls: ポーリング回数の上限
        sleep: 待機関数（テストで差し替え可能）
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        poll_interval_sec: float | None = None,
        max_polls: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key or settings.llamaparse_api_key
        self.base_url = (base_url or settings.llamaparse_base_url).rstrip("/")
        self.poll_interval_sec = settings.parse_poll_interval_sec if poll_interval_sec is None else poll_interval_sec
        self.max_polls = max_polls or settings.parse_max_polls
        self.sleep = sleep
        self.transport = transport

        if not self.api_key:
            raise ValueError("LlamaParse APIキーが設定されていません。LLAMAPARSE_API_KEY環境変数を設定してください。")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=60.0,
            transport=self.transport,
        )

    async def submit(self, client: httpx.AsyncClient, data: bytes, filename: str) -> str:
        """アップロードしてジョブIDを返す（一時的な失敗はリトライ）"""
        async def _upload() -> httpx.Response:
            response = await client.post(
                f"{self.base_url}/upload",
                files={"file": (filename, data, "application/pdf")},
                data={
                    "result_type": "markdown",
                    "page_separator": PAGE_SEPARATOR,
                    "do_not_unroll_columns": "true",
                },
            )
            response.raise_for_status()
            return response

        response = await with_retry(
            _upload,
            label="LlamaParseアップロード",
            retry_on=(httpx.TransportError, httpx.HTTPStatusError),
        )
        job_id = response.json()["id"]
        logger.info(f"LlamaParseジョブ作成: job_id={job_id}, filename={filename}")
        return job_id

    async def poll(self, client: httpx.AsyncClient, job_id: str) -> None:
        """完了まで待つ（SUCCESS で戻る / ERROR・上限超過で例外）"""
        for i in range(self.max_polls):
            response = await client.get(f"{self.base_url}/job/{job_id}")
            response.raise_for_status()
            status = response.json()

            if status.get("status") == "SUCCESS":
                return
            if status.get("status") == "ERROR":
                raise IngestionError(f"LlamaParseジョブが失敗しました: {status.get('error') or 'Unknown error'}")

            logger.debug(f"LlamaParseポーリング中: job_id={job_id}, status={status.get('status')}, poll={i + 1}")
            await self.sleep(self.poll_interval_sec)

        raise ParseTimeoutError(
            f"LlamaParseジョブ {job_id} がタイムアウトしました"
            f"（{self.max_polls * self.poll_interval_sec:.0f}秒）"
        )

    async def fetch(self, client: httpx.AsyncClient, job_id: str) -> str:
        response = await client.get(f"{self.base_url}/job/{job_id}/result/markdown")
        response.raise_for_status()
        return response.json()["markdown"]

    async def parse(self, data: bytes, filename: str) -> str:
        async with self._client() as client:
            job_id = await self.submit(client, data, filename)
            await self.poll(client, job_id)
            markdown = await self.fetch(client, job_id)
        logger.info(f"LlamaParse完了: job_id={job_id}, chars={len(markdown)}")
        return markdown


@lru_cache(maxsize=1)
def get_document_parser() -> DocumentParser:
    """設定に応じたパーサを取得（local / llamaparse）"""
    provider = settings.parser_provider.lower()
    if provider == "llamaparse":
        return LlamaParseClient()
    if provider == "local":
        return LocalPdfParser()
    raise ValueError(f"未対応のパーサです: {settings.parser_provider}（local または llamaparse を指定してください）")
