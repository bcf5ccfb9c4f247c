"""
文書パーサ（PyMuPDF / LlamaParse）とBlobストレージのテスト

LlamaParse は httpx.MockTransport で応答を差し替える
"""
import fitz
import httpx
import pytest

from textbook_qa.core.errors import IngestionError, ParseTimeoutError
from textbook_qa.core.settings import settings
from textbook_qa.docs.parser import PAGE_SEPARATOR, LlamaParseClient, LocalPdfParser


def _pdf_bytes(pages):
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        if text:
            page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


async def test_local_parser_reads_pdf_pages():
    data = _pdf_bytes(["Chapter 1 Cells", "", "Chapter 2 Genes"])

    text = await LocalPdfParser().parse(data, "biology.pdf")

    pages = text.split(PAGE_SEPARATOR)
    assert len(pages) == 3
    assert "Cells" in pages[0]
    assert pages[1] == ""
    assert "Genes" in pages[2]


async def test_local_parser_passes_text_through():
    assert await LocalPdfParser().parse(b"# Title\n\nBody", "notes.md") == "# Title\n\nBody"


async def test_local_parser_rejects_unknown_types():
    with pytest.raises(IngestionError):
        await LocalPdfParser().parse(b"...", "slides.pptx")


class _LlamaParseServer:
    """アップロード → ポーリング → 結果取得 を真似る"""

    def __init__(self, statuses, upload_failures=0):
        self.statuses = list(statuses)
        self.upload_failures = upload_failures
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        path = request.url.path
        if path.endswith("/upload"):
            if self.upload_failures > 0:
                self.upload_failures -= 1
                return httpx.Response(503, json={"detail": "busy"})
            assert request.headers["Authorization"] == "Bearer test-key"
            return httpx.Response(200, json={"id": "job-1"})
        if path.endswith("/result/markdown"):
            return httpx.Response(200, json={"markdown": f"# Cells{PAGE_SEPARATOR}## Membranes"})
        if path.endswith("/job/job-1"):
            status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            return httpx.Response(200, json=status)
        return httpx.Response(404)


def _client(server, max_polls=5):
    waits = []

    async def fake_sleep(seconds):
        waits.append(seconds)

    client = LlamaParseClient(
        api_key="test-key",
        base_url="https://parser.test/api/parsing",
        poll_interval_sec=5.0,
        max_polls=max_polls,
        sleep=fake_sleep,
        transport=httpx.MockTransport(server),
    )
    return client, waits


async def test_llamaparse_polls_until_success(monkeypatch):
    monkeypatch.setattr(settings, "retry_base_delay_sec", 0.0)
    server = _LlamaParseServer([{"status": "PENDING"}, {"status": "PENDING"}, {"status": "SUCCESS"}],
                               upload_failures=1)
    client, waits = _client(server)

    markdown = await client.parse(b"%PDF", "biology.pdf")

    assert markdown == f"# Cells{PAGE_SEPARATOR}## Membranes"
    assert waits == [5.0, 5.0]
    assert [p for _, p in server.requests].count("/api/parsing/upload") == 2


async def test_llamaparse_error_status_fails():
    server = _LlamaParseServer([{"status": "ERROR", "error": "corrupt file"}])
    client, _ = _client(server)

    with pytest.raises(IngestionError, match="corrupt file"):
        await client.parse(b"%PDF", "biology.pdf")


async def test_llamaparse_poll_limit_raises_timeout():
    server = _LlamaParseServer([{"status": "PENDING"}])
    client, waits = _client(server, max_polls=3)

    with pytest.raises(ParseTimeoutError):
        await client.parse(b"%PDF", "biology.pdf")
    assert len(waits) == 3


def test_llamaparse_requires_api_key(monkeypatch):
    monkeypatch.setattr(settings, "llamaparse_api_key", "")
    with pytest.raises(ValueError):
        LlamaParseClient()


async def test_blob_storage_roundtrip(blob_storage):
    path = await blob_storage.put("uploads/a.pdf", b"data")

    assert path == "uploads/a.pdf"
    assert await blob_storage.exists(path)
    assert await blob_storage.get(path) == b"data"
    assert await blob_storage.delete(path) is True
    assert await blob_storage.delete(path) is False
    with pytest.raises(FileNotFoundError):
        await blob_storage.get(path)


async def test_blob_storage_rejects_escaping_paths(blob_storage):
    with pytest.raises(ValueError):
        await blob_storage.put("../outside.txt", b"x")
