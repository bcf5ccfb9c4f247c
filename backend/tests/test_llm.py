"""
LLMアダプタ層のテスト

- Ollama: レスポンス形式の吸収・リクエスト内容・エラー変換（httpx.MockTransport）
- Gemini: メッセージ形式の変換
- 構造化出力（JSON抽出・スキーマ検証）
- インラインのコンテキストキャッシュ・Embeddingクライアントのバッチ処理
"""
import json

import httpx
import pytest

from textbook_qa.core.settings import settings
from textbook_qa.llm import get_llm_client
from textbook_qa.llm.base import (
    LLMInternalError,
    LLMTimeoutError,
    LLMValidationError,
    extract_json,
    generate_structured,
)
from textbook_qa.llm.context_cache import InlineContextCache
from textbook_qa.llm.gemini import to_gemini_contents
from textbook_qa.llm.ollama import OllamaClient, extract_ollama_text
from textbook_qa.llm.prompt import QueryEntities, QuestionClassification
from textbook_qa.rag import embedding
from textbook_qa.rag.embedding import SentenceTransformerEmbeddingClient


class RecordingLLM:
    """受け取った引数を記録して固定の応答を返す"""

    def __init__(self, reply: str):
        self.reply = reply
        self.calls = []

    async def chat(self, messages, temperature=None, max_tokens=None, json_mode=False):
        self.calls.append({"messages": messages, "temperature": temperature,
                           "max_tokens": max_tokens, "json_mode": json_mode})
        return self.reply


@pytest.fixture
def mock_ollama(monkeypatch):
    """OllamaClient が使う httpx.AsyncClient に MockTransport を差し込む"""
    state = {"handler": None, "requests": []}
    real_client = httpx.AsyncClient

    def handler(request: httpx.Request) -> httpx.Response:
        state["requests"].append(json.loads(request.content))
        return state["handler"](request)

    def make_client(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", make_client)
    return state


def test_extract_ollama_text_formats():
    assert extract_ollama_text({"message": {"content": "chat"}}) == "chat"
    assert extract_ollama_text({"response": "generate"}) == "generate"
    assert extract_ollama_text([{"response": "a"}, {"response": "b"}]) == "ab"
    assert extract_ollama_text("plain") == "plain"
    assert extract_ollama_text({"unexpected": 1}) == ""
    assert extract_ollama_text(None) == ""


async def test_ollama_chat_sends_options(mock_ollama):
    mock_ollama["handler"] = lambda request: httpx.Response(200, json={"message": {"content": '{"type": "other"}'}})
    client = OllamaClient(base_url="http://ollama.test", model="llama3", timeout_sec=5)

    answer = await client.chat([{"role": "user", "content": "hi"}], temperature=0.0, max_tokens=20, json_mode=True)

    assert answer == '{"type": "other"}'
    payload = mock_ollama["requests"][0]
    assert payload["model"] == "llama3"
    assert payload["stream"] is False
    assert payload["options"] == {"temperature": 0.0, "num_predict": 20}
    assert payload["format"] == "json"


async def test_ollama_chat_maps_errors(mock_ollama):
    client = OllamaClient(base_url="http://ollama.test", model="llama3", timeout_sec=5)
    messages = [{"role": "user", "content": "hi"}]

    def timeout(request):
        raise httpx.ReadTimeout("timed out", request=request)

    mock_ollama["handler"] = timeout
    with pytest.raises(LLMTimeoutError):
        await client.chat(messages)

    mock_ollama["handler"] = lambda request: httpx.Response(500, text="model crashed")
    with pytest.raises(LLMInternalError, match="HTTP 500"):
        await client.chat(messages)

    mock_ollama["handler"] = lambda request: httpx.Response(200, json={"message": {"content": "  "}})
    with pytest.raises(LLMInternalError, match="empty_response"):
        await client.chat(messages)


def test_to_gemini_contents_merges_system_prompt():
    contents = to_gemini_contents([
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "What is osmosis?"},
        {"role": "assistant", "content": "Water movement."},
    ])

    assert contents == [
        {"role": "user", "parts": ["Be brief.\n\nWhat is osmosis?"]},
        {"role": "model", "parts": ["Water movement."]},
    ]
    assert to_gemini_contents([{"role": "system", "content": "Only system."}]) == [
        {"role": "user", "parts": ["Only system."]}
    ]


def test_extract_json_tolerates_fences_and_prose():
    assert extract_json('```json\n{"type": "compare"}\n```') == {"type": "compare"}
    assert extract_json('Sure! Here it is: {"entityNames": ["cell"]} Hope that helps.') == {"entityNames": ["cell"]}
    with pytest.raises(LLMValidationError):
        extract_json("no json here")


async def test_generate_structured_validates_schema():
    llm = RecordingLLM('{"entityNames": ["Osmosis", "Membrane"]}')
    result = await generate_structured(llm, [{"role": "user", "content": "q"}], QueryEntities)

    assert result.entity_names == ["Osmosis", "Membrane"]
    assert llm.calls[0]["json_mode"] is True
    assert llm.calls[0]["temperature"] == 0.0

    with pytest.raises(LLMValidationError):
        await generate_structured(RecordingLLM('{"kind": "other"}'), [], QuestionClassification)


async def test_inline_context_cache_prepends_textbook():
    llm = RecordingLLM("Answer from the book.")
    cache = InlineContextCache(llm, max_tokens=100)

    handle = await cache.create("# Biology\n [p. 1]\nCells.", "Biology", 3600)
    answer = await cache.generate(handle, "What are cells?", "Use the textbook.")

    assert answer == "Answer from the book."
    system = llm.calls[0]["messages"][0]["content"]
    assert system.startswith("Use the textbook.")
    assert "=== TEXTBOOK: Biology ===" in system
    assert "Cells." in system
    assert llm.calls[0]["messages"][1] == {"role": "user", "content": "What are cells?"}

    with pytest.raises(LLMInternalError):
        await cache.generate("inline/unknown", "q", "s")


def test_get_llm_client_rejects_unknown_provider(monkeypatch):
    monkeypatch.setattr(settings, "llm_provider", "unknown")
    with pytest.raises(ValueError):
        get_llm_client()


async def test_embedding_client_batches_and_prefixes(monkeypatch):
    seen = []

    def fake_embed_texts(texts, model_name=None):
        seen.append(list(texts))
        return [[float(len(text))] for text in texts]

    monkeypatch.setattr(embedding, "embed_texts", fake_embed_texts)
    client = SentenceTransformerEmbeddingClient(model_name="test-model", batch_size=2)

    vectors = await client.embed(["a", "bb", "ccc", "dddd", "eeeee"], task="document")

    assert len(seen) == 3
    assert all(text.startswith("passage: ") for batch in seen for text in batch)
    assert vectors == [[10.0], [11.0], [12.0], [13.0], [14.0]]

    seen.clear()
    await client.embed(["osmosis"], task="query")
    assert seen == [["query: osmosis"]]
    assert await client.embed([], task="query") == []
