"""
テスト共通の設定とフィクスチャ

- pytest-asyncio（auto モード）
- インメモリSQLite（StaticPool）の Store
- chromadb の EphemeralClient（テストごとに別コレクション）
- LLM / Embedding / ランキング / コンテキストキャッシュ / パーサ のフェイク（呼び出し回数を記録）
"""
import json
import math
import re
import uuid
import zlib
from typing import Any, Callable, Dict, List, Sequence, Tuple

import chromadb
import pytest

from textbook_qa.db.session import create_db_engine, init_db
from textbook_qa.db.store import Store
from textbook_qa.docs.storage import BlobStorage
from textbook_qa.rag.vectorstore import ChunkVectorStore, get_collection

pytest_plugins = ["pytest_asyncio"]

EMBEDDING_DIM = 64
_WORD_RE = re.compile(r"[a-z0-9]+")


def fake_vector(text: str) -> List[float]:
    """単語の袋をハッシュして作る決定的なベクトル（同じ語が多いほど近い）"""
    vector = [0.0] * EMBEDDING_DIM
    for word in _WORD_RE.findall(text.lower()):
        vector[zlib.crc32(word.encode("utf-8")) % (EMBEDDING_DIM - 1)] += 1.0
    vector[-1] = 0.5  # ゼロベクトルにしない
    norm = math.sqrt(sum(v * v for v in vector))
    return [v / norm for v in vector]


class FakeEmbedder:
    """EmbeddingClient のフェイク"""

    def __init__(self, fail_times: int = 0):
        self.calls: List[Tuple[List[str], str]] = []
        self.fail_times = fail_times

    async def embed(self, texts: Sequence[str], task: str) -> List[List[float]]:
        self.calls.append((list(texts), task))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("embedding service unavailable")
        # "query: " / "passage: " の接頭辞はベクトルに影響させない
        return [fake_vector(text) for text in texts]


class FakeLLM:
    """
    LLMClient のフェイク

    プロンプトの中身で用途を判定し、用途ごとに設定した応答を返す。
    応答に例外インスタンスを入れるとその例外を投げる。
    """

    def __init__(self):
        self.responses: Dict[str, Any] = {
            "classify": json.dumps({"type": "definition"}),
            "extract": json.dumps({"entities": []}),
            "query_entities": json.dumps({"entityNames": []}),
            "expand": json.dumps({"expanded_query": ""}),
            "answer": "Photosynthesis converts light energy into chemical energy [Chapter 1, p. 1].",
            "test_cases": json.dumps({"questions": [
                {"question": "What is chlorophyll?"},
                {"question": "Why do plants need light?"},
                {"question": "Define photosynthesis."},
            ]}),
            "analysis": "## Performance Overview\n- 1 of 2 answers had high confidence.",
        }
        self.calls: List[Tuple[str, List[Dict[str, str]]]] = []

    @staticmethod
    def kind_of(messages: List[Dict[str, str]]) -> str:
        text = "\n".join(m["content"] for m in messages)
        if "diverse and high-quality test questions" in text:
            return "test_cases"
        if "quality assurance expert" in text:
            return "analysis"
        if "Classify the following student question" in text:
            return "classify"
        if "Extract the key academic entities" in text:
            return "extract"
        if "Identify the key subjects" in text:
            return "query_entities"
        if "search query optimizer" in text:
            return "expand"
        return "answer"

    def count(self, kind: str) -> int:
        return sum(1 for k, _ in self.calls if k == kind)

    async def chat(self, messages, temperature=None, max_tokens=None, json_mode=False) -> str:
        kind = self.kind_of(messages)
        self.calls.append((kind, messages))
        response = self.responses[kind]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(messages)
        return response


class FakeRanker:
    """RankingClient のフェイク（result に関数・リスト・例外を設定できる）"""

    def __init__(self, result: Any = None):
        self.result = result
        self.calls = 0

    async def rank(self, query: str, records: Sequence[Tuple[str, str, str]], top_n: int) -> List[Tuple[str, float]]:
        self.calls += 1
        if isinstance(self.result, Exception):
            raise self.result
        if callable(self.result):
            return self.result(query, records, top_n)
        if self.result is None:
            # 既定: 入力の逆順にスコアを付ける
            return [(record_id, float(i)) for i, (record_id, _, _) in enumerate(records)][::-1][:top_n]
        return self.result


class FakeContextCache:
    """ContextCacheClient のフェイク"""

    def __init__(self, answer: str = "The whole book says so (Chapter 1, p. 1)."):
        self.answer = answer
        self.created: List[Tuple[str, str, int]] = []
        self.generated: List[Tuple[str, str]] = []

    async def create(self, text: str, title: str, ttl_sec: int) -> str:
        self.created.append((text, title, ttl_sec))
        return f"cachedContents/{len(self.created)}"

    async def generate(self, handle: str, prompt: str, system_instruction: str) -> str:
        self.generated.append((handle, prompt))
        return self.answer


class FakeParser:
    """DocumentParser のフェイク（固定テキストを返す）"""

    def __init__(self, text: str = "", error: Exception | None = None):
        self.text = text
        self.error = error
        self.calls = 0

    async def parse(self, data: bytes, filename: str) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.text


class FakeClock:
    """TTLCache 用の時計（advance で時間を進める）"""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def paragraph(topic: str, sentences: int = 8) -> str:
    """テスト用の本文（1文およそ90文字）"""
    return " ".join(
        f"The study of {topic} explains how living systems use energy and matter in sentence number {i}."
        for i in range(sentences)
    )


def make_textbook(paragraphs_per_section: int = 10) -> str:
    """章とトピックが1つずつの教科書（各セクション約2000トークン）"""
    chapter_body = "\n\n".join(paragraph(f"photosynthesis stage {i}") for i in range(paragraphs_per_section))
    topic_body = "\n\n".join(paragraph(f"chlorophyll pigment {i}") for i in range(paragraphs_per_section))
    return f"# Chapter 1\n\n{chapter_body}\n\n---PAGE_BREAK---\n\n## Topic A\n\n{topic_body}\n"


@pytest.fixture
def store() -> Store:
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield Store(engine)
    engine.dispose()


@pytest.fixture
def vector_store() -> ChunkVectorStore:
    client = chromadb.EphemeralClient()
    collection = get_collection(collection_name=f"test_{uuid.uuid4().hex}", client=client)
    return ChunkVectorStore(collection)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def blob_storage(tmp_path) -> BlobStorage:
    return BlobStorage(tmp_path / "blobs")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_chunk_row() -> Callable[..., Dict[str, Any]]:
    """upsert_chunks に渡す行を作る"""
    def _make(content: str, section_id: str | None = None, page: int = 1, **extra: Any) -> Dict[str, Any]:
        row = {
            "section_id": section_id,
            "chunk_type": "explanation",
            "content": content,
            "page_start": page,
            "page_end": page,
            "token_count": math.ceil(len(content) / 4),
            "keywords": [],
            "embedding": None,
            "content_hash": uuid.uuid4().hex,
        }
        row.update(extra)
        return row
    return _make


@pytest.fixture
def seed_document(store, vector_store):
    """
    文書とチャンクをDBとベクトルストアの両方に入れる

    entries は (本文, section_id, ページ) のタプル。戻り値は (Document, チャンクIDのリスト)
    """
    async def _seed(
        title: str,
        entries: Sequence[Tuple[str, str | None, int]],
        sections: Sequence[Any] = (),
        subject: str | None = None,
    ):
        document = await store.create_document(title=title, subject=subject)
        if sections:
            await store.insert_sections(document.id, list(sections))
        rows = [
            {
                "id": uuid.uuid4().hex,
                "section_id": section_id,
                "chunk_type": "explanation",
                "content": content,
                "page_start": page,
                "page_end": page,
                "token_count": math.ceil(len(content) / 4),
                "keywords": [],
                "embedding": fake_vector(content),
                "content_hash": uuid.uuid4().hex,
            }
            for content, section_id, page in entries
        ]
        await store.upsert_chunks(document.id, rows)
        vector_store.upsert(
            ids=[row["id"] for row in rows],
            embeddings=[row["embedding"] for row in rows],
            metadatas=[{"document_id": document.id, "subject": subject} for _ in rows],
        )
        return document, [row["id"] for row in rows]
    return _seed


@pytest.fixture
def make_ranker() -> Callable[..., FakeRanker]:
    return FakeRanker


@pytest.fixture
def context_cache() -> FakeContextCache:
    return FakeContextCache()


@pytest.fixture
def textbook_text() -> str:
    return make_textbook()


@pytest.fixture
def parser(textbook_text) -> FakeParser:
    return FakeParser(textbook_text)
