"""
全文モード（CAG）のテスト

- 全文テキストの形式（見出しは章/トピックが変わったときだけ）
- キャッシュハンドルの再利用と、期限間近での作り直し
- 同じ文書への同時リクエストでもハンドルは1つだけ作る
"""
import asyncio

from textbook_qa.core.cache import TTLCache
from textbook_qa.docs.models import FlatSection
from textbook_qa.rag.full_context import FullContextRetriever, format_page_ref


def _sections():
    return [
        FlatSection(id="c1", parent_id=None, level=1, title="Chapter 1", order_index=0,
                    page_start=1, page_end=4, path="Chapter 1"),
        FlatSection(id="t1", parent_id="c1", level=2, title="Topic A", order_index=0,
                    page_start=2, page_end=4, path="Chapter 1 > Topic A"),
        FlatSection(id="c2", parent_id=None, level=1, title="Chapter 2", order_index=1,
                    page_start=5, page_end=6, path="Chapter 2"),
        FlatSection(id="t2", parent_id="c2", level=2, title="Topic B", order_index=0,
                    page_start=5, page_end=6, path="Chapter 2 > Topic B"),
    ]


async def _seed(store, make_chunk_row):
    document = await store.create_document(title="Biology")
    await store.insert_sections(document.id, _sections())
    await store.upsert_chunks(document.id, [
        make_chunk_row("Cells are the basic unit of life.", section_id="c1", page=1),
        make_chunk_row("The membrane controls transport.", section_id="t1", page=2),
        make_chunk_row("Osmosis moves water across membranes.", section_id="t1", page=3, page_end=4),
        make_chunk_row("Genes are made of DNA.", section_id="t2", page=5),
    ])
    return document


def _retriever(store, context_cache, clock):
    return FullContextRetriever(
        store,
        context_cache,
        text_cache=TTLCache(ttl_sec=1800, clock=clock),
        handle_cache=TTLCache(ttl_sec=3600, clock=clock),
    )


def test_format_page_ref():
    assert format_page_ref(3, 3) == " [p. 3]"
    assert format_page_ref(3, 5) == " [p. 3-5]"
    assert format_page_ref(None, None) == ""


async def test_full_text_layout(store, make_chunk_row, context_cache, clock):
    document = await _seed(store, make_chunk_row)

    full_text = await _retriever(store, context_cache, clock).build_full_text(document.id)

    expected = "# Biology\n" + "\n".join([
        "\n\n## Chapter 1",
        " [p. 1]\nCells are the basic unit of life.",
        "\n### Topic A",
        " [p. 2]\nThe membrane controls transport.",
        " [p. 3-4]\nOsmosis moves water across membranes.",
        "\n\n## Chapter 2",
        "\n### Topic B",
        " [p. 5]\nGenes are made of DNA.",
    ])
    assert full_text.text == expected
    assert full_text.title == "Biology"
    assert full_text.chunk_count == 4


async def test_full_text_is_cached_until_ttl(store, make_chunk_row, context_cache, clock):
    document = await _seed(store, make_chunk_row)
    retriever = _retriever(store, context_cache, clock)
    first = await retriever.build_full_text(document.id)

    await store.upsert_chunks(document.id, [make_chunk_row("Late addition.", section_id="t2", page=6)])
    clock.advance(1799)
    assert (await retriever.build_full_text(document.id)).text == first.text

    clock.advance(1)
    refreshed = await retriever.build_full_text(document.id)
    assert refreshed.text.endswith(" [p. 6]\nLate addition.")


async def test_cache_handle_reused_then_recreated_near_expiry(store, make_chunk_row, context_cache, clock):
    document = await _seed(store, make_chunk_row)
    retriever = _retriever(store, context_cache, clock)

    answer = await retriever.answer("What is osmosis?", document.id, [{"role": "user", "content": "Hi"}])
    await retriever.answer("What are genes?", document.id)

    assert answer == context_cache.answer
    assert len(context_cache.created) == 1
    text, title, ttl = context_cache.created[0]
    assert title == "Biology" and ttl == 3600 and text.startswith("# Biology\n")
    assert [handle for handle, _ in context_cache.generated] == ["cachedContents/1", "cachedContents/1"]
    assert "What is osmosis?" in context_cache.generated[0][1]

    # 期限の5分前を切ったら使わない
    clock.advance(3600 - 299)
    await retriever.answer("What is DNA?", document.id)
    assert len(context_cache.created) == 2
    assert context_cache.generated[-1][0] == "cachedContents/2"


async def test_answer_returns_none_for_missing_or_empty_document(store, context_cache, clock):
    retriever = _retriever(store, context_cache, clock)
    empty = await store.create_document(title="Empty")

    assert await retriever.answer("q", "no-such-document") is None
    assert await retriever.answer("q", empty.id) is None
    assert context_cache.created == []


class _SlowContextCache:
    """create の途中で他のタスクに制御を渡すキャッシュ"""

    def __init__(self):
        self.created = 0

    async def create(self, text: str, title: str, ttl_sec: int) -> str:
        self.created += 1
        handle = f"cachedContents/{self.created}"
        await asyncio.sleep(0.01)
        return handle

    async def generate(self, handle: str, prompt: str, system_instruction: str) -> str:
        return "ok"


async def test_concurrent_requests_share_one_cache_handle(store, make_chunk_row, clock):
    document = await _seed(store, make_chunk_row)
    cache_client = _SlowContextCache()
    retriever = _retriever(store, cache_client, clock)
    full_text = await retriever.build_full_text(document.id)

    handles = await asyncio.gather(*[retriever.get_cache_handle(document.id, full_text) for _ in range(3)])

    assert cache_client.created == 1
    assert handles == ["cachedContents/1"] * 3
