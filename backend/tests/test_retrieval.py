"""
ベクトル検索・検索結果の補強（章/トピック）・兄弟展開・クエリ拡張のテスト
"""
import json

from textbook_qa.docs.models import FlatSection
from textbook_qa.llm.base import LLMInternalError
from textbook_qa.rag.models import RetrievalFilters, RetrievedChunk
from textbook_qa.rag.retrieval import (
    VectorRetriever,
    enrich_chunks,
    expand_query,
    expand_with_siblings,
    resolve_chapter_topic,
)

PHOTOSYNTHESIS = "Photosynthesis in green plants converts light energy into chemical energy."
RESPIRATION = "Mitochondria release stored energy through cellular respiration."
WATER_CYCLE = "Evaporation and condensation drive the water cycle over oceans."


def _tree(prefix: str):
    return [
        FlatSection(id=f"{prefix}-ch", parent_id=None, level=1, title="Chapter 1", order_index=0,
                    page_start=1, page_end=9, path="Chapter 1"),
        FlatSection(id=f"{prefix}-top", parent_id=f"{prefix}-ch", level=2, title="Topic A", order_index=0,
                    page_start=2, page_end=5, path="Chapter 1 > Topic A"),
        FlatSection(id=f"{prefix}-sub", parent_id=f"{prefix}-top", level=3, title="Details", order_index=0,
                    page_start=3, page_end=4, path="Chapter 1 > Topic A > Details"),
    ]


async def test_vector_retrieval_orders_by_similarity(store, vector_store, embedder, seed_document):
    await seed_document("Biology", [(PHOTOSYNTHESIS, None, 1), (RESPIRATION, None, 2), (WATER_CYCLE, None, 3)])
    retriever = VectorRetriever(store, vector_store, embedder)

    chunks = await retriever.retrieve("photosynthesis in green plants", top_k=3)

    assert chunks[0].content == PHOTOSYNTHESIS
    similarities = [c.similarity for c in chunks]
    assert similarities == sorted(similarities, reverse=True)
    assert all(c.source == "vector" for c in chunks)
    assert embedder.calls[-1] == (["photosynthesis in green plants"], "query")


async def test_vector_retrieval_respects_document_filter(store, vector_store, embedder, seed_document):
    biology, _ = await seed_document("Biology", [(PHOTOSYNTHESIS, None, 1)])
    geography, _ = await seed_document("Geography", [(WATER_CYCLE, None, 1)])
    retriever = VectorRetriever(store, vector_store, embedder)

    only_geo = await retriever.retrieve("photosynthesis", RetrievalFilters(document_id=geography.id))
    assert [c.document_id for c in only_geo] == [geography.id]

    missing = await retriever.retrieve("photosynthesis", RetrievalFilters(document_id="no-such-document"))
    assert missing == []


async def test_vector_retrieval_skips_rows_missing_from_db(store, vector_store, embedder, seed_document):
    document, _ = await seed_document("Biology", [(PHOTOSYNTHESIS, None, 1)])
    await store.delete_document_content(document.id)
    retriever = VectorRetriever(store, vector_store, embedder)

    assert await retriever.retrieve("photosynthesis") == []


async def test_vector_retrieval_uses_expanded_query(store, vector_store, embedder, llm, seed_document):
    await seed_document("Biology", [(PHOTOSYNTHESIS, None, 1)])
    llm.responses["expand"] = json.dumps({"expanded_query": "photosynthesis chlorophyll light reactions plants"})
    retriever = VectorRetriever(store, vector_store, embedder, llm_client=llm, query_expansion=True)

    await retriever.retrieve("photosynthesis")

    assert llm.count("expand") == 1
    assert embedder.calls[-1][0] == ["photosynthesis chlorophyll light reactions plants"]


async def test_expand_query_falls_back_to_original(llm):
    long_question = " ".join(["word"] * 25)
    assert await expand_query(llm, long_question) == long_question
    assert llm.count("expand") == 0

    llm.responses["expand"] = json.dumps({"expanded_query": "short"})
    assert await expand_query(llm, "what is osmosis") == "what is osmosis"

    llm.responses["expand"] = LLMInternalError("model offline")
    assert await expand_query(llm, "what is osmosis") == "what is osmosis"


async def test_enrich_chunks_resolves_chapter_and_topic(store, vector_store, embedder, seed_document):
    document, ids = await seed_document(
        "Biology",
        [(PHOTOSYNTHESIS, "b-sub", 3), (RESPIRATION, "b-top", 2), (WATER_CYCLE, "b-ch", 1)],
        sections=_tree("b"),
    )
    rows = await store.get_chunks_by_ids(ids)
    chunks = [RetrievedChunk.from_row(rows[i], 0.9) for i in ids]
    chunks.append(RetrievedChunk(id="loose", document_id=document.id, content="x", similarity=0.1))

    await enrich_chunks(store, chunks)

    assert [(c.book_title, c.chapter, c.topic) for c in chunks] == [
        ("Biology", "Chapter 1", "Topic A"),
        ("Biology", "Chapter 1", "Topic A"),
        ("Biology", "Chapter 1", ""),
        ("Biology", "", ""),
    ]


def test_resolve_chapter_topic_without_section():
    assert resolve_chapter_topic(None, {}) == ("", "")


async def test_sibling_expansion_adds_zero_similarity_chunks(store, vector_store, embedder, seed_document):
    _, ids = await seed_document(
        "Biology",
        [(PHOTOSYNTHESIS, "s-top", 2), (RESPIRATION, "s-top", 3), (WATER_CYCLE, "s-top", 4)],
        sections=_tree("s"),
    )
    rows = await store.get_chunks_by_ids(ids)
    hit = [RetrievedChunk.from_row(rows[ids[0]], 0.8)]

    expanded = await expand_with_siblings(store, hit, max_total=2)

    assert len(expanded) == 2
    assert expanded[0] is hit[0]
    assert expanded[1].id == ids[1]
    assert expanded[1].similarity == 0.0
    assert expanded[1].source == "sibling"

    assert await expand_with_siblings(store, hit, max_total=1) == hit
