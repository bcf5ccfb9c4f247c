"""
Store（永続化リポジトリ）のテスト

インメモリSQLiteで、upsert の冪等性・エンティティ検索・ジョブの状態遷移・カスケード削除を確認
"""
import pytest

from textbook_qa.core.errors import JobStateError
from textbook_qa.db.store import JOB_FAILED, JOB_QUEUED, JOB_RUNNING, JOB_SUCCEEDED
from textbook_qa.docs.models import FlatSection


def _sections():
    return [
        FlatSection(id="s-1", parent_id=None, level=1, title="Chapter 1", order_index=0,
                    page_start=1, page_end=3, path="Chapter 1"),
        FlatSection(id="s-2", parent_id="s-1", level=2, title="Topic A", order_index=0,
                    page_start=2, page_end=3, path="Chapter 1 > Topic A"),
    ]


async def test_upsert_chunks_ignores_existing_fingerprints(store, make_chunk_row):
    document = await store.create_document(title="Biology")
    rows = [make_chunk_row("Cells are the unit of life.", content_hash="h1"),
            make_chunk_row("Osmosis moves water.", content_hash="h2")]

    first = await store.upsert_chunks(document.id, rows)
    again = await store.upsert_chunks(document.id, [
        make_chunk_row("Cells are the unit of life.", content_hash="h1"),
    ])

    assert set(first) == {"h1", "h2"}
    assert again["h1"] == first["h1"]
    assert await store.count_chunks(document.id) == 2


async def test_list_documents_counts_chunks(store, make_chunk_row):
    empty = await store.create_document(title="Empty")
    full = await store.create_document(title="Full")
    await store.upsert_chunks(full.id, [make_chunk_row("a"), make_chunk_row("b")])

    counts = {doc.id: count for doc, count in await store.list_documents()}
    assert counts == {empty.id: 0, full.id: 2}


async def test_sections_and_sibling_chunks(store, make_chunk_row):
    document = await store.create_document(title="Biology")
    await store.insert_sections(document.id, _sections())
    stored = await store.upsert_chunks(document.id, [
        make_chunk_row("first", section_id="s-2", page=2, content_hash="a"),
        make_chunk_row("second", section_id="s-2", page=3, content_hash="b"),
        make_chunk_row("other", section_id="s-1", page=1, content_hash="c"),
    ])

    sections = await store.get_sections(document.id)
    assert [s.title for s in sections] == ["Chapter 1", "Topic A"]

    siblings = await store.get_chunks_by_sections(["s-2"], exclude_ids=[stored["a"]])
    assert [c.content for c in siblings] == ["second"]


async def test_entity_upsert_is_idempotent(store):
    first = await store.upsert_entity("Photosynthesis", "Process")
    again = await store.upsert_entity("Photosynthesis", "Process", "Light to sugar")
    other = await store.upsert_entity("Photosynthesis", "Concept")

    assert first == again
    assert other != first


async def test_find_chunks_by_entity_names(store, make_chunk_row):
    bio = await store.create_document(title="Biology")
    chem = await store.create_document(title="Chemistry")
    ids = await store.upsert_chunks(bio.id, [
        make_chunk_row("Chlorophyll absorbs light.", content_hash="x1"),
        make_chunk_row("Plants make glucose.", content_hash="x2"),
    ])
    chem_ids = await store.upsert_chunks(chem.id, [
        make_chunk_row("Glucose is a sugar.", content_hash="y1"),
    ])
    entity = await store.upsert_entity("Photosynthesis", "Process")
    await store.link_chunk_entity(ids["x1"], entity, 0.4)
    await store.link_chunk_entity(ids["x2"], entity, 0.9)
    await store.link_chunk_entity(chem_ids["y1"], entity, 0.7)
    # 同じ組は upsert（関連度が更新される）
    await store.link_chunk_entity(ids["x1"], entity, 0.5)

    found = await store.find_chunks_by_entity_names(["  photosynthesis "], limit=10)
    assert [(c.content, r) for c, r in found] == [
        ("Plants make glucose.", 0.9),
        ("Glucose is a sugar.", 0.7),
        ("Chlorophyll absorbs light.", 0.5),
    ]

    only_bio = await store.find_chunks_by_entity_names(["PHOTOSYNTHESIS"], document_id=bio.id, limit=1)
    assert [c.id for c, _ in only_bio] == [ids["x2"]]

    assert await store.find_chunks_by_entity_names(["", "   "]) == []


async def test_job_lifecycle_and_retry(store):
    job = await store.create_job({"storage_path": "uploads/a.pdf", "title": "A"})
    assert job.status == JOB_QUEUED and job.progress == 0

    claimed = await store.claim_next_job()
    assert claimed.id == job.id
    assert claimed.status == JOB_RUNNING
    # 2回目は取れない
    assert await store.claim_job(job.id) is None
    assert await store.claim_next_job() is None

    await store.update_job(job.id, progress=40)
    updated = await store.update_job(job.id, progress=10)
    assert updated.progress == 40

    with pytest.raises(JobStateError):
        await store.retry_job(job.id)

    await store.update_job(job.id, status=JOB_FAILED, error="parse failed")
    retried = await store.retry_job(job.id)
    assert (retried.status, retried.progress, retried.error) == (JOB_QUEUED, 0, None)

    assert await store.retry_job("missing") is None


async def test_list_jobs_filters_by_status(store):
    first = await store.create_job({"storage_path": "a"})
    await store.create_job({"storage_path": "b"})
    await store.update_job(first.id, status=JOB_SUCCEEDED)

    succeeded = await store.list_jobs(status=JOB_SUCCEEDED)
    assert [j.id for j in succeeded] == [first.id]
    assert len(await store.list_jobs()) == 2


async def test_delete_document_cascades(store, make_chunk_row):
    document = await store.create_document(title="Biology")
    await store.insert_sections(document.id, _sections())
    ids = await store.upsert_chunks(document.id, [make_chunk_row("text", section_id="s-2", content_hash="z")])
    entity = await store.upsert_entity("Cell", "Concept")
    await store.link_chunk_entity(ids["z"], entity, 1.0)
    job = await store.create_job({"storage_path": "a"})
    await store.update_job(job.id, document_id=document.id)

    deleted = await store.delete_document(document.id)

    assert deleted.id == document.id
    assert await store.get_document(document.id) is None
    assert await store.count_chunks() == 0
    assert await store.get_sections(document.id) == []
    assert await store.find_chunks_by_entity_names(["cell"]) == []
    assert (await store.get_job(job.id)).document_id is None
    assert await store.delete_document(document.id) is None


async def test_delete_document_content_keeps_document(store, make_chunk_row):
    document = await store.create_document(title="Biology")
    await store.insert_sections(document.id, _sections())
    ids = await store.upsert_chunks(document.id, [make_chunk_row("text", section_id="s-2", content_hash="q")])

    removed = await store.delete_document_content(document.id)

    assert removed == [ids["q"]]
    assert await store.get_document(document.id) is not None
    assert await store.count_chunks(document.id) == 0
    assert await store.get_sections(document.id) == []


async def test_query_log_roundtrip(store):
    await store.insert_query_log(
        question="What is osmosis?", mode="rag", filters={}, chunk_ids=["c1"],
        answer="Water movement.", citations=[], confidence="high",
    )
    logs = await store.list_query_logs()
    assert [(l.question, l.chunk_ids) for l in logs] == [("What is osmosis?", ["c1"])]
