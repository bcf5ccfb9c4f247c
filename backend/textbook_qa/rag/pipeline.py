"""
取り込みパイプライン（Ingestion Orchestrator）

【初心者向け】
1つの取り込みジョブを、決まった順番の段で処理する:
  ダウンロード(10%) → パース(30%) → 正規化(35%) → 監査用コピー保存(38%)
  → 文書レコード作成(40%) → 構造抽出(45%) → セクション保存(50%) → チャンク分割(60%)
  → Embedding(85%) → チャンク保存(バッチごとに 86〜99%) → 完了(100%, succeeded)

- 進捗は増える一方（同じ実行内で戻らない）
- どこかの段で失敗したら failed + エラーメッセージ。途中で作った行は消さない
  → 再実行（retry）で最初からやり直し、チャンクは指紋（content_hash）で重複しない
- 再実行時、ジョブに文書IDが残っていればその文書を使い回す（中身を消してから作り直す）
- 監査用コピーの保存失敗は致命的ではない（ログだけ残して続行）
- 処理中にキャンセルされたら failed にしてから中断を伝える（running のまま残さない）
"""
import asyncio
import logging
from pathlib import PurePosixPath
from typing import Any, Dict, List

from textbook_qa.core.retry import batched
from textbook_qa.core.settings import settings
from textbook_qa.db.models import IngestJob, new_id
from textbook_qa.db.store import JOB_FAILED, JOB_SUCCEEDED, Store
from textbook_qa.docs.models import RawChunk
from textbook_qa.docs.normalize import build_page_map, normalize_markdown, remove_page_breaks
from textbook_qa.docs.parser import DocumentParser
from textbook_qa.docs.storage import BlobStorage
from textbook_qa.docs.structure import build_section_path_map, extract_structure, flatten_sections
from textbook_qa.rag.chunking import chunk_sections
from textbook_qa.rag.embedding import EmbeddingClient
from textbook_qa.rag.vectorstore import ChunkVectorStore

# ロガー設定
logger = logging.getLogger(__name__)

# 進捗チェックポイント（%）
PROGRESS_DOWNLOADED = 10
PROGRESS_PARSED = 30
PROGRESS_NORMALIZED = 35
PROGRESS_AUDIT_COPY = 38
PROGRESS_DOCUMENT = 40
PROGRESS_STRUCTURE = 45
PROGRESS_SECTIONS = 50
PROGRESS_CHUNKED = 60
PROGRESS_EMBEDDED = 85
PROGRESS_DONE = 100

CANCELLED_MESSAGE = "取り込みが中断されました"


def persist_progress(done_batches: int, total_batches: int) -> int:
    """チャンク保存中の進捗（Embedding完了〜完了の手前まで、バッチ数で按分）"""
    span = PROGRESS_DONE - 1 - PROGRESS_EMBEDDED
    return PROGRESS_EMBEDDED + span * done_batches // max(total_batches, 1)


def markdown_path_for(storage_path: str) -> str:
    """監査用Markdownの保存先（parsed/<元のパス>.md）"""
    return str(PurePosixPath("parsed") / PurePosixPath(storage_path).with_suffix(".md"))


def dedupe_chunks(chunks: List[RawChunk]) -> List[RawChunk]:
    """同じ指紋のチャンクを1つにまとめる（先に出た方を残す）"""
    seen: set[str] = set()
    unique = []
    for chunk in chunks:
        if chunk.content_hash in seen:
            continue
        seen.add(chunk.content_hash)
        unique.append(chunk)
    return unique


class IngestionOrchestrator:
    """
    取り込みジョブの実行役

    Args:
        store: Store
        vector_store: 近傍探索インデックス
        embedder: Embeddingクライアント
        parser: 文書パーサ
        storage: Blobストレージ
    """

    def __init__(
        self,
        store: Store,
        vector_store: ChunkVectorStore,
        embedder: EmbeddingClient,
        parser: DocumentParser,
        storage: BlobStorage,
    ):
        self.store = store
        self.vector_store = vector_store
        self.embedder = embedder
        self.parser = parser
        self.storage = storage

    async def run_next(self) -> IngestJob | None:
        """最も古い queued ジョブを1件処理する（なければ None）"""
        job = await self.store.claim_next_job()
        if job is None:
            logger.info("処理待ちのジョブはありません")
            return None
        return await self._run_claimed(job)

    async def run_job(self, job_id: str) -> IngestJob | None:
        """指定ジョブを処理する（queued でなければ None）"""
        job = await self.store.claim_job(job_id)
        if job is None:
            logger.warning(f"ジョブを開始できません（存在しないか queued ではない）: job_id={job_id}")
            return None
        return await self._run_claimed(job)

    async def _run_claimed(self, job: IngestJob) -> IngestJob | None:
        """running にしたジョブを最後まで処理し、成否をジョブに記録する"""
        logger.info(f"取り込み開始: job_id={job.id}, metadata={job.job_metadata}")
        try:
            document_id, chunk_count = await self._ingest(job)
        except asyncio.CancelledError:
            logger.warning(f"取り込みがキャンセルされました: job_id={job.id}")
            await asyncio.shield(self.store.update_job(job.id, status=JOB_FAILED, error=CANCELLED_MESSAGE))
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"取り込み失敗: job_id={job.id}, {type(e).__name__}: {message}", exc_info=True)
            return await self.store.update_job(job.id, status=JOB_FAILED, error=message)

        logger.info(f"取り込み完了: job_id={job.id}, document_id={document_id}, chunks={chunk_count}")
        return await self.store.update_job(job.id, status=JOB_SUCCEEDED, progress=PROGRESS_DONE, error=None)

    async def _progress(self, job_id: str, progress: int, **fields: Any) -> None:
        await self.store.update_job(job_id, progress=progress, **fields)

    async def _ingest(self, job: IngestJob) -> tuple[str, int]:
        metadata: Dict[str, Any] = dict(job.job_metadata or {})
        storage_path = metadata["storage_path"]
        title = metadata.get("title") or PurePosixPath(storage_path).stem
        filename = metadata.get("filename") or PurePosixPath(storage_path).name

        # 1. ダウンロード
        logger.info(f"Step 1: ダウンロード: {storage_path}")
        data = await self.storage.get(storage_path)
        await self._progress(job.id, PROGRESS_DOWNLOADED)

        # 2. パース
        logger.info(f"Step 2: パース: {filename} ({len(data)} bytes)")
        raw_text = await self.parser.parse(data, filename)
        await self._progress(job.id, PROGRESS_PARSED)

        # 3. 正規化（ページ対応表はページ区切りを消す前に作る）
        logger.info("Step 3: 正規化")
        normalized = normalize_markdown(raw_text)
        page_map = build_page_map(normalized)
        clean_text = remove_page_breaks(normalized)
        await self._progress(job.id, PROGRESS_NORMALIZED)

        # 4. 監査用コピー（失敗しても続行）
        markdown_path: str | None = markdown_path_for(storage_path)
        try:
            await self.storage.put(markdown_path, clean_text.encode("utf-8"))
        except Exception as e:
            logger.warning(f"監査用Markdownの保存に失敗しました（続行）: {type(e).__name__}: {e}")
            markdown_path = None
        await self._progress(job.id, PROGRESS_AUDIT_COPY)

        # 5. 文書レコード（再実行なら使い回す）
        document_fields = {
            "title": title,
            "subject": metadata.get("subject"),
            "grade": metadata.get("grade"),
            "language": metadata.get("language") or "en",
            "publisher": metadata.get("publisher"),
            "source_path": storage_path,
            "markdown_path": markdown_path,
        }
        document = None
        if job.document_id:
            document = await self.store.update_document(job.document_id, **document_fields)
        if document is not None:
            logger.info(f"Step 5: 既存の文書を更新し、前回の中身を削除: document_id={document.id}")
            old_chunk_ids = await self.store.delete_document_content(document.id)
            await asyncio.to_thread(self.vector_store.delete, old_chunk_ids)
        else:
            document = await self.store.create_document(**document_fields)
            logger.info(f"Step 5: 文書を作成: document_id={document.id}")
        await self._progress(job.id, PROGRESS_DOCUMENT, document_id=document.id)

        # 6. 構造抽出
        structure = extract_structure(clean_text, page_map)
        flat_sections = flatten_sections(structure)
        logger.info(f"Step 6: 構造抽出: sections={len(flat_sections)}, pages={page_map.page_count}")
        await self._progress(job.id, PROGRESS_STRUCTURE)

        # 7. セクション保存
        await self.store.insert_sections(document.id, flat_sections)
        section_ids = build_section_path_map(flat_sections)
        logger.info(f"Step 7: セクション保存: sections={len(flat_sections)}")
        await self._progress(job.id, PROGRESS_SECTIONS)

        # 8. チャンク分割
        chunks = dedupe_chunks(chunk_sections(structure))
        logger.info(f"Step 8: チャンク分割: chunks={len(chunks)}")
        await self._progress(job.id, PROGRESS_CHUNKED)

        # 9. Embedding（外部サービス側のリトライ込み）
        embeddings = await self.embedder.embed([c.content for c in chunks], task="document")
        if len(embeddings) != len(chunks):
            raise RuntimeError(
                f"Embeddingの件数が一致しません: chunks={len(chunks)}, embeddings={len(embeddings)}"
            )
        logger.info(f"Step 9: Embedding完了: {len(embeddings)}件")
        await self._progress(job.id, PROGRESS_EMBEDDED)

        # 10. チャンク保存（指紋が既にあれば無視）+ 近傍探索インデックス
        inserted = 0
        batches = batched(list(zip(chunks, embeddings)), settings.chunk_insert_batch_size)
        for done, batch in enumerate(batches, start=1):
            rows = [
                {
                    "id": new_id(),
                    "section_id": section_ids.get(chunk.section_path),
                    "chunk_type": chunk.chunk_type,
                    "content": chunk.content,
                    "page_start": chunk.page_start,
                    "page_end": chunk.page_end,
                    "token_count": chunk.token_count,
                    "keywords": chunk.keywords,
                    "embedding": embedding,
                    "content_hash": chunk.content_hash,
                }
                for chunk, embedding in batch
            ]
            stored = await self.store.upsert_chunks(document.id, rows)
            # 今回INSERTされた行だけ索引する（既存の指紋は別の行が持っている）
            new_rows = [row for row in rows if stored.get(row["content_hash"]) == row["id"]]
            await asyncio.to_thread(
                self.vector_store.upsert,
                ids=[row["id"] for row in new_rows],
                embeddings=[row["embedding"] for row in new_rows],
                metadatas=[
                    {
                        "document_id": document.id,
                        "subject": document.subject,
                        "grade": document.grade,
                        "chunk_type": row["chunk_type"],
                    }
                    for row in new_rows
                ],
            )
            inserted += len(new_rows)
            logger.info(f"Step 10: チャンク保存バッチ {done}/{len(batches)}: rows={len(rows)}, inserted={len(new_rows)}")
            await self._progress(job.id, persist_progress(done, len(batches)))

        logger.info(f"Step 10: チャンク保存完了: total={len(chunks)}, inserted={inserted}")
        return document.id, inserted
