"""
永続化リポジトリ（Store）

【初心者向け】
- パイプライン・検索・APIは、SQLを直接書かずにこのStore経由でDBを読み書きする
- SQLAlchemyのセッション処理は同期なので、asyncio.to_thread で別スレッドに逃がす
  （イベントループを止めないため）
- 重複させたくない行（チャンク・エンティティ・紐付け）は INSERT .. ON CONFLICT で書く
  → 同じ文書を2回取り込んでも、同じチャンクは1行のまま
"""
import asyncio
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from textbook_qa.core.errors import JobStateError
from textbook_qa.db.models import (
    Chunk,
    ChunkEntity,
    Document,
    Entity,
    IngestJob,
    QueryLog,
    Section,
    new_id,
)
from textbook_qa.db.session import create_session_factory
from textbook_qa.docs.models import FlatSection

# ロガー設定
logger = logging.getLogger(__name__)

T = TypeVar("T")

# ジョブの状態
JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_SUCCEEDED = "succeeded"
JOB_FAILED = "failed"


class Store:
    """
    DBアクセスをまとめたリポジトリ

    - 全メソッドが async（中身は to_thread で同期セッションを実行）
    - 返すORMオブジェクトはセッションから切り離し済み（関連の遅延ロードはしないこと）
    """

    def __init__(self, engine: Engine, session_factory: sessionmaker | None = None):
        self.engine = engine
        self.session_factory = session_factory or create_session_factory(engine)
        self.dialect = engine.dialect.name
        # SQLiteは同時書き込みに弱いので、プロセス内で直列化する
        self._lock = threading.Lock() if self.dialect == "sqlite" else None

    # ---------------------------------------------------------------
    # 内部ヘルパー
    # ---------------------------------------------------------------

    def _execute(self, fn: Callable[[Session], T]) -> T:
        if self._lock is None:
            return self._execute_unlocked(fn)
        with self._lock:
            return self._execute_unlocked(fn)

    def _execute_unlocked(self, fn: Callable[[Session], T]) -> T:
        with self.session_factory() as session:
            try:
                result = fn(session)
                session.commit()
                return result
            except Exception:
                session.rollback()
                raise

    async def _run(self, fn: Callable[[Session], T]) -> T:
        return await asyncio.to_thread(self._execute, fn)

    def _insert(self, model):
        """方言ごとの INSERT（ON CONFLICT 対応）を返す"""
        if self.dialect == "postgresql":
            return postgresql.insert(model)
        if self.dialect == "sqlite":
            return sqlite.insert(model)
        raise NotImplementedError(f"ON CONFLICT 非対応の方言です: {self.dialect}")

    # ---------------------------------------------------------------
    # documents
    # ---------------------------------------------------------------

    async def create_document(self, **fields: Any) -> Document:
        def _fn(session: Session) -> Document:
            document = Document(**fields)
            session.add(document)
            session.flush()
            return document
        return await self._run(_fn)

    async def update_document(self, document_id: str, **fields: Any) -> Optional[Document]:
        def _fn(session: Session) -> Optional[Document]:
            document = session.get(Document, document_id)
            if document is None:
                return None
            for key, value in fields.items():
                setattr(document, key, value)
            session.flush()
            return document
        return await self._run(_fn)

    async def get_document(self, document_id: str) -> Optional[Document]:
        return await self._run(lambda session: session.get(Document, document_id))

    async def list_documents(self) -> List[Tuple[Document, int]]:
        """文書一覧（チャンク数つき、新しい順）"""
        def _fn(session: Session) -> List[Tuple[Document, int]]:
            counts = (
                select(Chunk.document_id, func.count(Chunk.id).label("chunk_count"))
                .group_by(Chunk.document_id)
                .subquery()
            )
            rows = session.execute(
                select(Document, func.coalesce(counts.c.chunk_count, 0))
                .outerjoin(counts, counts.c.document_id == Document.id)
                .order_by(Document.created_at.desc())
            ).all()
            return [(doc, int(count)) for doc, count in rows]
        return await self._run(_fn)

    async def delete_document(self, document_id: str) -> Optional[Document]:
        """文書を削除（sections / chunks / 紐付けはカスケード削除）"""
        def _fn(session: Session) -> Optional[Document]:
            document = session.get(Document, document_id)
            if document is None:
                return None
            session.delete(document)
            return document
        return await self._run(_fn)

    async def delete_document_content(self, document_id: str) -> List[str]:
        """
        文書の sections / chunks だけを削除（文書行は残す）

        Returns:
            削除したチャンクIDのリスト（ベクトル側の削除に使う）
        """
        def _fn(session: Session) -> List[str]:
            chunk_ids = list(session.scalars(
                select(Chunk.id).where(Chunk.document_id == document_id)
            ))
            session.execute(delete(Chunk).where(Chunk.document_id == document_id))
            # 自己参照FKを外してから消す
            session.execute(
                update(Section).where(Section.document_id == document_id).values(parent_id=None)
            )
            session.execute(delete(Section).where(Section.document_id == document_id))
            return chunk_ids
        return await self._run(_fn)

    # ---------------------------------------------------------------
    # sections
    # ---------------------------------------------------------------

    async def insert_sections(self, document_id: str, sections: Sequence[FlatSection]) -> int:
        """平らにしたセクションを保存（親が先に並んでいる前提）"""
        def _fn(session: Session) -> int:
            for flat in sections:
                session.add(Section(
                    id=flat.id,
                    document_id=document_id,
                    level=flat.level,
                    title=flat.title,
                    parent_id=flat.parent_id,
                    order_index=flat.order_index,
                    page_start=flat.page_start,
                    page_end=flat.page_end,
                ))
                # 親を先にINSERTしておく（自己参照FK）
                session.flush()
            return len(sections)
        return await self._run(_fn)

    async def get_sections(self, document_id: str) -> List[Section]:
        def _fn(session: Session) -> List[Section]:
            return list(session.scalars(
                select(Section)
                .where(Section.document_id == document_id)
                .order_by(Section.level, Section.order_index)
            ))
        return await self._run(_fn)

    async def get_sections_by_ids(self, section_ids: Iterable[str]) -> Dict[str, Section]:
        ids = list({sid for sid in section_ids if sid})
        if not ids:
            return {}

        def _fn(session: Session) -> Dict[str, Section]:
            rows = session.scalars(select(Section).where(Section.id.in_(ids)))
            return {section.id: section for section in rows}
        return await self._run(_fn)

    # ---------------------------------------------------------------
    # chunks
    # ---------------------------------------------------------------

    async def upsert_chunks(self, document_id: str, rows: Sequence[Dict[str, Any]]) -> Dict[str, str]:
        """
        チャンクを保存（content_hash が既にあれば無視）

        Args:
            document_id: 文書ID
            rows: Chunkの列名をキーにした辞書のリスト（content_hash 必須）

        Returns:
            {content_hash: chunk_id}（既存行も含む）
        """
        if not rows:
            return {}

        def _fn(session: Session) -> Dict[str, str]:
            values = [
                {"id": row.get("id") or new_id(), "document_id": document_id, **row}
                for row in rows
            ]
            stmt = self._insert(Chunk).values(values)
            stmt = stmt.on_conflict_do_nothing(index_elements=["content_hash"])
            session.execute(stmt)
            hashes = [row["content_hash"] for row in rows]
            existing = session.execute(
                select(Chunk.content_hash, Chunk.id).where(Chunk.content_hash.in_(hashes))
            ).all()
            return {content_hash: chunk_id for content_hash, chunk_id in existing}
        return await self._run(_fn)

    async def get_chunks_by_ids(self, chunk_ids: Iterable[str]) -> Dict[str, Chunk]:
        ids = list(dict.fromkeys(chunk_ids))
        if not ids:
            return {}

        def _fn(session: Session) -> Dict[str, Chunk]:
            rows = session.scalars(select(Chunk).where(Chunk.id.in_(ids)))
            return {chunk.id: chunk for chunk in rows}
        return await self._run(_fn)

    async def get_chunks_for_document(self, document_id: str) -> List[Chunk]:
        """文書の全チャンク（ページ順）"""
        def _fn(session: Session) -> List[Chunk]:
            return list(session.scalars(
                select(Chunk)
                .where(Chunk.document_id == document_id)
                .order_by(Chunk.page_start, Chunk.created_at)
            ))
        return await self._run(_fn)

    async def get_chunks_by_sections(
        self,
        section_ids: Iterable[str],
        exclude_ids: Iterable[str] = (),
        limit: int = 10,
    ) -> List[Chunk]:
        """同じセクションに属する他のチャンク（兄弟展開用）"""
        ids = list({sid for sid in section_ids if sid})
        excluded = list(set(exclude_ids))
        if not ids or limit <= 0:
            return []

        def _fn(session: Session) -> List[Chunk]:
            stmt = select(Chunk).where(Chunk.section_id.in_(ids))
            if excluded:
                stmt = stmt.where(Chunk.id.not_in(excluded))
            return list(session.scalars(
                stmt.order_by(Chunk.page_start, Chunk.created_at).limit(limit)
            ))
        return await self._run(_fn)

    async def count_chunks(self, document_id: str | None = None) -> int:
        def _fn(session: Session) -> int:
            stmt = select(func.count(Chunk.id))
            if document_id:
                stmt = stmt.where(Chunk.document_id == document_id)
            return int(session.scalar(stmt) or 0)
        return await self._run(_fn)

    async def list_chunks(
        self,
        offset: int = 0,
        limit: int = 100,
        document_id: str | None = None,
    ) -> List[Chunk]:
        """全チャンクをページングで取得（バックフィル用）"""
        def _fn(session: Session) -> List[Chunk]:
            stmt = select(Chunk)
            if document_id:
                stmt = stmt.where(Chunk.document_id == document_id)
            return list(session.scalars(
                stmt.order_by(Chunk.created_at, Chunk.id).offset(offset).limit(limit)
            ))
        return await self._run(_fn)

    # ---------------------------------------------------------------
    # entities（グラフ）
    # ---------------------------------------------------------------

    async def upsert_entity(self, name: str, category: str, description: str | None = None) -> str:
        """エンティティを (name, category) で upsert し、IDを返す"""
        def _fn(session: Session) -> str:
            stmt = self._insert(Entity).values(
                id=new_id(), name=name, category=category, description=description
            )
            if description:
                stmt = stmt.on_conflict_do_update(
                    index_elements=["name", "category"],
                    set_={"description": stmt.excluded.description},
                )
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=["name", "category"])
            session.execute(stmt)
            return session.scalar(
                select(Entity.id).where(Entity.name == name, Entity.category == category)
            )
        return await self._run(_fn)

    async def link_chunk_entity(self, chunk_id: str, entity_id: str, relevance: float | None) -> None:
        """チャンクとエンティティを (chunk, entity) で upsert"""
        def _fn(session: Session) -> None:
            stmt = self._insert(ChunkEntity).values(
                id=new_id(), chunk_id=chunk_id, entity_id=entity_id, relevance_score=relevance
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["chunk_id", "entity_id"],
                set_={"relevance_score": stmt.excluded.relevance_score},
            )
            session.execute(stmt)
        await self._run(_fn)

    async def find_chunks_by_entity_names(
        self,
        names: Sequence[str],
        document_id: str | None = None,
        limit: int = 8,
    ) -> List[Tuple[Chunk, float | None]]:
        """
        エンティティ名（大文字小文字を無視）に紐付くチャンクを関連度順に取得

        Returns:
            [(Chunk, relevance_score), ...]（同じチャンクは最初の1件だけ）
        """
        lowered = list({n.strip().lower() for n in names if n and n.strip()})
        if not lowered or limit <= 0:
            return []

        def _fn(session: Session) -> List[Tuple[Chunk, float | None]]:
            stmt = (
                select(Chunk, ChunkEntity.relevance_score)
                .join(ChunkEntity, ChunkEntity.chunk_id == Chunk.id)
                .join(Entity, Entity.id == ChunkEntity.entity_id)
                .where(func.lower(Entity.name).in_(lowered))
            )
            if document_id:
                stmt = stmt.where(Chunk.document_id == document_id)
            stmt = stmt.order_by(ChunkEntity.relevance_score.desc().nulls_last()).limit(limit * 3)

            results: List[Tuple[Chunk, float | None]] = []
            seen: set[str] = set()
            for chunk, relevance in session.execute(stmt).all():
                if chunk.id in seen:
                    continue
                seen.add(chunk.id)
                results.append((chunk, relevance))
                if len(results) >= limit:
                    break
            return results
        return await self._run(_fn)

    # ---------------------------------------------------------------
    # ingest_jobs
    # ---------------------------------------------------------------

    async def create_job(self, metadata: Dict[str, Any]) -> IngestJob:
        def _fn(session: Session) -> IngestJob:
            job = IngestJob(status=JOB_QUEUED, progress=0, job_metadata=dict(metadata))
            session.add(job)
            session.flush()
            return job
        return await self._run(_fn)

    async def get_job(self, job_id: str) -> Optional[IngestJob]:
        return await self._run(lambda session: session.get(IngestJob, job_id))

    async def list_jobs(self, limit: int = 50, status: str | None = None) -> List[IngestJob]:
        def _fn(session: Session) -> List[IngestJob]:
            stmt = select(IngestJob)
            if status:
                stmt = stmt.where(IngestJob.status == status)
            return list(session.scalars(stmt.order_by(IngestJob.created_at.desc()).limit(limit)))
        return await self._run(_fn)

    async def update_job(self, job_id: str, **fields: Any) -> Optional[IngestJob]:
        """
        ジョブを更新

        progress は同じ実行内で減らない（小さい値は無視）
        """
        def _fn(session: Session) -> Optional[IngestJob]:
            job = session.get(IngestJob, job_id)
            if job is None:
                return None
            for key, value in fields.items():
                if key == "progress":
                    value = max(job.progress or 0, int(value))
                setattr(job, key, value)
            session.flush()
            return job
        return await self._run(_fn)

    async def claim_next_job(self) -> Optional[IngestJob]:
        """最も古い queued ジョブを running にして返す（なければ None）"""
        def _fn(session: Session) -> Optional[IngestJob]:
            job_ids = session.scalars(
                select(IngestJob.id)
                .where(IngestJob.status == JOB_QUEUED)
                .order_by(IngestJob.created_at)
                .limit(5)
            ).all()
            for job_id in job_ids:
                job = _claim(session, job_id)
                if job is not None:
                    return job
            return None
        return await self._run(_fn)

    async def claim_job(self, job_id: str) -> Optional[IngestJob]:
        """指定ジョブが queued なら running にして返す"""
        return await self._run(lambda session: _claim(session, job_id))

    async def retry_job(self, job_id: str) -> Optional[IngestJob]:
        """
        failed ジョブを queued に戻す（進捗0・エラー消去）

        Raises:
            JobStateError: failed 以外のジョブの場合
        """
        def _fn(session: Session) -> Optional[IngestJob]:
            job = session.get(IngestJob, job_id)
            if job is None:
                return None
            if job.status != JOB_FAILED:
                raise JobStateError(f"Only failed jobs can be retried (status={job.status})")
            job.status = JOB_QUEUED
            job.progress = 0
            job.error = None
            session.flush()
            return job
        return await self._run(_fn)

    # ---------------------------------------------------------------
    # query_logs
    # ---------------------------------------------------------------

    async def insert_query_log(self, **fields: Any) -> QueryLog:
        def _fn(session: Session) -> QueryLog:
            log = QueryLog(**fields)
            session.add(log)
            session.flush()
            return log
        return await self._run(_fn)

    async def list_query_logs(self, limit: int = 50) -> List[QueryLog]:
        def _fn(session: Session) -> List[QueryLog]:
            return list(session.scalars(
                select(QueryLog).order_by(QueryLog.created_at.desc()).limit(limit)
            ))
        return await self._run(_fn)


def _claim(session: Session, job_id: str) -> Optional[IngestJob]:
    # 条件付きUPDATEで、同じジョブを2つのワーカーが取らないようにする
    result = session.execute(
        update(IngestJob)
        .where(IngestJob.id == job_id, IngestJob.status == JOB_QUEUED)
        .values(status=JOB_RUNNING, progress=5, error=None)
    )
    if result.rowcount != 1:
        return None
    return session.get(IngestJob, job_id)
