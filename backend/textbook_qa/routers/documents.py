"""
文書管理 APIルーター

【初心者向け】
- GET /documents: 取り込み済みの教科書一覧（チャンク数つき）
- DELETE /documents/{id}: 教科書を削除
  DB側は sections / chunks / エンティティの紐付けまで連鎖削除
  近傍探索インデックスとBlob（原本・監査用Markdown）も消す（Blob削除の失敗は無視）
"""
import asyncio
import logging

from fastapi import APIRouter, Depends

from textbook_qa.core.errors import raise_not_found
from textbook_qa.db.store import Store
from textbook_qa.docs.storage import BlobStorage
from textbook_qa.rag.vectorstore import ChunkVectorStore
from textbook_qa.routers.deps import get_storage, get_store, get_vectors
from textbook_qa.schemas.documents import DeleteDocumentResponse, DocumentListResponse, DocumentSummary

# ロガー設定
logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=DocumentListResponse)
async def list_documents(store: Store = Depends(get_store)) -> DocumentListResponse:
    rows = await store.list_documents()
    return DocumentListResponse(documents=[
        DocumentSummary(
            id=document.id,
            title=document.title,
            subject=document.subject,
            grade=document.grade,
            language=document.language,
            publisher=document.publisher,
            chunk_count=chunk_count,
            created_at=document.created_at,
        )
        for document, chunk_count in rows
    ])


@router.delete("/{document_id}", response_model=DeleteDocumentResponse)
async def delete_document(
    document_id: str,
    store: Store = Depends(get_store),
    storage: BlobStorage = Depends(get_storage),
    vector_store: ChunkVectorStore = Depends(get_vectors),
) -> DeleteDocumentResponse:
    document = await store.delete_document(document_id)
    if document is None:
        raise_not_found(f"文書が見つかりません: {document_id}")

    await asyncio.to_thread(vector_store.delete_document, document_id)

    for path in (document.source_path, document.markdown_path):
        if not path:
            continue
        try:
            await storage.delete(path)
        except Exception as e:
            logger.warning(f"Blobの削除に失敗しました（続行）: path={path}, {type(e).__name__}: {e}")

    logger.info(f"文書を削除しました: document_id={document_id}, title={document.title}")
    return DeleteDocumentResponse(id=document_id, deleted=True)
