"""
ルーターが使う共有オブジェクトの取得（FastAPIの依存性注入）

【初心者向け】
- Depends(get_composer) のように書くと、リクエストごとにここの関数が呼ばれる
- 中身は @lru_cache(maxsize=1) のシングルトン（モデルやDB接続を毎回作らない）
- テストでは app.dependency_overrides で差し替える
"""
from functools import lru_cache

from textbook_qa.db.session import create_session_factory, get_engine
from textbook_qa.db.store import Store
from textbook_qa.docs.parser import get_document_parser
from textbook_qa.docs.storage import BlobStorage, get_blob_storage
from textbook_qa.llm import get_llm_client
from textbook_qa.llm.base import LLMClient
from textbook_qa.llm.context_cache import get_context_cache_client
from textbook_qa.rag.composer import AnswerComposer
from textbook_qa.rag.embedding import get_embedding_client
from textbook_qa.rag.full_context import FullContextRetriever
from textbook_qa.rag.graph import EntityGraphRetriever
from textbook_qa.rag.pipeline import IngestionOrchestrator
from textbook_qa.rag.retrieval import VectorRetriever
from textbook_qa.rag.vectorstore import ChunkVectorStore, get_vector_store
from textbook_qa.search.reranker import Reranker


@lru_cache(maxsize=1)
def get_store() -> Store:
    engine = get_engine()
    return Store(engine, create_session_factory(engine))


def get_storage() -> BlobStorage:
    return get_blob_storage()


def get_vectors() -> ChunkVectorStore:
    return get_vector_store()


def get_llm() -> LLMClient:
    return get_llm_client()


@lru_cache(maxsize=1)
def get_composer() -> AnswerComposer:
    """回答の組み立て役（検索器・リランカー・全文モードをまとめて構築）"""
    store = get_store()
    llm_client = get_llm_client()
    vector_retriever = VectorRetriever(
        store, get_vector_store(), get_embedding_client(), llm_client=llm_client
    )
    return AnswerComposer(
        store=store,
        llm_client=llm_client,
        vector_retriever=vector_retriever,
        graph_retriever=EntityGraphRetriever(store, vector_retriever, llm_client),
        full_context=FullContextRetriever(store, get_context_cache_client()),
        reranker=Reranker(),
    )


@lru_cache(maxsize=1)
def get_orchestrator() -> IngestionOrchestrator:
    return IngestionOrchestrator(
        store=get_store(),
        vector_store=get_vector_store(),
        embedder=get_embedding_client(),
        parser=get_document_parser(),
        storage=get_blob_storage(),
    )
