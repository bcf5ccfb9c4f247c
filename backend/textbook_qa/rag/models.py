"""
検索側の型定義

【初心者向け】
- RetrievedChunk = 検索で取れたチャンク1件（類似度・どの検索で取れたか・章/トピック名つき）
- RetrievalFilters = 検索の絞り込み条件（文書ID・教科・学年）
- RetrievalMode = 検索方式（rag=ベクトル, graph=エンティティ+ベクトル, cag=全文キャッシュ）
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class RetrievalMode(str, Enum):
    """検索方式（Answer Composer の入口で1回だけ分岐する）"""
    RAG = "rag"
    GRAPH = "graph"
    CAG = "cag"


@dataclass
class RetrievalFilters:
    """検索の絞り込み条件"""
    document_id: str | None = None
    subject: str | None = None
    grade: str | None = None

    def as_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v}


@dataclass
class RetrievedChunk:
    """検索結果のチャンク"""
    id: str
    document_id: str
    content: str
    similarity: float
    section_id: str | None = None
    chunk_type: str = "explanation"
    page_start: int | None = None
    page_end: int | None = None
    source: str = "vector"   # vector / graph / sibling
    # enrich_chunks で埋める
    book_title: str = ""
    chapter: str = ""
    topic: str = ""
    rerank_score: float | None = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Any, similarity: float, source: str = "vector") -> "RetrievedChunk":
        """DBのChunk行から作る"""
        return cls(
            id=row.id,
            document_id=row.document_id,
            content=row.content,
            similarity=float(similarity),
            section_id=row.section_id,
            chunk_type=row.chunk_type,
            page_start=row.page_start,
            page_end=row.page_end,
            source=source,
        )


def format_pages(page_start: int | None, page_end: int | None) -> str:
    """ページ範囲の表記（p. 3 / pp. 3–5）"""
    if not page_start:
        return "p. ?"
    if page_end and page_end != page_start:
        return f"pp. {page_start}–{page_end}"
    return f"p. {page_start}"
