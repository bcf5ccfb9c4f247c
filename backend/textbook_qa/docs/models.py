"""
ドキュメント側の型定義（データの形を明示）

【初心者向け】
- dataclass: フィールドだけ持つ軽量なクラス。パイプラインの段と段の受け渡しに使う
- PageMap = 文字位置 → ページ番号 の対応表
- ExtractedSection = 見出しから組み立てた木構造の1ノード（本文つき）
- FlatSection = DB保存用に平らにしたセクション（id と parent_id つき）
- RawChunk = チャンク分割後の1ブロック。検索・Embeddingの最小単位
"""
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import List


@dataclass
class PageMap:
    """ページ開始位置の一覧（offsets[i] が (i+1)ページ目の開始文字位置）"""
    offsets: List[int] = field(default_factory=lambda: [0])

    def page_for(self, position: int) -> int:
        """位置以前で最後に始まったページ（1始まり）"""
        index = bisect_right(self.offsets, position) - 1
        return max(index, 0) + 1

    @property
    def page_count(self) -> int:
        return len(self.offsets)


@dataclass
class ExtractedSection:
    """見出し階層のノード（level: 1=章, 2=トピック, 3=サブトピック）"""
    level: int
    title: str
    content: str
    page_start: int
    page_end: int
    children: List["ExtractedSection"] = field(default_factory=list)


@dataclass
class FlatSection:
    """DB保存用セクション（親は子より先に並ぶ）"""
    id: str
    parent_id: str | None
    level: int
    title: str
    order_index: int   # 兄弟内での順番（0始まり）
    page_start: int
    page_end: int
    path: str          # "Chapter 1 > Topic A" 形式


@dataclass
class RawChunk:
    """チャンク（DB保存前）"""
    content: str
    chunk_type: str      # definition / explanation / example / exercise / summary / other
    section_title: str
    section_path: str    # 指紋とコンテキスト表示に使う
    page_start: int
    page_end: int
    token_count: int
    keywords: List[str]
    content_hash: str
