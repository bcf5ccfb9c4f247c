"""
見出し構造の抽出（章 > トピック > サブトピック）

【初心者向け】
- Markdownの見出し（# / ## / ###）を拾って、本文の範囲とページ範囲を決める
- 見出しの深さは3までに丸める（#### 以下はサブトピック扱い）
- スタックを使って「平らな見出しの並び」を木構造に組み立てる
- 見出しが1つもない文書は、全体を1つのセクションとして扱う
"""
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Dict, List

from textbook_qa.docs.models import ExtractedSection, FlatSection, PageMap

# ロガー設定
logger = logging.getLogger(__name__)

MAX_SECTION_LEVEL = 3
FULL_DOCUMENT_TITLE = "Full Document"
PATH_SEPARATOR = " > "

_HEADING_RE = re.compile(r"^(#{1,6})[ \t]+(.+)$", re.MULTILINE)


@dataclass
class _Heading:
    level: int
    title: str
    position: int   # 見出し行の先頭位置
    body_start: int  # 見出し行の次の位置


def _find_headings(text: str) -> List[_Heading]:
    headings = []
    for match in _HEADING_RE.finditer(text):
        title = match.group(2).strip().strip("#").strip()
        if not title:
            continue
        # 見出し行の改行の次から本文
        body_start = match.end() + 1 if match.end() < len(text) else match.end()
        headings.append(_Heading(
            level=len(match.group(1)),
            title=title,
            position=match.start(),
            body_start=body_start,
        ))
    return headings


def extract_structure(text: str, page_map: PageMap) -> List[ExtractedSection]:
    """
    テキストから見出しの木構造を作る

    Args:
        text: 正規化済み・ページ区切り除去済みのテキスト
        page_map: 文字位置 → ページ番号

    Returns:
        ルートセクションのリスト（子は children に入る）
    """
    headings = _find_headings(text)

    if not headings:
        logger.info("見出しが見つからないため、全文を1セクションとして扱います")
        return [ExtractedSection(
            level=1,
            title=FULL_DOCUMENT_TITLE,
            content=text.strip(),
            page_start=1,
            page_end=max(page_map.page_count, 1),
        )]

    flat: List[ExtractedSection] = []
    for i, heading in enumerate(headings):
        content_end = headings[i + 1].position if i + 1 < len(headings) else len(text)
        flat.append(ExtractedSection(
            level=min(heading.level, MAX_SECTION_LEVEL),
            title=heading.title,
            content=text[heading.body_start:content_end].strip(),
            page_start=page_map.page_for(heading.position),
            page_end=page_map.page_for(max(content_end - 1, heading.position)),
        ))

    roots = _build_hierarchy(flat)
    logger.info(f"見出し抽出完了: headings={len(headings)}, roots={len(roots)}")
    return roots


def _build_hierarchy(flat: List[ExtractedSection]) -> List[ExtractedSection]:
    roots: List[ExtractedSection] = []
    stack: List[ExtractedSection] = []

    for section in flat:
        # 自分より浅い見出しが出てくるまで戻る
        while stack and stack[-1].level >= section.level:
            stack.pop()

        if stack:
            stack[-1].children.append(section)
        else:
            roots.append(section)
        stack.append(section)

    return roots


def flatten_sections(
    sections: List[ExtractedSection],
    parent_id: str | None = None,
    parent_path: str = "",
) -> List[FlatSection]:
    """
    木構造をDB保存用の平らなリストにする（深さ優先・親が先）

    Args:
        sections: 兄弟セクションのリスト
        parent_id: 親のID（ルートなら None）
        parent_path: 親までのパス

    Returns:
        FlatSection のリスト（order_index は兄弟内の順番）
    """
    result: List[FlatSection] = []
    for index, section in enumerate(sections):
        section_id = str(uuid.uuid4())
        path = f"{parent_path}{PATH_SEPARATOR}{section.title}" if parent_path else section.title
        result.append(FlatSection(
            id=section_id,
            parent_id=parent_id,
            level=section.level,
            title=section.title,
            order_index=index,
            page_start=section.page_start,
            page_end=section.page_end,
            path=path,
        ))
        if section.children:
            result.extend(flatten_sections(section.children, section_id, path))
    return result


def build_section_path_map(flat_sections: List[FlatSection]) -> Dict[str, str]:
    """
    セクションパス → セクションID の対応表（チャンクとセクションの紐付け用）

    同じパスが複数ある場合は最初のセクションを採用
    """
    path_map: Dict[str, str] = {}
    for section in flat_sections:
        path_map.setdefault(section.path, section.id)
    return path_map


def count_sections(sections: List[ExtractedSection]) -> int:
    """木構造に含まれるセクション数"""
    return sum(1 + count_sections(s.children) for s in sections)
