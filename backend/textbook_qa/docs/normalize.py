"""
パース結果（Markdown風テキスト）の正規化とページ対応表

【初心者向け】
- PDFパーサの出力には透かし・ページ番号・改行で切れた単語などのノイズが混ざる
- normalize_markdown で掃除してから見出し解析・チャンク分割に回す
- パーサはページの境目に "---PAGE_BREAK---" を入れる。これを使って
  「文字位置 → ページ番号」の対応表（PageMap）を作り、最後に区切りを消す
"""
import re
from typing import List

from textbook_qa.docs.models import PageMap

PAGE_BREAK = "---PAGE_BREAK---"

# 正規化ルール（上から順に適用）
_WATERMARK_RE = re.compile(r"FOR\s+ONLINE\s+USE\s+ONLY", re.IGNORECASE)
_HASH_ONLY_LINE_RE = re.compile(r"^[ \t]*(#{1,3})[ \t]*\1[ \t]*$", re.MULTILINE)
_HYPHEN_BREAK_RE = re.compile(r"(\w+)-\n(\w+)")
_MANY_BLANK_LINES_RE = re.compile(r"\n{4,}")
_PAGE_NUMBER_LINE_RE = re.compile(r"^[ \t]*\d{1,4}[ \t]*$", re.MULTILINE)
_TRAILING_SPACE_RE = re.compile(r"[ \t]+$", re.MULTILINE)
_HEADING_SPACE_RE = re.compile(r"^(#{1,6})[ \t]{2,}", re.MULTILINE)
_ZERO_WIDTH_RE = re.compile("[\u200b\u200c\u200d\ufeff]")


def normalize_markdown(raw: str) -> str:
    """
    パース結果のノイズを除去する（ページ区切りは残す）

    - "FOR ONLINE USE ONLY" の透かし
    - "#" だけの行（表紙の繰り返しなど）
    - 行末ハイフンで切れた単語の結合（geo-\\ngraphy → geography）
    - 4行以上の空行を3行に圧縮
    - 数字だけの行（ページ番号）
    - 行末の空白・見出し記号の後の余分な空白・ゼロ幅文字

    Args:
        raw: パーサの出力

    Returns:
        正規化済みテキスト
    """
    text = raw.replace("\r\n", "\n")
    text = _WATERMARK_RE.sub("", text)
    text = _HASH_ONLY_LINE_RE.sub("", text)
    text = _HYPHEN_BREAK_RE.sub(r"\1\2", text)
    text = _MANY_BLANK_LINES_RE.sub("\n\n\n", text)
    text = _PAGE_NUMBER_LINE_RE.sub("", text)
    text = _TRAILING_SPACE_RE.sub("", text)
    text = _HEADING_SPACE_RE.sub(r"\1 ", text)
    text = _ZERO_WIDTH_RE.sub("", text)
    return text.strip()


def build_page_map(text: str) -> PageMap:
    """
    ページ区切りから PageMap を作る

    offsets は「区切りを取り除いた後のテキスト」での各ページの開始位置
    （remove_page_breaks の結果と同じ座標系）

    Args:
        text: ページ区切りを含むテキスト

    Returns:
        PageMap
    """
    parts = text.split(PAGE_BREAK)
    offsets: List[int] = []
    offset = 0
    for part in parts:
        offsets.append(offset)
        offset += len(part)
    return PageMap(offsets=offsets)


def remove_page_breaks(text: str) -> str:
    """ページ区切りを取り除く"""
    return text.replace(PAGE_BREAK, "")
