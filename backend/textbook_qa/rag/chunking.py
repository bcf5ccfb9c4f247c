"""
セクション単位のチャンキング（見出し境界優先・トークン上限つき）

【初心者向け】
- セクションの本文を段落ごとに積み上げ、上限（約350トークン）を超えそうになったら区切る
- 1段落だけで上限の1.5倍を超える場合は、文単位でさらに分割する
- 30トークン未満の断片は検索に役立たないので捨てる
- トークン数は「文字数 / 4」の概算（トークナイザは呼ばない。速くて毎回同じ結果になる）
- 各チャンクには種別（定義・説明・例・練習問題・まとめ）とキーワード、指紋（SHA-256）を付ける
"""
import hashlib
import logging
import math
import re
from collections import Counter
from typing import List

from textbook_qa.core.settings import settings
from textbook_qa.docs.models import ExtractedSection, RawChunk
from textbook_qa.docs.structure import PATH_SEPARATOR

# ロガー設定
logger = logging.getLogger(__name__)

# 1.5倍を超えたら文単位で分割
OVERSIZE_FACTOR = 1.5

CHUNK_TYPES = ("definition", "explanation", "example", "exercise", "summary", "other")

# 見出しキーワード → 種別（上から順に判定）
_HEADING_TYPE_RULES = [
    (("exercise", "question"), "exercise"),
    (("glossary", "key terms", "vocabulary"), "definition"),
    (("summary", "recap", "conclusion"), "summary"),
    (("example", "case study", "illustration"), "example"),
]

_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n+")
_SENTENCE_RE = re.compile(r"[^.!?]+(?:[.!?]+|$)")
_NON_ALPHA_RE = re.compile(r"[^a-z\s]")

STOPWORDS = frozenset("""
the is at which on a an and or but in with to for of not no be was were has had have do does
did will would could should may might can shall this that these those it its are from as by
they their been being also than then so if when where how what who whom why all each every
both such into about between through during before after above below up down out off over
under again further once more most other some very just only chapter topic subtopic
""".split())


def estimate_tokens(text: str) -> int:
    """トークン数の概算（文字数 / 4 の切り上げ）"""
    return math.ceil(len(text) / 4)


def classify_chunk_type(heading: str, content: str) -> str:
    """
    見出しと本文の冒頭からチャンク種別を判定する

    Args:
        heading: セクション見出し
        content: 本文

    Returns:
        種別（該当なしは explanation）
    """
    h = heading.lower()
    for keywords, chunk_type in _HEADING_TYPE_RULES:
        if any(k in h for k in keywords):
            return chunk_type

    # 見出しで決まらなければ本文の冒頭200文字で判定
    head = content.lower()[:200]
    if head.startswith("the meaning of") or "is defined as" in head or "refers to" in head:
        return "definition"

    return "explanation"


def _accumulate(pieces: List[str], max_tokens: int, joiner: str) -> List[str]:
    # 上限を超えそうになったらバッファを吐き出して、新しいバッファを始める
    chunks: List[str] = []
    buffer = ""
    for piece in pieces:
        combined = f"{buffer}{joiner}{piece}" if buffer else piece
        if estimate_tokens(combined) > max_tokens and buffer:
            chunks.append(buffer.strip())
            buffer = piece
        else:
            buffer = combined
    if buffer.strip():
        chunks.append(buffer.strip())
    return chunks


def split_sentences(text: str) -> List[str]:
    """文単位に分割（句読点で終わらない末尾も残す）"""
    return [s.strip() for s in _SENTENCE_RE.findall(text) if s.strip()]


def _hard_split(text: str, max_tokens: int) -> List[str]:
    # 1文が長すぎる場合の最終手段：単語境界で文字数分割
    return _accumulate(text.split(), max_tokens, " ")


def split_text(text: str, max_tokens: int | None = None) -> List[str]:
    """
    本文をトークン上限つきの塊に分割する

    Args:
        text: セクション本文
        max_tokens: 上限トークン数（デフォルト: settingsから取得）

    Returns:
        分割後のテキストのリスト
    """
    ceiling = max_tokens or settings.chunk_max_tokens
    paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT_RE.split(text) if p.strip()]
    pieces = _accumulate(paragraphs, ceiling, "\n\n")

    result: List[str] = []
    for piece in pieces:
        if estimate_tokens(piece) <= ceiling * OVERSIZE_FACTOR:
            result.append(piece)
            continue
        for sentence_chunk in _accumulate(split_sentences(piece), ceiling, " "):
            if estimate_tokens(sentence_chunk) > ceiling * OVERSIZE_FACTOR:
                result.extend(_hard_split(sentence_chunk, ceiling))
            else:
                result.append(sentence_chunk)
    return result


def extract_keywords(text: str, top_n: int | None = None) -> List[str]:
    """
    頻出する内容語を上位N件返す（ストップワード除去・4文字以上）

    Args:
        text: チャンク本文
        top_n: 件数（デフォルト: settingsから取得）

    Returns:
        キーワードのリスト（頻度順、同数なら初出順）
    """
    words = _NON_ALPHA_RE.sub("", text.lower()).split()
    counter = Counter(w for w in words if len(w) > 3 and w not in STOPWORDS)
    return [word for word, _ in counter.most_common(top_n or settings.keywords_top_n)]


def compute_fingerprint(section_path: str, content: str) -> str:
    """チャンクの指紋 = SHA-256(セクションパス + "::" + 本文)"""
    return hashlib.sha256(f"{section_path}::{content}".encode("utf-8")).hexdigest()


def chunk_sections(
    sections: List[ExtractedSection],
    parent_path: str = "",
    max_tokens: int | None = None,
    min_tokens: int | None = None,
) -> List[RawChunk]:
    """
    セクション木をチャンクに変換（深さ優先、自分の本文 → 子の順）

    Args:
        sections: 兄弟セクションのリスト
        parent_path: 親までのセクションパス
        max_tokens: 上限トークン数
        min_tokens: これ未満の断片は捨てる

    Returns:
        RawChunk のリスト
    """
    minimum = settings.chunk_min_tokens if min_tokens is None else min_tokens
    chunks: List[RawChunk] = []

    for section in sections:
        section_path = f"{parent_path}{PATH_SEPARATOR}{section.title}" if parent_path else section.title
        chunk_type = classify_chunk_type(section.title, section.content)

        if section.content.strip():
            for text in split_text(section.content, max_tokens):
                tokens = estimate_tokens(text)
                if tokens < minimum:
                    continue
                chunks.append(RawChunk(
                    content=text,
                    chunk_type=chunk_type,
                    section_title=section.title,
                    section_path=section_path,
                    page_start=section.page_start,
                    page_end=section.page_end,
                    token_count=tokens,
                    keywords=extract_keywords(text),
                    content_hash=compute_fingerprint(section_path, text),
                ))

        if section.children:
            chunks.extend(chunk_sections(section.children, section_path, max_tokens, min_tokens))

    if not parent_path:
        logger.info(f"チャンク分割完了: chunks={len(chunks)}")
    return chunks
