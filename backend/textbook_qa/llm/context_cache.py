"""
長文コンテキストキャッシュ（教科書1冊を丸ごとLLMに渡すモード用）

【初心者向け】
- create(本文, タイトル, TTL) → ハンドル（不透明な文字列）
- generate(ハンドル, プロンプト, システム指示) → 回答テキスト
- Gemini: サーバー側のキャッシュ（CachedContent）に本文を置き、毎回の送信を省く
- Inline: サーバー側キャッシュがないプロバイダー向け。本文をプロセス内に持ち、
  毎回プロンプトの前に付けて送る
"""
import asyncio
import logging
import uuid
from datetime import timedelta
from functools import lru_cache
from typing import Protocol

import google.generativeai as genai
from google.generativeai import caching

from textbook_qa.core.cache import TTLCache
from textbook_qa.core.settings import settings
from textbook_qa.llm.base import LLMClient, LLMInternalError, LLMTimeoutError
from textbook_qa.llm.gemini import call_with_quota_retry

# ロガー設定
logger = logging.getLogger(__name__)


class ContextCacheClient(Protocol):
    """長文コンテキストキャッシュのインターフェース"""

    async def create(self, text: str, title: str, ttl_sec: int) -> str:
        ...

    async def generate(self, handle: str, prompt: str, system_instruction: str) -> str:
        ...


class GeminiContextCache:
    """
    Gemini の CachedContent を使う実装

    - バージョン固定のモデル（例: gemini-1.5-flash-002）が必要
    - ハンドル = CachedContent の name（"cachedContents/..."）
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout_sec: int | None = None,
    ):
        self.api_key = api_key or settings.gemini_api_key
        self.model_name = model or settings.gemini_model
        self.timeout_sec = timeout_sec or settings.gemini_timeout_sec

        if not self.api_key:
            raise ValueError("Gemini APIキーが設定されていません。GEMINI_API_KEY環境変数を設定してください。")
        genai.configure(api_key=self.api_key)

    async def _run(self, fn, label: str) -> str:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(call_with_quota_retry, fn, label),
                timeout=self.timeout_sec,
            )
        except asyncio.TimeoutError:
            logger.error(f"{label} タイムアウト: {self.timeout_sec}秒")
            raise LLMTimeoutError(f"{label}がタイムアウトしました（{self.timeout_sec}秒）")

    async def create(self, text: str, title: str, ttl_sec: int) -> str:
        def _create() -> str:
            cached = caching.CachedContent.create(
                model=f"models/{self.model_name}",
                display_name=f"textbook: {title}"[:120],
                contents=[{"role": "user", "parts": [text]}],
                ttl=timedelta(seconds=ttl_sec),
            )
            return cached.name

        handle = await self._run(_create, "Geminiコンテキストキャッシュ作成")
        logger.info(f"コンテキストキャッシュ作成: title={title}, chars={len(text)}, ttl={ttl_sec}s, handle={handle}")
        return handle

    async def generate(self, handle: str, prompt: str, system_instruction: str) -> str:
        def _generate() -> str:
            cached = caching.CachedContent.get(name=handle)
            model = genai.GenerativeModel.from_cached_content(cached_content=cached)
            # キャッシュ済みモデルにはシステム指示を後から渡せないので、プロンプトの先頭に付ける
            response = model.generate_content(f"{system_instruction}\n\n{prompt}")
            return response.text

        answer = await self._run(_generate, "Geminiキャッシュ生成")
        if not answer.strip():
            raise LLMInternalError("empty_response")
        return answer


class InlineContextCache:
    """
    プロセス内に本文を保持する実装（どの LLMClient でも動く）
    """

    def __init__(self, llm_client: LLMClient, max_tokens: int | None = None):
        self.llm_client = llm_client
        self.max_tokens = max_tokens or settings.answer_max_tokens
        self._texts: TTLCache[tuple[str, str]] = TTLCache(ttl_sec=settings.context_cache_ttl_sec)

    async def create(self, text: str, title: str, ttl_sec: int) -> str:
        self._texts.purge()
        handle = f"inline/{uuid.uuid4()}"
        self._texts.set(handle, (title, text), ttl_sec=ttl_sec)
        logger.info(f"インラインキャッシュ作成: title={title}, chars={len(text)}, handle={handle}")
        return handle

    async def generate(self, handle: str, prompt: str, system_instruction: str) -> str:
        entry = self._texts.get(handle)
        if entry is None:
            raise LLMInternalError(f"キャッシュが期限切れです: {handle}")
        title, text = entry
        messages = [
            {"role": "system", "content": f"{system_instruction}\n\n=== TEXTBOOK: {title} ===\n{text}"},
            {"role": "user", "content": prompt},
        ]
        return await self.llm_client.chat(
            messages=messages,
            temperature=settings.answer_temperature,
            max_tokens=self.max_tokens,
        )


@lru_cache(maxsize=1)
def get_context_cache_client() -> ContextCacheClient:
    """
    設定に応じたコンテキストキャッシュを取得（gemini → CachedContent、それ以外 → Inline）
    """
    from textbook_qa.llm import get_llm_client

    if settings.llm_provider.lower() == "gemini":
        return GeminiContextCache()
    return InlineContextCache(get_llm_client())
