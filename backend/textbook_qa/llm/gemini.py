"""
Gemini API LLMクライアント（Google Gemini APIとの通信）

【初心者向け】
- Google Gemini APIを使用してLLMを呼び出す
- OllamaClientと同じLLMClientインターフェースを実装
- これにより、既存のコードを変更せずに切り替え可能
"""
import asyncio
import logging
import re
import time
from functools import lru_cache
from typing import Any, Dict, List

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from textbook_qa.core.settings import settings
from textbook_qa.llm.base import LLMInternalError, LLMTimeoutError

# ロガー設定
logger = logging.getLogger(__name__)

# 429時のリトライ
MAX_RETRIES = 3
RETRY_DELAY_BASE = 1.0


def to_gemini_contents(messages: List[Dict[str, str]]) -> List[Dict[str, Any]]:
    """
    OpenAI形式のメッセージをGemini形式に変換

    Gemini APIは "user" と "model" のロールのみサポート
    "system" ロールは最初の "user" メッセージに統合
    """
    contents: List[Dict[str, Any]] = []
    system_parts: List[str] = []

    for msg in messages:
        role = msg.get("role", "user")
        content = msg.get("content", "")
        if role == "system":
            system_parts.append(content)
        elif role == "assistant":
            contents.append({"role": "model", "parts": [content]})
        else:
            contents.append({"role": "user", "parts": [content]})

    if system_parts:
        system_text = "\n\n".join(system_parts)
        for item in contents:
            if item["role"] == "user":
                item["parts"][0] = f"{system_text}\n\n{item['parts'][0]}"
                break
        else:
            contents.insert(0, {"role": "user", "parts": [system_text]})

    return contents


def call_with_quota_retry(fn, label: str = "Gemini API"):
    """
    同期のGemini呼び出しを実行（429のときだけ待ってリトライ）

    エラーメッセージに "Please retry in Xs" があればその秒数待つ
    """
    for attempt in range(MAX_RETRIES):
        try:
            return fn()
        except google_exceptions.ResourceExhausted as e:
            error_str = str(e)
            retry_delay_match = re.search(r"Please retry in ([\d.]+)s", error_str)
            retry_delay = float(retry_delay_match.group(1)) if retry_delay_match else None

            if attempt < MAX_RETRIES - 1:
                wait_time = retry_delay if retry_delay else RETRY_DELAY_BASE * (2 ** attempt)
                logger.warning(
                    f"{label} クォータ制限エラー（429）: {error_str[:200]}... "
                    f"リトライ待機: {wait_time:.1f}秒後（試行 {attempt + 1}/{MAX_RETRIES}）"
                )
                time.sleep(wait_time)
            else:
                raise LLMInternalError(
                    f"{label}のクォータ制限に達しました。しばらく時間をおいてから再度お試しください。"
                )
        except Exception as e:
            # その他のエラーは即座に投げる
            raise LLMInternalError(f"{label}呼び出しエラー: {str(e)}")
    raise LLMInternalError(f"{label}呼び出しに失敗しました")


class GeminiClient:
    """
    Gemini APIクライアント

    - google.generativeai を使用してGemini APIを呼び出す
    - LLMClientインターフェースに準拠
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout_sec: int | None = None,
    ):
        """
        Geminiクライアントを初期化

        Args:
            api_key: Gemini APIキー（デフォルト: settingsから取得）
            model: 使用するモデル名（デフォルト: settingsから取得）
            timeout_sec: タイムアウト秒数（デフォルト: settingsから取得）
        """
        self.api_key = api_key or settings.gemini_api_key
        self.model_name = model or settings.gemini_model
        self.timeout_sec = timeout_sec or settings.gemini_timeout_sec

        if not self.api_key:
            raise ValueError("Gemini APIキーが設定されていません。GEMINI_API_KEY環境変数を設定してください。")

        genai.configure(api_key=self.api_key)

        try:
            self.model = genai.GenerativeModel(self.model_name)
        except Exception as e:
            logger.error(f"Geminiモデルの初期化に失敗: {e}")
            raise LLMInternalError(f"Geminiモデルの初期化に失敗しました: {str(e)}")

    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> str:
        """
        チャット形式でGemini APIに問い合わせ、回答を取得

        Args:
            messages: メッセージリスト
            temperature: 生成の温度
            max_tokens: 最大出力トークン数
            json_mode: response_mime_type を application/json にする

        Returns:
            Gemini APIからの回答テキスト

        Raises:
            LLMTimeoutError: タイムアウト時
            LLMInternalError: APIエラーやその他のエラー時
        """
        contents = to_gemini_contents(messages)

        generation_config: Dict[str, Any] = {}
        if temperature is not None:
            generation_config["temperature"] = temperature
        if max_tokens is not None:
            generation_config["max_output_tokens"] = max_tokens
        if json_mode:
            generation_config["response_mime_type"] = "application/json"

        def _generate() -> str:
            response = self.model.generate_content(
                contents,
                generation_config=generation_config or None,
            )
            return response.text

        try:
            # Gemini SDKは同期APIなので、スレッドに逃がしてタイムアウト付きで待つ
            answer = await asyncio.wait_for(
                asyncio.to_thread(call_with_quota_retry, _generate),
                timeout=self.timeout_sec,
            )
        except asyncio.TimeoutError:
            logger.error(f"Gemini APIタイムアウト: {self.timeout_sec}秒")
            raise LLMTimeoutError(f"Gemini APIへのリクエストがタイムアウトしました（{self.timeout_sec}秒）")

        if not answer.strip():
            logger.error("Gemini APIが空応答を返しました")
            raise LLMInternalError("empty_response")

        logger.info(f"Gemini API回答取得成功: {len(answer)}文字 (json_mode={json_mode})")
        return answer


@lru_cache(maxsize=1)
def get_gemini_client() -> GeminiClient:
    """
    Geminiクライアントのシングルトンインスタンスを取得（@lru_cacheで生成を抑える）
    """
    return GeminiClient()
