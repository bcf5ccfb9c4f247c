"""
Ollama LLMクライアント実装
"""
import logging
from functools import lru_cache
from typing import Any, Dict, List

import httpx

from textbook_qa.core.settings import settings
from textbook_qa.llm.base import LLMInternalError, LLMTimeoutError

# ロガー設定
logger = logging.getLogger(__name__)


def extract_ollama_text(raw: Any) -> str:
    """
    Ollama APIレスポンスからテキストを抽出（複数形式対応）

    対応形式:
    - dict["message"]["content"]（chat API）
    - dict["response"]（generate API）
    - list（streaming、連結）
    - str（そのまま返す）
    """
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    if isinstance(raw, dict):
        message = raw.get("message")
        if isinstance(message, dict) and message.get("content"):
            return str(message["content"])
        if raw.get("response"):
            return str(raw["response"])
        logger.warning(f"Ollamaレスポンスから抽出できませんでした: keys={list(raw.keys())}")
        return ""
    if isinstance(raw, list):
        return "".join(extract_ollama_text(item) for item in raw)
    return str(raw)


class OllamaClient:
    """
    Ollama APIクライアント

    - httpx.AsyncClient で /api/chat を叩く
    - stream=False の一括応答
    """

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        timeout_sec: int | None = None,
    ):
        """
        Ollamaクライアントを初期化

        Args:
            base_url: OllamaのベースURL（デフォルト: settingsから取得）
            model: 使用するモデル名（デフォルト: settingsから取得）
            timeout_sec: タイムアウト秒数（デフォルト: settingsから取得）
        """
        self.base_url = base_url or settings.ollama_base_url
        self.model = model or settings.ollama_model
        self.timeout_sec = timeout_sec or settings.ollama_timeout_sec

        # APIエンドポイント
        self.chat_url = f"{self.base_url}/api/chat"

    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> str:
        """
        チャット形式でOllamaに問い合わせ、回答を取得

        Args:
            messages: メッセージリスト
            temperature: 生成の温度
            max_tokens: 最大出力トークン数（num_predict）
            json_mode: format=json を強制

        Returns:
            Ollamaからの回答テキスト

        Raises:
            LLMTimeoutError: タイムアウト時
            LLMInternalError: HTTPエラーやその他のエラー時
        """
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": False,
        }

        options: Dict[str, Any] = {}
        if temperature is not None:
            options["temperature"] = temperature
        if max_tokens is not None:
            options["num_predict"] = max_tokens
        if options:
            payload["options"] = options
        if json_mode:
            payload["format"] = "json"

        try:
            async with httpx.AsyncClient(timeout=self.timeout_sec) as client:
                response = await client.post(self.chat_url, json=payload)
                response.raise_for_status()  # HTTPエラーを例外に変換

                answer = extract_ollama_text(response.json())
                if not answer.strip():
                    logger.error("Ollamaが空応答を返しました")
                    raise LLMInternalError("empty_response")

                logger.info(f"Ollama回答取得成功: {len(answer)}文字 (json_mode={json_mode})")
                return answer

        except httpx.TimeoutException as e:
            logger.error(f"Ollamaタイムアウト: {e}")
            raise LLMTimeoutError(f"Ollamaへのリクエストがタイムアウトしました（{self.timeout_sec}秒）")

        except httpx.HTTPStatusError as e:
            logger.error(f"Ollama HTTPエラー: {e.response.status_code} - {e.response.text}")
            raise LLMInternalError(f"Ollama APIエラー: HTTP {e.response.status_code}")

        except httpx.RequestError as e:
            logger.error(f"Ollama接続エラー: {e}")
            raise LLMInternalError(f"Ollamaへの接続に失敗しました: {str(e)}")


@lru_cache(maxsize=1)
def get_ollama_client() -> OllamaClient:
    """
    Ollamaクライアントのシングルトンインスタンスを取得（@lru_cacheで生成を抑える）
    """
    return OllamaClient()
