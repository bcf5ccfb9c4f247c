"""
LLMアダプタ層の基底定義（抽象インターフェース・例外・構造化出力）

【初心者向け】
- LLMClient: Protocol。Ollama / Gemini の実装が chat(messages, ...) を提供する約束
- LLMTimeoutError / LLMInternalError: LLM 呼び出し失敗時に raise
- generate_structured: LLMにJSONを出させ、pydanticのスキーマで検証する
  → 形が合わなければ LLMValidationError（呼び出し側は安全な既定値に倒す）
"""
import json
import logging
import re
from typing import Any, Dict, List, Protocol, Type, TypeVar

from pydantic import BaseModel, ValidationError

# ロガー設定
logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class LLMClient(Protocol):
    """
    LLMクライアントのインターフェース

    各LLM実装（Ollama、Gemini等）はこのProtocolに準拠する
    """

    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> str:
        """
        チャット形式でLLMに問い合わせ、回答を取得

        Args:
            messages: メッセージリスト（[{"role": "system", "content": "..."}, ...]）
            temperature: 生成の温度（Noneならプロバイダー既定）
            max_tokens: 最大出力トークン数
            json_mode: JSONのみを出力させる

        Returns:
            LLMからの回答テキスト

        Raises:
            LLMTimeoutError: タイムアウト時
            LLMInternalError: その他のエラー時
        """
        ...


class LLMError(Exception):
    """LLM関連の基底例外"""
    pass


class LLMTimeoutError(LLMError):
    """LLM呼び出しのタイムアウトエラー"""
    pass


class LLMInternalError(LLMError):
    """LLM呼び出しの内部エラー（HTTPエラー、パースエラー等）"""
    pass


class LLMValidationError(LLMError):
    """構造化出力がスキーマに合わない"""
    pass


_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def extract_json(text: str) -> Any:
    """
    LLMの出力からJSONを取り出す（```json フェンスや前後の説明文を許容）

    Raises:
        LLMValidationError: JSONが見つからない・壊れている場合
    """
    cleaned = _CODE_FENCE_RE.sub("", text.strip()).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    # 説明文に埋もれたJSONを探す（最初の { or [ から対応する最後の } or ] まで）
    for opener, closer in (("{", "}"), ("[", "]")):
        start = cleaned.find(opener)
        end = cleaned.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(cleaned[start:end + 1])
            except json.JSONDecodeError:
                continue

    raise LLMValidationError(f"JSONを抽出できませんでした: {cleaned[:120]!r}")


async def generate_structured(
    client: LLMClient,
    messages: List[Dict[str, str]],
    schema: Type[M],
    temperature: float | None = 0.0,
    max_tokens: int | None = None,
) -> M:
    """
    LLMにJSONを出力させ、スキーマで検証して返す

    Args:
        client: LLMクライアント
        messages: メッセージリスト
        schema: 期待する形（pydanticモデル）
        temperature: 生成の温度
        max_tokens: 最大出力トークン数

    Returns:
        検証済みのモデルインスタンス

    Raises:
        LLMValidationError: JSONでない・スキーマに合わない場合
        LLMTimeoutError / LLMInternalError: 呼び出し自体の失敗
    """
    raw = await client.chat(
        messages=messages,
        temperature=temperature,
        max_tokens=max_tokens,
        json_mode=True,
    )
    data = extract_json(raw)
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        logger.warning(f"構造化出力の検証に失敗: schema={schema.__name__}, errors={e.error_count()}")
        raise LLMValidationError(f"{schema.__name__} の検証に失敗しました") from e
