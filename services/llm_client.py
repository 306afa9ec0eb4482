# services/llm_client.py

from __future__ import annotations

import logging
from typing import Optional, Protocol

from openai import OpenAI

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    """system / user プロンプトから1つのテキストを生成する能力。"""

    def generate(self, system_prompt: str, user_prompt: str) -> str:
        ...


class OpenAITextGenerator:
    """OpenAI Chat Completions を使う TextGenerator 実装。"""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4.1-mini",
        max_tokens: int = 100,
        temperature: float = 0.3,
        timeout: float = 15.0,
        client: Optional[OpenAI] = None,
    ) -> None:
        if not api_key and client is None:
            raise RuntimeError("OPENAI_API_KEY が設定されていません")
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        # リトライはしない（失敗したらフォールバック文言を使う）
        self._client = client or OpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    @classmethod
    def from_settings(cls, settings) -> "OpenAITextGenerator":
        return cls(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            max_tokens=settings.llm_max_tokens,
            temperature=settings.llm_temperature,
            timeout=settings.llm_timeout_seconds,
        )

    def generate(self, system_prompt: str, user_prompt: str) -> str:
        response = self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

        usage = getattr(response, "usage", None)
        logger.info(
            "[llm_client] response received model=%s total_tokens=%s",
            self.model,
            getattr(usage, "total_tokens", None) if usage else None,
        )

        content = response.choices[0].message.content
        if content is None:
            raise RuntimeError("LLM からコンテンツが返却されませんでした")
        return content
