# agents/recommendation_agent.py

from __future__ import annotations

import logging
import re
import zlib
from typing import List, Optional

from app.config import Settings, get_settings
from services.llm_client import OpenAITextGenerator, TextGenerator
from services.recommendation_cache import (
    InMemoryRecommendationCache,
    RecommendationCache,
    make_cache_key,
)

logger = logging.getLogger(__name__)

# ============================================================
# パラメータ
# ============================================================

MAX_CONTEXT_LEN = 300
MAX_EXTRA_CONTEXT_LEN = 200

# 同じ意味のシステムプロンプトを数種類用意し、(チェック名, キーフレーズ) で固定的に選ぶ
SYSTEM_PROMPT_TEMPLATES: List[str] = [
    (
        "You are an SEO expert providing ready-to-use content. "
        "Create a single, concise and optimized {element} that naturally includes the keyphrase. "
        "Return ONLY the final content with no explanation, quotes or formatting."
    ),
    (
        "You are an experienced SEO copywriter. "
        "Write one improved {element} that contains the keyphrase in a natural way. "
        "Reply with the content only, without any introduction, quotes or markdown."
    ),
    (
        "You help website owners fix on-page SEO issues. "
        "Produce a single optimized {element} that uses the keyphrase naturally. "
        "Output nothing but the content itself, so it can be copied and pasted directly."
    ),
]

# フォールバック文言・プロンプトで使う「何を直すか」
CHECK_ELEMENTS = {
    "Keyphrase in Title": "title",
    "Keyphrase in Meta Description": "meta description",
    "Keyphrase in Introduction": "introduction",
    "Keyphrase in H1 Heading": "H1 heading",
    "Keyphrase in H2 Headings": "H2 headings",
    "Keyphrase in URL": "URL",
    "Image Alt Attributes": "image alt text",
}

LENGTH_HINTS = {
    "Keyphrase in Title": "Keep it between 50 and 60 characters.",
    "Keyphrase in Meta Description": "Keep it between 120 and 155 characters.",
    "Keyphrase in Introduction": "Keep it to 2-3 sentences and preserve the original message.",
    "Keyphrase in H1 Heading": "Keep it short and engaging.",
}


# ============================================================
# 出力の整形
# ============================================================

_LEAD_IN_PATTERNS = [
    re.compile(r"^(?:i\s+(?:would\s+)?recommend(?:\s+that)?|i\s+suggest|you\s+should|consider)\b\s*[:,\-]?\s*", re.IGNORECASE),
    re.compile(r"^suggest(?:ed|ion)\b[^:\n]{0,40}:\s*", re.IGNORECASE),
    re.compile(r"^here(?:'s|\s+is|\s+are)\b[^:\n]{0,60}:\s*", re.IGNORECASE),
    re.compile(r"^(?:recommendation|update|fix)\s*:\s*", re.IGNORECASE),
]
_EXAMPLE_RE = re.compile(r"^example\s*:\s*", re.IGNORECASE)
_DUPLICATE_LABEL_RE = re.compile(r"^([A-Za-z][\w \-]{0,40}):\s*\1\s*:\s*", re.IGNORECASE)
_CODE_FENCE_RE = re.compile(r"^```[\w-]*\s*\n?(.*?)\n?\s*```$", re.DOTALL)

_QUOTE_PAIRS = [('"', '"'), ("'", "'"), ("`", "`"), ("“", "”"), ("‘", "’"), ("«", "»")]


def _strip_wrapping(text: str) -> str:
    fence = _CODE_FENCE_RE.match(text)
    if fence:
        return fence.group(1).strip()
    for left, right in _QUOTE_PAIRS:
        if len(text) >= 2 and text.startswith(left) and text.endswith(right):
            return text[len(left):-len(right)].strip()
    return text


def clean_recommendation(text: Optional[str]) -> str:
    """
    LLM の出力からコピペ可能な本文だけを取り出す。

    - 「I recommend」「You should」「Consider」「Suggested title:」「Here's ...:」
      「Recommendation:」「Suggestion:」「Update:」「Fix:」などの前置きを除去
    - 全体を囲む引用符・バッククォート・コードフェンスを除去
    - 「Title: Title:」のようなラベルの重複を1つにまとめる
    - 前置きの直後に続く「Example:」を除去
    変化がなくなるまで繰り返し、先頭を大文字にして返す。
    """
    if not text:
        return ""

    current = text.strip()
    for _ in range(10):
        previous = current
        current = _strip_wrapping(current)

        stripped_lead_in = False
        for pattern in _LEAD_IN_PATTERNS:
            updated = pattern.sub("", current, count=1)
            if updated != current:
                current = updated.strip()
                stripped_lead_in = True
                break

        if stripped_lead_in:
            current = _EXAMPLE_RE.sub("", current, count=1).strip()

        current = _DUPLICATE_LABEL_RE.sub(r"\1: ", current, count=1).strip()

        if current == previous:
            break

    if not current:
        return ""
    return current[0].upper() + current[1:]


# ============================================================
# フォールバック
# ============================================================

def fallback_recommendation(check_title: str, keyphrase: str) -> str:
    """API キーや LLM がなくても必ず返せる固定文言。"""
    phrase = keyphrase.strip()
    if check_title == "Keyphrase in Title":
        capitalized = phrase[:1].upper() + phrase[1:]
        return f"{capitalized} - Your Website"
    element = CHECK_ELEMENTS.get(check_title, "content")
    return f'Add "{phrase}" to your {element}'


def _truncate(text: Optional[str], limit: int) -> Optional[str]:
    if not text:
        return None
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def select_system_prompt(check_title: str, keyphrase: str) -> str:
    """(チェック名, キーフレーズ) が同じなら毎回同じテンプレートを返す。"""
    index = zlib.crc32(f"{check_title}|{keyphrase}".encode("utf-8")) % len(SYSTEM_PROMPT_TEMPLATES)
    element = CHECK_ELEMENTS.get(check_title, check_title.lower())
    return SYSTEM_PROMPT_TEMPLATES[index].format(element=element)


def build_user_prompt(
    check_title: str,
    keyphrase: str,
    context: Optional[str] = None,
    extra_context: Optional[str] = None,
) -> str:
    element = CHECK_ELEMENTS.get(check_title, check_title.lower())
    lines = [
        f'Fix this SEO issue: "{check_title}" for the keyphrase "{keyphrase}".',
        f"Create a better {element} that includes the keyphrase.",
        f"Current content: {context or 'None'}",
    ]
    if extra_context:
        lines.append(f"Additional context: {extra_context}")
    hint = LENGTH_HINTS.get(check_title)
    if hint:
        lines.append(hint)
    lines.append("Return ONLY the final content.")
    return "\n".join(lines)


# ============================================================
# 公開クラス
# ============================================================

class RecommendationGenerator:
    """
    失敗したチェック向けのレコメンド文を作る。

    優先順位:
    1. キャッシュに有効なエントリがあればそれを返す
    2. LLM が使える（有効化されていて、API キー or 注入済みの generator がある）なら生成
    3. 例外・空応答・LLM 無効時は固定のフォールバック文言
    recommend() は例外を投げない。
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        generator: Optional[TextGenerator] = None,
        cache: Optional[RecommendationCache] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.enabled = self.settings.use_gpt_recommendations

        if generator is None and self.enabled and self.settings.openai_api_key:
            generator = OpenAITextGenerator.from_settings(self.settings)
        self.generator = generator

        if cache is None and self.settings.recommendation_cache_enabled:
            cache = InMemoryRecommendationCache(ttl_seconds=self.settings.recommendation_cache_ttl_seconds)
        self.cache = cache

        logger.info(
            "[recommendation] initialized mode=%s cache=%s",
            "LLM" if self.enabled and self.generator else "FALLBACK",
            "ON" if self.cache is not None else "OFF",
        )

    def recommend(
        self,
        check_title: str,
        keyphrase: str,
        context: Optional[str] = None,
        extra_context: Optional[str] = None,
    ) -> str:
        fallback = fallback_recommendation(check_title, keyphrase)

        if not self.enabled or self.generator is None:
            return fallback

        key = make_cache_key(check_title, keyphrase, context)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached:
                logger.info("[recommendation] cache hit check=%s", check_title)
                return cached

        system_prompt = select_system_prompt(check_title, keyphrase)
        user_prompt = build_user_prompt(
            check_title,
            keyphrase,
            _truncate(context, MAX_CONTEXT_LEN),
            _truncate(extra_context, MAX_EXTRA_CONTEXT_LEN),
        )

        try:
            raw = self.generator.generate(system_prompt, user_prompt)
        except Exception as e:  # noqa: BLE001
            logger.warning("[recommendation] LLM error, fallback used check=%s error=%s", check_title, e)
            return fallback

        cleaned = clean_recommendation(raw)
        if not cleaned:
            logger.warning("[recommendation] empty LLM output, fallback used check=%s", check_title)
            return fallback

        if self.cache is not None:
            self.cache.set(key, cleaned)
        return cleaned
