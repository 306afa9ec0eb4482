# services/recommendation_cache.py

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 15 * 60

# キーに含める context の先頭文字数
CONTEXT_KEY_LENGTH = 50


def make_cache_key(check_title: str, keyphrase: str, context: Optional[str]) -> str:
    return f"{check_title}_{keyphrase}_{(context or '')[:CONTEXT_KEY_LENGTH]}"


@dataclass
class CacheEntry:
    text: str
    created_at: float


class RecommendationCache(Protocol):
    """レコメンド文のキャッシュ。パイプライン単位で注入する。"""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, text: str) -> None:
        ...

    def evict(self, key: str) -> None:
        ...


class InMemoryRecommendationCache:
    """
    TTL 付きのメモリキャッシュ。
    - 期限切れエントリは get 時に無視して捨てる（能動的な掃除はしない）
    - ロックは dict 操作の間だけ持つ。同じキーへの同時書き込みは後勝ち
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if now - entry.created_at >= self.ttl_seconds:
                del self._entries[key]
                logger.debug("[recommendation_cache] expired key=%s", key)
                return None
            return entry.text

    def set(self, key: str, text: str) -> None:
        entry = CacheEntry(text=text, created_at=self._clock())
        with self._lock:
            self._entries[key] = entry

    def evict(self, key: str) -> None:
        """キーを削除する。無ければ何もしない。"""
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
