# services/crawler.py

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

import requests

from services.errors import FetchFailed

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "seo-page-auditor/0.1 (+dev)"

# このステータスは同じ URL で再試行しても結果が変わらない
_GIVE_UP_STATUSES = (404, 410)

_REDIRECT_STATUSES = (301, 302, 303, 307, 308)
MAX_REDIRECTS = 5


class _RedirectBlocked(Exception):
    def __init__(self, target: str) -> None:
        super().__init__(target)
        self.target = target


def _request_headers(user_agent: str) -> dict:
    return {
        "User-Agent": user_agent,
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
    }


def build_url_variants(url: str) -> List[str]:
    """
    正規化済み URL と、その www あり/なしを反転させた URL を返す。
    パス・クエリはそのまま。IP 直指定の場合は反転しない。
    """
    parts = urlsplit(url)
    host = parts.hostname or ""
    if not host or host.replace(".", "").isdigit() or ":" in host:
        return [url]

    if host.startswith("www."):
        toggled = host[len("www."):]
    else:
        toggled = f"www.{host}"

    netloc = toggled if parts.port is None else f"{toggled}:{parts.port}"
    alternate = urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
    return [url, alternate]


def _get_following_redirects(
    url: str,
    headers: dict,
    timeout: float,
    url_filter: Optional[Callable[[str], bool]],
) -> requests.Response:
    """
    リダイレクトを自前で1ホップずつ辿る。
    次のホップは url_filter を通ったものだけリクエストする。
    """
    current = url
    for _ in range(MAX_REDIRECTS + 1):
        resp = requests.get(current, headers=headers, timeout=timeout, allow_redirects=False)
        location = resp.headers.get("Location") if resp.status_code in _REDIRECT_STATUSES else None
        if not location:
            return resp

        try:
            target = urljoin(current, location)
        except ValueError:
            raise _RedirectBlocked(location) from None
        if url_filter is not None and not url_filter(target):
            raise _RedirectBlocked(target)
        logger.info("[crawler] redirect url=%s location=%s", current, target)
        current = target

    raise requests.TooManyRedirects(f"more than {MAX_REDIRECTS} redirects from {url}")


def fetch_html(
    url: str,
    timeout: float = 10.0,
    *,
    max_attempts: int = 2,
    retry_delay: float = 0.5,
    user_agent: str = DEFAULT_USER_AGENT,
    url_filter: Optional[Callable[[str], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """
    URL の HTML を取得する。

    - URL そのものと www 反転版の 2 バリアントを順に試す
    - 各バリアントで最大 max_attempts 回、n 回目の失敗後は n * retry_delay 秒待つ
    - 404 / 410 と接続エラー（DNS 失敗・接続拒否）はそのバリアントを打ち切る
    - 最初に 200 が返った本文を返す。全滅なら FetchFailed
    - url_filter が与えられた場合、バリアントとリダイレクトの各ホップを送信前に検査する
    """
    headers = _request_headers(user_agent)
    last_error: Optional[str] = None

    for variant in build_url_variants(url):
        if url_filter is not None and not url_filter(variant):
            last_error = f"variant rejected by URL guard: {variant}"
            logger.info("[crawler] skip variant url=%s", variant)
            continue

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                sleep((attempt - 1) * retry_delay)

            logger.info("[crawler] GET url=%s attempt=%d/%d", variant, attempt, max_attempts)
            try:
                resp = _get_following_redirects(variant, headers, timeout, url_filter)
            except _RedirectBlocked as e:
                last_error = f"redirected to a disallowed URL: {e.target}"
                logger.warning("[crawler] blocked redirect url=%s location=%s", variant, e.target)
                break
            except requests.TooManyRedirects as e:
                last_error = f"too many redirects: {e}"
                logger.warning("[crawler] too many redirects url=%s", variant)
                break
            except requests.Timeout as e:
                last_error = f"timeout: {e}"
                logger.warning("[crawler] timeout url=%s attempt=%d", variant, attempt)
                continue
            except requests.ConnectionError as e:
                last_error = f"connection error: {e}"
                logger.warning("[crawler] connection error url=%s error=%s", variant, e)
                break
            except requests.RequestException as e:
                last_error = f"request error: {e}"
                logger.warning("[crawler] request error url=%s error=%s", variant, e)
                continue

            status = resp.status_code
            if status == 200:
                logger.info("[crawler] fetched url=%s bytes=%d", variant, len(resp.text))
                return resp.text

            last_error = f"HTTP {status}"
            logger.warning("[crawler] HTTP %s url=%s attempt=%d", status, variant, attempt)
            if status in _GIVE_UP_STATUSES:
                break

    logger.error("[crawler] all variants failed url=%s last_error=%s", url, last_error)
    raise FetchFailed(url, last_error)


def head_image_size(
    url: str,
    timeout: float = 5.0,
    *,
    user_agent: str = DEFAULT_USER_AGENT,
    url_filter: Optional[Callable[[str], bool]] = None,
) -> Optional[int]:
    """
    HEAD リクエストの Content-Length から画像サイズ（バイト）を取る。
    取れなければ None（サイズ不明）。
    """
    if url_filter is not None and not url_filter(url):
        return None
    try:
        resp = requests.head(
            url,
            headers={"User-Agent": user_agent},
            timeout=timeout,
            allow_redirects=False,
        )
    except requests.RequestException as e:
        logger.info("[crawler] HEAD failed url=%s error=%s", url, e)
        return None

    if resp.status_code != 200:
        return None
    length = resp.headers.get("Content-Length")
    if not length or not str(length).isdigit():
        return None
    return int(length)


class PageFetcher:
    """設定値を束ねた fetch_html / head_image_size のラッパ。パイプラインから注入される。"""

    def __init__(
        self,
        timeout: float = 10.0,
        max_attempts: int = 2,
        retry_delay: float = 0.5,
        user_agent: str = DEFAULT_USER_AGENT,
        url_filter: Optional[Callable[[str], bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.user_agent = user_agent
        self.url_filter = url_filter
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings, url_filter: Optional[Callable[[str], bool]] = None) -> "PageFetcher":
        return cls(
            timeout=settings.fetch_timeout_seconds,
            max_attempts=settings.fetch_max_attempts,
            retry_delay=settings.fetch_retry_delay_seconds,
            user_agent=settings.user_agent,
            url_filter=url_filter,
        )

    def fetch(self, url: str) -> str:
        return fetch_html(
            url,
            self.timeout,
            max_attempts=self.max_attempts,
            retry_delay=self.retry_delay,
            user_agent=self.user_agent,
            url_filter=self.url_filter,
            sleep=self.sleep,
        )

    def image_size(self, url: str) -> Optional[int]:
        return head_image_size(
            url,
            min(self.timeout, 5.0),
            user_agent=self.user_agent,
            url_filter=self.url_filter,
        )
