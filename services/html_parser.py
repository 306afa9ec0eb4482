# services/html_parser.py

from __future__ import annotations

import json
import logging
import re
from typing import Iterable, List, Optional, Protocol, Tuple
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup
from bs4.element import Tag

from models.site_models import (
    Heading,
    ImageInfo,
    OgMetadata,
    PageResources,
    PageSnapshot,
    ResourceInfo,
    SchemaEntry,
    SchemaSummary,
)

logger = logging.getLogger(__name__)


# ============================================================
# ノイズ要素（本文解析の前に取り除く）
# ============================================================

NOISE_SELECTORS: Tuple[str, ...] = (
    # Cookie / 同意バナー
    ".cookie-banner",
    ".cookie-consent",
    "#cookie-notice",
    ".cookie-policy",
    '[class*="cookie"]',
    '[id*="cookie"]',
    '[aria-label*="cookie"]',
    # チャットウィジェット
    ".chat-widget",
    ".chatbot",
    "#intercom-container",
    ".crisp-client",
    ".livechat-widget",
    ".drift-widget",
    ".zendesk-chat",
    # ポップアップ / モーダル
    ".popup",
    ".modal",
    ".notification-bar",
    ".promo-banner",
    '[role="dialog"]:not([aria-label*="content"])',
    '[aria-hidden="true"]',
)

_PROTECTED_TAGS = ("html", "head", "body")

_SKIPPED_LINK_PREFIXES = ("#", "mailto:", "tel:", "javascript:", "data:", "vbscript:")

_WHITESPACE_RE = re.compile(r"\s+")


# ============================================================
# 圧縮判定
# ============================================================

# 配信時に自動で圧縮してくれる CDN
AUTO_MINIFYING_HOSTS: Tuple[str, ...] = (
    "cdnjs.cloudflare.com",
    "unpkg.com",
    "jsdelivr.net",
    "googleapis.com",
    "gstatic.com",
    "assets.webflow.com",
    "global-uploads.webflow.com",
)

_MIN_URL_RE = re.compile(r"[.\-]min\.(js|css)(\?|#|$)|\.min\.", re.IGNORECASE)
_BUILD_URL_RE = re.compile(
    r"\.(js|css)\?v=|/build/|/dist/|\.bundle\.|\.chunk\.",
    re.IGNORECASE,
)
_HASHED_NAME_RE = re.compile(r"[.\-][a-f0-9]{8,}\.(js|css)$", re.IGNORECASE)

_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
# "https://..." の // はコメント扱いしない
_LINE_COMMENT_RE = re.compile(r"(?<![:\"'\\])//[^\n]*")

# これより短いインラインコードは圧縮済みとみなす
MIN_INLINE_CODE_LENGTH = 50


def is_url_minified(url: str) -> bool:
    """外部 JS/CSS の URL から圧縮済みかどうかを推定する。"""
    lowered = url.lower()
    path = urlsplit(lowered).path
    host = urlsplit(lowered).hostname or ""

    if _MIN_URL_RE.search(lowered):
        return True
    if any(host == h or host.endswith("." + h) for h in AUTO_MINIFYING_HOSTS):
        return True
    if _BUILD_URL_RE.search(lowered):
        return True
    if _HASHED_NAME_RE.search(path):
        return True
    return False


def is_inline_code_minified(code: str, threshold: int = 50) -> bool:
    """
    インライン <script> / <style> の中身から圧縮済みかどうかを推定する。

    コメントを除いた上で
      - 改行率 < 0.05 かつ 空白率 < 0.2
      - もしくは 平均行長 > 300
    なら圧縮済み。threshold (0〜100) が大きいほど各基準を厳しくする。
    """
    stripped = code.strip()
    if len(stripped) < MIN_INLINE_CODE_LENGTH:
        return True

    body = _BLOCK_COMMENT_RE.sub("", stripped)
    body = _LINE_COMMENT_RE.sub("", body).strip()
    if not body:
        return True

    factor = max(0.1, (100 - threshold) / 50)

    length = len(body)
    newline_ratio = body.count("\n") / length
    whitespace_ratio = sum(1 for ch in body if ch.isspace()) / length

    lines = [line for line in body.splitlines() if line.strip()]
    avg_line_length = length / len(lines) if lines else length

    if newline_ratio < 0.05 * factor and whitespace_ratio < 0.2 * factor:
        return True
    return avg_line_length > 300 / factor


# ============================================================
# 抽出器
# ============================================================


class PageExtractor(Protocol):
    """HTML 文字列 → PageSnapshot の変換を担う抽出器。"""

    def extract(self, html: str, base_url: str) -> PageSnapshot:
        ...


def _collapse(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def _meta_content(soup: BeautifulSoup, *, name: Optional[str] = None, prop: Optional[str] = None) -> str:
    """<meta name=...> / <meta property=...> の content を返す（大文字小文字は無視）。"""
    if prop:
        pattern = re.compile(rf"^{re.escape(prop)}$", re.IGNORECASE)
        tag = soup.find("meta", attrs={"property": pattern}) or soup.find("meta", attrs={"name": pattern})
    else:
        pattern = re.compile(rf"^{re.escape(name or '')}$", re.IGNORECASE)
        tag = soup.find("meta", attrs={"name": pattern})
    if not tag:
        return ""
    content = tag.get("content")
    return _collapse(content) if isinstance(content, str) else ""


def _remove_noise(soup: BeautifulSoup, selectors: Iterable[str]) -> int:
    removed = 0
    for selector in selectors:
        try:
            matches = soup.select(selector)
        except Exception as e:  # noqa: BLE001
            logger.debug("[html_parser] selector skipped selector=%s error=%s", selector, e)
            continue
        for tag in matches:
            if tag.decomposed or tag.name in _PROTECTED_TAGS:
                continue
            tag.decompose()
            removed += 1
    return removed


def _extract_headings(soup: BeautifulSoup) -> List[Heading]:
    """h1〜h6 を文書順のフラットなリストとして生成する。空の見出しは捨てる。"""
    headings: List[Heading] = []
    for tag in soup.find_all(re.compile(r"^h[1-6]$")):
        text = _collapse(tag.get_text(" "))
        if not text:
            continue
        headings.append(Heading(level=int(tag.name[1]), text=text))
    return headings


def _extract_paragraphs(soup: BeautifulSoup) -> List[str]:
    paragraphs = []
    for tag in soup.find_all("p"):
        text = _collapse(tag.get_text(" "))
        if text:
            paragraphs.append(text)
    return paragraphs


def _extract_images(soup: BeautifulSoup) -> List[ImageInfo]:
    images = []
    for tag in soup.find_all("img"):
        src = tag.get("src")
        if not isinstance(src, str) or not src.strip():
            continue
        alt = tag.get("alt")
        images.append(ImageInfo(src=src.strip(), alt=alt.strip() if isinstance(alt, str) else ""))
    return images


def _extract_links(soup: BeautifulSoup, base_url: str) -> Tuple[List[str], List[str]]:
    """
    a[href] を内部リンク / 外部リンクに振り分ける。
    ホスト名が base_url と完全一致すれば内部リンク。
    """
    base_host = (urlsplit(base_url).hostname or "").lower()
    internal: List[str] = []
    outbound: List[str] = []

    for tag in soup.find_all("a", href=True):
        href = str(tag["href"]).strip()
        if not href or href.lower().startswith(_SKIPPED_LINK_PREFIXES):
            continue
        try:
            absolute = urljoin(base_url, href)
            host = (urlsplit(absolute).hostname or "").lower()
        except ValueError:
            continue
        if not host:
            continue
        if host == base_host:
            internal.append(absolute)
        else:
            outbound.append(absolute)

    return internal, outbound


def _is_executable_script(tag: Tag) -> bool:
    script_type = (tag.get("type") or "").strip().lower()
    return script_type in ("", "text/javascript", "application/javascript", "module")


def _extract_resources(soup: BeautifulSoup, base_url: str, threshold: int) -> PageResources:
    js: List[ResourceInfo] = []
    css: List[ResourceInfo] = []

    for tag in soup.find_all("script"):
        if not _is_executable_script(tag):
            continue
        src = tag.get("src")
        if isinstance(src, str) and src.strip():
            try:
                absolute = urljoin(base_url, src.strip())
                minified = is_url_minified(absolute)
            except ValueError:
                continue
            js.append(ResourceInfo(url=absolute, minified=minified))
            continue
        code = tag.string or tag.get_text()
        if code and code.strip():
            js.append(ResourceInfo(url="inline-script", minified=is_inline_code_minified(code, threshold)))

    for tag in soup.find_all("link", href=True):
        rel = tag.get("rel") or []
        rels = [r.lower() for r in rel] if isinstance(rel, list) else [str(rel).lower()]
        if "stylesheet" not in rels:
            continue
        try:
            absolute = urljoin(base_url, str(tag["href"]).strip())
            minified = is_url_minified(absolute)
        except ValueError:
            continue
        css.append(ResourceInfo(url=absolute, minified=minified))

    for tag in soup.find_all("style"):
        code = tag.string or tag.get_text()
        if code and code.strip():
            css.append(ResourceInfo(url="inline-style", minified=is_inline_code_minified(code, threshold)))

    return PageResources(js=js, css=css)


def _type_names(raw_type) -> List[str]:
    if isinstance(raw_type, str):
        return [raw_type] if raw_type.strip() else []
    if isinstance(raw_type, list):
        return [t for t in raw_type if isinstance(t, str) and t.strip()]
    return []


def _raw_type(raw_type, names: List[str]):
    """文字列ならそのまま、配列なら文字列要素だけに絞ったものを返す。"""
    return raw_type if isinstance(raw_type, str) else names


def _schema_entries(item: dict) -> List[SchemaEntry]:
    """JSON-LD オブジェクト1つから型を拾う。@type が無ければ @graph を見る。"""
    names = _type_names(item.get("@type"))
    if names:
        return [SchemaEntry(type=names[0], raw_type=_raw_type(item["@type"], names), source="@type")]

    entries: List[SchemaEntry] = []
    graph = item.get("@graph")
    if isinstance(graph, list):
        for node in graph:
            if not isinstance(node, dict):
                continue
            node_names = _type_names(node.get("@type"))
            if node_names:
                entries.append(
                    SchemaEntry(type=node_names[0], raw_type=_raw_type(node["@type"], node_names), source="@graph")
                )
    return entries


def _extract_schema(soup: BeautifulSoup, base_url: str) -> SchemaSummary:
    entries: List[SchemaEntry] = []
    count = 0

    for tag in soup.find_all("script", attrs={"type": re.compile(r"application/ld\+json", re.IGNORECASE)}):
        raw = tag.string or tag.get_text()
        if not raw or not raw.strip():
            continue
        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.warning("[html_parser] invalid JSON-LD skipped url=%s error=%s", base_url, e)
            continue
        count += 1

        items = data if isinstance(data, list) else [data]
        for item in items:
            if isinstance(item, dict):
                entries.extend(_schema_entries(item))

    types: List[str] = []
    for entry in entries:
        for name in _type_names(entry.raw_type):
            if name not in types:
                types.append(name)

    microdata_types: List[str] = []
    for tag in soup.find_all(attrs={"itemtype": True}):
        value = str(tag["itemtype"]).strip()
        if value and value not in microdata_types:
            microdata_types.append(value)

    return SchemaSummary(
        has_schema=bool(types),
        types=types,
        count=count,
        entries=entries,
        microdata_types=microdata_types,
    )


def _extract_og(soup: BeautifulSoup) -> OgMetadata:
    return OgMetadata(
        title=_meta_content(soup, prop="og:title") or None,
        description=_meta_content(soup, prop="og:description") or None,
        image=_meta_content(soup, prop="og:image") or None,
        image_width=_meta_content(soup, prop="og:image:width") or None,
        image_height=_meta_content(soup, prop="og:image:height") or None,
    )


def _extract_main_text(soup: BeautifulSoup) -> str:
    """script/style 等を除去して本文テキストを抽出する。soup を破壊するので最後に呼ぶ。"""
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    root = soup.body or soup
    return _collapse(root.get_text(separator=" "))


class SoupPageExtractor:
    """
    BeautifulSoup (html.parser) による抽出器。
    壊れた HTML でも例外にせず、取れた範囲で PageSnapshot を組み立てる。
    ネットワークアクセスは行わない（fetch_html で取得済み前提）。
    """

    def __init__(self, minification_threshold: int = 50, noise_selectors: Iterable[str] = NOISE_SELECTORS) -> None:
        self.minification_threshold = minification_threshold
        self.noise_selectors = tuple(noise_selectors)

    def extract(self, html: str, base_url: str) -> PageSnapshot:
        soup = BeautifulSoup(html or "", "html.parser")

        # ---------- head 系（ノイズ除去の影響を受けない） ----------
        og = _extract_og(soup)

        title = _collapse(soup.title.get_text()) if soup.title else ""
        if not title:
            title = og.title or ""

        meta_description = _meta_content(soup, name="description") or og.description or ""

        resources = _extract_resources(soup, base_url, self.minification_threshold)
        schema = _extract_schema(soup, base_url)

        # ---------- 本文系 ----------
        removed = _remove_noise(soup, self.noise_selectors)

        headings = _extract_headings(soup)
        paragraphs = _extract_paragraphs(soup)
        images = _extract_images(soup)
        internal, outbound = _extract_links(soup, base_url)
        content = _extract_main_text(soup)

        logger.info(
            "[html_parser] extracted url=%s noise_removed=%d headings=%d images=%d links=%d/%d",
            base_url,
            removed,
            len(headings),
            len(images),
            len(internal),
            len(outbound),
        )

        return PageSnapshot(
            url=base_url,
            title=title,
            meta_description=meta_description,
            headings=headings,
            paragraphs=paragraphs,
            images=images,
            internal_links=internal,
            outbound_links=outbound,
            resources=resources,
            og_metadata=og,
            schema_summary=schema,
            content=content,
        )


def extract(html: str, base_url: str, minification_threshold: int = 50) -> PageSnapshot:
    """SoupPageExtractor を使う簡易ラッパ。"""
    return SoupPageExtractor(minification_threshold=minification_threshold).extract(html, base_url)
