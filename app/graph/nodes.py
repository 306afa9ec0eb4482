# app/graph/nodes.py
from __future__ import annotations

import logging
from typing import List, Optional, Protocol
from urllib.parse import urljoin

from agents.analyzer_agent import Recommender, evaluate_checks
from app.config import Settings
from app.graph.lg_state import GraphState
from models.analysis_models import AnalysisResult, SEOCheck
from models.site_models import ImageInfo, PageSnapshot
from services.html_parser import PageExtractor
from services.url_guard import UrlGuard

logger = logging.getLogger(__name__)


class Fetcher(Protocol):
    def fetch(self, url: str) -> str:
        ...

    def image_size(self, url: str) -> Optional[int]:
        ...


def _log_progress(state: GraphState, node: str, message: str) -> GraphState:
    """
    進捗ログを state に積むユーティリティ。
    state は dict (GraphState) として扱う。
    """
    line = f"[{node}] {message}"

    messages: List[str] = list(state.get("progress_messages", []))
    messages.append(line)

    state["progress_messages"] = messages
    state["current_node"] = node

    logger.info(line)
    return state


# ---------- URL Guard ノード ----------


def url_guard_node(state: GraphState, guard: UrlGuard) -> GraphState:
    """
    入力 URL を検証・正規化する。不正なら InvalidURL（ネットワークアクセス前）。
    """
    state = _log_progress(state, "url_guard", "start: validating URL")

    state["url"] = guard.validate(state["raw_url"])

    state = _log_progress(state, "url_guard", f"done: normalized url={state['url']}")
    return state


# ---------- Fetch ノード ----------


def fetch_node(state: GraphState, fetcher: Fetcher) -> GraphState:
    """
    HTML を取得する。リトライ・www 反転は fetcher 側で行う。
    """
    state = _log_progress(state, "fetch", "start: fetching HTML")

    html = fetcher.fetch(state["url"])
    state["html"] = html

    state = _log_progress(state, "fetch", f"done: fetched {len(html)} chars")
    return state


# ---------- Extract ノード ----------


def _measure_images(snapshot: PageSnapshot, fetcher: Fetcher) -> PageSnapshot:
    measured: List[ImageInfo] = []
    for image in snapshot.images:
        try:
            absolute = urljoin(snapshot.url, image.src)
        except ValueError:
            # 解釈できない src はサイズ不明のまま残す
            measured.append(image)
            continue
        size = fetcher.image_size(absolute)
        measured.append(image.model_copy(update={"size_bytes": size}))
    return snapshot.model_copy(update={"images": measured})


def extract_node(
    state: GraphState,
    extractor: PageExtractor,
    fetcher: Fetcher,
    settings: Settings,
) -> GraphState:
    """
    HTML から PageSnapshot を作る。
    MEASURE_IMAGE_SIZES=true の場合は画像ごとに HEAD でサイズを測る。
    """
    state = _log_progress(state, "extract", "start: extracting page content")

    snapshot = extractor.extract(state["html"], state["url"])
    if settings.measure_image_sizes and snapshot.images:
        logger.info("[extract_node] measuring image sizes count=%d", len(snapshot.images))
        snapshot = _measure_images(snapshot, fetcher)

    state["snapshot"] = snapshot

    state = _log_progress(
        state,
        "extract",
        f"done: headings={len(snapshot.headings)} paragraphs={len(snapshot.paragraphs)} images={len(snapshot.images)}",
    )
    return state


# ---------- Checks ノード ----------


def checks_node(state: GraphState, recommender: Recommender, settings: Settings) -> GraphState:
    """
    18 個のチェックを評価する。失敗したチェックのレコメンドもここで揃える。
    """
    state = _log_progress(state, "checks", "start: evaluating checks")

    checks: List[SEOCheck] = evaluate_checks(
        state["snapshot"],
        state["keyphrase"],
        state["is_home_page"],
        state.get("page_data"),
        recommender=recommender,
        settings=settings,
        secondary_keywords=state.get("secondary_keywords"),
    )
    state["checks"] = checks

    failed = sum(1 for c in checks if not c.passed)
    state = _log_progress(state, "checks", f"done: {len(checks)} checks, {failed} failed")
    return state


# ---------- Result ノード ----------


def result_node(state: GraphState) -> GraphState:
    """
    AnalysisResult を組み立てる。スコアは checks から自動計算される。
    """
    result = AnalysisResult(
        url=state["url"],
        checks=state["checks"],
        api_data_used=state.get("page_data") is not None,
    )
    state["result"] = result

    state = _log_progress(state, "result", f"done: score={result.score}")
    return state
