# app/graph/lg_workflow.py
from __future__ import annotations

import logging
from typing import Optional

from agents.analyzer_agent import Recommender
from agents.recommendation_agent import RecommendationGenerator
from app.config import Settings, get_settings
from app.graph import nodes
from app.graph.lg_state import GraphState, create_initial_state
from models.analysis_models import AnalysisResult, ExternalPageData
from services.crawler import PageFetcher
from services.errors import AnalysisFailed, FetchFailed, InvalidURL
from services.html_parser import PageExtractor, SoupPageExtractor
from services.recommendation_cache import InMemoryRecommendationCache, RecommendationCache
from services.url_guard import UrlGuard

logger = logging.getLogger(__name__)


class SEOAnalysisPipeline:
    """
    /api/analyze 用のシンプルな直列ワークフロー。

    url_guard → fetch → extract → checks → result

    各依存（URL Guard / fetcher / 抽出器 / レコメンド生成 / キャッシュ）は
    注入でき、指定が無ければ Settings から組み立てる。
    レコメンドのキャッシュはこのパイプラインのインスタンスが持つ。
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        recommender: Optional[Recommender] = None,
        fetcher: Optional[nodes.Fetcher] = None,
        extractor: Optional[PageExtractor] = None,
        guard: Optional[UrlGuard] = None,
        cache: Optional[RecommendationCache] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.guard = guard or UrlGuard.from_settings(self.settings)
        self.fetcher = fetcher or PageFetcher.from_settings(self.settings, url_filter=self.guard.is_safe)
        self.extractor = extractor or SoupPageExtractor(self.settings.minification_threshold)

        if cache is None and self.settings.recommendation_cache_enabled:
            cache = InMemoryRecommendationCache(ttl_seconds=self.settings.recommendation_cache_ttl_seconds)
        self.cache = cache
        self.recommender = recommender or RecommendationGenerator(settings=self.settings, cache=cache)

    def run(
        self,
        url: str,
        keyphrase: str,
        is_home_page: bool = False,
        page_data: Optional[ExternalPageData] = None,
        secondary_keywords: Optional[str] = None,
    ) -> GraphState:
        """
        全ノードを実行して最終 state を返す。

        InvalidURL / FetchFailed / AnalysisFailed はそのまま送出し、
        それ以外の例外は AnalysisFailed に包んで1度だけ送出する。
        """
        if not keyphrase or not keyphrase.strip():
            raise AnalysisFailed("Keyphrase must not be empty")

        logger.info(
            "[lg_workflow] run start url=%s keyphrase=%s home=%s page_data=%s",
            url,
            keyphrase,
            is_home_page,
            "YES" if page_data else "NO",
        )

        state = create_initial_state(
            url,
            keyphrase,
            is_home_page=is_home_page,
            page_data=page_data,
            secondary_keywords=secondary_keywords,
        )
        try:
            # 1) URL の検証・正規化（ここで弾けばネットワークには出ない）
            state = nodes.url_guard_node(state, self.guard)

            # 2) HTML 取得（www 反転 + リトライ）
            state = nodes.fetch_node(state, self.fetcher)

            # 3) HTML → PageSnapshot
            state = nodes.extract_node(state, self.extractor, self.fetcher, self.settings)

            # 4) 18 チェック + レコメンド
            state = nodes.checks_node(state, self.recommender, self.settings)

            # 5) AnalysisResult
            state = nodes.result_node(state)
        except (InvalidURL, FetchFailed, AnalysisFailed):
            raise
        except Exception as e:  # noqa: BLE001
            logger.exception("[lg_workflow] unexpected error url=%s node=%s", url, state.get("current_node"))
            raise AnalysisFailed(str(e)) from e

        logger.info(
            "[lg_workflow] run done url=%s current_node=%s",
            state.get("url"),
            state.get("current_node"),
        )
        return state

    def analyze(
        self,
        url: str,
        keyphrase: str,
        is_home_page: bool = False,
        page_data: Optional[ExternalPageData] = None,
        secondary_keywords: Optional[str] = None,
    ) -> AnalysisResult:
        state = self.run(
            url,
            keyphrase,
            is_home_page=is_home_page,
            page_data=page_data,
            secondary_keywords=secondary_keywords,
        )
        return state["result"]


def run_workflow(
    url: str,
    keyphrase: str,
    is_home_page: bool = False,
    page_data: Optional[ExternalPageData] = None,
    secondary_keywords: Optional[str] = None,
) -> GraphState:
    """設定ファイルの値でパイプラインを組み立てて1回実行するヘルパ。"""
    return SEOAnalysisPipeline().run(
        url,
        keyphrase,
        is_home_page=is_home_page,
        page_data=page_data,
        secondary_keywords=secondary_keywords,
    )
