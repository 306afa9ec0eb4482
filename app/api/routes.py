# app/api/routes.py
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from app.graph.lg_workflow import SEOAnalysisPipeline
from models.analysis_models import AnalysisResult, ExternalPageData
from services.errors import AnalysisFailed, FetchFailed, InvalidURL

logger = logging.getLogger(__name__)

router = APIRouter()


# --------- Request / Response モデル ---------


class AnalyzeRequest(BaseModel):
    url: str
    keyphrase: str = Field(min_length=1)
    is_home_page: bool = False
    page_data: Optional[ExternalPageData] = None
    # カンマ区切り。例: "web design, small business"
    secondary_keywords: Optional[str] = None


class RecommendationRequest(BaseModel):
    check_title: str
    keyphrase: str = Field(min_length=1)
    context: Optional[str] = None
    extra_context: Optional[str] = None


class RecommendationResponse(BaseModel):
    recommendation: str


# --------- 依存 ---------


@lru_cache
def get_pipeline() -> SEOAnalysisPipeline:
    """パイプライン（とレコメンドキャッシュ）をプロセス内で共有する。"""
    return SEOAnalysisPipeline()


# --------- エンドポイント ---------


@router.post("/analyze", response_model=AnalysisResult)
def api_analyze(
    payload: AnalyzeRequest,
    pipeline: SEOAnalysisPipeline = Depends(get_pipeline),
) -> AnalysisResult:
    """
    URL + キーフレーズでページを解析し、18 チェックの結果とスコアを返すメインAPI。

    InvalidURL → 400, FetchFailed → 502, AnalysisFailed → 500
    """
    logger.info(
        "[api.analyze] start url=%s keyphrase=%s page_data=%s",
        payload.url,
        payload.keyphrase,
        "YES" if payload.page_data else "NO",
    )

    try:
        result = pipeline.analyze(
            payload.url,
            payload.keyphrase,
            is_home_page=payload.is_home_page,
            page_data=payload.page_data,
            secondary_keywords=payload.secondary_keywords,
        )
    except InvalidURL as e:
        logger.info("[api.analyze] invalid url=%s reason=%s", payload.url, e.reason)
        raise HTTPException(status_code=400, detail=str(e)) from e
    except FetchFailed as e:
        logger.warning("[api.analyze] fetch failed url=%s error=%s", payload.url, e.last_error)
        raise HTTPException(status_code=502, detail=str(e)) from e
    except AnalysisFailed as e:
        logger.error("[api.analyze] analysis failed url=%s error=%s", payload.url, e)
        raise HTTPException(status_code=500, detail=f"Analysis failed: {e}") from e

    logger.info("[api.analyze] done url=%s score=%s", result.url, result.score)
    return result


@router.post("/recommendation", response_model=RecommendationResponse)
def api_recommendation(
    payload: RecommendationRequest,
    pipeline: SEOAnalysisPipeline = Depends(get_pipeline),
) -> RecommendationResponse:
    """
    チェック1件分のレコメンドだけを作り直すAPI。
    LLM が使えない場合もフォールバック文言を返す。
    """
    logger.info("[api.recommendation] check=%s keyphrase=%s", payload.check_title, payload.keyphrase)
    text = pipeline.recommender.recommend(
        payload.check_title,
        payload.keyphrase,
        payload.context,
        payload.extra_context,
    )
    return RecommendationResponse(recommendation=text)
