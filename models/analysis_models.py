# models/analysis_models.py

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, computed_field

from services.scoring import calculate_seo_score

CheckPriority = Literal["high", "medium", "low"]


class SEOCheck(BaseModel):
    """
    チェック1件分の結果。
    title はチェック固有の識別子（優先度・成功メッセージ・キャッシュキーに使う）。
    """
    title: str
    description: str
    passed: bool
    priority: CheckPriority
    recommendation: Optional[str] = None


class ExternalPageData(BaseModel):
    """
    ホスト側（ページ編集 API など）から渡されるページのメタ情報。
    与えられた項目は HTML から抽出した値より優先される。
    """
    title: Optional[str] = None
    meta_description: Optional[str] = None
    og_title: Optional[str] = None
    og_description: Optional[str] = None
    og_image: Optional[str] = None
    uses_title_as_og_title: bool = False
    uses_description_as_og_description: bool = False


class AnalysisResult(BaseModel):
    """
    1回の解析結果。
    score / passed_checks / failed_checks は checks から毎回算出するので、
    checks と食い違うことはない。
    """
    url: str
    checks: List[SEOCheck] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    api_data_used: bool = False

    @computed_field
    @property
    def passed_checks(self) -> int:
        return sum(1 for c in self.checks if c.passed)

    @computed_field
    @property
    def failed_checks(self) -> int:
        return sum(1 for c in self.checks if not c.passed)

    @computed_field
    @property
    def score(self) -> int:
        return calculate_seo_score(self.checks)
