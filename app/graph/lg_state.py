# app/graph/lg_state.py
from __future__ import annotations

from typing import Any, Dict, Optional

from models.analysis_models import ExternalPageData


class GraphState(Dict[str, Any]):
    """
    解析1回分の「状態」コンテナ。
    実体はただの dict だが、型ヒントとして分かりやすくするためのラッパ。

    主なキー:
      raw_url / keyphrase / secondary_keywords / is_home_page / page_data : 入力
      url      : URL Guard で正規化した URL
      html     : 取得した HTML
      snapshot : PageSnapshot
      checks   : List[SEOCheck]
      result   : AnalysisResult
    """
    pass


def create_initial_state(
    url: str,
    keyphrase: str,
    is_home_page: bool = False,
    page_data: Optional[ExternalPageData] = None,
    secondary_keywords: Optional[str] = None,
) -> GraphState:
    """
    ワークフロー開始時の初期 state を作成。
    """
    state: GraphState = GraphState()
    state["raw_url"] = url
    state["keyphrase"] = keyphrase.strip()
    state["secondary_keywords"] = secondary_keywords
    state["is_home_page"] = is_home_page
    state["page_data"] = page_data
    state["progress_messages"] = []  # 各ノードからのログ的メッセージ
    state["current_node"] = None
    return state
