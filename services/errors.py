# services/errors.py

from __future__ import annotations


class SEOAnalysisError(Exception):
    """解析パイプライン共通の基底例外。"""


class InvalidURL(SEOAnalysisError):
    """URL Guard で弾かれた URL（ネットワークアクセス前に送出）。"""

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"Invalid URL {url!r}: {reason}")


class FetchFailed(SEOAnalysisError):
    """全バリアント・全リトライで HTML 取得に失敗した。"""

    def __init__(self, url: str, last_error: str | None = None) -> None:
        self.url = url
        self.last_error = last_error
        message = f"Failed to fetch {url}"
        if last_error:
            message = f"{message}: {last_error}"
        super().__init__(message)


class AnalysisFailed(SEOAnalysisError):
    """上記以外の想定外エラーを包んだもの。"""
