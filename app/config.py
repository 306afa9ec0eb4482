# app/config.py

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    アプリ全体で使う設定クラス。
    .env から環境変数を読み込み、属性として参照できるようにする。
    """

    # ---------- OpenAI ----------
    # OPENAI_API_KEY=sk-xxxx... を .env に書く想定
    # 未設定ならレコメンドは固定文言のフォールバックになる
    openai_api_key: str | None = None

    # OPENAI_MODEL=gpt-4.1 などと書けば上書きされる
    openai_model: str = "gpt-4.1-mini"

    # ---------- レコメンド生成 ----------
    use_gpt_recommendations: bool = True
    llm_timeout_seconds: float = 15.0
    llm_max_tokens: int = 100
    llm_temperature: float = 0.3

    # キャッシュは (チェック名, キーフレーズ, context 先頭50文字) 単位
    recommendation_cache_enabled: bool = True
    recommendation_cache_ttl_seconds: float = 15 * 60

    # ---------- URL Guard ----------
    # ALLOWED_DOMAINS='["example.com", "*.example.org"]' のように JSON で書く
    allowed_domains: List[str] = []
    # ローカル検証時は ENFORCE_DOMAIN_ALLOWLIST=false で無効化できる
    enforce_domain_allowlist: bool = True
    # true にするとホスト名を DNS 解決して内部アドレスを弾く
    resolve_dns: bool = False

    # ---------- Fetcher ----------
    fetch_timeout_seconds: float = 10.0
    fetch_max_attempts: int = 2
    fetch_retry_delay_seconds: float = 0.5
    user_agent: str = "seo-page-auditor/0.1 (+dev)"

    # ---------- 抽出・チェック ----------
    # インラインコードの圧縮判定のしきい値（0〜100、大きいほど厳しい）
    minification_threshold: int = 50
    max_image_bytes: int = 300 * 1024
    # true で画像ごとに HEAD を投げて Content-Length を取る
    measure_image_sizes: bool = False

    # ---------- ログ ----------
    log_level: str = "INFO"

    # ---------- Pydantic Settings 設定 ----------
    model_config = SettingsConfigDict(
        env_file=".env",            # .env を読む
        env_file_encoding="utf-8",
        extra="ignore",             # 定義外の環境変数があっても無視（エラーにしない）
    )


@lru_cache
def get_settings() -> Settings:
    """Settings をシングルトン的に使うためのヘルパ。"""
    return Settings()


# 他のモジュールからは `from app.config import settings` で利用
settings = get_settings()
