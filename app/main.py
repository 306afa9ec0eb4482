# app/main.py
import logging

from fastapi import FastAPI

from app.api.routes import router as api_router
from app.config import settings


def _configure_logging(level: str) -> None:
    """開発中は必ずコンソールに出したいので、ルートロガーにハンドラを直付け。"""
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter(
                "[%(asctime)s] [%(levelname)s] %(name)s - %(message)s",
                "%Y-%m-%d %H:%M:%S",
            )
        )
        root.addHandler(handler)
    root.setLevel(level.upper())


_configure_logging(settings.log_level)

app = FastAPI(title="SEO Page Auditor")

app.include_router(api_router, prefix="/api")
