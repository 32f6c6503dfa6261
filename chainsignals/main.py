from __future__ import annotations

import logging
import os
from pathlib import Path

# Load .env file from the package directory before anything reads os.getenv
_env_file = Path(__file__).resolve().parent / ".env"
if _env_file.exists():
    for _line in _env_file.read_text(encoding="utf-8").splitlines():
        _line = _line.strip()
        if _line and not _line.startswith("#") and "=" in _line:
            _key, _, _val = _line.partition("=")
            os.environ.setdefault(_key.strip(), _val.strip())

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chainsignals.api.routes import api_router
from chainsignals.bg_services.performance_scheduler import get_performance_scheduler
from chainsignals.config.settings import get_settings, require_chain_settings
from chainsignals.db.database import init_db

logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version)
_performance_scheduler = None

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

app.include_router(api_router)


@app.on_event("startup")
async def on_startup() -> None:
    global _performance_scheduler
    if settings.scheduler_enabled:
        require_chain_settings(settings)
    init_db()
    logger.info(
        "event=app_started chain=%s chain_id=%s scheduler=%s",
        settings.chain_name,
        settings.chain_id,
        settings.scheduler_enabled,
    )
    if settings.scheduler_enabled:
        _performance_scheduler = get_performance_scheduler()
        await _performance_scheduler.start()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    if _performance_scheduler:
        await _performance_scheduler.stop()


@app.get("/api/status", tags=["health"])
def status() -> dict:
    if _performance_scheduler is None:
        return {"scheduler": "disabled"}
    return {"scheduler": "running", **_performance_scheduler.status_snapshot()}
