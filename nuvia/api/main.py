"""
nuvia.api.main — FastAPI application entry point
=================================================

Run with::

    uvicorn nuvia.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from nuvia import __version__  # noqa: E402
from nuvia.api.auth import router as auth_router  # noqa: E402
from nuvia.api.deps import get_engine  # noqa: E402
from nuvia.api.routes.admin import router as admin_router  # noqa: E402
from nuvia.api.routes.leaderboard import router as leaderboard_router  # noqa: E402
from nuvia.api.routes.quests import router as quests_router  # noqa: E402
from nuvia.api.routes.referrals import router as referrals_router  # noqa: E402
from nuvia.api.routes.waitlist import router as waitlist_router  # noqa: E402
from nuvia.api.routes.xp import router as xp_router  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine."""
    engine = get_engine()
    logger.info("Nuvia API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("Nuvia API shutting down")


app = FastAPI(
    title="Nuvia XP API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router, prefix="/api")
app.include_router(xp_router, prefix="/api")
app.include_router(quests_router, prefix="/api")
app.include_router(referrals_router, prefix="/api")
app.include_router(leaderboard_router, prefix="/api")
app.include_router(waitlist_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
