# botcast/main.py
"""
FastAPI application: trigger API plus the background queue workers.

One WorkerLoop task per queue type (shot, downsell) runs inside the app
process when WORKERS_ENABLED is set. Several app instances may run; the
advisory lock keeps one active processor per queue type.
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from botcast import __version__
from botcast.core.config import LOG_LEVEL, WORKERS_ENABLED, JWT_SECRET_KEY
from botcast.core.logging_config import setup_logging
from botcast.db.session import init_db, test_db_connection
from botcast.api.v1.router import api_router
from botcast.models.campaign import CampaignKind
from botcast.services.bot_registry import BotRegistry
from botcast.workers.loop import WorkerLoop

setup_logging("botcast", LOG_LEVEL)
log = logging.getLogger("botcast")


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("=" * 80)
    log.info("🚀 Application starting")
    log.info("=" * 80)

    try:
        init_db()
        if test_db_connection():
            log.info("✅ Database initialized")
    except Exception as e:
        log.error(f"❌ Database error: {e}")

    stop_event = asyncio.Event()
    tasks = []
    bots = BotRegistry()

    if WORKERS_ENABLED:
        for queue_type in CampaignKind.ALL:
            worker = WorkerLoop(queue_type, bots=bots)
            tasks.append(asyncio.create_task(worker.run_forever(stop_event), name=f"worker-{queue_type}"))
        log.info(f"✅ Started {len(tasks)} queue workers")
    else:
        log.warning("⚠️  Queue workers disabled (WORKERS_ENABLED=false)")

    app.state.stop_event = stop_event
    yield

    stop_event.set()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    await bots.aclose()
    log.info("🛑 Application stopped")


app = FastAPI(
    title="botcast - Broadcast Queue Engine",
    description="Shots and downsells for multi-tenant Telegram bots",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ────────────────────────────────────────────
# CORS Configuration
# ────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Tenant-Id", "Authorization", "Content-Type"],
    max_age=86400,
)

# Include API routes
app.include_router(api_router, prefix="/api")


# ────────────────────────────────────────────
# Public routes
# ────────────────────────────────────────────
@app.get("/health", tags=["System"])
def health():
    """Health check endpoint"""
    db_ok = test_db_connection()
    return {
        "status": "ok" if db_ok else "degraded",
        "database_ok": db_ok,
        "workers_enabled": WORKERS_ENABLED,
        "jwt_enabled": bool(JWT_SECRET_KEY),
        "version": __version__,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8100)
