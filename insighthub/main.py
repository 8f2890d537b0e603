"""
Insight Hub — FastAPI Backend
Marketing analytics across Google Analytics, Google Ads, Meta Ads and LinkedIn Ads,
with an AI assistant that answers from the connected platforms' data.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from insighthub.config import get_settings
from insighthub.database import init_db, check_db_connection
from insighthub.errors import InsightHubError
from insighthub.routers import auth, chat, clients, dashboard, platforms
from insighthub.services.rate_limiter import RateLimiter

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Insight Hub...")
    try:
        await init_db()
        logger.info("Database initialized — all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="Insight Hub",
    description="Cross-platform marketing analytics with an AI assistant",
    version="1.0.0",
    lifespan=lifespan,
)

# Process-local chat quota, shared by the chat and dashboard routers
app.state.rate_limiter = RateLimiter(
    max_requests=settings.chat_rate_limit_max,
    window_seconds=settings.chat_rate_limit_window_seconds,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(InsightHubError)
async def insighthub_error_handler(request: Request, exc: InsightHubError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


# ── Auth (login/register public; whoami requires JWT) ─────────────────
app.include_router(auth.router, prefix="/api")

# ── Register Routers (per-endpoint JWT auth) ─────────────────────────
app.include_router(clients.router, prefix="/api/clients", tags=["Clients"])
app.include_router(platforms.router, prefix="/api/platforms", tags=["Platforms"])
app.include_router(dashboard.router, prefix="/api/dashboard", tags=["Dashboard"])
app.include_router(chat.router, prefix="/api/chat", tags=["AI Assistant"])


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Insight Hub",
        "database": "connected" if db_ok else "disconnected",
    }
