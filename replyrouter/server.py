"""FastAPI server for the reply router.

Run with:
    uvicorn replyrouter.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from replyrouter.api.routes import router
from replyrouter.config import CORS_ORIGINS, REDIS_URL, SERVER_HOST, SERVER_PORT
from replyrouter.handler import create_inbound_handler
from replyrouter.services.background import BackgroundDispatcher
from replyrouter.services.metrics import metrics
from replyrouter.services.store import close_redis_client, create_redis_client
from replyrouter.services.token_usage import TokenTracker

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the store client, dispatcher and handler once; close them on exit."""
    client = create_redis_client(REDIS_URL)
    dispatcher = BackgroundDispatcher()
    application.state.redis = client
    application.state.dispatcher = dispatcher
    application.state.token_tracker = TokenTracker(client)
    application.state.handler = create_inbound_handler(client, dispatcher)
    logger.info("Reply router ready.")
    yield
    application.state.handler = None
    dispatcher.shutdown()
    metrics.flush()
    close_redis_client(client)


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Reply Router",
    description="Layered chatbot reply pipeline with an AI agent fallback.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a request ID (``X-Request-ID``) to every request and response."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Reply Router",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


if __name__ == "__main__":
    logger.info("Starting reply router on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "replyrouter.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
