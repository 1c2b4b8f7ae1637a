"""FastAPI application: chat and ingestion endpoints for Creator Chat."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from creator_chat.api.responses import error_response
from creator_chat.api.routes.chat import router as chat_router
from creator_chat.api.routes.ingest import router as ingest_router
from creator_chat.config import settings
from creator_chat.errors import ServiceError
from creator_chat.safety.idempotency import idempotency_store
from creator_chat.safety.locks import lock_manager
from creator_chat.safety.rate_limit import rate_limiter

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 300


def sweep_substrate() -> int:
    """Drop expired rate-limit windows, idempotency records and locks."""
    return rate_limiter.sweep() + idempotency_store.sweep() + lock_manager.sweep()


async def _sweep_periodically() -> None:
    while True:
        await asyncio.sleep(SWEEP_INTERVAL_SECONDS)
        removed = sweep_substrate()
        if removed:
            logger.debug("Swept %d expired substrate entries", removed)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    task = asyncio.create_task(_sweep_periodically())
    try:
        yield
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


app = FastAPI(
    title="Creator Chat API",
    description="Grounded question answering over YouTube creator transcripts",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_origin_regex=r"http://localhost:\d+",
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["Content-Type", "Authorization", "X-Idempotency-Key"],
    expose_headers=["Retry-After", "Idempotent-Replayed"],
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    else:
        logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return error_response(exc)


app.include_router(chat_router)
app.include_router(ingest_router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}
