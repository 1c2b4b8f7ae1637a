"""Error rendering, replayable response snapshots and disconnect handling."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, TypeVar

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from creator_chat.api.models import ErrorResponse
from creator_chat.errors import ClientDisconnectedError, ServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def error_response(exc: ServiceError) -> JSONResponse:
    """Render a ServiceError as the standard JSON error body."""
    body = ErrorResponse(
        error=exc.message,
        code=exc.code,
        retry_after_seconds=exc.retry_after_seconds,
        details=exc.details,
        timestamp=datetime.now(UTC).isoformat(),
    )
    headers = {"Retry-After": str(exc.retry_after_seconds)} if exc.retry_after_seconds is not None else None
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(by_alias=True, mode="json"),
        headers=headers,
    )


@dataclass(frozen=True)
class ResponseSnapshot:
    """Exact status and body bytes of a finished response, for replay."""

    status_code: int
    body: bytes

    @classmethod
    def of(cls, response: Response) -> ResponseSnapshot:
        return cls(status_code=response.status_code, body=bytes(response.body))

    def replay(self) -> Response:
        return Response(
            content=self.body,
            status_code=self.status_code,
            media_type="application/json",
            headers={"Idempotent-Replayed": "true"},
        )


async def run_until_disconnect(
    request: Request, coro: Coroutine[Any, Any, T], poll_seconds: float
) -> T:
    """Await ``coro`` as a task, cancelling it if the client disconnects.

    A task that absorbs the cancellation and completes still returns its result.

    Raises:
        ClientDisconnectedError: The client went away; the task was cancelled.
    """
    task = asyncio.ensure_future(coro)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll_seconds)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info("Client disconnected from %s; cancelling", request.url.path)
                task.cancel()
                await asyncio.wait({task})
                if not task.cancelled():
                    return task.result()
                raise ClientDisconnectedError("Client closed the request")
    finally:
        if not task.done():
            task.cancel()
