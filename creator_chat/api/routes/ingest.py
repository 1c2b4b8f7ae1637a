"""Ingest endpoint: import or refresh a YouTube channel, idempotently."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Header, Request, Response
from fastapi.responses import JSONResponse

from creator_chat.api.models import IngestRequest, IngestResponse
from creator_chat.api.responses import ResponseSnapshot, error_response, run_until_disconnect
from creator_chat.config import settings
from creator_chat.errors import ClientDisconnectedError, DuplicateRequestError, ServiceError
from creator_chat.ingestion.pipeline import ingest_channel, validate_ingest_request
from creator_chat.safety.idempotency import IdempotencyStatus, idempotency_store

logger = logging.getLogger(__name__)

router = APIRouter()

IDEMPOTENCY_HEADER = "X-Idempotency-Key"
PENDING_RETRY_AFTER_SECONDS = 5


@router.post("/api/ingest", response_model=IngestResponse)
async def ingest(
    body: IngestRequest,
    request: Request,
    idempotency_key: Annotated[str | None, Header(alias=IDEMPOTENCY_HEADER)] = None,
) -> Response:
    """Import a channel (``channelUrl``) or refresh one (``existingChannelId``).

    With an ``X-Idempotency-Key`` header:
    - a key still in flight -> 409 ``DUPLICATE_REQUEST``
    - a finished key -> the stored status and body, replayed byte-for-byte
    - a new key -> runs once and its response is stored for replay
    """
    request_id = uuid.uuid4().hex[:8]
    validate_ingest_request(body)

    if not idempotency_key:
        result = await run_until_disconnect(
            request, ingest_channel(body, request_id=request_id), settings.disconnect_poll_seconds
        )
        return JSONResponse(result.model_dump(by_alias=True, mode="json"))

    check = idempotency_store.check_duplicate(idempotency_key)
    if check.is_duplicate:
        if check.existing_status is IdempotencyStatus.PENDING:
            raise DuplicateRequestError(
                "A request with this idempotency key is still being processed",
                retry_after_seconds=PENDING_RETRY_AFTER_SECONDS,
                details={"idempotencyKey": idempotency_key},
            )
        logger.info(
            "[%s] Replaying %s response for key %s", request_id, check.existing_status, idempotency_key
        )
        snapshot: ResponseSnapshot = check.existing_response
        return snapshot.replay()

    try:
        result = await run_until_disconnect(
            request, ingest_channel(body, request_id=request_id), settings.disconnect_poll_seconds
        )
    except (asyncio.CancelledError, ClientDisconnectedError):
        idempotency_store.discard(idempotency_key)
        raise
    except ServiceError as exc:
        if exc.retry_after_seconds is not None:
            # Transient rejection: let a retry with the same key run for real.
            idempotency_store.discard(idempotency_key)
            raise
        response = error_response(exc)
        idempotency_store.complete(idempotency_key, ResponseSnapshot.of(response), IdempotencyStatus.FAILED)
        return response
    except Exception:
        logger.exception("[%s] Ingestion failed for key %s", request_id, idempotency_key)
        response = error_response(ServiceError("Ingestion failed"))
        idempotency_store.complete(idempotency_key, ResponseSnapshot.of(response), IdempotencyStatus.FAILED)
        return response

    response = JSONResponse(result.model_dump(by_alias=True, mode="json"))
    idempotency_store.complete(idempotency_key, ResponseSnapshot.of(response), IdempotencyStatus.COMPLETED)
    return response
