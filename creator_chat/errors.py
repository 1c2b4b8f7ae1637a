"""Service error taxonomy and provider-error classification."""

from __future__ import annotations

import math
from typing import Any

import anthropic
import httpx
import openai


class ServiceError(Exception):
    """Base class for errors surfaced to API callers.

    Carries a machine-readable ``code`` and an HTTP ``status_code``. When
    ``retry_after_seconds`` is set the caller may retry after waiting.
    """

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        retry_after_seconds: float | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retry_after_seconds = (
            max(1, math.ceil(retry_after_seconds)) if retry_after_seconds is not None else None
        )
        self.details = details


class InvalidInputError(ServiceError):
    code = "INVALID_INPUT"
    status_code = 400


class NotFoundError(ServiceError):
    code = "RESOURCE_NOT_FOUND"
    status_code = 404


class UsageLimitError(ServiceError):
    code = "LIMIT_EXCEEDED"
    status_code = 403


class RateLimitedError(ServiceError):
    """Fixed-window limiter rejected the call: back off and retry."""

    code = "RATE_LIMITED"
    status_code = 429


class DuplicateRequestError(ServiceError):
    """Same idempotency key is still pending: poll for the result, do not re-run."""

    code = "DUPLICATE_REQUEST"
    status_code = 409


class ConcurrentOperationError(ServiceError):
    """A lock for the same operation is held: do not retry right now."""

    code = "CONCURRENT_OPERATION"
    status_code = 409


class ClientDisconnectedError(ServiceError):
    """The caller went away before the response was ready."""

    code = "CLIENT_CLOSED_REQUEST"
    status_code = 499


class UpstreamError(ServiceError):
    """Embedding, completion, vector-store or video-platform failure.

    ``retryable`` distinguishes transient faults from quota exhaustion.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        retryable: bool,
        retry_after_seconds: float | None = None,
    ) -> None:
        if retryable and retry_after_seconds is None:
            retry_after_seconds = 5
        super().__init__(
            message,
            retry_after_seconds=retry_after_seconds if retryable else None,
            details={"provider": provider, "retryable": retryable},
        )
        self.provider = provider
        self.retryable = retryable
        self.code = "UPSTREAM_UNAVAILABLE" if retryable else "UPSTREAM_QUOTA_EXCEEDED"
        self.status_code = 503 if retryable else 502


_QUOTA_MARKERS = ("insufficient_quota", "quota", "credit balance", "billing")


def _looks_like_quota(exc: Exception) -> bool:
    text = str(exc).lower()
    code = str(getattr(exc, "code", "") or "").lower()
    return any(marker in text or marker in code for marker in _QUOTA_MARKERS)


def classify_provider_error(exc: Exception, provider: str) -> UpstreamError:
    """Translate an SDK/HTTP exception into a retryable or fatal UpstreamError."""
    if isinstance(exc, UpstreamError):
        return exc

    if isinstance(
        exc,
        (
            openai.APITimeoutError,
            openai.APIConnectionError,
            anthropic.APITimeoutError,
            anthropic.APIConnectionError,
            httpx.TimeoutException,
            httpx.TransportError,
        ),
    ):
        return UpstreamError(f"{provider} is temporarily unreachable", provider=provider, retryable=True)

    status = getattr(exc, "status_code", None)
    if status is None and isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code

    if _looks_like_quota(exc):
        return UpstreamError(
            f"{provider} quota exhausted; this request cannot be served right now",
            provider=provider,
            retryable=False,
        )
    if status in (401, 403):
        return UpstreamError(f"{provider} rejected our credentials", provider=provider, retryable=False)
    if status == 429 or (isinstance(status, int) and status >= 500):
        return UpstreamError(f"{provider} is overloaded", provider=provider, retryable=True)

    return UpstreamError(f"{provider} request failed: {exc}", provider=provider, retryable=True)
