"""Retry policy for Qdrant calls made by the delivery store.

Queue polls, claims and outcome writes all go through Qdrant, so a brief
Qdrant outage must not turn into lost deliveries. Transport failures and
server-side errors are retried with exponential backoff; anything the
server rejected as a bad request is raised immediately.
"""

from __future__ import annotations

import httpx
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from hookline.logging import get_logger

logger = get_logger(__name__)

STORAGE_RETRY_ATTEMPTS = 3

# Qdrant answers these while restarting or shedding load
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def _is_retryable_qdrant_error(exc: BaseException) -> bool:
    """Whether a failed Qdrant call is worth repeating.

    Args:
        exc: The exception raised by the Qdrant client.

    Returns:
        True for transport failures, timeouts and retryable status codes.
    """
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, ResponseHandlingException):
        return True
    if isinstance(exc, UnexpectedResponse):
        return exc.status_code in RETRYABLE_STATUS_CODES
    return False


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    logger.warning(
        "storage_call_retrying",
        operation=retry_state.fn.__name__ if retry_state.fn else "unknown",
        attempt=retry_state.attempt_number,
        max_attempts=STORAGE_RETRY_ATTEMPTS,
        error=repr(outcome.exception()) if outcome else None,
    )


qdrant_retry = retry(
    stop=stop_after_attempt(STORAGE_RETRY_ATTEMPTS),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_retryable_qdrant_error),
    before_sleep=_log_retry,
    reraise=True,
)
