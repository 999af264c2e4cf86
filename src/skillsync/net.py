from __future__ import annotations

import logging
import time
from typing import Callable

import httpx

from .errors import NetworkError

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_S = 0.5

# 4xx other than these are the caller's fault and are not retried.
_RETRYABLE_STATUS = {408, 425, 429}


def _is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in _RETRYABLE_STATUS


def fetch_text(
    http: httpx.Client,
    url: str,
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    backoff_s: float = DEFAULT_BACKOFF_S,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """GET ``url`` and return the body, retrying transient failures.

    Backoff doubles after each attempt. Raises ``NetworkError`` with
    ``retryable=True`` when retries ran out, ``retryable=False`` when the
    failure was not worth retrying (e.g. 404).
    """
    attempts = max(1, max_retries + 1)
    last_error: NetworkError | None = None
    for attempt in range(attempts):
        if attempt:
            delay = backoff_s * (2 ** (attempt - 1))
            logger.debug("retrying %s in %.2fs (attempt %d/%d)", url, delay, attempt + 1, attempts)
            sleep(delay)
        try:
            resp = http.get(url)
        except httpx.TimeoutException as e:
            last_error = NetworkError(f"Request to {url} timed out: {e}", retryable=True)
            continue
        except httpx.TransportError as e:
            last_error = NetworkError(f"Request to {url} failed: {e}", retryable=True)
            continue
        except httpx.HTTPError as e:
            raise NetworkError(f"Request to {url} failed: {e}", retryable=False) from e

        if resp.status_code < 400:
            return resp.text
        reason = resp.reason_phrase or "error"
        message = f"Request to {url} failed ({resp.status_code} {reason})."
        if not _is_retryable_status(resp.status_code):
            raise NetworkError(message, status_code=resp.status_code, retryable=False)
        last_error = NetworkError(message, status_code=resp.status_code, retryable=True)

    assert last_error is not None
    logger.warning("giving up on %s after %d attempts", url, attempts)
    raise last_error
