"""
Retry/backoff and rate-limit-aware HTTP helper.
This module centralizes request retry logic so the REST and GraphQL clients share one policy.

Outcomes of a single attempt:
- success: 2xx response
- rate_limited: 429, or 403 with an exhausted X-RateLimit-Remaining; waits until the
  reset time without consuming a retry attempt
- retry: transient server status (500/502/503/504) or a transient network error;
  exponential backoff, consumes an attempt
- fail: any other status, returned to the caller as-is
- error: non-transient request exception, raised as FetchError
"""

import os
import time
import random
import logging
import email.utils
from datetime import datetime, timezone
from typing import Optional, Dict, Any
import requests

from ingest.errors import FetchError, RetryExhaustedError, RateLimitError

logger = logging.getLogger(__name__)

# retry/backoff defaults from environment
# - VELOCITY_MAX_RETRIES: int, retries after the first attempt
# - VELOCITY_BACKOFF_BASE: float (seconds), first backoff delay
# - VELOCITY_BACKOFF_JITTER: float (seconds) - if not set, jitter defaults to a tenth of the base
# - VELOCITY_MAX_BACKOFF: float (seconds)
DEFAULT_MAX_RETRIES = int(os.getenv("VELOCITY_MAX_RETRIES", "3"))
DEFAULT_BACKOFF_BASE = float(os.getenv("VELOCITY_BACKOFF_BASE", "1.0"))
_env_jitter = os.getenv("VELOCITY_BACKOFF_JITTER")
DEFAULT_BACKOFF_JITTER = float(_env_jitter) if _env_jitter is not None and _env_jitter != "" else None
DEFAULT_MAX_BACKOFF = float(os.getenv("VELOCITY_MAX_BACKOFF", "30.0"))
DEFAULT_MAX_RATE_LIMIT_WAITS = 5
DEFAULT_TIMEOUT = 60.0
MAX_RATE_LIMIT_WAIT = 300.0

TRANSIENT_STATUSES = (500, 502, 503, 504)

TRANSIENT_ERROR_MARKERS = (
    'connection reset',
    'connection refused',
    'connection aborted',
    'timeout',
    'timed out',
    'temporary failure',
    'server error',
    'broken pipe',
    'eof',
    '502',
    '503',
    '504',
)

# runtime-overrides
_runtime_max_retries: Optional[int] = None
_runtime_backoff_base: Optional[float] = None
_runtime_backoff_jitter: Optional[float] = None
_runtime_max_backoff: Optional[float] = None


def configure_retry(
    max_retries: Optional[int] = None, backoff_base: Optional[float] = None, backoff_jitter: Optional[float] = None, max_backoff: Optional[float] = None
):
    """Configure retry/backoff defaults at runtime (e.g. from CLI or config)."""
    global _runtime_max_retries, _runtime_backoff_base, _runtime_backoff_jitter, _runtime_max_backoff
    if max_retries is not None:
        _runtime_max_retries = int(max_retries)
    if backoff_base is not None:
        _runtime_backoff_base = float(backoff_base)
    if backoff_jitter is not None:
        _runtime_backoff_jitter = float(backoff_jitter)
    if max_backoff is not None:
        _runtime_max_backoff = float(max_backoff)


def _parse_retry_after(raw_ra: str):
    if not raw_ra:
        return None
    try:
        return float(raw_ra)
    except (TypeError, ValueError):
        try:
            dt = email.utils.parsedate_to_datetime(raw_ra)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            ra = (dt - datetime.now(timezone.utc)).total_seconds()
            return max(0.0, ra)
        except (TypeError, ValueError):
            return None


def _safe_int_from_headers(headers: Dict[str, Any], key: str) -> Optional[int]:
    try:
        val = headers.get(key)
        return int(val) if val is not None else None
    except (TypeError, ValueError):
        return None


def _safe_float_from_headers(headers: Dict[str, Any], key: str) -> Optional[float]:
    try:
        val = headers.get(key)
        return float(val) if val is not None else None
    except (TypeError, ValueError):
        return None


def _parse_rate_headers(resp):
    headers = getattr(resp, 'headers', {}) or {}
    ra = _parse_retry_after(headers.get('Retry-After'))
    rl_remaining = _safe_int_from_headers(headers, 'X-RateLimit-Remaining')
    rl_reset = _safe_float_from_headers(headers, 'X-RateLimit-Reset')
    return ra, rl_remaining, rl_reset


def _resolve_backoff_params(backoff_base_local: Optional[float], backoff_jitter_local: Optional[float], max_backoff_local: Optional[float]):
    if backoff_base_local is not None:
        base_local = float(backoff_base_local)
    elif _runtime_backoff_base is not None:
        base_local = float(_runtime_backoff_base)
    else:
        base_local = float(DEFAULT_BACKOFF_BASE)

    if backoff_jitter_local is not None:
        jitter_local = float(backoff_jitter_local)
    elif _runtime_backoff_jitter is not None:
        jitter_local = float(_runtime_backoff_jitter)
    elif DEFAULT_BACKOFF_JITTER is not None:
        jitter_local = float(DEFAULT_BACKOFF_JITTER)
    else:
        jitter_local = base_local / 10.0

    if max_backoff_local is not None:
        max_backoff_resolved = float(max_backoff_local)
    elif _runtime_max_backoff is not None:
        max_backoff_resolved = float(_runtime_max_backoff)
    else:
        max_backoff_resolved = float(DEFAULT_MAX_BACKOFF)

    return base_local, jitter_local, max_backoff_resolved


def _parse_success_body(resp_local):
    try:
        return resp_local.json()
    except ValueError:
        return getattr(resp_local, 'text', None)


def is_transient_error(ex: Exception) -> bool:
    if isinstance(ex, (requests.ConnectionError, requests.Timeout)):
        return True
    message = str(ex).lower()
    return any(marker in message for marker in TRANSIENT_ERROR_MARKERS)


def _is_rate_limited(status_code: int, ra_local: Optional[float], rl_remaining_local: Optional[int]) -> bool:
    if status_code == 429:
        return True
    if status_code == 403 and (ra_local is not None or (rl_remaining_local is not None and rl_remaining_local <= 0)):
        return True
    return False


def _compute_rate_limit_wait(ra_local: Optional[float], rl_reset_local: Optional[float], fallback: float, jitter_local: float) -> float:
    if ra_local is not None:
        return min(float(ra_local) + random.uniform(0, jitter_local), MAX_RATE_LIMIT_WAIT)
    if rl_reset_local:
        wait = max(0.0, float(rl_reset_local) - time.time())
        return min(wait + random.uniform(0, jitter_local), MAX_RATE_LIMIT_WAIT)
    return min(fallback + random.uniform(0, jitter_local), MAX_RATE_LIMIT_WAIT)


def _attempt_request_once(method: str, url: str, headers: Dict[str, str], params: Dict[str, Any], json_body: Any, timeout: float):
    try:
        resp = requests.request(method, url, headers=headers or {}, params=params or None, json=json_body, timeout=timeout)
    except requests.RequestException as ex:
        if is_transient_error(ex):
            return 'retry', {'exception': str(ex), 'status': 0}
        return 'error', {'exception': str(ex), 'status': 0}

    status = getattr(resp, 'status_code', 0)
    ra, rl_remaining, rl_reset = _parse_rate_headers(resp)
    resp_headers = dict(getattr(resp, 'headers', {}) or {})

    if 200 <= status < 300:
        body = _parse_success_body(resp)
        return 'success', {'body': body, 'status': status, 'headers': resp_headers}

    if _is_rate_limited(status, ra, rl_remaining):
        return 'rate_limited', {'status': status, 'ra': ra, 'rl_reset': rl_reset, 'text': getattr(resp, 'text', None)}

    if status in TRANSIENT_STATUSES:
        return 'retry', {'status': status, 'exception': f"server error {status}"}

    return 'fail', {'body': _parse_success_body(resp), 'status': status, 'headers': resp_headers}


class RetryPolicy:
    """Retry/backoff parameters plus the request loop that applies them."""

    def __init__(
        self,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_jitter: Optional[float] = None,
        max_backoff: Optional[float] = None,
        max_rate_limit_waits: int = DEFAULT_MAX_RATE_LIMIT_WAITS,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if max_retries is not None:
            self.max_retries = int(max_retries)
        elif _runtime_max_retries is not None:
            self.max_retries = int(_runtime_max_retries)
        else:
            self.max_retries = DEFAULT_MAX_RETRIES
        self.backoff_base, self.backoff_jitter, self.max_backoff = _resolve_backoff_params(backoff_base, backoff_jitter, max_backoff)
        self.max_rate_limit_waits = int(max_rate_limit_waits)
        self.timeout = float(timeout)

    def _sleep(self, seconds: float, cancel):
        if cancel is not None:
            cancel.sleep(seconds)
        else:
            time.sleep(seconds)

    def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
        cancel=None,
    ) -> Dict[str, Any]:
        """Perform a request, retrying transient failures.

        Returns ``{'response': body, 'status': code, 'headers': {...}}`` for 2xx and
        non-retryable statuses. Raises RetryExhaustedError once every attempt failed,
        RateLimitError when the rate limit never recovers, FetchError for hard errors.
        """
        attempt = 0
        rate_limit_waits = 0
        backoff = self.backoff_base
        last_error = ''

        while True:
            if cancel is not None:
                cancel.check()
            outcome, data = _attempt_request_once(method, url, headers or {}, params or {}, json_body, self.timeout)

            if outcome in ('success', 'fail'):
                return {'response': data.get('body'), 'status': data.get('status', 0), 'headers': data.get('headers', {}), 'timestamp': time.time()}

            if outcome == 'error':
                raise FetchError(f"request to {url} failed: {data.get('exception')}")

            if outcome == 'rate_limited':
                if rate_limit_waits >= self.max_rate_limit_waits:
                    raise RateLimitError(f"rate limit still exhausted after {rate_limit_waits} waits for {url}", status=data.get('status', 0))
                wait_seconds = _compute_rate_limit_wait(data.get('ra'), data.get('rl_reset'), backoff, self.backoff_jitter)
                rate_limit_waits += 1
                logger.warning("rate limited on %s, waiting %.1fs", url, wait_seconds)
                self._sleep(wait_seconds, cancel)
                continue

            last_error = data.get('exception') or f"status {data.get('status')}"
            if attempt >= self.max_retries:
                raise RetryExhaustedError(f"failed after {self.max_retries} retries: {last_error}", status=data.get('status', 0))
            attempt += 1
            sleep_for = min(backoff + random.uniform(0, self.backoff_jitter), self.max_backoff)
            logger.debug("transient failure on %s (%s), retry %d/%d in %.2fs", url, last_error, attempt, self.max_retries, sleep_for)
            self._sleep(sleep_for, cancel)
            backoff = min(backoff * 2, self.max_backoff)


def perform_request_with_retries(
    method: str,
    url: str,
    headers: Dict[str, str],
    params: Optional[Dict[str, Any]] = None,
    json_body: Any = None,
    max_retries: Optional[int] = None,
    backoff_base: Optional[float] = None,
    backoff_jitter: Optional[float] = None,
    max_backoff: Optional[float] = None,
    cancel=None,
) -> Dict[str, Any]:
    policy = RetryPolicy(max_retries=max_retries, backoff_base=backoff_base, backoff_jitter=backoff_jitter, max_backoff=max_backoff)
    return policy.request(method, url, headers=headers, params=params, json_body=json_body, cancel=cancel)


__all__ = ["RetryPolicy", "configure_retry", "perform_request_with_retries", "is_transient_error"]
