"""One retry loop for every upstream call.

429 and 5xx responses and timeouts are retried with exponential backoff;
any other 4xx fails on the first attempt with the upstream message intact.
``classify`` turns SDK exceptions into UpstreamTransient/UpstreamPermanent and
tenacity retries only the transient ones. Synchronous SDK calls run in the default executor so the event loop only
ever waits on I/O.
"""
import asyncio
import inspect
import json
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import requests
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from errors import UpstreamPermanent, UpstreamTimeout, UpstreamTransient, UpstreamUnavailable
from utils import logger, safe_exception_message

UPSTREAM_TIMEOUT_SECONDS = float(os.environ.get("UPSTREAM_TIMEOUT_SECONDS", "15"))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    timeout: float = UPSTREAM_TIMEOUT_SECONDS


DEFAULT_RETRY_POLICY = RetryPolicy()


def upstream_status(exc: BaseException) -> Optional[int]:
    """HTTP status carried by an SDK exception, if any.

    xero-python raises HTTPStatusException(.status), googleapiclient raises
    HttpError(.resp.status), requests raises HTTPError(.response.status_code).
    """
    for candidate in (
        getattr(exc, "status", None),
        getattr(exc, "status_code", None),
        getattr(getattr(exc, "resp", None), "status", None),
        getattr(getattr(exc, "response", None), "status_code", None),
    ):
        if candidate is None:
            continue
        try:
            return int(candidate)
        except (TypeError, ValueError):
            continue
    return None


def upstream_message(exc: BaseException) -> str:
    body = getattr(exc, "body", None) or getattr(exc, "content", None)
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str) and body.strip():
        try:
            parsed = json.loads(body)
        except ValueError:
            return body.strip()[:500]
        if isinstance(parsed, dict):
            error = parsed.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            for key in ("Detail", "Message", "message", "detail", "error_description"):
                if parsed.get(key):
                    return str(parsed[key])
            for element in parsed.get("Elements") or []:
                for ve in element.get("ValidationErrors") or []:
                    if ve.get("Message"):
                        return str(ve["Message"])
    reason = getattr(exc, "reason", None)
    if isinstance(reason, str) and reason:
        return reason
    return safe_exception_message(exc)


def classify(exc: BaseException) -> Optional[Exception]:
    """Map an upstream failure to UpstreamTransient/UpstreamPermanent; None if it is not an upstream error."""
    if isinstance(exc, (UpstreamTransient, UpstreamPermanent)):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, requests.Timeout)):
        return UpstreamTransient("upstream request timed out")
    if isinstance(exc, (requests.ConnectionError, ConnectionError)):
        return UpstreamTransient(f"connection failed: {safe_exception_message(exc)}")
    status = upstream_status(exc)
    if status is None:
        return None
    message = upstream_message(exc)
    if status == 429 or status >= 500:
        return UpstreamTransient(message, status)
    if 400 <= status < 500:
        return UpstreamPermanent(message, status)
    return None


async def _attempt(operation: Callable[[], Any], timeout: float):
    if inspect.iscoroutinefunction(operation):
        return await asyncio.wait_for(operation(), timeout)
    loop = asyncio.get_running_loop()
    return await asyncio.wait_for(loop.run_in_executor(None, operation), timeout)


def _is_timeout(exc: BaseException) -> bool:
    return isinstance(exc, (asyncio.TimeoutError, TimeoutError, requests.Timeout))


async def with_retry(
    policy: RetryPolicy,
    operation: Callable[[], Any],
    description: str = "upstream call",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
):
    def log_retry(retry_state: RetryCallState):
        failure = retry_state.outcome.exception()
        logger.warning(
            "%s attempt %s/%s failed (status=%s): %s; retrying in %.1fs",
            description, retry_state.attempt_number, policy.max_attempts, failure.status, failure.message,
            retry_state.next_action.sleep,
        )

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(multiplier=policy.base_delay, exp_base=policy.factor),
            retry=retry_if_exception_type(UpstreamTransient),
            before_sleep=log_retry,
            sleep=sleep,
            reraise=True,
        ):
            with attempt:
                try:
                    return await _attempt(operation, policy.timeout)
                except Exception as exc:
                    classified = classify(exc)
                    if classified is None:
                        raise
                    if isinstance(classified, UpstreamPermanent):
                        logger.warning("%s failed permanently (status=%s): %s",
                                       description, classified.status, classified.message)
                    if classified is exc:
                        raise
                    raise classified from exc
    except UpstreamTransient as last:
        if _is_timeout(last.__cause__):
            raise UpstreamTimeout(
                f"{description} timed out after {policy.max_attempts} attempts",
                attempts=policy.max_attempts, last_error=last,
            ) from last
        raise UpstreamUnavailable(
            f"{description} is unavailable after {policy.max_attempts} attempts: {last.message}",
            status=last.status, attempts=policy.max_attempts, last_error=last,
        ) from last
