"""Resilient invocation of outbound calls.

Every call to an external service goes through :class:`ResilientInvoker`. It
applies a per-attempt timeout, classifies failures into transient and
permanent, and retries transient ones with exponential backoff plus jitter:

    delay = min(max_delay, base_delay * 2 ** attempt) [+ uniform(0, delay / 2)]

``attempt`` is the zero-based retry count, so the first retry waits
``base_delay``. Permanent failures are raised after the first attempt.
"""

import asyncio
import logging
import random
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from pydantic import BaseModel, Field

from visualgen.core import config

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=4, ge=1)
    base_delay: float = Field(default=0.3, ge=0)
    max_delay: float = Field(default=10.0, ge=0)
    timeout: float = Field(default=30.0, gt=0)
    jitter: bool = True

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(
            max_attempts=config.RETRY_MAX_ATTEMPTS,
            base_delay=config.RETRY_BASE_DELAY,
            max_delay=config.RETRY_MAX_DELAY,
            timeout=config.RETRY_TIMEOUT,
            jitter=config.RETRY_JITTER,
        )


@dataclass(frozen=True)
class RetryAttempt:
    index: int
    delay: float
    kind: ErrorKind


@dataclass(frozen=True)
class Outcome:
    value: Any
    attempts: int

    @property
    def retries(self) -> int:
        return self.attempts - 1


class InvocationError(Exception):
    """Terminal failure of an invoked operation."""

    def __init__(
        self, label: str, kind: ErrorKind, attempts: int, cause: BaseException
    ) -> None:
        super().__init__(f"{label} failed after {attempts} attempt(s): {describe_error(cause)}")
        self.label = label
        self.kind = kind
        self.attempts = attempts
        self.cause = cause

    @property
    def retries(self) -> int:
        return self.attempts - 1


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        detail = response.text.strip()[:200] or response.reason_phrase
        return f"HTTP {response.status_code}: {detail}"
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return f"timeout ({type(exc).__name__})"
    message = str(exc).strip()
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code in RETRYABLE_STATUSES:
            return ErrorKind.TRANSIENT
        return ErrorKind.PERMANENT
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, (ConnectionError, socket.gaierror)):
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


def calculate_backoff(
    attempt: int, base_delay: float, max_delay: float, jitter: bool
) -> float:
    delay = min(max_delay, base_delay * (2 ** attempt))
    if jitter:
        delay += random.uniform(0, delay * 0.5)
    return delay


class RetryMetrics:
    """Counters describing how much retrying the invoker had to do."""

    def __init__(self) -> None:
        self._totals = self._empty()
        self._by_label: Dict[str, Dict[str, float]] = {}

    @staticmethod
    def _empty() -> Dict[str, float]:
        return {
            "total_requests": 0,
            "successful_requests": 0,
            "failed_requests": 0,
            "retried_requests": 0,
            "total_retries": 0,
            "average_retries": 0.0,
        }

    @staticmethod
    def _apply(bucket: Dict[str, float], succeeded: bool, retries: int) -> None:
        bucket["total_requests"] += 1
        if succeeded:
            bucket["successful_requests"] += 1
        else:
            bucket["failed_requests"] += 1
        if retries > 0:
            bucket["retried_requests"] += 1
            bucket["total_retries"] += retries
        bucket["average_retries"] = (
            bucket["total_retries"] / bucket["retried_requests"]
            if bucket["retried_requests"]
            else 0.0
        )

    def record(self, succeeded: bool, retries: int, label: Optional[str] = None) -> None:
        self._apply(self._totals, succeeded, retries)
        if label:
            bucket = self._by_label.setdefault(label, self._empty())
            self._apply(bucket, succeeded, retries)

    def snapshot(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self._totals)
        data["by_label"] = {label: dict(bucket) for label, bucket in self._by_label.items()}
        return data

    def reset(self) -> None:
        self._totals = self._empty()
        self._by_label = {}


class ResilientInvoker:
    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        metrics: Optional[RetryMetrics] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.metrics = metrics or RetryMetrics()
        self._sleep = sleep

    async def invoke(
        self,
        operation: Callable[[], Awaitable[Any]],
        policy: Optional[RetryPolicy] = None,
        label: str = "call",
    ) -> Outcome:
        policy = policy or self.policy
        attempt = 0
        while True:
            try:
                value = await asyncio.wait_for(operation(), timeout=policy.timeout)
            except Exception as exc:
                kind = classify_error(exc)
                if kind is ErrorKind.PERMANENT or attempt + 1 >= policy.max_attempts:
                    self.metrics.record(False, attempt, label)
                    logger.warning(
                        f"{label}: giving up after {attempt + 1} attempt(s) "
                        f"({kind.value}): {describe_error(exc)}"
                    )
                    raise InvocationError(label, kind, attempt + 1, exc) from exc
                retry = RetryAttempt(
                    index=attempt,
                    delay=calculate_backoff(
                        attempt, policy.base_delay, policy.max_delay, policy.jitter
                    ),
                    kind=kind,
                )
                logger.info(
                    f"{label}: retry {retry.index + 1}/{policy.max_attempts - 1} "
                    f"in {retry.delay:.2f}s after {describe_error(exc)}"
                )
                await self._sleep(retry.delay)
                attempt += 1
                continue
            self.metrics.record(True, attempt, label)
            if attempt:
                logger.info(f"{label}: succeeded after {attempt} retries")
            return Outcome(value=value, attempts=attempt + 1)
