"""
Retry manager for failed REST requests.

Retry state lives in a RetryState object created per execute() call, so
concurrent requests sharing one manager never disturb each other's backoff
progression.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from nyxcord.errors import ApiError, QueueError, RateLimitError, ValidationError
from nyxcord.rest.types import RestEvent, RetryConfig, RetryEvent, RetryReason

if TYPE_CHECKING:
    from nyxcord.emitter import EventEmitter

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ±10% jitter to avoid synchronized retries across clients
JITTER_FACTOR = 0.1


@dataclass(frozen=True)
class RetryContext:
    """Identifies the request being retried."""

    method: str
    path: str
    request_id: str = ""


@dataclass
class RetryState:
    """Per-request retry progression."""

    max_attempts: int
    attempt: int = 0

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass(frozen=True)
class RetryDecision:
    should_retry: bool
    timeout_ms: int = 0
    reason: RetryReason | None = None


_NO_RETRY = RetryDecision(should_retry=False)


class RetryManager:
    """
    Wraps an async operation with classification-driven retries.

    Decisions:
    - RateLimitError: wait retry_after_ms (as backoff base), eligible methods only
    - ApiError: retried only for configured status codes
    - ValidationError / queue errors: never retried
    - other exceptions: retried when the message carries a configured error code
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        emitter: EventEmitter[RestEvent] | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        """
        Initialize the retry manager.

        Args:
            config: Retry policy.
            emitter: Optional event emitter for retry events.
            sleep: Sleep coroutine (injectable for tests).
            rng: Optional seeded Random for deterministic jitter.
        """
        self._config = config or RetryConfig()
        self._emitter = emitter
        self._sleep = sleep
        self._rng = rng
        self._destroyed = False

    @property
    def config(self) -> RetryConfig:
        return self._config

    def new_state(self) -> RetryState:
        return RetryState(max_attempts=self._config.max_retries)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        context: RetryContext,
    ) -> T:
        """
        Run operation, retrying per policy.

        Args:
            operation: Zero-argument coroutine factory; called once per attempt.
            context: Request identification for decisions and events.

        Returns:
            The operation result.

        Raises:
            The last error once it is not retryable or retries are exhausted.
        """
        state = self.new_state()
        while True:
            try:
                return await operation()
            except Exception as error:
                decision = self.evaluate_error(error, context, state)
                if not decision.should_retry:
                    raise

                self._emit_retry(error, decision, context, state)
                await self._sleep(decision.timeout_ms / 1000)
                state.attempt += 1

    def evaluate_error(
        self,
        error: object,
        context: RetryContext,
        state: RetryState,
    ) -> RetryDecision:
        """Decide whether error warrants another attempt."""
        if self._destroyed or state.exhausted:
            return _NO_RETRY

        if context.method.upper() not in self._config.methods:
            return _NO_RETRY

        if isinstance(error, RateLimitError):
            return RetryDecision(
                should_retry=True,
                timeout_ms=self.calculate_timeout(error.retry_after_ms, retry_count=state.attempt),
                reason=RetryReason.RATE_LIMITED,
            )

        if isinstance(error, ApiError):
            if error.status not in self._config.status_codes:
                return _NO_RETRY
            return RetryDecision(
                should_retry=True,
                timeout_ms=self.calculate_timeout(retry_count=state.attempt),
                reason=RetryReason.SERVER_ERROR,
            )

        if isinstance(error, (ValidationError, QueueError)):
            return _NO_RETRY

        if isinstance(error, Exception):
            code = self.get_error_code(error)
            if code not in self._config.error_codes:
                return _NO_RETRY
            reason = (
                RetryReason.TIMEOUT
                if "TIMEOUT" in code or "TIMEDOUT" in code
                else RetryReason.NETWORK_ERROR
            )
            return RetryDecision(
                should_retry=True,
                timeout_ms=self.calculate_timeout(retry_count=state.attempt),
                reason=reason,
            )

        return _NO_RETRY

    def calculate_timeout(self, base_ms: int | None = None, *, retry_count: int = 0) -> int:
        """
        Backoff delay: clamp(base * factor**retry_count ± 10%, min, max).

        Args:
            base_ms: Base delay (defaults to min_timeout_ms).
            retry_count: Retries already taken for this request.

        Returns:
            Delay in milliseconds.
        """
        base = base_ms if base_ms is not None else self._config.min_timeout_ms
        timeout = base * (self._config.timeout_factor**retry_count)

        source = self._rng if self._rng is not None else random
        jitter = timeout * JITTER_FACTOR * source.uniform(-1.0, 1.0)

        clamped = min(max(timeout + jitter, self._config.min_timeout_ms), self._config.max_timeout_ms)
        return int(clamped)

    def get_error_code(self, error: BaseException) -> str:
        """First configured error code found in the upper-cased message, else UNKNOWN."""
        message = str(error).upper()
        for code in self._config.error_codes:
            if code in message:
                return code
        return RetryReason.UNKNOWN.value

    def _emit_retry(
        self,
        error: Exception,
        decision: RetryDecision,
        context: RetryContext,
        state: RetryState,
    ) -> None:
        assert decision.reason is not None
        logger.info(
            "Retrying request",
            extra={
                "request_id": context.request_id,
                "method": context.method,
                "attempt": state.attempt + 1,
                "max_attempts": state.max_attempts,
                "delay_ms": decision.timeout_ms,
                "reason": decision.reason.value,
            },
        )
        if self._emitter is None:
            return
        self._emitter.emit(
            RestEvent.RETRY,
            RetryEvent(
                request_id=context.request_id,
                method=context.method,
                path=context.path,
                attempt=state.attempt + 1,
                max_attempts=state.max_attempts,
                delay_ms=decision.timeout_ms,
                reason=decision.reason,
                error=error,
                timestamp_ms=int(time.time() * 1000),
            ),
        )

    def destroy(self) -> None:
        """Stop scheduling new retries; in-flight sleeps finish on their own."""
        self._destroyed = True
