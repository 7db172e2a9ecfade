"""
Upstream call gateway with retry logic and error classification.

Implements:
- Attempt logging (start/success/fail with duration) per call
- Bounded exponential backoff with random jitter
- Endpoint-aware retry eligibility (429 retried only for status polls)
- Circuit breaker per provider
- Classification of upstream failures into canonical errors
"""
import asyncio
import random
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from payment_orchestrator.config import Settings
from payment_orchestrator.core.errors import (
    PaymentErrorCode,
    PaymentProviderError,
    ProviderUnavailableError,
    RateLimitedError,
    UpstreamError,
)
from payment_orchestrator.core.sanitize import sanitize_mapping
from payment_orchestrator.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Endpoints without side effects; safe to retry on 429.
STATUS_POLL_ENDPOINTS = frozenset({"payments.fetch", "orders.payments"})

UPSTREAM_DETAIL_FIELDS = ("code", "description", "reason", "source", "step", "field", "metadata")


class UpstreamHTTPError(Exception):
    """Raised by provider HTTP clients for non-2xx responses and transport failures."""

    def __init__(
        self,
        status_code: Optional[int],
        body: Optional[Mapping[str, Any]] = None,
        message: str = "",
    ):
        """
        Initialize upstream HTTP error.

        Args:
            status_code: HTTP status, or None when no response was received
            body: Parsed response body, if any
            message: Transport error description
        """
        super().__init__(message or f"Upstream responded with status {status_code}")
        self.status_code = status_code
        self.body = dict(body or {})


def sanitize_upstream_body(status_code: Optional[int], body: Mapping[str, Any]) -> Dict[str, Any]:
    """Keep only diagnostic fields of an upstream error body, redacted."""
    error = body.get("error") if isinstance(body.get("error"), Mapping) else body
    picked: Dict[str, Any] = {"status": status_code}
    for field in UPSTREAM_DETAIL_FIELDS:
        if error.get(field) is not None:
            picked[field] = error[field]
    return sanitize_mapping(picked)


def classify_upstream_error(
    exc: UpstreamHTTPError,
    provider: str,
    endpoint: str,
    attempts: int,
    correlation_id: Optional[str],
) -> PaymentProviderError:
    """
    Map an upstream failure onto the canonical error taxonomy.

    401/403 -> AUTH_FAILED, 400 -> BAD_REQUEST, 429 -> RATE_LIMITED,
    anything else -> UPSTREAM_ERROR.
    """
    status = exc.status_code
    details = {
        "provider": provider,
        "endpoint": endpoint,
        "status": status,
        "attempts": attempts,
        "upstream": sanitize_upstream_body(status, exc.body),
    }

    if status in (401, 403):
        return UpstreamError(
            f"{provider} rejected credentials for {endpoint}",
            code=PaymentErrorCode.AUTH_FAILED,
            http_status=502,
            details=details,
            correlation_id=correlation_id,
        )
    if status == 400:
        return UpstreamError(
            f"{provider} rejected the request for {endpoint}",
            code=PaymentErrorCode.BAD_REQUEST,
            http_status=400,
            details=details,
            correlation_id=correlation_id,
        )
    if status == 429:
        return RateLimitedError(
            f"{provider} rate limited {endpoint}",
            details=details,
            correlation_id=correlation_id,
        )
    return UpstreamError(
        f"{provider} call {endpoint} failed"
        + (f" with status {status}" if status is not None else ""),
        details=details,
        correlation_id=correlation_id,
    )


class CircuitBreaker:
    """
    Circuit breaker for upstream provider calls.

    Opens after ``failure_threshold`` consecutive server-side failures and
    fails fast until ``timeout`` seconds have passed, then lets calls probe
    the provider in half-open state.
    """

    def __init__(
        self,
        provider: str,
        failure_threshold: int = 5,
        timeout: float = 60,
        success_threshold: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.clock = clock
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self, endpoint: str, correlation_id: Optional[str]) -> None:
        """
        Check whether a call may proceed.

        Raises:
            ProviderUnavailableError: If the circuit is open
        """
        if self.state != "open":
            return
        if self.last_failure_time is not None and self.clock() - self.last_failure_time >= self.timeout:
            self._set_state("half_open")
            self.success_count = 0
            logger.info("circuit_breaker_half_open", provider=self.provider)
            return
        raise ProviderUnavailableError(
            f"{self.provider} circuit breaker is open",
            details={"provider": self.provider, "endpoint": endpoint, "circuit": "open"},
            correlation_id=correlation_id,
        )

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", provider=self.provider)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = self.clock()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            if self.state != "open":
                logger.warning(
                    "circuit_breaker_opened",
                    provider=self.provider,
                    failure_count=self.failure_count,
                )
            self._set_state("open")

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.provider, state)


class UpstreamCallGateway:
    """
    Wraps every outbound call to one payment provider.

    Callers pass a zero-argument coroutine function performing a single HTTP
    request; the gateway owns retries, logging and error classification.
    """

    def __init__(
        self,
        provider: str,
        max_attempts: int = 3,
        backoff_base_ms: int = 200,
        jitter_ms: int = 125,
        circuit_breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        """
        Initialize gateway.

        Args:
            provider: Provider id used in logs, metrics and error details
            max_attempts: Attempts per call including the first
            backoff_base_ms: Backoff before the second attempt
            jitter_ms: Upper bound of random jitter added to each backoff
            circuit_breaker: Optional breaker shared by all calls to the provider
            sleep: Awaitable sleep (injected in tests)
            rand: Uniform [0, 1) source for jitter (injected in tests)
        """
        self.provider = provider
        self.max_attempts = max_attempts
        self.backoff_base_ms = backoff_base_ms
        self.jitter_ms = jitter_ms
        self.circuit_breaker = circuit_breaker
        self._sleep = sleep
        self._rand = rand

    @classmethod
    def from_settings(cls, provider: str, settings: Settings, **overrides: Any) -> "UpstreamCallGateway":
        """Build a gateway from application settings."""
        options: Dict[str, Any] = {
            "max_attempts": settings.upstream_max_attempts,
            "backoff_base_ms": settings.upstream_backoff_base_ms,
            "jitter_ms": settings.upstream_backoff_jitter_ms,
            "circuit_breaker": CircuitBreaker(
                provider,
                failure_threshold=settings.upstream_circuit_failure_threshold,
                timeout=settings.upstream_circuit_reset_seconds,
            ),
        }
        options.update(overrides)
        return cls(provider, **options)

    def _jitter(self, retry_state: RetryCallState) -> float:
        return self._rand() * self.jitter_ms / 1000.0

    @staticmethod
    def is_retryable(exc: BaseException, retry_on_rate_limit: bool) -> bool:
        """Transport failures and 5xx are retryable; 429 only when allowed."""
        if not isinstance(exc, UpstreamHTTPError):
            return False
        if exc.status_code is None:
            return True
        if exc.status_code == 429:
            return retry_on_rate_limit
        return exc.status_code >= 500

    async def call(
        self,
        endpoint: str,
        fn: Callable[[], Awaitable[T]],
        correlation_id: Optional[str] = None,
        retry_on_rate_limit: Optional[bool] = None,
    ) -> T:
        """
        Execute an upstream call with retry and classification.

        Args:
            endpoint: Endpoint alias (e.g. ``orders.create``, ``payments.fetch``)
            fn: Coroutine function performing one request
            correlation_id: Correlation id attached to logs and errors
            retry_on_rate_limit: Override 429 retry eligibility for this call

        Returns:
            T: Result of ``fn``

        Raises:
            PaymentProviderError: Classified failure after retries are exhausted
        """
        if retry_on_rate_limit is None:
            retry_on_rate_limit = endpoint in STATUS_POLL_ENDPOINTS

        if self.circuit_breaker is not None:
            self.circuit_breaker.before_call(endpoint, correlation_id)

        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base_ms / 1000.0, exp_base=2)
            + self._jitter,
            retry=retry_if_exception(lambda exc: self.is_retryable(exc, retry_on_rate_limit)),
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    result = await self._attempt(endpoint, fn, attempts, correlation_id)
        except UpstreamHTTPError as exc:
            self._record_failure(exc)
            error = classify_upstream_error(exc, self.provider, endpoint, attempts, correlation_id)
            metrics.record_provider_call(self.provider, endpoint, "failure")
            metrics.record_provider_error(self.provider, error.code)
            raise error from exc
        except PaymentProviderError as exc:
            metrics.record_provider_call(self.provider, endpoint, "failure")
            raise exc.with_correlation_id(correlation_id)
        except Exception as exc:
            metrics.record_provider_call(self.provider, endpoint, "failure")
            raise UpstreamError(
                f"{self.provider} call {endpoint} failed",
                details={
                    "provider": self.provider,
                    "endpoint": endpoint,
                    "attempts": attempts,
                    "error_type": type(exc).__name__,
                },
                correlation_id=correlation_id,
            ) from exc

        if self.circuit_breaker is not None:
            self.circuit_breaker.on_success()
        metrics.record_provider_call(self.provider, endpoint, "success")
        return result

    async def _attempt(
        self,
        endpoint: str,
        fn: Callable[[], Awaitable[T]],
        attempt: int,
        correlation_id: Optional[str],
    ) -> T:
        logger.info(
            "PAYMENT_PROVIDER_CALL_ATTEMPT",
            provider=self.provider,
            endpoint=endpoint,
            attempt=attempt,
            correlation_id=correlation_id,
        )
        started = time.perf_counter()
        try:
            result = await fn()
        except Exception as exc:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            metrics.record_provider_attempt(self.provider, endpoint, duration_ms / 1000)
            logger.warning(
                "PAYMENT_PROVIDER_CALL_FAIL",
                provider=self.provider,
                endpoint=endpoint,
                attempt=attempt,
                duration_ms=duration_ms,
                status=getattr(exc, "status_code", None),
                error_type=type(exc).__name__,
                correlation_id=correlation_id,
            )
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        metrics.record_provider_attempt(self.provider, endpoint, duration_ms / 1000)
        logger.info(
            "PAYMENT_PROVIDER_CALL_SUCCESS",
            provider=self.provider,
            endpoint=endpoint,
            attempt=attempt,
            duration_ms=duration_ms,
            correlation_id=correlation_id,
        )
        return result

    def _record_failure(self, exc: UpstreamHTTPError) -> None:
        if self.circuit_breaker is None:
            return
        if exc.status_code is None or exc.status_code >= 500:
            self.circuit_breaker.on_failure()
        elif exc.status_code != 429:
            self.circuit_breaker.on_success()
