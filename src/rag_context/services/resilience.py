"""Timeouts, retries with backoff, circuit breakers and cache recovery."""

import asyncio
import inspect
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from rag_context.exceptions import CacheCorruptionError, ContextManagementError

if TYPE_CHECKING:
    from rag_context.config.settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ResilienceConfig:
    """Retry, timeout and circuit breaker configuration (times in seconds)."""

    max_retries: int = 3
    base_delay: float = 0.1
    max_delay: float = 5.0
    backoff_multiplier: float = 2.0
    circuit_breaker_threshold: int = 5
    circuit_breaker_timeout: float = 30.0
    half_open_success_threshold: int = 2
    operation_timeout: float = 5.0
    fallback_timeout: float = 3.0
    fallback_max_retries: int = 2

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ResilienceConfig":
        """Build resilience configuration from application settings."""
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.base_delay_seconds,
            max_delay=settings.max_delay_seconds,
            backoff_multiplier=settings.backoff_multiplier,
            circuit_breaker_threshold=settings.circuit_breaker_threshold,
            circuit_breaker_timeout=settings.circuit_breaker_timeout_seconds,
            operation_timeout=settings.operation_timeout_seconds,
            fallback_timeout=settings.fallback_timeout_seconds,
        )

    def get_delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Backoff delay after a failed attempt.

        Args:
            attempt: 1-indexed attempt number that just failed
            rng: Random source for jitter

        Returns:
            `base * multiplier^(attempt-1) + uniform(0, base)`, capped at max_delay
        """
        jitter = (rng or random).uniform(0, self.base_delay)
        delay = self.base_delay * (self.backoff_multiplier ** (attempt - 1)) + jitter
        return min(delay, self.max_delay)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, calls short-circuit to fallback
    HALF_OPEN = "half_open"  # Probing for recovery


@dataclass
class CircuitBreaker:
    """Circuit breaker for one named operation."""

    name: str
    threshold: int = 5
    timeout: float = 30.0
    success_threshold: int = 2
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float | None = None

    def can_execute(self) -> bool:
        """Check whether the primary may run, half-opening after the cooldown."""
        if self.state == CircuitState.OPEN:
            if self.last_failure_time is None:
                return True
            if self.clock() - self.last_failure_time >= self.timeout:
                self.state = CircuitState.HALF_OPEN
                self.success_count = 0
                logger.info("Circuit '%s' half-open, probing primary", self.name)
                return True
            return False
        return True

    def record_success(self) -> None:
        """Record a successful primary call."""
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                self.success_count = 0
                logger.info("Circuit '%s' closed", self.name)
        elif self.state == CircuitState.CLOSED:
            # Slow recovery: one success forgives one failure
            self.failure_count = max(0, self.failure_count - 1)

    def record_failure(self) -> None:
        """Record a failed primary call."""
        self.failure_count += 1
        self.last_failure_time = self.clock()

        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.OPEN
            self.success_count = 0
            logger.warning("Circuit '%s' reopened after failed trial call", self.name)
        elif self.state == CircuitState.CLOSED and self.failure_count >= self.threshold:
            self.state = CircuitState.OPEN
            logger.warning(
                "Circuit '%s' opened after %d failures", self.name, self.failure_count
            )


@dataclass
class OperationMetrics:
    """Rolling outcome counters for one operation name."""

    success_count: int = 0
    failure_count: int = 0
    avg_latency_ms: float = 0.0
    last_error: str | None = None

    @property
    def total(self) -> int:
        return self.success_count + self.failure_count

    @property
    def success_rate(self) -> float:
        return self.success_count / self.total if self.total else 1.0

    def record(self, success: bool, latency_ms: float, error: BaseException | None = None) -> None:
        if success:
            self.success_count += 1
        else:
            self.failure_count += 1
            self.last_error = str(error) if error is not None else None
        # Running average over all attempts
        self.avg_latency_ms += (latency_ms - self.avg_latency_ms) / self.total


class SupportsClear(Protocol):
    def clear(self) -> Any: ...


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class ResilienceManager:
    """Runs async operations with timeout, retry, circuit breaking and fallback.

    Breakers and metrics are keyed by operation name and live as long as the
    manager. Create one manager per pipeline instance.
    """

    def __init__(
        self,
        config: ResilienceConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize resilience manager.

        Args:
            config: Resilience configuration (defaults if omitted)
            clock: Monotonic clock used by circuit breakers
            rng: Random source for backoff jitter
        """
        self.config = config or ResilienceConfig()
        self.clock = clock
        self.rng = rng
        self._breakers: dict[str, CircuitBreaker] = {}
        self._metrics: dict[str, OperationMetrics] = {}

    def _breaker(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name=name,
                threshold=self.config.circuit_breaker_threshold,
                timeout=self.config.circuit_breaker_timeout,
                success_threshold=self.config.half_open_success_threshold,
                clock=self.clock,
            )
            self._breakers[name] = breaker
        return breaker

    def _metric(self, name: str) -> OperationMetrics:
        return self._metrics.setdefault(name, OperationMetrics())

    async def _attempt(
        self, operation: Callable[[], Awaitable[T]], timeout: float
    ) -> tuple[T, float]:
        start = time.perf_counter()
        # wait_for cancels the operation on timeout, discarding its result
        result = await asyncio.wait_for(operation(), timeout=timeout)
        return result, (time.perf_counter() - start) * 1000

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]] | None = None,
        operation_name: str = "unknown",
    ) -> T:
        """Execute an operation resiliently.

        Args:
            operation: Zero-argument coroutine factory for the primary
            fallback: Zero-argument coroutine factory used after the primary
                exhausts its retries or while its circuit is open
            operation_name: Key for the circuit breaker and metrics

        Returns:
            Result of the primary or the fallback

        Raises:
            ContextManagementError: If the primary and the fallback both failed
        """
        breaker = self._breaker(operation_name)
        metrics = self._metric(operation_name)
        primary_error: BaseException | None = None
        attempts = 0

        if breaker.can_execute():
            for attempt in range(1, self.config.max_retries + 1):
                attempts = attempt
                start = time.perf_counter()
                try:
                    result, latency = await self._attempt(
                        operation, self.config.operation_timeout
                    )
                except Exception as e:
                    latency = (time.perf_counter() - start) * 1000
                    primary_error = e
                    metrics.record(False, latency, e)
                    breaker.record_failure()
                    logger.warning(
                        "Operation '%s' attempt %d/%d failed: %r",
                        operation_name,
                        attempt,
                        self.config.max_retries,
                        e,
                    )
                    if breaker.state == CircuitState.OPEN:
                        break
                    if attempt < self.config.max_retries:
                        await asyncio.sleep(self.config.get_delay(attempt, self.rng))
                    continue

                metrics.record(True, latency)
                breaker.record_success()
                return result
        else:
            logger.warning("Circuit '%s' open, skipping primary", operation_name)

        if fallback is None:
            raise ContextManagementError(
                f"Operation '{operation_name}' failed and has no fallback",
                operation=operation_name,
                attempts=attempts,
                primary_error=primary_error,
            )

        return await self._execute_fallback(
            fallback, operation_name, attempts, primary_error
        )

    execute_with_resilience = execute

    async def _execute_fallback(
        self,
        fallback: Callable[[], Awaitable[T]],
        operation_name: str,
        attempts: int,
        primary_error: BaseException | None,
    ) -> T:
        metrics = self._metric(f"{operation_name}:fallback")
        max_attempts = max(1, min(self.config.fallback_max_retries, self.config.max_retries))
        fallback_error: BaseException | None = None

        for attempt in range(1, max_attempts + 1):
            start = time.perf_counter()
            try:
                result, latency = await self._attempt(fallback, self.config.fallback_timeout)
            except Exception as e:
                fallback_error = e
                metrics.record(False, (time.perf_counter() - start) * 1000, e)
                logger.warning(
                    "Fallback for '%s' attempt %d/%d failed: %r",
                    operation_name,
                    attempt,
                    max_attempts,
                    e,
                )
                if attempt < max_attempts:
                    await asyncio.sleep(self.config.base_delay * attempt)
                continue

            metrics.record(True, latency)
            logger.warning("Operation '%s' served by fallback", operation_name)
            return result

        raise ContextManagementError(
            f"Operation '{operation_name}' failed: primary and fallback exhausted",
            operation=operation_name,
            attempts=attempts + max_attempts,
            primary_error=primary_error,
            fallback_error=fallback_error,
        )

    async def recover_from_corruption(
        self,
        cache: SupportsClear,
        validate: Callable[[], Any],
        backup: Callable[[], Any] | None = None,
        restore: Callable[[Any], Any] | None = None,
    ) -> bool:
        """Detect and repair cache corruption.

        Steps: validate, back up, clear, restore, re-validate. Only the
        final validation is fatal; other step failures are logged.

        Args:
            cache: Object exposing `clear()`
            validate: Raises when the cache is inconsistent
            backup: Returns a snapshot of the cache
            restore: Re-applies a snapshot

        Returns:
            False if the cache was healthy, True if it was recovered

        Raises:
            CacheCorruptionError: If the cache is still invalid after recovery
        """
        try:
            await _maybe_await(validate())
            return False
        except Exception as e:
            logger.warning("Cache validation failed, starting recovery: %s", e)

        snapshot: Any = None
        if backup is not None:
            try:
                snapshot = await _maybe_await(backup())
            except Exception as e:
                logger.warning("Cache backup failed, continuing without it: %s", e)

        try:
            await _maybe_await(cache.clear())
        except Exception as e:
            logger.warning("Cache clear failed: %s", e)

        if restore is not None and snapshot is not None:
            try:
                await _maybe_await(restore(snapshot))
            except Exception as e:
                logger.warning("Cache restore failed: %s", e)

        try:
            await _maybe_await(validate())
        except Exception as e:
            logger.error("Cache recovery failed", exc_info=True)
            raise CacheCorruptionError(f"Cache still invalid after recovery: {e}") from e

        logger.info("Cache recovered from corruption")
        return True

    def get_circuit_state(self, operation_name: str) -> CircuitState:
        """Current circuit state (CLOSED for unknown operations)."""
        breaker = self._breakers.get(operation_name)
        return breaker.state if breaker is not None else CircuitState.CLOSED

    def get_health_metrics(self) -> dict[str, Any]:
        """Per-operation metrics, circuit states and overall health."""
        operations = {
            name: {
                "success_count": m.success_count,
                "failure_count": m.failure_count,
                "success_rate": round(m.success_rate, 4),
                "avg_latency_ms": round(m.avg_latency_ms, 3),
                "last_error": m.last_error,
            }
            for name, m in self._metrics.items()
        }
        circuits = {
            name: {"state": b.state.value, "failure_count": b.failure_count}
            for name, b in self._breakers.items()
        }

        total = sum(m.total for m in self._metrics.values())
        successes = sum(m.success_count for m in self._metrics.values())
        success_rate = successes / total if total else 1.0

        states = {b.state for b in self._breakers.values()}
        if CircuitState.OPEN in states:
            overall = "unhealthy"
        elif CircuitState.HALF_OPEN in states or success_rate < 0.8:
            overall = "degraded"
        else:
            overall = "healthy"

        return {
            "overall_health": overall,
            "success_rate": round(success_rate, 4),
            "operations": operations,
            "circuits": circuits,
        }

    def reset(self, operation_name: str | None = None) -> None:
        """Forget breaker and metrics state for one or all operations."""
        if operation_name is None:
            self._breakers.clear()
            self._metrics.clear()
            return
        self._breakers.pop(operation_name, None)
        self._metrics.pop(operation_name, None)
        self._metrics.pop(f"{operation_name}:fallback", None)
