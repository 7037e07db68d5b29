"""
Circuit Breaker for outbound provider calls.

Wraps calls to Mercado Pago and the email provider so that a provider outage
turns into fast, retryable ``CircuitBreakerOpenError`` failures instead of a
batch of events each waiting out a full HTTP timeout.
"""
import asyncio
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from app.core.exceptions import CircuitBreakerOpenError
from app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"        # calls pass through
    OPEN = "open"            # calls rejected until timeout_seconds elapse
    HALF_OPEN = "half_open"  # a few probe calls allowed


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 3


@dataclass
class CircuitBreakerState:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float = 0.0
    half_open_calls: int = 0


class CircuitBreaker:
    """
    Per-service circuit breaker.

    Instances are shared per service name through ``get_instance`` so that
    every processor in the process sees the same provider health.
    """

    _instances: dict[str, "CircuitBreaker"] = {}
    _instances_lock = threading.Lock()

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitBreakerState()
        # threading.Lock: Celery tasks run each invocation on a fresh event loop
        self._lock = threading.Lock()

    @classmethod
    def get_instance(
        cls,
        service_name: str,
        config: CircuitBreakerConfig | None = None
    ) -> "CircuitBreaker":
        if service_name not in cls._instances:
            with cls._instances_lock:
                if service_name not in cls._instances:
                    cls._instances[service_name] = cls(service_name, config)
        return cls._instances[service_name]

    @classmethod
    def reset_all(cls) -> None:
        """Drop all shared instances (tests)"""
        with cls._instances_lock:
            cls._instances.clear()

    @property
    def state(self) -> CircuitState:
        return self._state.state

    @property
    def is_open(self) -> bool:
        return self._state.state == CircuitState.OPEN

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state.state
        self._state.state = new_state

        if new_state == CircuitState.HALF_OPEN:
            self._state.half_open_calls = 0
            self._state.success_count = 0
        elif new_state == CircuitState.CLOSED:
            self._state.failure_count = 0
            self._state.success_count = 0

        logger.info(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
            }
        )

    def get_retry_after(self) -> float:
        """Seconds until an open circuit lets a probe call through"""
        if self._state.state != CircuitState.OPEN:
            return 0.0
        elapsed = time.time() - self._state.last_failure_time
        return max(0.0, self.config.timeout_seconds - elapsed)

    def _can_execute(self) -> bool:
        with self._lock:
            if self._state.state == CircuitState.CLOSED:
                return True

            if self._state.state == CircuitState.OPEN:
                if self.get_retry_after() > 0:
                    return False
                self._transition_to(CircuitState.HALF_OPEN)

            if self._state.half_open_calls < self.config.half_open_max_calls:
                self._state.half_open_calls += 1
                return True
            return False

    def _record_success(self) -> None:
        with self._lock:
            if self._state.state == CircuitState.HALF_OPEN:
                self._state.success_count += 1
                if self._state.success_count >= self.config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)
            else:
                self._state.failure_count = 0

    def _record_failure(self, error: Exception) -> None:
        with self._lock:
            self._state.failure_count += 1
            self._state.last_failure_time = time.time()

            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._state.failure_count,
                    "threshold": self.config.failure_threshold,
                    "error": str(error),
                }
            )

            if (
                self._state.state == CircuitState.HALF_OPEN
                or self._state.failure_count >= self.config.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)

    async def execute(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``func`` under breaker protection.

        Raises:
            CircuitBreakerOpenError: the circuit is open; nothing was called
        """
        if not self._can_execute():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            result = func()
            if asyncio.iscoroutine(result):
                result = await result
        except Exception as e:
            self._record_failure(e)
            raise

        self._record_success()
        return result


def get_mercadopago_circuit_breaker() -> CircuitBreaker:
    """Circuit breaker for the Mercado Pago payments API"""
    return CircuitBreaker.get_instance(
        "mercadopago",
        CircuitBreakerConfig(failure_threshold=5, success_threshold=2, timeout_seconds=30.0)
    )


def get_email_circuit_breaker() -> CircuitBreaker:
    """Circuit breaker for the transactional email provider"""
    return CircuitBreaker.get_instance(
        "email",
        CircuitBreakerConfig(failure_threshold=3, success_threshold=1, timeout_seconds=60.0)
    )
