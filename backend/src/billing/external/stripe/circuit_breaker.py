"""
Stripe Circuit Breaker

Implements the circuit breaker pattern for Stripe API calls to prevent
cascading failures when Stripe is experiencing issues.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Stripe is failing, block requests to prevent overload
- HALF_OPEN: Testing if Stripe has recovered

State is per process. Only transient failures count towards opening the
circuit; a declined card or a bad request says nothing about Stripe's
health.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from backend.src.billing.shared.exceptions import CircuitBreakerOpenError, TransientGatewayError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocking requests
    HALF_OPEN = "half_open"  # Testing recovery


class StripeCircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Usage:
        breaker = StripeCircuitBreaker()
        result = await breaker.safe_call(stripe.Customer.create_async, email="...")
    """

    def __init__(
        self,
        circuit_name: str = "stripe_api",
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        counted_exceptions: Tuple[Type[BaseException], ...] = (TransientGatewayError,),
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the circuit breaker.

        Args:
            circuit_name: Name used in logs and status
            failure_threshold: Consecutive failures before opening the circuit
            recovery_timeout: Seconds to wait before testing recovery
            counted_exceptions: Exception types that count as failures
            monotonic: Time source in seconds
        """
        self.circuit_name = circuit_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.counted_exceptions = counted_exceptions
        self._monotonic = monotonic
        self._lock = asyncio.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    async def safe_call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Execute a Stripe API call with circuit breaker protection.

        Raises:
            CircuitBreakerOpenError: If the circuit is open
        """
        await self._before_call()
        try:
            result = await func(*args, **kwargs)
        except self.counted_exceptions as e:
            await self._record_failure(str(e))
            raise
        except asyncio.CancelledError:
            self._probe_in_flight = False
            raise
        except Exception:
            # Non-transient outcome: the API answered, so it is reachable
            await self._record_success()
            raise
        await self._record_success()
        return result

    async def _before_call(self) -> None:
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return

            elapsed = self._monotonic() - (self._opened_at or 0.0)
            if self._state == CircuitState.OPEN and elapsed >= self.recovery_timeout:
                logger.info(f"[CIRCUIT BREAKER] {self.circuit_name} -> half_open, probing")
                self._state = CircuitState.HALF_OPEN
                self._probe_in_flight = False

            if self._state == CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                return

            reset_in = max(0.0, self.recovery_timeout - elapsed)
            logger.warning(f"[CIRCUIT BREAKER] Request blocked - circuit is {self._state.value}")
            raise CircuitBreakerOpenError(service_name=self.circuit_name, reset_time=reset_in)

    async def _record_success(self) -> None:
        async with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f"[CIRCUIT BREAKER] {self.circuit_name} recovered -> closed")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._probe_in_flight = False

    async def _record_failure(self, error: str) -> None:
        async with self._lock:
            self._failure_count += 1
            if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
                if self._state != CircuitState.OPEN:
                    logger.error(f"[CIRCUIT BREAKER] {self.circuit_name} -> open after "
                                 f"{self._failure_count} failure(s): {error[:200]}")
                self._state = CircuitState.OPEN
                self._opened_at = self._monotonic()
                self._probe_in_flight = False

    async def get_status(self) -> Dict:
        """
        Get current circuit breaker status.

        Returns:
            Dictionary with circuit state and metrics
        """
        return {
            'circuit_name': self.circuit_name,
            'state': self._state.value,
            'failure_count': self._failure_count,
            'failure_threshold': self.failure_threshold,
            'recovery_timeout': self.recovery_timeout,
        }
