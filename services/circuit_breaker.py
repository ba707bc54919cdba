"""
Circuit Breaker Pattern for External API Calls
Prevents cascading failures when the blockchain node is unhealthy
"""

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Blocking calls due to failures
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitOpenError(Exception):
    """Raised instead of calling through while the circuit is open"""


class CircuitBreaker:
    """
    In-process circuit breaker

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many consecutive failures, requests blocked
    - HALF_OPEN: Recovery timeout elapsed, probing with live requests
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        half_open_successes: int = 3,
        expected_exception: type = Exception,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_successes = half_open_successes
        self.expected_exception = expected_exception
        self._monotonic = monotonic

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_attempts = 0
        self.last_failure_time = None
        self.stats = {
            'total_calls': 0,
            'successful_calls': 0,
            'failed_calls': 0,
            'blocked_calls': 0
        }

    async def async_call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute async function with circuit breaker protection"""
        self.stats['total_calls'] += 1
        if self.state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self.state = CircuitState.HALF_OPEN
                self.half_open_attempts = 0
                logger.info(f"Circuit {self.name} entering HALF_OPEN state")
            else:
                self.stats['blocked_calls'] += 1
                raise CircuitOpenError(f"Circuit breaker {self.name} is OPEN")

        try:
            result = await func(*args, **kwargs)
        except self.expected_exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return False
        return self._monotonic() - self.last_failure_time >= self.recovery_timeout

    def _on_success(self):
        self.stats['successful_calls'] += 1
        if self.state == CircuitState.HALF_OPEN:
            self.half_open_attempts += 1
            if self.half_open_attempts >= self.half_open_successes:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                self.half_open_attempts = 0
                logger.info(f"Circuit {self.name} recovered - now CLOSED")
        else:
            self.failure_count = 0

    def _on_failure(self):
        self.stats['failed_calls'] += 1
        self.failure_count += 1
        self.last_failure_time = self._monotonic()

        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.OPEN
            self.half_open_attempts = 0
            logger.warning(f"Circuit {self.name} failed in HALF_OPEN - returning to OPEN")
        elif self.failure_count >= self.failure_threshold:
            self.state = CircuitState.OPEN
            logger.error(f"Circuit {self.name} opened due to {self.failure_count} failures")

    def reset(self):
        """Manually reset the circuit breaker"""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_attempts = 0
        self.last_failure_time = None
        logger.info(f"Circuit {self.name} manually reset")

    def get_state(self) -> Dict:
        return {
            'name': self.name,
            'state': self.state.value,
            'failure_count': self.failure_count,
            'half_open_attempts': self.half_open_attempts,
            'stats': dict(self.stats),
        }
