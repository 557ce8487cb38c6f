"""
Circuit Breaker
===============

Rejects calls to a failing dependency for a recovery window, then lets a
few trial calls through before closing again.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation, requests pass through
    OPEN = "open"          # Failing, requests are rejected
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5      # Failures before opening circuit
    recovery_timeout: float = 30.0  # Seconds before trying again
    success_threshold: int = 2      # Successes in half-open before closing


class CircuitBreaker:
    """Circuit breaker for one external dependency.

    State is per instance. All transitions happen synchronously, so a single
    event loop never observes a half-applied transition.

    Usage:
        if breaker.allow_request():
            try:
                result = await call()
                breaker.record_success()
            except Exception:
                breaker.record_failure()
                raise
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def allow_request(self) -> bool:
        """Check if a request should be allowed through."""
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            elapsed = self._clock() - (self._opened_at or 0.0)
            if elapsed >= self.config.recovery_timeout:
                logger.info(f"Circuit {self.name}: transitioning to HALF_OPEN after {elapsed:.1f}s")
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
                return True
            return False

        return True

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.config.success_threshold:
                logger.info(f"Circuit {self.name}: closing after {self._success_count} successes")
                self._state = CircuitState.CLOSED
                self._failure_count = 0
                self._success_count = 0
        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0

    def record_failure(self) -> None:
        self._failure_count += 1

        if self._state == CircuitState.HALF_OPEN:
            logger.warning(f"Circuit {self.name}: reopening after failure in HALF_OPEN")
            self._open()
        elif self._state == CircuitState.CLOSED and self._failure_count >= self.config.failure_threshold:
            logger.warning(f"Circuit {self.name}: opening after {self._failure_count} failures")
            self._open()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._success_count = 0

    def reset(self) -> None:
        """Reset the circuit breaker to closed state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = None
        logger.info(f"Circuit {self.name}: manually reset")

    def get_status(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'state': self._state.value,
            'failure_count': self._failure_count,
            'success_count': self._success_count,
            'config': {
                'failure_threshold': self.config.failure_threshold,
                'recovery_timeout': self.config.recovery_timeout,
                'success_threshold': self.config.success_threshold,
            }
        }


__all__ = [
    'CircuitBreaker',
    'CircuitBreakerConfig',
    'CircuitState',
]
