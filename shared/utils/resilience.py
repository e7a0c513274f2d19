"""
shared/utils/resilience.py
Circuit breakers for outbound payment provider calls.
"""

import logging
from typing import Dict, Iterable, Optional

from pybreaker import CircuitBreaker, CircuitBreakerListener

from config.settings import settings

logger = logging.getLogger(__name__)


class LoggingBreakerListener(CircuitBreakerListener):
    def state_change(self, cb, old_state, new_state):
        logger.warning(
            f"Circuit breaker '{cb.name}' changed {old_state.name} → {new_state.name}"
        )


class CircuitBreakerManager:
    """Manages circuit breakers for each downstream service."""

    def __init__(self):
        self.breakers: Dict[str, CircuitBreaker] = {}

    def get_breaker(self, service_name: str, exclude: Optional[Iterable] = None) -> CircuitBreaker:
        """
        Get or create a circuit breaker for a service.
        ``exclude`` lists errors that are the caller's fault and must not
        count towards opening the breaker.
        """
        if service_name not in self.breakers:
            self.breakers[service_name] = CircuitBreaker(
                fail_max=settings.PROVIDER_BREAKER_FAIL_MAX,
                reset_timeout=settings.PROVIDER_BREAKER_RESET_SECONDS,
                exclude=list(exclude or []),
                listeners=[LoggingBreakerListener()],
                name=service_name,
            )
        return self.breakers[service_name]

    def reset_all(self) -> None:
        for breaker in self.breakers.values():
            breaker.close()


circuit_breaker_manager = CircuitBreakerManager()
