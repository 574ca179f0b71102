from typing import Any, Dict, Tuple, Type

import pybreaker
from loguru import logger

from fleet_rental.config.settings import Settings
from fleet_rental.monitoring.metrics import (
    SERVICE,
    circuit_breaker_failures,
    circuit_breaker_state,
)

STATE_VALUES = {"closed": 0, "open": 1, "half-open": 2, "half_open": 2}

# kind -> (settings prefix, exceptions that do not count as failures)
BREAKER_KINDS: Dict[str, Tuple[str, Tuple[Type[BaseException], ...]]] = {
    "directory": ("cb_directory", (KeyError, ValueError)),
    "storage": ("cb_storage", ()),
}


class LoggingCircuitBreakerListener(pybreaker.CircuitBreakerListener):
    def state_change(self, cb, old_state, new_state) -> None:
        old_name = str(getattr(old_state, "name", old_state))
        new_name = str(getattr(new_state, "name", new_state))
        logger.warning(
            f"Breaker '{cb.name}' went {old_name} -> {new_name} "
            f"after {cb.fail_counter}/{cb.fail_max} failures"
        )
        circuit_breaker_state.labels(service=SERVICE, circuit_name=cb.name).set(
            STATE_VALUES.get(new_name, 0)
        )

    def failure(self, cb, exc) -> None:  # noqa: ARG002
        circuit_breaker_failures.labels(service=SERVICE, circuit_name=cb.name).inc()


class CircuitBreakerConfig:
    """One lazily created breaker per collaborator kind, tuned from settings."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._breakers: Dict[str, pybreaker.CircuitBreaker] = {}
        self._listener = LoggingCircuitBreakerListener()

    def get_breaker(self, kind: str) -> pybreaker.CircuitBreaker:
        breaker = self._breakers.get(kind)
        if breaker is None:
            prefix, exclude = BREAKER_KINDS[kind]
            breaker = pybreaker.CircuitBreaker(
                fail_max=getattr(self.settings, f"{prefix}_fail_max"),
                reset_timeout=getattr(self.settings, f"{prefix}_reset_timeout"),
                exclude=exclude,
                name=f"{kind}_operations",
                listeners=[self._listener],
            )
            self._breakers[kind] = breaker
        return breaker

    def get_directory_breaker(self) -> pybreaker.CircuitBreaker:
        return self.get_breaker("directory")

    def get_storage_breaker(self) -> pybreaker.CircuitBreaker:
        return self.get_breaker("storage")

    def get_breaker_stats(self) -> Dict[str, Dict[str, Any]]:
        return {
            kind: {
                "state": breaker.current_state,
                "fail_counter": breaker.fail_counter,
                "fail_max": breaker.fail_max,
                "reset_timeout": breaker.reset_timeout,
            }
            for kind, breaker in self._breakers.items()
        }
