# url_finder/clients/circuit_breaker.py
"""
Consecutive-failure circuit breaker for upstream calls.

After ``failure_threshold`` consecutive failures the circuit opens and
``check_allowed`` raises ``CircuitOpenError`` until ``cooldown_seconds`` have
passed. The next call is then let through as a probe (half-open); a success
closes the circuit, a failure re-opens it for another cooldown.

Usage:
    breaker = CircuitBreaker("BMS", failure_threshold=5, cooldown_seconds=300)
    breaker.check_allowed()
    try:
        await call()
        breaker.record_success()
    except BmsError:
        breaker.record_failure()
"""

import logging
import time
from typing import Callable, Optional

from ..exceptions import CircuitOpenError

logger = logging.getLogger("url_finder.clients.circuit_breaker")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return CLOSED
        if self._clock() - self._opened_at >= self.cooldown_seconds:
            return HALF_OPEN
        return OPEN

    def check_allowed(self) -> None:
        state = self.state
        if state == CLOSED:
            return
        if state == HALF_OPEN and not self._probe_in_flight:
            self._probe_in_flight = True
            logger.debug(f"{self.name} circuit breaker allowing probe request")
            return
        remaining = max(0.0, self.cooldown_seconds - (self._clock() - (self._opened_at or 0.0)))
        raise CircuitOpenError(f"{self.name} circuit open ({remaining:.0f}s until probe)")

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info(f"{self.name} circuit breaker closed after successful probe")
        self._failures = 0
        self._opened_at = None
        self._probe_in_flight = False

    def record_failure(self) -> None:
        self._failures += 1
        if self._probe_in_flight or self._failures >= self.failure_threshold:
            if self._opened_at is None or self._probe_in_flight:
                logger.warning(
                    f"{self.name} circuit breaker opened after {self._failures} consecutive failure(s)"
                )
            self._opened_at = self._clock()
            self._probe_in_flight = False
