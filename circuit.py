# circuit.py - Per-provider circuit breaker and status snapshot
"""
Circuit breaker guarding a single provider instance.

States:
- CLOSED: normal operation, requests pass through
- OPEN: provider failed `failure_threshold` times in a row and is skipped
  until `cooldown` seconds have elapsed
- HALF_OPEN: cooldown elapsed; exactly one probe request is let through.
  Success closes the breaker, failure reopens it and restarts the cooldown.

Breaker state is process-scoped and lives only in memory.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class ProviderStatus:
    """Read-only snapshot of one provider's health."""
    kind: str
    name: str
    connection: ConnectionState
    breaker: CircuitState
    consecutive_failures: int
    last_failure_at: Optional[float]
    enabled: bool = True
    disabled_reason: str = ""

    @property
    def usable(self) -> bool:
        return self.enabled and self.breaker != CircuitState.OPEN


class CircuitBreaker:
    def __init__(self,
                 name: str,
                 failure_threshold: int = 3,
                 cooldown: float = 60.0,
                 clock: Callable[[], float] = time.monotonic,
                 on_state_change: Optional[Callable[[str, CircuitState, CircuitState], None]] = None):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock
        self._on_state_change = on_state_change
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_at: Optional[float] = None
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._cooldown_elapsed():
            self._set_state(CircuitState.HALF_OPEN)
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def last_failure_at(self) -> Optional[float]:
        return self._last_failure_at

    @property
    def retry_after(self) -> float:
        """Seconds until an open breaker admits its probe (0 if not open)."""
        if self.state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self._opened_at + self.cooldown - self._clock())

    def is_available(self) -> bool:
        """Whether a request would currently be admitted (does not claim the probe)."""
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        return state == CircuitState.HALF_OPEN and not self._probe_in_flight

    def allow_request(self) -> bool:
        """Admit a request, claiming the single half-open probe slot if needed."""
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN and not self._probe_in_flight:
            self._probe_in_flight = True
            logger.info("Circuit %s half-open: admitting probe request", self.name)
            return True
        return False

    def record_success(self) -> None:
        self._failures = 0
        self._probe_in_flight = False
        self._opened_at = None
        self._set_state(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self._failures += 1
        self._last_failure_at = self._clock()
        if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            self._probe_in_flight = False
            self._opened_at = self._clock()
            self._set_state(CircuitState.OPEN)

    def release_probe(self) -> None:
        """Give back an unused probe slot (request cancelled before an outcome)."""
        self._probe_in_flight = False

    def _cooldown_elapsed(self) -> bool:
        return self._opened_at is not None and self._clock() - self._opened_at >= self.cooldown

    def _set_state(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if old_state == new_state:
            return
        if new_state == CircuitState.OPEN:
            logger.warning("Circuit %s opened after %d consecutive failures (cooldown %.1fs)",
                           self.name, self._failures, self.cooldown)
        else:
            logger.info("Circuit %s: %s -> %s", self.name, old_state.value, new_state.value)
        if self._on_state_change:
            self._on_state_change(self.name, old_state, new_state)
