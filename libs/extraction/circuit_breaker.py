"""
Circuit breaker for recovery strategies.

Explicit state machine per strategy name:

    closed --(threshold failures)--> open --(timeout elapsed)--> half_open
    half_open --(success)--> closed
    half_open --(failure)--> open

Any success clears the failure count. The clock is injectable so cooldowns
can be exercised without sleeping.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_TIMEOUT_S = 300.0


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class BreakerRecord:
    failure_count: int = 0
    last_failure_at: Optional[float] = None
    opened: bool = False


class CircuitBreaker:
    """Per-name failure counters shared across scans."""

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.timeout_s = timeout_s
        self._clock = clock
        self._records: dict[str, BreakerRecord] = {}

    def state(self, name: str) -> BreakerState:
        record = self._records.get(name)
        if record is None or not record.opened:
            return BreakerState.CLOSED
        if self._clock() - record.last_failure_at < self.timeout_s:
            return BreakerState.OPEN
        return BreakerState.HALF_OPEN

    def is_open(self, name: str) -> bool:
        return self.state(name) == BreakerState.OPEN

    def allow(self, name: str) -> bool:
        """Whether a call to ``name`` may proceed (closed or half-open trial)."""
        return not self.is_open(name)

    def record_failure(self, name: str) -> BreakerState:
        record = self._records.setdefault(name, BreakerRecord())
        was_half_open = self.state(name) == BreakerState.HALF_OPEN
        record.failure_count += 1
        record.last_failure_at = self._clock()

        if was_half_open:
            logger.warning(f"[CircuitBreaker] {name} trial failed, re-opening")
        elif not record.opened and record.failure_count >= self.failure_threshold:
            record.opened = True
            logger.warning(
                f"[CircuitBreaker] {name} opened after {record.failure_count} failures "
                f"(cooldown {self.timeout_s:.0f}s)"
            )
        return self.state(name)

    def record_success(self, name: str) -> None:
        record = self._records.pop(name, None)
        if record and record.opened:
            logger.info(f"[CircuitBreaker] {name} closed after successful call")

    def failure_count(self, name: str) -> int:
        record = self._records.get(name)
        return record.failure_count if record else 0

    def snapshot(self) -> dict[str, dict]:
        return {
            name: {
                "failure_count": record.failure_count,
                "last_failure_at": record.last_failure_at,
                "state": self.state(name).value,
            }
            for name, record in self._records.items()
        }

    def reset(self, name: Optional[str] = None) -> None:
        if name is None:
            self._records.clear()
        else:
            self._records.pop(name, None)
