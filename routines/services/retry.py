"""Bounded retry bookkeeping for operations retried on the next pass."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from routines.domain.bus import EventBus
from routines.domain.events import RetriesExhausted

logger = logging.getLogger(__name__)


class RetryTracker:
    """Counts consecutive failures per key and escalates once past a bound.

    The failing operation itself is not re-run here; the owning component
    retries it on its next horizon extension or scan. Escalation publishes
    ``RetriesExhausted`` exactly once per failure streak.
    """

    def __init__(self, component: str, max_attempts: int, bus: EventBus | None = None) -> None:
        self.component = component
        self.max_attempts = max_attempts
        self.bus = bus
        self._failures: dict[str, int] = {}
        self._escalated: set[str] = set()

    def attempts(self, key: str) -> int:
        return self._failures.get(key, 0)

    def record_failure(
        self, key: str, error: Exception | str, routine_id: str | None = None
    ) -> bool:
        """Count a failure; return True once the key is past its bound."""
        attempts = self._failures.get(key, 0) + 1
        self._failures[key] = attempts
        if attempts < self.max_attempts:
            logger.warning(
                "%s: attempt %d/%d failed for %s: %s",
                self.component, attempts, self.max_attempts, key, error,
            )
            return False

        if key not in self._escalated:
            self._escalated.add(key)
            logger.error(
                "%s: giving up on %s after %d attempts: %s",
                self.component, key, attempts, error,
            )
            if self.bus is not None:
                self.bus.publish(
                    RetriesExhausted(
                        component=self.component,
                        key=key,
                        attempts=attempts,
                        error=str(error),
                        routine_id=routine_id,
                    )
                )
        return True

    def record_success(self, key: str) -> None:
        self._failures.pop(key, None)
        self._escalated.discard(key)

    def retain(self, keys: Iterable[str]) -> None:
        """Forget every key not in *keys*."""
        keep = set(keys)
        for key in [k for k in self._failures if k not in keep]:
            del self._failures[key]
        self._escalated &= keep
