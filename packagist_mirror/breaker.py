# SPDX-License-Identifer: GPL-3.0-or-later

from collections import Counter

from .download.outcome import PoolOutcome
from .logs import LoggerFactory
from .registry import MirrorRegistry


class MirrorHealth(Counter[str]):
    """Failure count per `scheme://host` for the current run"""

    def record(self, outcome: PoolOutcome):
        self.update(failure.host for failure in outcome.failures.values())


class CircuitBreaker:
    DEFAULT_THRESHOLD = 1000

    def __init__(self, threshold: int = DEFAULT_THRESHOLD) -> None:
        self._log = LoggerFactory.get_logger(self)
        self._threshold = threshold
        self._health = MirrorHealth()

    @property
    def threshold(self) -> int:
        return self._threshold

    @property
    def health(self) -> MirrorHealth:
        return self._health

    def evaluate(self, outcome: PoolOutcome, registry: MirrorRegistry) -> list[str]:
        """Tally a finished phase and drop mirrors that failed too often.

        Must only run between pooled phases, never while fetches are in
        flight.
        """
        self._health.record(outcome)

        removed: list[str] = []
        for host in registry.all_hosts():
            total = self._health[registry.origin_of(host)]
            if total < self._threshold:
                continue

            self._log.error(f"Due to {total} errors mirror {host} will be disabled")
            registry.remove(host)
            removed.append(host)

        return removed
