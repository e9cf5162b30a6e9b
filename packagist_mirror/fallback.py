# SPDX-License-Identifer: GPL-3.0-or-later

from collections.abc import Iterator, Mapping

from .download.fetcher import HTTPFetchSource, PendingFetch
from .download.outcome import FetchFailure, PoolOutcome
from .download.pool import DownloadPool, OnEach, OnSuccess
from .logs import LoggerFactory


class FallbackRouter:
    """Retries failed package downloads once against the main source"""

    def __init__(self, pool: DownloadPool, source: HTTPFetchSource) -> None:
        self._log = LoggerFactory.get_logger(self)
        self._pool = pool
        self._source = source

    def _requests(
        self, failures: Mapping[str, FetchFailure]
    ) -> Iterator[tuple[str, PendingFetch]]:
        for key in failures:
            yield key, self._source.request(self._source.primary_uri(key))

    async def fallback(
        self,
        failures: Mapping[str, FetchFailure],
        provider: str,
        on_success: OnSuccess,
        on_each: OnEach,
    ) -> PoolOutcome:
        if not failures:
            return PoolOutcome()

        self._log.info(
            f"Fallback {len(failures)} packages from {provider} provider to main"
            f" mirror {self._source.current_primary_base_uri()}"
        )

        outcome = await self._pool.run(self._requests(failures), on_success, on_each)

        for failure in outcome.failures.values():
            self._log.error(f"Unresolved package from {provider}: {failure.describe()}")

        return outcome
