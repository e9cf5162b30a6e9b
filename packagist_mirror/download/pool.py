# SPDX-License-Identifer: GPL-3.0-or-later

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import Any

from ..logs import LoggerFactory
from ..progress import format_size
from .fetcher import PendingFetch
from .outcome import FetchFailure, PoolOutcome

OnSuccess = Callable[[bytes, str], Awaitable[None]]
OnEach = Callable[[], None]


class DownloadPool:
    """Bounded-concurrency fetch engine

    Items are pulled from the submitted iterable only when a slot is free, so
    the producer may perform per-item work (skip checks, routing) lazily.
    Every key gets exactly one terminal outcome and one `on_each` call; failed
    keys are never retried here.
    """

    DEFAULT_POOL_SIZE = 16
    PROGRESS_INTERVAL = 10

    def __init__(self, pool_size: int = DEFAULT_POOL_SIZE) -> None:
        if pool_size < 1:
            raise ValueError(f"Pool size must be positive, got {pool_size}")

        self._log = LoggerFactory.get_logger(self)
        self._pool_size = pool_size
        self._start = datetime.now()

        self.reset_stats()

    def reset_stats(self):
        self._fetched_count = 0
        self._fetched_size = 0
        self._failed_count = 0
        self._in_flight = 0

    @property
    def pool_size(self) -> int:
        return self._pool_size

    @property
    def fetched_files_count(self) -> int:
        return self._fetched_count

    @property
    def fetched_files_size(self) -> int:
        return self._fetched_size

    @property
    def failed_files_count(self) -> int:
        return self._failed_count

    @property
    def in_flight_count(self) -> int:
        return self._in_flight

    async def run(
        self,
        items: Iterable[tuple[str, PendingFetch]],
        on_success: OnSuccess,
        on_each: OnEach,
    ) -> PoolOutcome:
        async def remove_finished_tasks(tasks: set[asyncio.Task[Any]]):
            done_tasks, _ = await asyncio.wait(
                tasks, return_when=asyncio.FIRST_COMPLETED
            )

            tasks.difference_update(done_tasks)

            # Re-raise store errors from on_success
            for task in done_tasks:
                task.result()

        outcome = PoolOutcome()
        self._start = datetime.now()
        tasks: set[asyncio.Task[Any]] = set()
        progress_task = asyncio.create_task(self.progress_logger())

        try:
            for key, pending in items:
                tasks.add(
                    asyncio.create_task(
                        self.fetch(key, pending, outcome, on_success, on_each)
                    )
                )

                if len(tasks) >= self._pool_size:
                    await remove_finished_tasks(tasks)

            while tasks:
                await remove_finished_tasks(tasks)
        finally:
            for task in tasks:
                task.cancel()

            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

            progress_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await progress_task

        self.log_status("Download finished")

        return outcome

    async def fetch(
        self,
        key: str,
        pending: PendingFetch,
        outcome: PoolOutcome,
        on_success: OnSuccess,
        on_each: OnEach,
    ):
        self._in_flight += 1
        try:
            response = await pending.execute()

            if response.ok and response.body is not None:
                await on_success(response.body, key)

                outcome.succeeded.append(key)
                outcome.fetched_size += len(response.body)
                self._fetched_count += 1
                self._fetched_size += len(response.body)
                return

            outcome.failures[key] = FetchFailure(
                key=key,
                uri=response.uri,
                host=pending.host,
                status=response.status,
                message=response.error or "empty response",
            )
            self._failed_count += 1
            self._log.debug(outcome.failures[key].describe())
        finally:
            self._in_flight -= 1
            on_each()

    async def progress_logger(self):
        while True:
            try:
                await asyncio.sleep(self.PROGRESS_INTERVAL)
            except asyncio.CancelledError:
                return

            self.log_status("Download progress")

    def log_status(self, message: str):
        elapsed = datetime.now().timestamp() - self._start.timestamp()
        download_rate = format_size(
            self._fetched_size / elapsed if elapsed > 0 else 0,
            suffix="B/sec",
        )
        self._log.info(
            message
            + f": {self._fetched_count} ({format_size(self._fetched_size)},"
            f" {download_rate}); errors: {self._failed_count}"
        )
