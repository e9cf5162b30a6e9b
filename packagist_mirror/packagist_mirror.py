# SPDX-License-Identifer: GPL-3.0-or-later

import argparse
import asyncio
import os
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from errno import EWOULDBLOCK
from fcntl import LOCK_EX, LOCK_NB, flock
from pathlib import Path

import uvloop

from .breaker import CircuitBreaker
from .change import ChangeDetector, Detection, SyncState
from .config import Config
from .download import (
    DownloadPool,
    FetchSettings,
    HTTPFetchSource,
    PendingFetch,
    PoolOutcome,
)
from .download.url import URL
from .errors import (
    IndexLoadException,
    InvalidDocumentException,
    InvalidPathException,
    MirrorException,
)
from .fallback import FallbackRouter
from .index import (
    PackageResource,
    ProviderDocument,
    ProviderResource,
    RootIndex,
    WorkingSetBuilder,
)
from .logs import LoggerFactory
from .progress import ProgressLogger, format_size
from .prometheus import BaseMirrorCollector, DummyMirrorCollector, MirrorCollector
from .registry import MirrorRegistry
from .storage import FilesystemStore, ResourceStore
from .version import __version__

LOG = LoggerFactory.get_logger(__package__)


class Phase(Enum):
    START = "start"
    INDEX_SYNC = "index_sync"
    PROVIDER_EXPAND = "provider_expand"
    PROVIDER_FETCH = "provider_fetch"
    PACKAGE_SYNC = "package_sync"
    COMMIT = "commit"
    CLEANUP = "cleanup"
    DONE = "done"
    END = "end"
    ERROR = "error"


class ExitStatus(IntEnum):
    OK = 0
    # Run finished but some resources are missing from the mirror
    INCOMPLETE = 1
    # Run aborted before commit, the published root index is untouched
    FATAL = 2


@dataclass
class PhaseSummary:
    name: str
    total: int = 0
    fetched: int = 0
    skipped: int = 0
    failed: int = 0
    unresolved: int = 0


@dataclass
class RunSummary:
    status: ExitStatus = ExitStatus.OK
    message: str = ""
    final_phase: Phase = Phase.START
    committed: bool = False
    phases: list[PhaseSummary] = field(default_factory=list)

    def worsen(self, status: ExitStatus):
        self.status = max(self.status, status)

    @property
    def fetched_count(self) -> int:
        return sum(p.fetched for p in self.phases)

    @property
    def skipped_count(self) -> int:
        return sum(p.skipped for p in self.phases)

    @property
    def failed_count(self) -> int:
        return sum(p.failed for p in self.phases)

    @property
    def unresolved_count(self) -> int:
        return sum(p.unresolved for p in self.phases)


class SyncOrchestrator:
    MAIN = "packages.json"
    DOT = ".packages.json"
    TREE = "p"
    INIT = ".init"

    def __init__(
        self,
        store: ResourceStore,
        source: HTTPFetchSource,
        registry: MirrorRegistry,
        pool: DownloadPool,
        progress: ProgressLogger,
        breaker: CircuitBreaker,
        index_retries: int = 3,
        retry_delay: float = 5,
    ) -> None:
        self._log = LoggerFactory.get_logger(self)

        self._store = store
        self._source = source
        self._registry = registry
        self._pool = pool
        self._progress = progress
        self._breaker = breaker
        self._index_retries = max(1, index_retries)
        self._retry_delay = retry_delay

        self._detector = ChangeDetector(store, canonical=self.MAIN, staging=self.DOT)
        self._fallback = FallbackRouter(pool, source)

        self._phase = Phase.START
        self._state = SyncState(initialized=False)
        self._provider_failures: set[str] = set()

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def state(self) -> SyncState:
        return self._state

    def _enter(self, phase: Phase):
        self._log.debug(f"{self._phase.name} -> {phase.name}")
        self._phase = phase

    async def run(self) -> RunSummary:
        summary = RunSummary()
        self._provider_failures = set()

        try:
            await self._run(summary)
        except MirrorException as ex:
            self._log.error(f"Mirror run aborted in {self._phase.name} phase: {ex}")
            self._enter(Phase.ERROR)
            summary.worsen(ExitStatus.FATAL)
            summary.message = str(ex)

        summary.final_phase = self._phase
        self.log_summary(summary)

        return summary

    async def _run(self, summary: RunSummary):
        self._enter(Phase.START)
        self._state = await SyncState.establish(self._store, self.TREE, self.INIT)
        if self._state.initialized:
            self._log.info("Mirror is not initialized, every file will be downloaded")

        self._enter(Phase.INDEX_SYNC)
        index = await self.load_root_index()
        if await self._detector.detect(index, self._state) is Detection.UNCHANGED:
            summary.message = "nothing to do"
            self._enter(Phase.DONE)
            return

        self._enter(Phase.PROVIDER_EXPAND)
        builder = WorkingSetBuilder(index.providers_url)
        providers = builder.expand_providers(index)
        if all(self.can_skip(path) for path in providers):
            summary.message = "all providers already up to date"
            self._progress.report("All providers are updated")
            self._enter(Phase.DONE)
            return

        self._enter(Phase.PROVIDER_FETCH)
        await self.fetch_providers(providers, summary)

        self._enter(Phase.PACKAGE_SYNC)
        for position, provider in enumerate(providers.values(), start=1):
            await self.sync_packages(
                builder, provider, f"{position}/{len(providers)}", summary
            )

        self._enter(Phase.COMMIT)
        summary.committed = self.commit()

        self._enter(Phase.CLEANUP)
        if self._state.initialized:
            self._store.remove(self.INIT)

        summary.message = (
            "mirror updated"
            if summary.status == ExitStatus.OK
            else "mirror updated with missing files"
        )
        self._enter(Phase.END)

    def can_skip(self, path: str) -> bool:
        return self._store.exists(path) and not self._state.initialized

    async def load_root_index(self) -> RootIndex:
        uri = self._source.primary_uri(self.MAIN)
        self._progress.report(
            f"Loading providers from {self._source.current_primary_base_uri()}"
        )

        tries = self._index_retries
        while True:
            response = await self._source.request(uri).execute()
            if response.ok and response.body is not None:
                try:
                    return RootIndex.from_bytes(response.body)
                except InvalidDocumentException as ex:
                    raise IndexLoadException(f"Unable to parse {uri}: {ex}") from ex

            tries -= 1
            if tries < 1:
                raise IndexLoadException(f"Unable to load {uri}: {response.error}")

            self._log.warning(
                f"Received error `{response.error}` while loading {uri}. Retrying..."
            )
            await asyncio.sleep(self._retry_delay)

    async def _write(self, body: bytes, path: str):
        await self._store.write(path, body)

    def _provider_requests(
        self, providers: dict[str, ProviderResource], phase: PhaseSummary
    ) -> Iterator[tuple[str, PendingFetch]]:
        for path, provider in providers.items():
            if self.can_skip(path):
                phase.skipped += 1
                self._progress.advance()
                continue

            yield path, self._source.request(provider.uri)

    def _package_requests(
        self, packages: dict[str, PackageResource], phase: PhaseSummary
    ) -> Iterator[tuple[str, PendingFetch]]:
        for path, package in packages.items():
            if self.can_skip(path):
                phase.skipped += 1
                self._progress.advance()
                continue

            host = self._registry.next()
            uri = (
                URL.from_string(host).for_path(package.uri)
                if host
                else self._source.primary_uri(package.uri)
            )

            yield path, self._source.request(uri)

    async def fetch_providers(
        self, providers: dict[str, ProviderResource], summary: RunSummary
    ):
        phase = PhaseSummary("providers", total=len(providers))
        summary.phases.append(phase)

        self._progress.start(len(providers))
        outcome = await self._pool.run(
            self._provider_requests(providers, phase),
            self._write,
            self._progress.advance,
        )
        self._progress.end()

        phase.fetched = len(outcome.succeeded)
        phase.failed = phase.unresolved = len(outcome.failures)

        self.show_errors(outcome)
        self._breaker.evaluate(outcome, self._registry)

        if outcome.has_failures():
            self._provider_failures.update(outcome.failures)
            summary.worsen(ExitStatus.INCOMPLETE)

    async def sync_packages(
        self,
        builder: WorkingSetBuilder,
        provider: ProviderResource,
        position: str,
        summary: RunSummary,
    ):
        phase = PhaseSummary(provider.path)
        summary.phases.append(phase)

        self._progress.report(
            f"[{position}] Loading packages from {provider.path} provider"
        )

        if provider.path in self._provider_failures:
            self._log.warning(
                f"Packages of {provider.path} are skipped: provider download failed"
            )
            return

        if not self._store.exists(provider.path):
            self._log.error(f"Provider {provider.path} is missing from the mirror")
            phase.unresolved += 1
            summary.worsen(ExitStatus.INCOMPLETE)
            return

        try:
            document = ProviderDocument.from_bytes(self._store.read(provider.path))
            packages = builder.expand_packages(document, provider.path)
        except (InvalidDocumentException, InvalidPathException) as ex:
            self._log.error(f"Unable to load provider {provider.path}: {ex}")
            phase.unresolved += 1
            summary.worsen(ExitStatus.INCOMPLETE)
            return

        phase.total = len(packages)
        self._progress.start(len(packages))
        if all(self.can_skip(path) for path in packages):
            phase.skipped = len(packages)
            for _ in packages:
                self._progress.advance()
            self._progress.end()
            return

        outcome = await self._pool.run(
            self._package_requests(packages, phase),
            self._write,
            self._progress.advance,
        )
        self._progress.end()

        phase.fetched = len(outcome.succeeded)
        phase.failed = len(outcome.failures)

        self.show_errors(outcome)
        self._breaker.evaluate(outcome, self._registry)

        if not outcome.has_failures():
            return

        self._progress.start(len(outcome.failures))
        retry = await self._fallback.fallback(
            outcome.failures,
            provider.path,
            self._write,
            self._progress.advance,
        )
        self._progress.end()

        phase.fetched += len(retry.succeeded)
        phase.unresolved = len(retry.failures)
        self._breaker.evaluate(retry, self._registry)

        if retry.has_failures():
            summary.worsen(ExitStatus.INCOMPLETE)

    def commit(self) -> bool:
        if self._provider_failures:
            self._log.error(
                f"{self.MAIN} was not updated: {len(self._provider_failures)}"
                " providers failed to download"
            )
            return False

        if not self._store.exists(self.DOT):
            return False

        self._store.move(self.DOT, self.MAIN)
        self._log.info(f"{self.MAIN} updated")

        return True

    def show_errors(self, outcome: PoolOutcome):
        if not outcome.has_failures():
            return

        for failure in outcome.failures.values():
            self._log.debug(failure.describe())

        self._log.warning(f"{len(outcome.failures)} files failed to download")

    def log_summary(self, summary: RunSummary):
        for phase in summary.phases:
            self._log.debug(
                f"{phase.name}: total {phase.total}, fetched {phase.fetched},"
                f" skipped {phase.skipped}, failed {phase.failed},"
                f" unresolved {phase.unresolved}"
            )

        self._log.info(
            f"Run finished in {summary.final_phase.name} phase with status"
            f" {summary.status.name} ({summary.message}): fetched"
            f" {summary.fetched_count} ({format_size(self._pool.fetched_files_size)}),"
            f" skipped {summary.skipped_count}, failed {summary.failed_count},"
            f" unresolved {summary.unresolved_count}"
        )


class PackagistMirror:
    LOCK_FILE = "packagist-mirror.lock"

    def __init__(self, config: Config) -> None:
        self.stopped = False

        self._log = LoggerFactory.get_logger(self)
        self._config = config

        self._metrics_collector: BaseMirrorCollector
        if self._config.prometheus_enable:
            self._metrics_collector = MirrorCollector(
                self._config.prometheus_host, self._config.prometheus_port
            )
            if not self._metrics_collector.prometheus_available():
                self._log.warning("Prometheus python client is not available")
        else:
            self._metrics_collector = DummyMirrorCollector(
                self._config.prometheus_host, self._config.prometheus_port
            )

    def on_stop(self):
        self.stopped = True
        self._metrics_collector.shutdown()
        asyncio.get_running_loop().stop()

    def fetch_settings(self) -> FetchSettings:
        return FetchSettings(
            url=self._config.main_mirror,
            user_agent=self._config.user_agent,
            proxy=self._config.proxy,
            http2_disable=self._config.http2_disable,
            rate_limiter=self._config.rate_limiter,
            verify_ca_certificate=self._config.verify_ca_certificate,
            client_certificate=self._config.client_certificate or None,
            client_private_key=self._config.client_private_key or None,
        )

    async def run(self) -> int:
        self._log.info(f"packagist-mirror version {__version__}")
        signal.signal(signal.SIGTERM, lambda _, __: self.on_stop())

        with self.lock():
            try:
                store = await FilesystemStore.create(self._config.mirror_path)
            except MirrorException as ex:
                self._log.error(str(ex))
                self._metrics_collector.shutdown()
                return int(ExitStatus.FATAL)

            registry = MirrorRegistry(self._config.mirrors)
            pool = DownloadPool(self._config.nthreads)
            breaker = CircuitBreaker(self._config.max_host_errors)
            self._metrics_collector.watch(pool, registry, breaker)

            async with HTTPFetchSource(settings=self.fetch_settings()) as source:
                orchestrator = SyncOrchestrator(
                    store,
                    source,
                    registry,
                    pool,
                    ProgressLogger(),
                    breaker,
                    index_retries=self._config.index_retries,
                )
                summary = await orchestrator.run()

            self._metrics_collector.shutdown()

        if summary.status == ExitStatus.INCOMPLETE:
            self._log.error(
                "Some files were not downloaded. Please check logs above for details."
            )

        return int(summary.status)

    def die(self, message: str, code: int = 1):
        self._log.error(message)
        sys.exit(code)

    def get_lock_file(self):
        return self._config.var_path / self.LOCK_FILE

    @contextmanager
    def lock(self):
        lock_file = self.get_lock_file()
        with open(lock_file, "wb") as fp:
            try:
                flock(fp, LOCK_EX | LOCK_NB)
            except OSError as ex:
                if ex.errno == EWOULDBLOCK:
                    self.die("packagist-mirror is already running, exiting")

                strerror = os.strerror(ex.errno) if ex.errno else "unknown error"
                self.die(
                    f"Unable to obtain lock on {lock_file}: error {ex.errno}:"
                    f" {strerror}"
                )

            yield

        lock_file.unlink(missing_ok=True)


def get_config_file() -> Path:
    def get_prog() -> str | None:
        if Path(sys.argv[0]).name == "__main__.py":
            return f"{Path(sys.executable).name} -m packagist_mirror"

        return None

    parser = argparse.ArgumentParser(prog=get_prog())

    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument(
        "configfile",
        help=f"Path to config file. Default {Config.DEFAULT_CONFIGFILE}",
        nargs="?",
        default=Config.DEFAULT_CONFIGFILE,
    )

    args = parser.parse_args()

    if args.version:
        print(__version__)
        sys.exit(0)

    config_file = Path(args.configfile)
    if not config_file.is_file():
        LOG.error(f"invalid config file specified: {config_file}")
        sys.exit(1)

    return config_file


def main() -> int:
    try:
        config = Config(get_config_file())
        config.validate()

        # We should create working directories before using file logs
        config.create_working_directories()
        config.init_log_files()
    except MirrorException as ex:
        LOG.error(f"Invalid configuration: {ex}")
        return int(ExitStatus.FATAL)

    packagist_mirror = PackagistMirror(config)
    try:
        if config.use_uvloop:
            return uvloop.run(packagist_mirror.run())

        return asyncio.run(packagist_mirror.run())
    except RuntimeError as ex:
        if packagist_mirror.stopped:
            LOG.info("Stopped")
            return 0

        LOG.exception(ex)
        return 1
