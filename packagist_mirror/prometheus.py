# SPDX-License-Identifer: GPL-3.0-or-later

from abc import ABC, abstractmethod
from collections.abc import Generator, Iterable
from typing import Any

from .breaker import CircuitBreaker
from .download.pool import DownloadPool
from .registry import MirrorRegistry


class BaseMirrorCollector(ABC):
    def __init__(self, address: str, port: int) -> None:
        self._address = address
        self._port = port
        self._pool: DownloadPool | None = None
        self._registry: MirrorRegistry | None = None
        self._breaker: CircuitBreaker | None = None

    def prometheus_available(self) -> bool:
        return False

    def shutdown(self):  # noqa: B027
        pass

    def watch(
        self,
        pool: DownloadPool,
        registry: MirrorRegistry,
        breaker: CircuitBreaker,
    ):
        self._pool = pool
        self._registry = registry
        self._breaker = breaker

    @abstractmethod
    def collect(self) -> Iterable[Any]:
        pass


class DummyMirrorCollector(BaseMirrorCollector):
    def collect(self):
        yield


try:
    from prometheus_client import Metric, start_http_server
    from prometheus_client.core import REGISTRY, GaugeMetricFamily
    from prometheus_client.registry import Collector
except ImportError:

    class MirrorCollector(DummyMirrorCollector):
        pass

else:

    class MirrorCollector(BaseMirrorCollector, Collector):  # type: ignore
        def __init__(self, address: str, port: int) -> None:
            super().__init__(address, port)

            self._wsgi_server = None
            self._wsgi_thread = None

            wsgi_data = start_http_server(port=port, addr=address)
            if wsgi_data:
                self._wsgi_server, self._wsgi_thread = wsgi_data

            REGISTRY.register(self)

        def prometheus_available(self) -> bool:
            return True

        def shutdown(self):
            REGISTRY.unregister(self)

            if self._wsgi_server:
                self._wsgi_server.shutdown()

                if self._wsgi_thread:
                    self._wsgi_thread.join()

        def _pool_metric(self, name: str):
            mf = GaugeMetricFamily(
                f"packagist_mirror_{name}",
                name.replace("_", " ").capitalize(),
            )

            if self._pool:
                mf.add_metric([], value=getattr(self._pool, name))

            return mf

        def _host_errors_metric(self):
            mf = GaugeMetricFamily(
                "packagist_mirror_host_errors",
                "Failed requests per host during the current run",
                labels=["host"],
            )

            if self._breaker:
                for host, count in self._breaker.health.items():
                    mf.add_metric([host], value=count)

            return mf

        def _active_mirrors_metric(self):
            mf = GaugeMetricFamily(
                "packagist_mirror_active_mirrors",
                "Data mirrors still in rotation",
            )
            mf.add_metric([], value=len(self._registry) if self._registry else 0)

            return mf

        def collect(self) -> Generator[Metric, Any, None]:
            yield self._pool_metric("fetched_files_count")
            yield self._pool_metric("fetched_files_size")
            yield self._pool_metric("failed_files_count")
            yield self._pool_metric("in_flight_count")
            yield self._host_errors_metric()
            yield self._active_mirrors_metric()
