# SPDX-License-Identifer: GPL-3.0-or-later

from collections.abc import Iterable, Iterator

from .download.url import URL
from .logs import LoggerFactory


class MirrorRegistry:
    """Ordered set of data mirror hosts used to spread package downloads

    Hosts are selected round robin. A removed host never comes back for the
    lifetime of the registry, which is a single sync run.
    """

    def __init__(self, hosts: Iterable[str] = ()) -> None:
        self._log = LoggerFactory.get_logger(self)
        self._hosts: list[str] = []
        self._cursor = 0

        for host in hosts:
            self.add(host)

    def add(self, host: str):
        host = host.strip().rstrip("/")
        if host and host not in self._hosts:
            self._hosts.append(host)

    def all_hosts(self) -> tuple[str, ...]:
        return tuple(self._hosts)

    def next(self) -> str | None:
        if not self._hosts:
            return None

        self._cursor %= len(self._hosts)
        host = self._hosts[self._cursor]
        self._cursor += 1

        return host

    def remove(self, host: str):
        host = host.rstrip("/")
        if host not in self._hosts:
            return

        index = self._hosts.index(host)
        self._hosts.remove(host)

        # Keep rotating from the host that followed the removed one
        if index < self._cursor:
            self._cursor -= 1

        self._log.debug(f"Mirror {host} removed from rotation")

    @staticmethod
    def origin_of(host: str) -> str:
        return URL.from_string(host).get_origin()

    def __contains__(self, host: object) -> bool:
        return isinstance(host, str) and host.rstrip("/") in self._hosts

    def __iter__(self) -> Iterator[str]:
        return iter(self.all_hosts())

    def __len__(self) -> int:
        return len(self._hosts)
