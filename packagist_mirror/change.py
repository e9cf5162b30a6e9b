# SPDX-License-Identifer: GPL-3.0-or-later

from dataclasses import dataclass
from enum import Enum

from .index import RootIndex
from .logs import LoggerFactory
from .storage import ResourceStore


@dataclass(frozen=True)
class SyncState:
    """Run-scoped flags computed once before anything is fetched"""

    initialized: bool

    @classmethod
    async def establish(
        cls, store: ResourceStore, tree: str, marker: str
    ) -> "SyncState":
        # A marker left by an interrupted cold run keeps this run cold too
        if not store.exists(tree):
            await store.write(marker, b"")

        return cls(initialized=store.exists(marker))


class Detection(Enum):
    UNCHANGED = "unchanged"
    STAGED = "staged"


class ChangeDetector:
    def __init__(self, store: ResourceStore, canonical: str, staging: str) -> None:
        self._log = LoggerFactory.get_logger(self)
        self._store = store
        self._canonical = canonical
        self._staging = staging

    async def detect(self, index: RootIndex, state: SyncState) -> Detection:
        content = index.serialize()

        if not state.initialized and self._store.exists(self._canonical):
            old = self._store.hash_of_stored_file(self._canonical)
            new = self._store.hash(content)

            if old == new:
                self._log.info(f"{self._canonical} is up to date")
                return Detection.UNCHANGED

        await self._store.write(self._staging, content)
        self._log.debug(f"New root index staged as {self._staging}")

        return Detection.STAGED
