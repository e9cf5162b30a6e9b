# SPDX-License-Identifer: GPL-3.0-or-later

import hashlib
import os
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath

from aiofile import async_open
from caio import (
    AsyncioContext,
    linux_aio_asyncio,
    python_aio_asyncio,
    thread_aio_asyncio,
)

from .errors import InvalidPathException, StoreException
from .logs import LoggerFactory


def normalize_path(path: str) -> str:
    """Turn a resource URI path into a relative POSIX store path.

    The result only depends on `path`, so distinct resources never share a
    destination. Paths leaving the store root are rejected.
    """
    parts = [p for p in PurePosixPath(path.strip().lstrip("/")).parts if p != "."]

    if not parts or any(p in ("..", "") for p in parts):
        raise InvalidPathException(path)

    return "/".join(parts)


class ResourceStore(ABC):
    @abstractmethod
    def exists(self, path: str) -> bool: ...

    @abstractmethod
    def read(self, path: str) -> bytes: ...

    @abstractmethod
    async def write(self, path: str, data: bytes): ...

    @abstractmethod
    def move(self, source: str, target: str): ...

    @abstractmethod
    def remove(self, path: str): ...

    @staticmethod
    def hash(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    def hash_of_stored_file(self, path: str) -> str:
        return self.hash(self.read(path))


class FilesystemStore(ResourceStore):
    TMP_SUFFIX = ".packagist_mirror_tmp"
    TEST_FILE = ".packagist_mirror_aio"

    def __init__(self, root: Path) -> None:
        self._log = LoggerFactory.get_logger(self)
        self._root = root
        self._context = self._get_supported_context()

    @classmethod
    async def create(cls, root: Path) -> "FilesystemStore":
        store = cls(root)
        await store.test_storage()

        return store

    def _get_supported_context(self, fallback_context: bool = False) -> AsyncioContext:
        if linux_aio_asyncio and not fallback_context:
            return linux_aio_asyncio.AsyncioContext()
        elif thread_aio_asyncio:
            if not fallback_context:
                self._log.warning(
                    "Native Linux AIO doesn't supported on this system. "
                    "Fallback to threaded AIO implementation."
                )
            return thread_aio_asyncio.AsyncioContext()
        else:
            self._log.warning(
                "Nor native Linux AIO nor threaded AIO implementation are "
                "supported on this system. Fallback to pure Python "
                "implementation."
            )
            return python_aio_asyncio.AsyncioContext()

    async def test_storage(self):
        path = self._root / self.TEST_FILE

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with async_open(path, "wb", context=self._context) as fp:
                await fp.write(b" ")
        except SystemError as e:
            if "not supported" not in str(e):
                raise

            self._context = self._get_supported_context(fallback_context=True)
            self._log.warning(
                f"Linux AIO check failed for path {self._root}. Falling back to"
                " non-AIO IO implementation."
            )
        except OSError as ex:
            raise StoreException(f"Storage {self._root} is not writable: {ex}") from ex
        finally:
            path.unlink(missing_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, path: str) -> Path:
        return self._root / normalize_path(path)

    def exists(self, path: str) -> bool:
        return self.path_for(path).exists()

    def read(self, path: str) -> bytes:
        try:
            return self.path_for(path).read_bytes()
        except OSError as ex:
            raise StoreException(f"Unable to read {path}: {ex}") from ex

    async def write(self, path: str, data: bytes):
        target = self.path_for(path)
        tmp = target.with_name(f"{target.name}{self.TMP_SUFFIX}")

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            async with async_open(tmp, "wb", context=self._context) as fp:
                await fp.write(data)

            os.replace(tmp, target)
        except OSError as ex:
            tmp.unlink(missing_ok=True)
            raise StoreException(f"Unable to write {path}: {ex}") from ex

    def move(self, source: str, target: str):
        try:
            os.replace(self.path_for(source), self.path_for(target))
        except OSError as ex:
            raise StoreException(f"Unable to move {source} to {target}: {ex}") from ex

    def remove(self, path: str):
        try:
            self.path_for(path).unlink(missing_ok=True)
        except OSError as ex:
            raise StoreException(f"Unable to remove {path}: {ex}") from ex

    def hash_of_stored_file(self, path: str) -> str:
        sha256 = hashlib.sha256()

        try:
            with open(self.path_for(path), "rb") as fp:
                while chunk := fp.read(1024 * 1024):
                    sha256.update(chunk)
        except OSError as ex:
            raise StoreException(f"Unable to hash {path}: {ex}") from ex

        return sha256.hexdigest()
