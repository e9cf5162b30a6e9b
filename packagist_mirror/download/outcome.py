# SPDX-License-Identifer: GPL-3.0-or-later

from dataclasses import dataclass, field


@dataclass
class FetchResponse:
    uri: str
    body: bytes | None = None
    status: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.body is not None and not self.error


@dataclass(frozen=True)
class FetchFailure:
    key: str
    uri: str
    host: str
    status: int | None
    message: str

    def describe(self) -> str:
        if self.status:
            return f"{self.key} failed from {self.host} with HTTP error {self.status}"

        return f"{self.key} failed from {self.host}: {self.message}"


@dataclass
class PoolOutcome:
    """Terminal outcome of every key submitted to one pooled phase"""

    succeeded: list[str] = field(default_factory=list)
    failures: dict[str, FetchFailure] = field(default_factory=dict)
    fetched_size: int = 0

    @property
    def submitted_count(self) -> int:
        return len(self.succeeded) + len(self.failures)

    def has_failures(self) -> bool:
        return bool(self.failures)
