# SPDX-License-Identifer: GPL-3.0-or-later

from .logs import LoggerFactory


# Fred Cirera
# Sridhar Ratnakumar
# https://stackoverflow.com/a/1094933
def format_size(size: float, suffix: str = "B"):
    for unit in ("", "Ki", "Mi", "Gi"):
        if abs(size) < 1024.0:
            return f"{size:3.1f} {unit}{suffix}"

        size /= 1024.0

    return f"{size:.1f} Ti{suffix}"


class ProgressLogger:
    """Progress sink writing a log line every `STEP` percent of a phase"""

    STEP = 10

    def __init__(self) -> None:
        self._log = LoggerFactory.get_logger(self)
        self._total = 0
        self._current = 0
        self._last_step = 0

    @property
    def total(self) -> int:
        return self._total

    @property
    def current(self) -> int:
        return self._current

    def start(self, total: int):
        self._total = total
        self._current = 0
        self._last_step = 0

    def advance(self):
        self._current += 1

        if not self._total:
            return

        step = self._current * 100 // self._total // self.STEP
        if step > self._last_step:
            self._last_step = step
            self._log.info(
                f"Progress: {self._current}/{self._total}"
                f" ({step * self.STEP}%)"
            )

    def end(self):
        if self._current != self._total:
            self._log.debug(
                f"Progress ended at {self._current} of {self._total} items"
            )

    def report(self, message: str):
        self._log.info(message)
