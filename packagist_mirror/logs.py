# SPDX-License-Identifer: GPL-3.0-or-later

import logging
import os
import sys
from pathlib import PurePath
from typing import Any


class LoggerFactory:
    DEFAULT_LOGLEVEL = getattr(
        logging,
        os.getenv("PACKAGIST_MIRROR_LOGLEVEL", "info").upper(),
    )
    DEFAULT_FORMAT = (
        "%(asctime)s: [%(process)d] %(levelname)s %(name_abbr)s %(message)s"
    )
    FILE_HANDLER: logging.FileHandler | None = None
    FILE_MODE = "w"

    @staticmethod
    def init_logging():
        logging.basicConfig(
            format=LoggerFactory.DEFAULT_FORMAT,
            level=LoggerFactory.DEFAULT_LOGLEVEL,
            stream=sys.stderr,
        )
        logging.getLogger().handlers[0].addFilter(NameAbbrFilter())

        if LoggerFactory.DEFAULT_LOGLEVEL != logging.DEBUG:
            for name in ("httpx", "httpcore", "hpack"):
                logging.getLogger(name).setLevel(logging.WARNING)

        logging.debug("Logging started")

    @staticmethod
    def enable_append_logs():
        LoggerFactory.FILE_MODE = "a"

    @staticmethod
    def get_logger(obj: Any) -> logging.Logger:
        log_name = (
            ".".join((obj.__class__.__module__, obj.__class__.__qualname__))
            if not isinstance(obj, str)
            else obj
        )

        log = logging.getLogger(log_name)
        log.level = LoggerFactory.DEFAULT_LOGLEVEL

        return log

    @staticmethod
    def set_log_file(file: PurePath):
        """Copy every record that reaches the root logger into `file`.

        Only one log file is kept; calling this again replaces the previous
        handler.
        """
        root = logging.getLogger()

        if LoggerFactory.FILE_HANDLER:
            root.removeHandler(LoggerFactory.FILE_HANDLER)
            LoggerFactory.FILE_HANDLER.close()

        file_handler = logging.FileHandler(
            file,
            mode=LoggerFactory.FILE_MODE,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(LoggerFactory.DEFAULT_FORMAT))
        file_handler.addFilter(NameAbbrFilter())
        root.addHandler(file_handler)

        LoggerFactory.FILE_HANDLER = file_handler


class NameAbbrFilter(logging.Filter):
    def filter(self, record: logging.LogRecord):
        modules = record.name.split(".")
        record.name_abbr = ".".join(
            ["_".join(p[:1] for p in m.split("_")) for m in modules[:-1]]
            + [modules[-1]]
        )

        return True


LoggerFactory.init_logging()
