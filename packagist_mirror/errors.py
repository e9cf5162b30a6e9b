# SPDX-License-Identifer: GPL-3.0-or-later


class MirrorException(Exception):
    pass


class ConfigException(MirrorException):
    pass


class InvalidPathException(MirrorException, ValueError):
    def __init__(self, path: str, *args: object) -> None:
        super().__init__(f"Invalid resource path: `{path}`", *args)
        self.path = path


class InvalidDocumentException(MirrorException, ValueError):
    pass


class IndexLoadException(MirrorException):
    pass


class StoreException(MirrorException):
    pass
