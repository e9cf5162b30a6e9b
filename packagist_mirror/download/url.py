# SPDX-License-Identifer: GPL-3.0-or-later

from dataclasses import dataclass
from urllib import parse


@dataclass
class URL:
    scheme: str
    netloc: str
    path: str
    query: str
    username: str | None
    password: str | None

    @classmethod
    def from_string(cls, url_string: str):
        url = parse.urlparse(url_string.strip())
        return cls(
            scheme=url.scheme,
            netloc=url.netloc,
            path=url.path.rstrip("/"),
            query=url.query,
            username=url.username,
            password=url.password,
        )

    def get_host(self):
        _, _, host = self.netloc.rpartition("@")
        return host

    def get_origin(self) -> str:
        """`scheme://host[:port]` identity of the server behind this URL"""
        return f"{self.scheme}://{self.get_host()}"

    def without_auth(self):
        return parse.urlunparse(
            (self.scheme, self.get_host(), self.path, "", self.query, "")
        )

    def for_path(self, path: str) -> str:
        return parse.urlunparse(
            (
                self.scheme,
                self.get_host(),
                f"{self.path}/{path.lstrip('/')}",
                "",
                "",
                "",
            )
        )

    def __str__(self) -> str:
        return self.without_auth()

    def __hash__(self) -> int:
        return hash(self.without_auth())

    def __eq__(self, __value: object) -> bool:
        if not isinstance(__value, URL):
            return False

        return self.without_auth() == __value.without_auth()
