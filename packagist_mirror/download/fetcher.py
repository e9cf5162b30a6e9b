# SPDX-License-Identifer: GPL-3.0-or-later

from dataclasses import dataclass, field
from urllib import parse

import httpx
from aiolimiter import AsyncLimiter

from ..logs import LoggerFactory
from .outcome import FetchResponse
from .url import URL


@dataclass
class Proxy:
    use_proxy: bool = False
    http_proxy: str | None = None
    https_proxy: str | None = None
    username: str | None = None
    password: str | None = None

    def url_for(self, scheme: str) -> str | None:
        if not self.use_proxy:
            return None

        match scheme:
            case "http":
                proxy = self.http_proxy
            case "https":
                proxy = self.https_proxy or self.http_proxy
            case _:
                proxy = None

        if not proxy:
            return None

        if "://" not in proxy:
            proxy = f"http://{proxy}"

        url = parse.urlparse(proxy)
        if self.username:
            auth = parse.quote(self.username, safe="")
            if self.password:
                auth = f"{auth}:{parse.quote(self.password, safe='')}"

            url = url._replace(netloc=f"{auth}@{url.netloc}")

        return parse.urlunparse(url)


@dataclass
class FetchSettings:
    url: URL
    user_agent: str
    proxy: Proxy = field(default_factory=Proxy)
    http2_disable: bool = False
    rate_limiter: AsyncLimiter | None = None
    verify_ca_certificate: bool | str = True
    client_certificate: str | None = None
    client_private_key: str | None = None
    transport: httpx.AsyncBaseTransport | None = None


@dataclass
class PendingFetch:
    """A request that is only sent once the pool awaits `execute()`"""

    uri: str
    source: "HTTPFetchSource"

    @property
    def host(self) -> str:
        return URL.from_string(self.uri).get_origin()

    async def execute(self) -> FetchResponse:
        return await self.source.fetch(self.uri)


class HTTPFetchSource:
    BUFFER_SIZE = 1024 * 1024

    def __init__(self, *, settings: FetchSettings):
        self._log = LoggerFactory.get_logger(self)
        self._settings = settings
        self._primary = settings.url

        auth = None
        if settings.url.username and settings.url.password:
            auth = (settings.url.username, settings.url.password)

        client_params = {}
        if settings.transport:
            client_params["transport"] = settings.transport
        else:
            client_params["mounts"] = self._mounts()

        self._httpx = httpx.AsyncClient(
            auth=auth,
            timeout=httpx.Timeout(
                15,
                connect=30,
                read=60,
            ),
            follow_redirects=True,
            max_redirects=5,
            headers={
                "Accept-Encoding": "gzip",
                "User-Agent": settings.user_agent,
            },
            **client_params,
        )

    def _mounts(self) -> dict[str, httpx.AsyncHTTPTransport]:
        http_limits = httpx.Limits(
            max_connections=256,
            max_keepalive_connections=32,
            keepalive_expiry=5,
        )

        client_certificate = None
        if self._settings.client_certificate:
            if self._settings.client_private_key:
                client_certificate = (
                    self._settings.client_certificate,
                    self._settings.client_private_key,
                )
            else:
                client_certificate = self._settings.client_certificate

        transport_params = {
            "verify": self._settings.verify_ca_certificate,
            "http1": True,
            "http2": not self._settings.http2_disable,
            "limits": http_limits,
            "retries": 3,
        }

        if client_certificate:
            transport_params["cert"] = client_certificate

        mounts: dict[str, httpx.AsyncHTTPTransport] = {}
        for scheme in ("http", "https"):
            scheme_params = transport_params.copy()
            proxy = self._settings.proxy.url_for(scheme)
            if proxy:
                scheme_params["proxy"] = httpx.Proxy(proxy)

            mounts[f"{scheme}://"] = httpx.AsyncHTTPTransport(**scheme_params)

        return mounts

    def current_primary_base_uri(self) -> str:
        return str(self._primary)

    def primary_uri(self, path: str) -> str:
        return self._primary.for_path(path)

    def request(self, uri: str) -> PendingFetch:
        if "://" not in uri:
            uri = self.primary_uri(uri)

        return PendingFetch(uri=uri, source=self)

    async def fetch(self, uri: str) -> FetchResponse:
        rate_limiter = self._settings.rate_limiter

        try:
            async with self._httpx.stream("GET", uri) as response:
                if response.is_error:
                    return FetchResponse(
                        uri=uri,
                        status=response.status_code,
                        error=f"HTTP/{response.status_code}",
                    )

                body = bytearray()
                async for chunk in response.aiter_bytes(chunk_size=self.BUFFER_SIZE):
                    if rate_limiter:
                        await rate_limiter.acquire(
                            min(len(chunk), rate_limiter.max_rate)
                        )

                    body.extend(chunk)

                return FetchResponse(
                    uri=uri, body=bytes(body), status=response.status_code
                )
        except (httpx.HTTPError, httpx.InvalidURL) as ex:
            self._log.debug(f"Transport error for {uri}: {ex!r}")
            return FetchResponse(
                uri=uri,
                error=f"{ex.__class__.__qualname__}: {str(ex)}",
            )

    async def aclose(self):
        await self._httpx.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()
