# SPDX-License-Identifer: GPL-3.0-or-later

from .fetcher import FetchSettings, HTTPFetchSource, PendingFetch, Proxy
from .outcome import FetchFailure, FetchResponse, PoolOutcome
from .pool import DownloadPool
from .url import URL

__all__ = [
    "DownloadPool",
    "FetchFailure",
    "FetchResponse",
    "FetchSettings",
    "HTTPFetchSource",
    "PendingFetch",
    "PoolOutcome",
    "Proxy",
    "URL",
]
