# SPDX-License-Identifer: GPL-3.0-or-later

import json
from dataclasses import dataclass
from typing import Any

from .errors import InvalidDocumentException
from .storage import normalize_path


def _load_object(data: bytes, name: str) -> dict[str, Any]:
    try:
        document = json.loads(data)
    except (UnicodeDecodeError, ValueError) as ex:
        raise InvalidDocumentException(f"{name} is not valid JSON: {ex}") from ex

    if not isinstance(document, dict):
        raise InvalidDocumentException(f"{name} must be a JSON object")

    return document


def _hash_of(name: str, metadata: Any) -> str:
    if not isinstance(metadata, dict) or not isinstance(
        metadata.get("sha256"), str
    ):
        raise InvalidDocumentException(f"Missing sha256 hash for `{name}`")

    return metadata["sha256"]


@dataclass
class RootIndex:
    DEFAULT_PROVIDERS_URL = "/p/%package%$%hash%.json"

    data: dict[str, Any]

    @classmethod
    def from_bytes(cls, data: bytes) -> "RootIndex":
        return cls(_load_object(data, "Root index"))

    @property
    def provider_includes(self) -> dict[str, Any]:
        includes = self.data.get("provider-includes") or {}
        if not isinstance(includes, dict):
            raise InvalidDocumentException("`provider-includes` must be an object")

        return includes

    @property
    def providers_url(self) -> str:
        return self.data.get("providers-url") or self.DEFAULT_PROVIDERS_URL

    def serialize(self) -> bytes:
        return json.dumps(self.data, indent=4, ensure_ascii=False).encode("utf-8")


@dataclass
class ProviderDocument:
    data: dict[str, Any]

    @classmethod
    def from_bytes(cls, data: bytes) -> "ProviderDocument":
        return cls(_load_object(data, "Provider document"))

    @property
    def providers(self) -> dict[str, Any]:
        providers = self.data.get("providers") or {}
        if not isinstance(providers, dict):
            raise InvalidDocumentException("`providers` must be an object")

        return providers


@dataclass(frozen=True)
class ProviderResource:
    path: str
    uri: str


@dataclass(frozen=True)
class PackageResource:
    path: str
    uri: str
    provider: str


class WorkingSetBuilder:
    """Expands fetched documents into the resources they reference.

    Both expansions are pure: they neither fetch nor touch the store.
    """

    def __init__(self, providers_url: str = RootIndex.DEFAULT_PROVIDERS_URL) -> None:
        self._providers_url = providers_url

    def expand_providers(self, index: RootIndex) -> dict[str, ProviderResource]:
        providers: dict[str, ProviderResource] = {}

        for name, metadata in index.provider_includes.items():
            uri = name.replace("%hash%", _hash_of(name, metadata))
            path = normalize_path(uri)
            providers.setdefault(path, ProviderResource(path=path, uri=path))

        return providers

    def expand_packages(
        self, document: ProviderDocument, provider: str
    ) -> dict[str, PackageResource]:
        packages: dict[str, PackageResource] = {}

        for name, metadata in document.providers.items():
            uri = self._providers_url.replace("%package%", name)
            if "%hash%" in uri:
                uri = uri.replace("%hash%", _hash_of(name, metadata))

            path = normalize_path(uri)
            packages.setdefault(
                path, PackageResource(path=path, uri=path, provider=provider)
            )

        return packages
