from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Protocol, TypeVar
from urllib.parse import quote

from .client import RegistryClient
from .errors import NotFoundError, ValidationError
from .manifest import (
    ComponentManifest,
    RegistryIndex,
    parse_component_manifest,
    parse_packument,
    parse_registry_index,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class FetchedComponent:
    manifest: ComponentManifest
    version: str


class ComponentFetcher(Protocol):
    def fetch_component(
        self,
        base_url: str,
        name: str,
        version: str | None = None,
        *,
        headers: dict[str, str] | None = None,
    ) -> FetchedComponent:
        ...

    def fetch_file_content(
        self,
        base_url: str,
        name: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
    ) -> bytes:
        ...

    def fetch_registry_index(self, base_url: str, *, headers: dict[str, str] | None = None) -> RegistryIndex:
        ...


class FetchCache:
    """
    In-flight request cache owned by one invocation.

    The first caller for a key performs the fetch; concurrent callers for the
    same key block on the same future. A failed fetch is evicted so a retry
    within the same invocation gets a fresh attempt.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, Future] = {}

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_or_fetch(self, key: str, fetch: Callable[[], T]) -> T:
        with self._lock:
            fut = self._entries.get(key)
            owner = fut is None
            if fut is None:
                fut = Future()
                self._entries[key] = fut

        if not owner:
            return fut.result()

        try:
            value = fetch()
        except BaseException as e:
            with self._lock:
                if self._entries.get(key) is fut:
                    del self._entries[key]
            fut.set_exception(e)
            raise
        fut.set_result(value)
        return value


def _base(url: str) -> str:
    return url.rstrip("/")


def component_url(base_url: str, name: str) -> str:
    return f"{_base(base_url)}/components/{quote(name, safe='')}.json"


def file_url(base_url: str, name: str, path: str) -> str:
    return f"{_base(base_url)}/components/{quote(name, safe='')}/{quote(path, safe='/')}"


def index_url(base_url: str) -> str:
    return f"{_base(base_url)}/index.json"


class RegistryFetcher:
    def __init__(self, client: RegistryClient, cache: FetchCache | None = None) -> None:
        self._client = client
        self.cache = cache if cache is not None else FetchCache()

    def _get_json(self, url: str, headers: dict[str, str] | None) -> Any:
        logger.debug("GET %s", url)
        return self._client.get_json(url, headers=headers)

    def fetch_registry_index(self, base_url: str, *, headers: dict[str, str] | None = None) -> RegistryIndex:
        url = index_url(base_url)
        return self.cache.get_or_fetch(url, lambda: parse_registry_index(self._get_json(url, headers), url=url))

    def fetch_component(
        self,
        base_url: str,
        name: str,
        version: str | None = None,
        *,
        headers: dict[str, str] | None = None,
    ) -> FetchedComponent:
        url = component_url(base_url, name)

        def _fetch() -> FetchedComponent:
            packument = parse_packument(self._get_json(url, headers), name=name)
            resolved = version or packument.latest
            raw = packument.versions.get(resolved)
            if raw is None:
                if version:
                    available = ", ".join(packument.versions) or "<none>"
                    raise NotFoundError(f'Component "{name}" has no version "{version}". Available: {available}')
                raise ValidationError(f'Component "{name}" has no manifest for latest version {resolved}')
            manifest = parse_component_manifest(raw, ctx=f"component {name!r}@{resolved}")
            return FetchedComponent(manifest=manifest, version=resolved)

        return self.cache.get_or_fetch(f"{url}#v={version or 'latest'}", _fetch)

    def fetch_file_content(
        self,
        base_url: str,
        name: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
    ) -> bytes:
        url = file_url(base_url, name, path)

        def _fetch() -> bytes:
            logger.debug("GET %s", url)
            return self._client.get_bytes(url, headers=headers)

        return self.cache.get_or_fetch(url, _fetch)
