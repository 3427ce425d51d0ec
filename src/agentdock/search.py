from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .config import RegistryConfig
from .errors import NetworkError, NotFoundError, ValidationError
from .fetcher import ComponentFetcher

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 20


@dataclass(frozen=True)
class SearchHit:
    registry: str
    name: str
    type: str
    description: str

    @property
    def qualified_name(self) -> str:
        return f"{self.registry}/{self.name}"

    def to_json(self) -> dict[str, Any]:
        return {
            "name": self.qualified_name,
            "type": self.type,
            "description": self.description,
            "registry": self.registry,
        }


def _rank(hit: SearchHit, query: str) -> int | None:
    name = hit.name.lower()
    if name == query:
        return 0
    if name.startswith(query):
        return 1
    if query in name:
        return 2
    if query in hit.description.lower():
        return 3
    return None


def search_registries(
    registries: dict[str, RegistryConfig],
    fetcher: ComponentFetcher,
    query: str | None = None,
    *,
    limit: int = DEFAULT_SEARCH_LIMIT,
) -> list[SearchHit]:
    """
    Collect components from every registry index, optionally filtered by ``query``.

    A registry that cannot be reached or serves a broken index is skipped with
    a warning so one bad registry does not hide the others. Matches on the
    name rank above matches on the description.
    """
    hits: list[SearchHit] = []
    for namespace, registry in registries.items():
        try:
            index = fetcher.fetch_registry_index(registry.url, headers=registry.headers or None)
        except (NetworkError, NotFoundError, ValidationError) as e:
            logger.warning("Skipping registry %s (%s): %s", namespace, registry.url, e)
            continue
        logger.debug("registry %s lists %d components", namespace, len(index.components))
        hits.extend(SearchHit(namespace, c.name, c.type, c.description) for c in index.components)

    if query:
        q = query.strip().lower()
        ranked = [(rank, hit) for hit in hits if (rank := _rank(hit, q)) is not None]
        ranked.sort(key=lambda pair: pair[0])
        hits = [hit for _, hit in ranked]
    return hits[: max(limit, 0)]
