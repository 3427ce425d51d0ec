from __future__ import annotations

from typing import Any

import httpx

from .config import DEFAULT_TIMEOUT_S
from .errors import NetworkError, NotFoundError, ValidationError


class RegistryClient:
    """
    Thin httpx wrapper used for every registry request.

    Status codes are mapped onto the error kinds callers branch on: 404 becomes
    NotFoundError, anything else >= 400 (and transport failures) NetworkError.
    """

    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        default_headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.timeout_s = timeout_s
        self._default_headers = dict(default_headers or {})
        self._http = httpx.Client(timeout=timeout_s, follow_redirects=True, transport=transport)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "RegistryClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def get(self, url: str, *, headers: dict[str, str] | None = None) -> httpx.Response:
        req_headers = dict(self._default_headers)
        if headers:
            req_headers.update(headers)

        try:
            resp = self._http.get(url, headers=req_headers)
        except httpx.HTTPError as e:
            raise NetworkError(f"Request failed for {url}: {e}") from e

        if resp.status_code == 404:
            raise NotFoundError(f"Not found: {url}")
        if resp.status_code >= 400:
            raise NetworkError(f"Failed to fetch {url}: HTTP {resp.status_code} {resp.reason_phrase}".rstrip())
        return resp

    def get_json(self, url: str, *, headers: dict[str, str] | None = None) -> Any:
        resp = self.get(url, headers=headers)
        try:
            return resp.json()
        except ValueError as e:
            raise ValidationError(f"Invalid JSON at {url}: {e}") from e

    def get_bytes(self, url: str, *, headers: dict[str, str] | None = None) -> bytes:
        return self.get(url, headers=headers).content
