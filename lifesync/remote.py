"""
HTTP client for the hosted items/categories API.

The remote backend is the shared source of truth the sync engine
reconciles against. It speaks JSON over a small REST surface:

    GET   /items            -> list of items
    GET   /categories       -> list of categories
    POST  /items            -> created item
    PATCH /items/{id}       -> updated item
    POST  /categories       -> created category

List endpoints may return a bare JSON array or an object wrapping it under
``data`` (or the collection name).
"""

from __future__ import annotations

import logging
import time
from urllib.parse import quote, urlparse

import httpx

from .errors import RemoteError, RemoteRequestError, RemoteUnavailableError

logger = logging.getLogger(__name__)

# Retry config for reads
MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 1.0  # seconds
MAX_RETRY_AFTER = 60.0

DEFAULT_TIMEOUT = 30.0


def _require_https(api_url: str) -> None:
    # Bearer token would be sent in cleartext
    if api_url.startswith("https://"):
        return
    host = urlparse(api_url).hostname or ""
    if host not in ("localhost", "127.0.0.1", "::1"):
        raise ValueError(
            f"Remote API URL must use HTTPS (got {api_url}). "
            "Use HTTPS to protect API credentials, or use localhost for local development."
        )


class HttpRemoteRepository:
    """RemoteRepository over the hosted JSON API."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._api_url = api_url.rstrip("/")
        _require_https(self._api_url)

        headers: dict[str, str] = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        self._client = httpx.Client(
            base_url=self._api_url,
            headers=headers,
            timeout=timeout,
        )

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Single request with error mapping, no retries."""
        try:
            resp = self._client.request(method, path, **kwargs)
            resp.raise_for_status()
            return resp
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status >= 500:
                raise RemoteUnavailableError(
                    f"{method} {path} failed: {status}"
                ) from e
            raise RemoteRequestError(
                f"{method} {path} rejected: {status} {e.response.text}",
                status_code=status,
            ) from e
        except httpx.HTTPError as e:
            # Timeouts, transport, decoding and redirect failures
            raise RemoteUnavailableError(f"{method} {path} failed: {e}") from e

    def _get_with_retry(self, path: str) -> httpx.Response:
        """GET with exponential backoff on transient errors (5xx, timeouts,
        connection errors) and Retry-After on 429.
        """
        last_error: Exception | None = None
        for attempt in range(MAX_RETRIES):
            try:
                resp = self._client.get(path)
                if resp.status_code == 429:
                    retry_after = min(float(resp.headers.get("Retry-After", "5")), MAX_RETRY_AFTER)
                    logger.info("Rate limited, retrying after %.1fs", retry_after)
                    last_error = RemoteUnavailableError(f"GET {path} rate limited")
                    time.sleep(retry_after)
                    continue
                resp.raise_for_status()
                return resp
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status < 500:
                    raise RemoteRequestError(
                        f"GET {path} rejected: {status} {e.response.text}",
                        status_code=status,
                    ) from e
                last_error = e
            except httpx.HTTPError as e:
                last_error = e

            if attempt < MAX_RETRIES - 1:
                delay = RETRY_BACKOFF_BASE * (2 ** attempt)
                logger.info(
                    "GET %s attempt %d failed, retrying in %.1fs: %s",
                    path, attempt + 1, delay, last_error,
                )
                time.sleep(delay)

        raise RemoteUnavailableError(
            f"GET {path} failed after {MAX_RETRIES} attempts: {last_error}"
        ) from last_error

    def _json(self, resp: httpx.Response):
        try:
            return resp.json()
        except ValueError as e:
            raise RemoteError(f"Invalid JSON from {resp.request.url}: {e}") from e

    def _list(self, path: str, collection: str) -> list[dict]:
        data = self._json(self._get_with_retry(path))
        if isinstance(data, dict):
            data = data.get("data", data.get(collection))
        if not isinstance(data, list):
            raise RemoteError(f"GET {path} did not return a list")
        return [r for r in data if isinstance(r, dict)]

    def _record(self, resp: httpx.Response) -> dict:
        if not resp.content:
            return {}
        data = self._json(resp)
        if isinstance(data, list):
            data = data[0] if data else {}
        return data if isinstance(data, dict) else {}

    # -------------------------------------------------------------------------
    # RemoteRepository
    # -------------------------------------------------------------------------

    def list_items(self) -> list[dict]:
        return self._list("/items", "items")

    def list_categories(self) -> list[dict]:
        return self._list("/categories", "categories")

    def create_item(self, data: dict) -> dict:
        return self._record(self._request("POST", "/items", json=data))

    def update_item(self, id: str, patch: dict) -> dict:
        return self._record(
            self._request("PATCH", f"/items/{quote(str(id), safe='')}", json=patch)
        )

    def create_category(self, data: dict) -> dict:
        return self._record(self._request("POST", "/categories", json=data))

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()
