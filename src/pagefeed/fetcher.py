"""Page content acquisition through the reader (extraction) service.

The reader turns an arbitrary page into markdown-like text. Boilerplate
selectors are sent with every request so that navigation, footers, share
widgets and the like never reach the content fingerprint; otherwise a
rotating "related posts" block would look like a changed page.
"""

from __future__ import annotations

import ipaddress
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import httpx
import structlog

from pagefeed import __version__
from pagefeed.cache import TTLCache
from pagefeed.errors import ExtractionError
from pagefeed.models.feed import FetchResult

if TYPE_CHECKING:
    from pagefeed.cache import CacheStore
    from pagefeed.config import ExtractorSettings
    from pagefeed.models.cache import CacheLookup

log = structlog.get_logger()

_BLOCKED_HOSTNAMES = frozenset({"localhost", "localhost.localdomain"})


def build_http_client(settings: ExtractorSettings | None = None) -> httpx.AsyncClient:
    """Shared outbound client. Per-request timeouts override the default."""
    timeout = settings.timeout_seconds if settings is not None else 30.0
    return httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(timeout),
        headers={"User-Agent": f"pagefeed/{__version__}"},
    )


def is_url_allowed(url: str) -> bool:
    """True when ``url`` is an http(s) URL that does not target a private host.

    Hostnames are not resolved; only IP literals and localhost names are
    rejected.
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return False

    host = parts.hostname.rstrip(".").lower()
    if host in _BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        return False
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        return True
    return not (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_reserved
        or addr.is_multicast
        or addr.is_unspecified
    )


class ContentFetcher:
    """Fetches page text from the reader service."""

    def __init__(self, client: httpx.AsyncClient, settings: ExtractorSettings) -> None:
        self._client = client
        self._settings = settings

    @property
    def source_tag(self) -> str:
        return self._settings.source_tag

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "text/markdown",
            "X-Remove-Selector": ", ".join(self._settings.remove_selectors),
        }
        if self._settings.api_key is not None:
            headers["Authorization"] = f"Bearer {self._settings.api_key.get_secret_value()}"
        return headers

    async def fetch(self, url: str) -> FetchResult:
        """Fetch ``url`` through the reader. Raises ``ExtractionError``."""
        reader_url = f"{self._settings.reader_url}/{url}"
        log.info("content_fetch_start", url=url)
        try:
            response = await self._client.get(
                reader_url,
                headers=self._headers(),
                timeout=self._settings.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise ExtractionError(
                f"Reader service timed out after {self._settings.timeout_seconds:g}s",
                recoverable=True,
                url=url,
            ) from exc
        except httpx.HTTPError as exc:
            raise ExtractionError(
                f"Reader service unreachable: {exc}",
                recoverable=True,
                url=url,
            ) from exc

        if not response.is_success:
            raise ExtractionError(
                f"Reader service returned HTTP {response.status_code}",
                recoverable=response.status_code >= 500 or response.status_code == 429,
                status=response.status_code,
                url=url,
            )

        content = response.text.strip()
        if not content:
            raise ExtractionError("Reader service returned no content", status=200, url=url)

        log.info("content_fetch_complete", url=url, chars=len(content))
        return FetchResult(
            url=url,
            content=content,
            fetched_at=datetime.now(UTC),
            source=self._settings.source_tag,
        )


class ContentCache:
    """Short-lived memo of reader output, keyed by URL."""

    namespace = "content"

    def __init__(self, fetcher: ContentFetcher, store: CacheStore, ttl: timedelta) -> None:
        self._fetcher = fetcher
        self._cache: TTLCache[FetchResult] = TTLCache(store, self.namespace, FetchResult, ttl)

    async def get_or_fetch(self, url: str) -> CacheLookup[FetchResult]:
        return await self._cache.get_or_compute(url, lambda: self._fetcher.fetch(url))

    async def invalidate(self, url: str) -> None:
        await self._cache.delete(url)
