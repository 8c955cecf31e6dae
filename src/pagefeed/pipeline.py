"""Request-scoped orchestration: fetch, fingerprint, generate, sanitize."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from pagefeed.errors import InvalidUrlError, MissingParameterError
from pagefeed.fetcher import is_url_allowed
from pagefeed.fingerprint import fingerprint
from pagefeed.models.feed import FeedRequest
from pagefeed.sanitize import sanitize_xml

if TYPE_CHECKING:
    from pagefeed.fetcher import ContentCache
    from pagefeed.generator import GenerationCache
    from pagefeed.models.cache import CacheStatus

log = structlog.get_logger()


@dataclass(frozen=True)
class FeedResult:
    url: str
    xml: str
    model_used: str
    source: str
    fingerprint: str
    content_cache: CacheStatus
    generation_cache: CacheStatus


def validate_url(url: str) -> str:
    """Normalize and check a client-supplied URL.

    Raises ``MissingParameterError`` for a blank value and ``InvalidUrlError``
    for anything that is not a public http(s) URL.
    """
    if not url or not url.strip():
        raise MissingParameterError("url parameter is required")
    try:
        url = FeedRequest(url=url).url
    except ValidationError as exc:
        reason = exc.errors()[0]["msg"].removeprefix("Value error, ")
        raise InvalidUrlError(reason, url=url) from exc
    if not is_url_allowed(url):
        raise InvalidUrlError("url must point to a public host", url=url)
    return url


class FeedService:
    def __init__(self, content_cache: ContentCache, generation_cache: GenerationCache) -> None:
        self._content = content_cache
        self._generation = generation_cache

    async def build(self, url: str) -> FeedResult:
        """Run the pipeline for one request.

        Stages run strictly in order; each awaits its predecessor. Raises
        ``InvalidUrlError``, ``ExtractionError`` or ``GenerationError``.
        """
        url = validate_url(url)

        fetched = await self._content.get_or_fetch(url)
        digest = fingerprint(url, fetched.value.content)
        generated = await self._generation.get_or_generate(digest, url, fetched.value.content)
        xml = sanitize_xml(generated.value.xml)

        log.info(
            "feed_built",
            url=url,
            model=generated.value.model_used,
            content_cache=fetched.status.value,
            generation_cache=generated.status.value,
            fingerprint=digest[:16],
        )
        return FeedResult(
            url=url,
            xml=xml,
            model_used=generated.value.model_used,
            source=fetched.value.source,
            fingerprint=digest,
            content_cache=fetched.status,
            generation_cache=generated.status,
        )

    async def invalidate(self, url: str) -> int:
        """Drop cached content and every generated feed for ``url``."""
        url = validate_url(url)
        await self._content.invalidate(url)
        return await self._generation.evict_url(url)
