"""Process-wide application state and its wiring."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from pagefeed.fetcher import ContentCache, ContentFetcher
from pagefeed.generator import FeedGenerator, GenerationCache
from pagefeed.pipeline import FeedService

if TYPE_CHECKING:
    import httpx

    from pagefeed.cache import CacheStore
    from pagefeed.completion import CompletionClient
    from pagefeed.config import Settings


@dataclass
class AppState:
    """Everything a request handler needs. Built once in the app lifespan."""

    settings: Settings
    service: FeedService


def build_state(
    settings: Settings,
    store: CacheStore,
    http_client: httpx.AsyncClient,
    completion_client: CompletionClient,
) -> AppState:
    fetcher = ContentFetcher(http_client, settings.extractor)
    content_cache = ContentCache(
        fetcher, store, timedelta(seconds=settings.cache.content_ttl_seconds)
    )
    generator = FeedGenerator(completion_client, settings.llm)
    generation_cache = GenerationCache(
        generator, store, timedelta(seconds=settings.cache.generation_ttl_seconds)
    )
    return AppState(
        settings=settings,
        service=FeedService(content_cache, generation_cache),
    )
