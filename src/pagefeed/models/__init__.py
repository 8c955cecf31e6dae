from __future__ import annotations

from pagefeed.models.cache import CacheEntry, CacheLookup, CacheStatus
from pagefeed.models.feed import FeedRequest, FetchResult, GenerationResult, ModelCandidate

__all__ = [
    # cache
    "CacheEntry",
    "CacheLookup",
    "CacheStatus",
    # feed
    "FeedRequest",
    "FetchResult",
    "GenerationResult",
    "ModelCandidate",
]
