from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict

V = TypeVar("V")


class CacheEntry(BaseModel):
    """One stored value. Replaced whole on every write, never mutated."""

    model_config = ConfigDict(frozen=True)

    key: str
    value: str  # JSON-serialized payload model
    tags: frozenset[str] = frozenset()
    fetched_at: datetime
    expires_at: datetime

    @property
    def expired(self) -> bool:
        return datetime.now(UTC) >= self.expires_at


class CacheStatus(StrEnum):
    HIT = "HIT"
    MISS = "MISS"
    COALESCED = "COALESCED"  # Joined another request's in-flight computation


@dataclass(frozen=True)
class CacheLookup(Generic[V]):
    value: V
    status: CacheStatus
