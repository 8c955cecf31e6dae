"""Generic TTL cache with request coalescing, over a pluggable store.

Both pipeline caches (extracted page content, generated feeds) are
``TTLCache`` instances that differ only in namespace, payload model and TTL.

Stores catch their own infrastructure errors and degrade gracefully: read
failures return ``None`` (treated as a miss by callers), write failures are
logged and ignored (the computed value is still returned). A broken cache
costs an extra upstream call, never a failed request. Errors are logged with
``exc_info=True`` so they remain observable.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Generic, Protocol, TypeVar

import aiosqlite
import structlog
from pydantic import BaseModel, ValidationError

from pagefeed.models.cache import CacheEntry, CacheLookup, CacheStatus

if TYPE_CHECKING:
    from pagefeed.config import CacheSettings

log = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)

_CREATE_ENTRY_TABLE = """
CREATE TABLE IF NOT EXISTS cache_entries (
    namespace   TEXT NOT NULL,
    key         TEXT NOT NULL,
    value       TEXT NOT NULL,
    fetched_at  TEXT NOT NULL,
    expires_at  TEXT NOT NULL,
    PRIMARY KEY (namespace, key)
)
"""

_CREATE_TAG_TABLE = """
CREATE TABLE IF NOT EXISTS cache_tags (
    namespace   TEXT NOT NULL,
    key         TEXT NOT NULL,
    tag         TEXT NOT NULL,
    PRIMARY KEY (namespace, key, tag)
)
"""

_CREATE_ENTRY_INDEX = "CREATE INDEX IF NOT EXISTS idx_entry_expires ON cache_entries(expires_at)"
_CREATE_TAG_INDEX = "CREATE INDEX IF NOT EXISTS idx_tag ON cache_tags(namespace, tag)"


class CacheStore(Protocol):
    async def get(self, namespace: str, key: str) -> CacheEntry | None: ...

    async def set(self, namespace: str, entry: CacheEntry) -> None: ...

    async def delete(self, namespace: str, key: str) -> None: ...

    async def evict_tag(self, namespace: str, tag: str) -> int: ...

    async def cleanup_expired(self) -> int: ...


class MemoryStore:
    """Process-local store. Expired entries are dropped when read or swept."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], CacheEntry] = {}

    async def get(self, namespace: str, key: str) -> CacheEntry | None:
        entry = self._entries.get((namespace, key))
        if entry is not None and entry.expired:
            del self._entries[(namespace, key)]
            return None
        return entry

    async def set(self, namespace: str, entry: CacheEntry) -> None:
        self._entries[(namespace, entry.key)] = entry

    async def delete(self, namespace: str, key: str) -> None:
        self._entries.pop((namespace, key), None)

    async def evict_tag(self, namespace: str, tag: str) -> int:
        doomed = [k for k, e in self._entries.items() if k[0] == namespace and tag in e.tags]
        for k in doomed:
            del self._entries[k]
        return len(doomed)

    async def cleanup_expired(self) -> int:
        doomed = [k for k, e in self._entries.items() if e.expired]
        for k in doomed:
            del self._entries[k]
        return len(doomed)


class SqliteStore:
    """SQLite-backed store; entries survive restarts until their TTL runs out."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db
        # Held across every write transaction, including its rollback.
        self._write_lock = asyncio.Lock()

    async def init_db(self) -> None:
        """Create tables and set WAL mode. Called once at startup."""
        await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.execute(_CREATE_ENTRY_TABLE)
        await self._db.execute(_CREATE_TAG_TABLE)
        await self._db.execute(_CREATE_ENTRY_INDEX)
        await self._db.execute(_CREATE_TAG_INDEX)
        await self._db.commit()

    async def get(self, namespace: str, key: str) -> CacheEntry | None:
        """Read an entry. Returns ``None`` on miss or read failure."""
        try:
            cursor = await self._db.execute(
                "SELECT key, value, fetched_at, expires_at "
                "FROM cache_entries WHERE namespace = ? AND key = ?",
                (namespace, key),
            )
            row = await cursor.fetchone()
            if row is None:
                return None

            cursor = await self._db.execute(
                "SELECT tag FROM cache_tags WHERE namespace = ? AND key = ?",
                (namespace, key),
            )
            tags = frozenset(r[0] for r in await cursor.fetchall())

            return CacheEntry(
                key=row[0],
                value=row[1],
                tags=tags,
                fetched_at=datetime.fromisoformat(row[2]),
                expires_at=datetime.fromisoformat(row[3]),
            )
        except aiosqlite.Error:
            log.warning("cache_read_error", key=f"{namespace}:{key}", exc_info=True)
            return None

    async def set(self, namespace: str, entry: CacheEntry) -> None:
        """Replace an entry and its tags. Non-fatal on failure."""
        async with self._write_lock:
            try:
                await self._db.execute(
                    "INSERT OR REPLACE INTO cache_entries "
                    "(namespace, key, value, fetched_at, expires_at) VALUES (?, ?, ?, ?, ?)",
                    (
                        namespace,
                        entry.key,
                        entry.value,
                        entry.fetched_at.isoformat(),
                        entry.expires_at.isoformat(),
                    ),
                )
                await self._db.execute(
                    "DELETE FROM cache_tags WHERE namespace = ? AND key = ?", (namespace, entry.key)
                )
                await self._db.executemany(
                    "INSERT INTO cache_tags (namespace, key, tag) VALUES (?, ?, ?)",
                    [(namespace, entry.key, tag) for tag in sorted(entry.tags)],
                )
                await self._db.commit()
            except aiosqlite.Error:
                log.warning("cache_write_error", key=f"{namespace}:{entry.key}", exc_info=True)
                await self._rollback()

    async def delete(self, namespace: str, key: str) -> None:
        async with self._write_lock:
            try:
                await self._db.execute(
                    "DELETE FROM cache_entries WHERE namespace = ? AND key = ?", (namespace, key)
                )
                await self._db.execute(
                    "DELETE FROM cache_tags WHERE namespace = ? AND key = ?", (namespace, key)
                )
                await self._db.commit()
            except aiosqlite.Error:
                log.warning("cache_delete_error", key=f"{namespace}:{key}", exc_info=True)
                await self._rollback()

    async def evict_tag(self, namespace: str, tag: str) -> int:
        """Delete every entry carrying ``tag``. Returns the number evicted."""
        async with self._write_lock:
            try:
                cursor = await self._db.execute(
                    "DELETE FROM cache_entries WHERE namespace = ? AND key IN "
                    "(SELECT key FROM cache_tags WHERE namespace = ? AND tag = ?)",
                    (namespace, namespace, tag),
                )
                evicted = cursor.rowcount
                await self._db.execute(
                    "DELETE FROM cache_tags WHERE namespace = ? AND key NOT IN "
                    "(SELECT key FROM cache_entries WHERE namespace = ?)",
                    (namespace, namespace),
                )
                await self._db.commit()
                return evicted
            except aiosqlite.Error:
                log.warning("cache_evict_error", namespace=namespace, tag=tag, exc_info=True)
                await self._rollback()
                return 0

    async def cleanup_expired(self) -> int:
        """Delete expired entries. Non-fatal on failure."""
        async with self._write_lock:
            try:
                now = datetime.now(UTC).isoformat()
                cursor = await self._db.execute(
                    "DELETE FROM cache_entries WHERE expires_at <= ?", (now,)
                )
                deleted = cursor.rowcount
                await self._db.execute(
                    "DELETE FROM cache_tags WHERE NOT EXISTS (SELECT 1 FROM cache_entries e "
                    "WHERE e.namespace = cache_tags.namespace AND e.key = cache_tags.key)"
                )
                await self._db.commit()
                return deleted
            except aiosqlite.Error:
                log.warning("cache_cleanup_error", exc_info=True)
                await self._rollback()
                return 0

    async def _rollback(self) -> None:
        try:
            await self._db.rollback()
        except aiosqlite.Error:
            log.debug("cache_rollback_error", exc_info=True)


@asynccontextmanager
async def open_store(settings: CacheSettings) -> AsyncIterator[CacheStore]:
    """Open the configured store for the lifetime of the app."""
    if settings.backend == "memory":
        yield MemoryStore()
        return

    db_path = Path(settings.db_path).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(db_path) as db:
        store = SqliteStore(db)
        await store.init_db()
        yield store


async def run_periodic_cleanup(store: CacheStore, interval_seconds: float) -> None:
    """Sweep expired entries every ``interval_seconds`` until cancelled.

    Generation entries are keyed by content fingerprint, so once a page
    changes its old entries are never read again; only this sweep removes
    them while the process is running.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        removed = await store.cleanup_expired()
        log.info("cache_cleanup_complete", removed=removed, periodic=True)


class TTLCache(Generic[M]):
    """Key -> model cache with a fixed TTL and at most one computation per key.

    Concurrent misses on the same key share one in-flight task. Waiters are
    shielded, so a cancelled request never cancels work another request is
    waiting on. The in-flight map entry is dropped as soon as the task ends.
    """

    def __init__(
        self,
        store: CacheStore,
        namespace: str,
        model: type[M],
        ttl: timedelta,
    ) -> None:
        self._store = store
        self._namespace = namespace
        self._model = model
        self._ttl = ttl
        self._inflight: dict[str, asyncio.Task[tuple[M, CacheStatus]]] = {}

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def get(self, key: str) -> M | None:
        """Fresh cached value for ``key``, or ``None``."""
        entry = await self._store.get(self._namespace, key)
        if entry is None or entry.expired:
            return None
        try:
            return self._model.model_validate_json(entry.value)
        except ValidationError:
            log.warning("cache_decode_error", key=f"{self._namespace}:{key}", exc_info=True)
            return None

    async def set(self, key: str, value: M, tags: Iterable[str] = ()) -> None:
        now = datetime.now(UTC)
        entry = CacheEntry(
            key=key,
            value=value.model_dump_json(),
            tags=frozenset(tags),
            fetched_at=now,
            expires_at=now + self._ttl,
        )
        await self._store.set(self._namespace, entry)

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[M]],
        tags: Iterable[str] = (),
    ) -> CacheLookup[M]:
        value = await self.get(key)
        if value is not None:
            return CacheLookup(value, CacheStatus.HIT)

        task = self._inflight.get(key)
        if task is not None:
            value, _ = await asyncio.shield(task)
            return CacheLookup(value, CacheStatus.COALESCED)

        task = asyncio.ensure_future(self._load(key, compute, tuple(tags)))
        self._inflight[key] = task
        task.add_done_callback(partial(self._release, key))
        value, status = await asyncio.shield(task)
        return CacheLookup(value, status)

    async def delete(self, key: str) -> None:
        await self._store.delete(self._namespace, key)

    async def evict_tag(self, tag: str) -> int:
        evicted = await self._store.evict_tag(self._namespace, tag)
        log.info("cache_evicted", namespace=self._namespace, tag=tag, evicted=evicted)
        return evicted

    async def _load(
        self,
        key: str,
        compute: Callable[[], Awaitable[M]],
        tags: tuple[str, ...],
    ) -> tuple[M, CacheStatus]:
        # Another request may have stored the value between our miss and now.
        value = await self.get(key)
        if value is not None:
            return value, CacheStatus.HIT
        value = await compute()
        await self.set(key, value, tags)
        return value, CacheStatus.MISS

    def _release(self, key: str, task: asyncio.Task[tuple[M, CacheStatus]]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark the exception retrieved; waiters already re-raised it.
            task.exception()
