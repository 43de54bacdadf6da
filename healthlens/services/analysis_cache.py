"""
Time-bounded cache for gateway results. Cache-Aside: the gateway reads first and writes
after a successful provider call.
Values are JSON-compatible snapshots (model_dump(mode="json")); the gateway re-validates
them on read. Backend errors are handled internally and never raised: a failing store
degrades to misses on read and no-ops on write.
Keys: {operation}:{version}:{normalized inputs}, coordinates rounded to 4 decimals,
string parts percent-encoded so a ":" inside one cannot shift the others.
"""
import asyncio
import copy
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote

from healthlens.config import Settings

logger = logging.getLogger(__name__)

COORD_PRECISION = 4


def _normalize_part(part: Any) -> str:
    if part is None:
        return ""
    if isinstance(part, bool):
        return "1" if part else "0"
    if isinstance(part, (int, float)):
        # + 0.0 folds -0.0 into 0.0 so both hemispheres' zero share a key
        return f"{round(float(part), COORD_PRECISION) + 0.0:.{COORD_PRECISION}f}"
    # ":" separates parts, so it is percent-encoded inside one
    return quote(" ".join(str(part).split()).lower(), safe=" ")


def cache_key(operation: str, *parts: Any) -> str:
    """
    Fingerprint for a gateway request. Numbers are treated as coordinates and rounded
    to 4 decimals; strings are whitespace-collapsed, lower-cased and percent-encoded.
    """
    return ":".join([operation, *(_normalize_part(p) for p in parts)])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AnalysisCache:
    """Interface: point lookups with per-entry TTL."""

    backend = "base"

    async def get(self, key: str) -> Any | None:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl_minutes: float) -> None:
        raise NotImplementedError


class NullAnalysisCache(AnalysisCache):
    """Caching disabled: every read misses."""

    backend = "none"

    async def get(self, key: str) -> Any | None:
        return None

    async def set(self, key: str, value: Any, ttl_minutes: float) -> None:
        return None


@dataclass
class CacheEntry:
    value: Any
    expires_at: float  # clock() seconds


class MemoryAnalysisCache(AnalysisCache):
    """Process-local cache. Expired entries are evicted lazily on read."""

    backend = "memory"

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            self._entries.pop(key, None)
            return None
        return copy.deepcopy(entry.value)

    async def set(self, key: str, value: Any, ttl_minutes: float) -> None:
        try:
            self._entries[key] = CacheEntry(
                value=copy.deepcopy(value),
                expires_at=self._clock() + ttl_minutes * 60,
            )
        except Exception as e:
            logger.warning("Memory cache set failed for %s: %s", key, e)


class RedisAnalysisCache(AnalysisCache):
    """
    Async Redis cache: SET key json EX ttl, GET key.
    All methods swallow Redis errors and log; caller gets None or no-op on failure.
    """

    backend = "redis"

    def __init__(self, redis_client: Any, prefix: str = "healthlens:"):
        self._redis = redis_client
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Any | None:
        if not self._redis:
            return None
        try:
            raw = await self._redis.get(self._key(key))
            if raw is None:
                return None
            s = raw.decode() if isinstance(raw, bytes) else raw
            return json.loads(s)
        except Exception as e:
            logger.warning("Redis cache get failed for %s: %s", key, e, exc_info=False)
            return None

    async def set(self, key: str, value: Any, ttl_minutes: float) -> None:
        if not self._redis:
            return
        try:
            ttl_seconds = max(1, int(ttl_minutes * 60))
            await self._redis.set(self._key(key), json.dumps(value), ex=ttl_seconds)
        except Exception as e:
            logger.warning("Redis cache set failed for %s: %s", key, e, exc_info=False)


class SqlAnalysisCache(AnalysisCache):
    """
    SQLAlchemy-backed cache (analysis_cache table). Blocking session work runs in the
    default executor. Expired rows are deleted when read.
    """

    backend = "sql"

    def __init__(self, session_factory: Callable[[], Any], clock: Callable[[], datetime] = _utcnow):
        self._session_factory = session_factory
        self._clock = clock

    def _read(self, key: str) -> str | None:
        from healthlens.models import AnalysisCacheEntry

        db = self._session_factory()
        try:
            row = db.get(AnalysisCacheEntry, key)
            if row is None:
                return None
            if self._clock() > row.expires_at:
                db.delete(row)
                db.commit()
                return None
            return row.payload
        finally:
            db.close()

    def _write(self, key: str, payload: str, ttl_minutes: float) -> None:
        from healthlens.models import AnalysisCacheEntry

        now = self._clock()
        db = self._session_factory()
        try:
            db.merge(
                AnalysisCacheEntry(
                    cache_key=key,
                    payload=payload,
                    expires_at=now + timedelta(minutes=ttl_minutes),
                    created_at=now,
                )
            )
            db.commit()
        finally:
            db.close()

    async def get(self, key: str) -> Any | None:
        loop = asyncio.get_event_loop()
        try:
            payload = await loop.run_in_executor(None, lambda: self._read(key))
            return json.loads(payload) if payload is not None else None
        except Exception as e:
            logger.warning("SQL cache get failed for %s: %s", key, e, exc_info=False)
            return None

    async def set(self, key: str, value: Any, ttl_minutes: float) -> None:
        loop = asyncio.get_event_loop()
        try:
            payload = json.dumps(value)
            await loop.run_in_executor(None, lambda: self._write(key, payload, ttl_minutes))
        except Exception as e:
            logger.warning("SQL cache set failed for %s: %s", key, e, exc_info=False)


async def build_analysis_cache(settings: Settings) -> AnalysisCache:
    """Pick the cache backend from settings.cache_backend."""
    backend = (settings.cache_backend or "memory").strip().lower()
    if backend == "none":
        return NullAnalysisCache()
    if backend == "redis":
        from healthlens.core.redis import get_redis_client

        client = await get_redis_client(settings.redis_url)
        if client is not None:
            return RedisAnalysisCache(client)
        logger.warning("cache_backend=redis but Redis is not reachable, using in-process cache")
        return MemoryAnalysisCache()
    if backend == "sql":
        from healthlens.database import Base, SessionLocal, engine
        from healthlens.models import AnalysisCacheEntry

        try:
            Base.metadata.create_all(bind=engine, tables=[AnalysisCacheEntry.__table__])
        except Exception as e:
            logger.warning("Could not ensure analysis_cache table (cache will miss): %s", e)
        return SqlAnalysisCache(SessionLocal)
    if backend != "memory":
        logger.warning("Unknown cache_backend %r, using in-process cache", backend)
    return MemoryAnalysisCache()
