from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from conftest import FakeClock
from healthlens.database import Base
from healthlens.models import AnalysisCacheEntry
from healthlens.services.analysis_cache import (
    MemoryAnalysisCache,
    NullAnalysisCache,
    RedisAnalysisCache,
    SqlAnalysisCache,
    build_analysis_cache,
    cache_key,
)


# ---------- Keys ----------


def test_cache_key_ignores_differences_beyond_fourth_decimal():
    assert cache_key("loc:v5", 12.97161, 77.59462, "English") == cache_key("loc:v5", 12.97163, 77.59459, "English")


def test_cache_key_distinguishes_language_and_coordinates():
    base = cache_key("loc:v5", 12.9716, 77.5946, "English")
    assert base != cache_key("loc:v5", 12.9716, 77.5946, "Hindi")
    assert base != cache_key("loc:v5", 12.9726, 77.5946, "English")
    assert base != cache_key("loc:v6", 12.9716, 77.5946, "English")


def test_cache_key_format_and_normalization():
    assert cache_key("loc:v5", 12.97164, 77.5946, "en-US") == "loc:v5:12.9716:77.5946:en-us"
    assert cache_key("geocode:v2", "  New   Delhi ") == cache_key("geocode:v2", "new delhi")
    assert cache_key("x", -0.00001, 0) == cache_key("x", 0.0, 0.0)


def test_cache_key_separator_inside_a_part_does_not_collide():
    assert cache_key("city:v3", "a:b", "c", "English") != cache_key("city:v3", "a", "b:c", "English")
    assert cache_key("city:v3", "a:b", "c", "English") == "city:v3:a%3Ab:c:english"
    assert cache_key("city:v3", "Rio de Janeiro", "Brazil") == "city:v3:rio de janeiro:brazil"


# ---------- Memory ----------


def test_memory_cache_hit_then_expiry():
    clock = FakeClock()
    cache = MemoryAnalysisCache(clock)

    async def scenario():
        await cache.set("k", {"v": 1}, ttl_minutes=30)
        clock.advance(30 * 60)
        at_boundary = await cache.get("k")
        clock.advance(1)
        after = await cache.get("k")
        return at_boundary, after

    at_boundary, after = asyncio.run(scenario())
    assert at_boundary == {"v": 1}
    assert after is None
    assert len(cache) == 0


def test_memory_cache_returns_copies():
    cache = MemoryAnalysisCache(FakeClock())

    async def scenario():
        value = {"items": [1]}
        await cache.set("k", value, 5)
        value["items"].append(2)
        first = await cache.get("k")
        first["items"].append(3)
        return await cache.get("k")

    assert asyncio.run(scenario()) == {"items": [1]}


def test_memory_cache_new_value_replaces_old():
    cache = MemoryAnalysisCache(FakeClock())

    async def scenario():
        await cache.set("k", "old", 5)
        await cache.set("k", "new", 5)
        return await cache.get("k")

    assert asyncio.run(scenario()) == "new"


def test_null_cache_always_misses():
    cache = NullAnalysisCache()

    async def scenario():
        await cache.set("k", 1, 5)
        return await cache.get("k")

    assert asyncio.run(scenario()) is None


# ---------- Redis ----------


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.store: dict[str, str] = {}
        self.expiry: dict[str, int] = {}
        self.fail = fail

    async def get(self, key):
        if self.fail:
            raise ConnectionError("redis down")
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        if self.fail:
            raise ConnectionError("redis down")
        self.store[key] = value
        self.expiry[key] = ex

    async def ping(self):
        if self.fail:
            raise ConnectionError("redis down")
        return True


def test_redis_cache_round_trip_with_ttl():
    redis = FakeRedis()
    cache = RedisAnalysisCache(redis)

    async def scenario():
        await cache.set("loc:v5:1.0000:2.0000", {"name": "X"}, ttl_minutes=30)
        return await cache.get("loc:v5:1.0000:2.0000")

    assert asyncio.run(scenario()) == {"name": "X"}
    assert redis.expiry["healthlens:loc:v5:1.0000:2.0000"] == 1800
    assert json.loads(redis.store["healthlens:loc:v5:1.0000:2.0000"]) == {"name": "X"}


def test_redis_failures_degrade_to_misses():
    cache = RedisAnalysisCache(FakeRedis(fail=True))

    async def scenario():
        await cache.set("k", {"v": 1}, 5)
        return await cache.get("k")

    assert asyncio.run(scenario()) is None


# ---------- SQL ----------


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'cache.sqlite'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine, tables=[AnalysisCacheEntry.__table__])
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def test_sql_cache_round_trip_and_lazy_eviction(session_factory):
    now = {"t": datetime(2026, 1, 1, 12, 0, 0)}
    cache = SqlAnalysisCache(session_factory, clock=lambda: now["t"])

    async def scenario():
        await cache.set("k", [{"name": "A"}], ttl_minutes=60)
        hit = await cache.get("k")
        now["t"] += timedelta(minutes=61)
        miss = await cache.get("k")
        return hit, miss

    hit, miss = asyncio.run(scenario())
    assert hit == [{"name": "A"}]
    assert miss is None
    db = session_factory()
    try:
        assert db.get(AnalysisCacheEntry, "k") is None
    finally:
        db.close()


def test_sql_cache_overwrites_existing_key(session_factory):
    cache = SqlAnalysisCache(session_factory)

    async def scenario():
        await cache.set("k", {"v": 1}, 5)
        await cache.set("k", {"v": 2}, 5)
        return await cache.get("k")

    assert asyncio.run(scenario()) == {"v": 2}


def test_sql_cache_errors_are_swallowed():
    def broken_session():
        raise RuntimeError("database is locked")

    cache = SqlAnalysisCache(broken_session)

    async def scenario():
        await cache.set("k", {"v": 1}, 5)
        return await cache.get("k")

    assert asyncio.run(scenario()) is None


# ---------- Backend selection ----------


@pytest.mark.parametrize(
    "backend, expected",
    [("none", NullAnalysisCache), ("memory", MemoryAnalysisCache), ("bogus", MemoryAnalysisCache)],
)
def test_build_analysis_cache_selects_backend(settings, backend, expected):
    settings.cache_backend = backend
    assert isinstance(asyncio.run(build_analysis_cache(settings)), expected)


def test_build_analysis_cache_falls_back_without_redis_url(settings):
    settings.cache_backend = "redis"
    settings.redis_url = ""
    cache = asyncio.run(build_analysis_cache(settings))
    assert cache.backend == "memory"


def test_redis_status_reports_ping_result(monkeypatch):
    from healthlens.core import redis as redis_module

    monkeypatch.setattr(redis_module, "_redis_client", None)
    assert asyncio.run(redis_module.redis_status()) == {"redis": "unavailable"}

    monkeypatch.setattr(redis_module, "_redis_client", FakeRedis())
    assert asyncio.run(redis_module.redis_status()) == {"redis": "ok"}

    monkeypatch.setattr(redis_module, "_redis_client", FakeRedis(fail=True))
    status = asyncio.run(redis_module.redis_status())
    assert status["redis"] == "error"
    assert "redis down" in status["message"]
