from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient

from healthlens.config import Settings
from healthlens.services.analysis_cache import MemoryAnalysisCache
from healthlens.services.gateway import AnalysisGateway


def make_response(
    text: str | None = None,
    *,
    chunks: list | None = None,
    image: bytes | None = None,
    image_mime: str = "image/png",
) -> SimpleNamespace:
    """Shape-compatible stand-in for google.genai GenerateContentResponse."""
    parts = []
    if text is not None:
        parts.append(SimpleNamespace(text=text, inline_data=None))
    if image is not None:
        parts.append(SimpleNamespace(text=None, inline_data=SimpleNamespace(data=image, mime_type=image_mime)))
    candidate = SimpleNamespace(
        content=SimpleNamespace(parts=parts),
        grounding_metadata=SimpleNamespace(grounding_chunks=chunks or []),
    )
    return SimpleNamespace(text=text, candidates=[candidate])


def json_response(payload: Any, fenced: bool = False) -> SimpleNamespace:
    body = json.dumps(payload)
    return make_response(f"```json\n{body}\n```" if fenced else body)


class FakeGenAI:
    """
    Async client double: client.aio.models.generate_content(...).
    Answers come from `handler(call)` when set, else from the queue in order.
    Exceptions in the queue (or returned by the handler) are raised.
    """

    def __init__(self):
        self.calls: list[SimpleNamespace] = []
        self.queue: list[Any] = []
        self.handler: Callable[[SimpleNamespace], Any] | None = None
        self.aio = SimpleNamespace(models=self)

    def push(self, *items: Any) -> "FakeGenAI":
        self.queue.extend(items)
        return self

    async def generate_content(self, *, model, contents, config=None):
        call = SimpleNamespace(model=model, contents=contents, config=config)
        self.calls.append(call)
        item = self.handler(call) if self.handler is not None else self.queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RateLimited(Exception):
    def __init__(self, message: str = "429 RESOURCE_EXHAUSTED. Quota exceeded."):
        super().__init__(message)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        gemini_api_key="",
        vertex_project_id="",
        cache_backend="memory",
        ai_retry_max_attempts=3,
        ai_retry_initial_delay_ms=1000,
    )


@pytest.fixture
def fake_genai() -> FakeGenAI:
    return FakeGenAI()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def gateway(fake_genai, settings, clock, sleeps) -> AnalysisGateway:
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return AnalysisGateway(fake_genai, MemoryAnalysisCache(clock), settings, sleep=fake_sleep)


@pytest.fixture
def api_client(gateway):
    from healthlens.main import app
    from healthlens.routers.analysis import get_gateway

    app.dependency_overrides[get_gateway] = lambda: gateway
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()
