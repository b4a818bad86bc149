"""
Shared fixtures.

Settings are read at import time, so the environment is configured here
before anything from ``stravawesome`` is imported.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("STRAVA_CLIENT_ID", "test-client")
os.environ.setdefault("STRAVA_CLIENT_SECRET", "test-secret")
os.environ.setdefault("STRAVA_QUEUE_DELAY", "0")
os.environ.setdefault("POLAR_PRICE_ID", "price_test")

import httpx
import pytest

from stravawesome.database import Base, SessionLocal, engine


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StravaStub:
    """
    httpx MockTransport handler that routes by path. Tests register a
    response (or a callable taking the request) per path and inspect
    ``calls`` afterwards.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []

    def on(self, path: str, response):
        self.routes[path] = response
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404, json={"message": "Record Not Found"})
        if isinstance(handler, httpx.Response):
            # Fresh response per call; a Response object can only be consumed once
            return httpx.Response(handler.status_code, headers=handler.headers, content=handler.content)
        return handler(request)

    def count(self, path: str) -> int:
        return sum(1 for r in self.calls if r.url.path == path)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def strava_stub():
    return StravaStub()


@pytest.fixture
def db_session():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
