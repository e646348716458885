"""Tests for the request rate limiter."""
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from shared.config import Settings
from shared.rate_limit import setup_rate_limiter


def _app(**overrides):
    app = FastAPI()
    limiter = setup_rate_limiter(app, Settings(**overrides))

    @app.get("/availability")
    async def availability():
        return {"available": 1}

    @app.get("/health")
    @limiter.exempt
    async def health():
        return {"status": "healthy"}

    return app


async def _hit(app, path, times):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        return [(await client.get(path)).status_code for _ in range(times)]


async def test_requests_over_the_limit_get_429():
    app = _app(rate_limit_enabled=True, rate_limit="2/minute")

    assert await _hit(app, "/availability", 3) == [200, 200, 429]


async def test_exempt_routes_are_not_limited():
    app = _app(rate_limit_enabled=True, rate_limit="2/minute")

    assert await _hit(app, "/health", 4) == [200] * 4


async def test_disabled_limiter_lets_everything_through():
    app = _app(rate_limit_enabled=False, rate_limit="1/minute")

    assert await _hit(app, "/availability", 3) == [200, 200, 200]
