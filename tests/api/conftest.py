"""API-specific test fixtures."""

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient


def build_test_app() -> FastAPI:
    """App wired like create_app(), without the lifespan (tables come from the engine fixture)."""
    from fleet_billing.api.routes import api_router
    from fleet_billing.main import register_exception_handlers
    from fleet_billing.middleware.correlation import setup_correlation_middleware

    app = FastAPI()
    setup_correlation_middleware(app)
    register_exception_handlers(app)
    app.include_router(api_router, prefix="/api")
    return app


@pytest.fixture
def test_app(engine, event_router) -> FastAPI:
    from fleet_billing.api.routes.webhooks import get_event_router

    app = build_test_app()
    app.dependency_overrides[get_event_router] = lambda: event_router
    return app


@pytest.fixture
async def api_client(test_app):
    """In-process async client sharing the pytest-asyncio loop with the engine."""
    async with AsyncClient(transport=ASGITransport(app=test_app), base_url="http://test") as client:
        yield client
