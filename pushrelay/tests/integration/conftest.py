from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from pushrelay.apps.api.deps import get_clock, get_db
from pushrelay.apps.api.main import create_app


@pytest.fixture
def app(session_factory, clock):
    application = create_app()

    async def _override_db():
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_db] = _override_db
    application.dependency_overrides[get_clock] = lambda: clock
    return application


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
