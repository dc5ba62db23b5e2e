from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError

from cleanbook.config import settings


def _session(execute: AsyncMock) -> AsyncMock:
    session = AsyncMock()
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    session.execute = execute
    return session


@pytest.mark.asyncio
async def test_health_ok(client: AsyncClient):
    with patch("cleanbook.main.async_session", return_value=_session(AsyncMock())):
        response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "database": "connected", "payments": "mock"}


@pytest.mark.asyncio
async def test_health_database_down(client: AsyncClient):
    failing = AsyncMock(side_effect=OperationalError("SELECT 1", {}, Exception("refused")))
    with patch("cleanbook.main.async_session", return_value=_session(failing)):
        response = await client.get("/health")

    assert response.status_code == 503
    assert response.json()["database"] == "disconnected"


@pytest.mark.asyncio
async def test_metrics_open_in_development(client: AsyncClient):
    response = await client.get("/metrics")
    assert response.status_code == 200
    assert "cleanbook_bookings_created_total" in response.text


@pytest.mark.asyncio
async def test_metrics_key_enforced(client: AsyncClient):
    with patch.object(settings, "METRICS_API_KEY", "scrape-key"):
        denied = await client.get("/metrics")
        allowed = await client.get("/metrics", headers={"x-metrics-key": "scrape-key"})

    assert denied.status_code == 403
    assert allowed.status_code == 200
