# tests/test_health.py
from http import HTTPStatus

import pytest

from app.core.config import get_settings


@pytest.mark.asyncio
async def test_health_endpoint_ok(client):
    """
    /health responds without touching the database or the Zoom API.
    """
    response = await client.get("/health")

    assert response.status_code == HTTPStatus.OK
    data = response.json()

    assert data["status"] == "ok"
    assert data["app_name"] == get_settings().APP_NAME
    assert data["environment"] == get_settings().APP_ENV
    assert "timestamp_utc" in data
