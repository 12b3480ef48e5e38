"""
Pytest configuration and fixtures for backend API tests.
"""

import pytest
from unittest.mock import Mock, patch

from ngsild_temporal.config import NGSILD_CORE_CONTEXT


@pytest.fixture(autouse=True)
def reset_store():
    """Reset the global store and service state between tests."""
    import ngsild_temporal.server.app as app_module

    app_module._store = None
    app_module._query_service = None
    yield
    # Clean up after test
    if app_module._store is not None:
        app_module._store.close()
    app_module._store = None
    app_module._query_service = None


@pytest.fixture(autouse=True)
def mock_settings(tmp_path):
    """Mock settings to avoid requiring .env file in tests."""
    with patch("ngsild_temporal.server.app.get_settings") as mock_app_settings:
        settings = Mock()
        settings.db_path = tmp_path / "temporal.db"
        settings.core_context = NGSILD_CORE_CONTEXT
        settings.pagination_limit_default = 30
        settings.pagination_limit_max = 100
        settings.pagination_temporal_limit = 5  # Small limit to exercise partial content
        settings.log_level = "INFO"
        mock_app_settings.return_value = settings
        yield settings


def observed_instances(value, minutes):
    """Property instances observed every minute from 2020-01-01T00:01:00Z."""
    return [
        {"type": "Property", "value": value, "observedAt": f"2020-01-01T00:{1 + m:02d}:00Z"}
        for m in minutes
    ]


@pytest.fixture
def sample_entity_data():
    """Sample temporal entity whose incoming and outgoing histories overlap on two minutes."""
    return {
        "id": "urn:ngsi-ld:BeeHive:TESTC",
        "type": "BeeHive",
        "incoming": observed_instances(1550.0, range(0, 5)),
        "outgoing": observed_instances(12.0, range(3, 8)),
    }


@pytest.fixture
def client(sample_entity_data):
    """Test client on an app holding the sample entity."""
    from fastapi.testclient import TestClient
    from ngsild_temporal.server.app import app

    client = TestClient(app)
    response = client.post("/ngsi-ld/v1/temporal/entities", json=sample_entity_data)
    assert response.status_code == 201
    return client
