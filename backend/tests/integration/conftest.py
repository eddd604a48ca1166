"""
Pytest configuration for API integration tests.

These tests hit the real FastAPI application through TestClient. The
services are built from a temporary configuration with the engine and the
compose driver replaced by mocks, so no container engine is needed.
"""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from main import create_app
from services import build_services
from stacks.stack_driver import STATUS_ACTIVE, StackDriver
from tests.conftest import make_stream


@pytest.fixture
def stack_driver():
    driver = MagicMock(spec=StackDriver)
    driver.up.side_effect = lambda path, name: make_stream([f"Container {name}-web-1 Started"])
    driver.pull.side_effect = lambda path, name: make_stream(["web Pulled"])
    driver.down.side_effect = lambda path, name, remove_volumes=False: make_stream([f"Container {name}-web-1 Removed"])
    driver.stop.side_effect = lambda path, name: make_stream([f"Container {name}-web-1 Stopped"])
    driver.start.side_effect = lambda path, name: make_stream([f"Container {name}-web-1 Started"])
    driver.restart.side_effect = lambda path, name: make_stream([f"Container {name}-web-1 Restarted"])
    driver.list_stack_containers.return_value = []
    driver.compute_status.return_value = STATUS_ACTIVE
    driver.tool_version.return_value = "2.29.1"
    return driver


@pytest.fixture
def services(test_config, mock_engine, db_manager, stack_driver):
    mock_engine.version.return_value = {"Version": "test"}
    built = build_services(test_config, engine=mock_engine, db=db_manager)
    built.stacks.driver = stack_driver
    return built


@pytest.fixture
def client(services):
    """TestClient with startup/shutdown run around each test."""
    with TestClient(create_app(services)) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(api_key):
    return {"Authorization": f"Bearer {api_key}"}
