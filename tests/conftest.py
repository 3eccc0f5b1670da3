"""
Shared fixtures and pytest configuration for the pipeline lab tests.

Test modules import the project packages directly, so the project root is
put on ``sys.path`` here; ``tests/fakes.py`` is importable as ``fakes``.
"""

import sys
from pathlib import Path

import pytest

# Ensure the project root is in the path
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from fastapi.testclient import TestClient

from lab.app_config import LabConfig

# Modules that drive the app through HTTP or WebSocket
API_MODULES = ("test_sessions_api", "test_share_api", "test_settings", "test_system")


# ============================================================================
# Pytest Hooks
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "api: test drives the app through its HTTP API")
    config.addinivalue_line("markers", "websocket: test involves WebSocket streaming")


def pytest_collection_modifyitems(config, items):
    """Mark API modules and tests with 'websocket' in their name."""
    for item in items:
        if item.module.__name__.rsplit(".", 1)[-1] in API_MODULES:
            item.add_marker(pytest.mark.api)
        if "websocket" in item.name.lower():
            item.add_marker(pytest.mark.websocket)


# ============================================================================
# Shared Fixtures
# ============================================================================


@pytest.fixture
def lab_config(tmp_path):
    """Lab configuration writing only under a temporary directory."""
    return LabConfig(data_dir=tmp_path / "data", share_ttl=60, execute_timeout=5.0)


@pytest.fixture
def client(lab_config):
    """Test client of a fresh app, with its lifespan running."""
    from main import create_app

    with TestClient(create_app(lab_config)) as test_client:
        yield test_client
