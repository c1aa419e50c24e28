"""
Pytest configuration and shared fixtures for teamsync tests.
"""

import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from teamsync.realtime.hub import set_hub
from teamsync.utils import config as config_module
from teamsync.utils.config import TeamSyncConfig

from tests.utils import FakeGateway, FakeHub


# Test configuration
TEST_CONFIG = {
    "backend": {
        "url": "https://backend.test",
        "api_key": "anon-key",
        "access_token": "user-token",
    },
    "realtime": {
        "poll_interval": 0.02,
        "reconnect_delay": 0.01,
        "max_reconnect_delay": 0.05,
        "join_timeout": 1.0,
    },
    "workspace": {
        "workspace_id": "ws-1",
        "user_id": "alice",
    },
    "logging": {
        "level": "DEBUG",
        "format": "console",
    },
}


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def test_config(temp_dir: Path) -> TeamSyncConfig:
    """Create test configuration."""
    data = dict(TEST_CONFIG)
    data["logging"] = dict(TEST_CONFIG["logging"], directory=str(temp_dir / "logs"))
    return TeamSyncConfig(**data)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def hub(gateway: FakeGateway) -> FakeHub:
    return FakeHub(gateway)


@pytest.fixture(autouse=True)
def reset_globals():
    """Keep process-wide singletons from leaking between tests."""
    yield
    set_hub(None)
    config_module._config_loader = None
