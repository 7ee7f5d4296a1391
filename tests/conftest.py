"""Pytest configuration and fixtures."""

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for greenlake_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from greenlake_mock import MockGreenLakeClient  # noqa: E402

from orchestrator.config import Config  # noqa: E402
from orchestrator.session import SessionStore  # noqa: E402

TEST_WORKSPACE_ID = "0123456789abcdef0123456789abcdef"


@pytest.fixture
def test_config() -> Config:
    """Create test configuration with an instant poll interval."""
    return Config(
        workspace_id=TEST_WORKSPACE_ID,
        token="test-token",
        default_region="eu-central",
        poll_interval_seconds=0.0,
        max_poll_attempts=3,
    )


@pytest.fixture
def mock_client(test_config: Config) -> MockGreenLakeClient:
    """Create an empty in-memory GreenLake API."""
    return MockGreenLakeClient(test_config)


@pytest.fixture
def store() -> Iterator[SessionStore]:
    """Create a session store, cleared after the test."""
    with SessionStore() as session:
        yield session
