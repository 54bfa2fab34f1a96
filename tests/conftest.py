"""
Pytest configuration and shared fixtures
"""

import pytest
import sys
from pathlib import Path

# Add project root and tests directory to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))
sys.path.insert(0, str(Path(__file__).parent))

from client import Client, ClientConfig
from execution.retry_handler import BackoffPolicy
from mock_spanner import DATABASE, MockInstanceAdmin, MockSpanner


@pytest.fixture
def project_root_path():
    """Path to project root"""
    return project_root


@pytest.fixture
def fast_backoff():
    """Backoff with millisecond delays"""
    return BackoffPolicy(initial_delay=0.001, max_delay=0.01, multiplier=1.3)


@pytest.fixture
def fast_config():
    """Client configuration with millisecond retry delays"""
    return ClientConfig(retry_initial_delay=0.001, retry_max_delay=0.01)


@pytest.fixture
def server():
    """In-memory data-plane server"""
    return MockSpanner()


@pytest.fixture
def admin():
    """In-memory instance-admin server"""
    return MockInstanceAdmin()


@pytest.fixture
def client(server, admin, fast_config):
    """Client wired to the in-memory servers"""
    db = Client(
        DATABASE,
        config=fast_config,
        admin_client=admin,
        transport_factory=lambda endpoint: server
    )
    yield db
    db.close()


# Configure pytest
def pytest_configure(config):
    """Pytest configuration"""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
