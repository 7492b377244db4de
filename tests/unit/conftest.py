"""Fixtures for unit tests."""

from unittest.mock import Mock

import pytest

from apex_test_runner.connection import PlatformConnection

INSTANCE_URL = "https://example.my.salesforce.com"


@pytest.fixture
def connection() -> Mock:
    """Create mock connection to an org."""
    mock = Mock(spec=PlatformConnection)
    mock.instance_url = INSTANCE_URL
    mock.version = "61.0"
    mock.access_token = "00Dxx0000001gPL!token"
    mock.base_url = f"{INSTANCE_URL}/services/data/v61.0/tooling"
    return mock
