"""Shared test fixtures and configuration."""

from unittest.mock import MagicMock, patch

import pytest

from factorio_hosting.config import HostingConfig


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )


@pytest.fixture
def boto_clients():
    """Patch boto3.client so every call returns a distinct MagicMock."""
    with patch("boto3.client", side_effect=lambda *args, **kwargs: MagicMock()) as mock_client:
        yield mock_client


@pytest.fixture
def config() -> HostingConfig:
    """Create test configuration."""
    return HostingConfig(
        region="us-east-1",
        account="123456789012",
        prefix="FactorioHosting",
        factorio_username="alice",
        factorio_auth_token="tok-xyz",
    )
