"""
Test configuration for the manifest service test suite.
"""

import pytest


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


@pytest.fixture(autouse=True)
def _clean_service_env(monkeypatch):
    """Keep host environment variables out of configuration tests."""
    for name in (
        "DATABASE_URL",
        "NODE_RPC_URL",
        "TRUSTED_LISTS",
        "MANUAL_DOMAINS_FILE",
        "CYCLE_INTERVAL_SECONDS",
        "FETCH_TIMEOUT_SECONDS",
        "MAX_CONCURRENCY",
        "PARTICIPANT_RETENTION_DAYS",
        "TRUST_FILE_PATH",
        "METRICS_ENABLED",
        "METRICS_PORT",
    ):
        monkeypatch.delenv(name, raising=False)
