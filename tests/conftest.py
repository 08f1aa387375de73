"""Root-level pytest configuration for all tests.

Registers custom markers and keeps process-global settings from leaking
between tests.
"""

import pytest

from src.config import set_settings


# ============================================================================
# Pytest Markers
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests requiring a live getgather service"
    )


@pytest.fixture(autouse=True)
def _reset_settings():
    """Drop any settings a test installed so the next test starts clean."""
    yield
    set_settings(None)
