"""Pytest fixtures for API tests.

Settings are installed before the app module is imported, since the app
reads its session and CORS configuration at import time.
"""

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from src.config import Settings, set_settings

TEST_GETGATHER_URL = "https://getgather.test"


def make_test_settings(output_dir: Path | str = "public", **server) -> Settings:
    """Settings pointing at a fake getgather with optional server overrides."""
    return Settings(**{
        "getgather": {"url": TEST_GETGATHER_URL, "api_key": "gg-key"},
        "server": {"trust_proxy": True, **server},
        "images": {"output_dir": str(output_dir)},
    })


set_settings(make_test_settings())

from src.api.main import app  # noqa: E402


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    """Directory generated portraits are written to and served from."""
    path = tmp_path / "public"
    path.mkdir()
    return path


@pytest.fixture
def client(output_dir: Path) -> Generator[TestClient, None, None]:
    """Create a TestClient running the app lifespan against test settings.

    Yields:
        TestClient configured for testing.
    """
    set_settings(make_test_settings(output_dir))
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    set_settings(None)
