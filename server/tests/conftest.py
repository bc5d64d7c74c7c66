"""Test configuration for server test suite."""

import pytest

from pvescripts.core.config import Settings


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def scripts_dir(tmp_path):
    """A scripts directory holding one installable script."""
    directory = tmp_path / "scripts"
    (directory / "ct").mkdir(parents=True)
    (directory / "ct" / "debian.sh").write_text("#!/bin/bash\necho installing\n")
    return directory


@pytest.fixture
def test_settings(scripts_dir):
    """Settings with the settle delays removed so workflows run immediately."""
    return Settings(
        scripts_dir=str(scripts_dir),
        update_settle_seconds=0,
        backup_settle_seconds=0,
    )


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from pvescripts.main import app

    with TestClient(app) as test_client:
        yield test_client

