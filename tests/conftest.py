"""Shared test fixtures."""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

import meshmap.main as main_module
from meshmap.config import AppConfig


@pytest.fixture(autouse=True)
def _init_server(tmp_path):
    """Initialize server singletons for every test, using a temp database."""
    config = AppConfig()
    config.storage.db_path = str(tmp_path / "data" / "meshmap.db")
    config.logging.level = "warning"

    stats, storage, job, reader = main_module.build_components(config)

    # Patch module-level singletons
    main_module._config = config
    main_module._stats = stats
    main_module._storage = storage
    main_module._job = job
    main_module._reader = reader

    yield

    # Cleanup
    storage.close()
    main_module._config = None
    main_module._stats = None
    main_module._storage = None
    main_module._job = None
    main_module._reader = None


@pytest.fixture
def storage():
    return main_module.get_storage()


@pytest.fixture
async def client():
    from meshmap.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
