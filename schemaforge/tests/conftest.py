from __future__ import annotations

import pytest

from schemaforge.core.config import Settings, get_settings
from schemaforge.persistence.registry import ConnectionRegistry
from schemaforge.services.migrations import MigrationOrchestrator
from schemaforge.services.tables import TableService


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Tests tweak env-driven settings; never leak the cached instance across tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path) -> Settings:
    # One SQLite file per scoped database, all inside the test's tmp dir.
    return Settings(database_url_template=f"sqlite+aiosqlite:///{tmp_path}/{{database}}.db")


@pytest.fixture
async def registry(settings: Settings) -> ConnectionRegistry:
    registry = ConnectionRegistry(settings=settings)
    yield registry
    await registry.close()


@pytest.fixture
def orchestrator(registry: ConnectionRegistry, settings: Settings) -> MigrationOrchestrator:
    return MigrationOrchestrator(registry, settings=settings)


@pytest.fixture
def table_service(
    registry: ConnectionRegistry, orchestrator: MigrationOrchestrator, settings: Settings
) -> TableService:
    return TableService(registry, settings=settings, orchestrator=orchestrator)
