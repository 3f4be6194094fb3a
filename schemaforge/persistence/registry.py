from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from schemaforge.core.config import Settings, get_settings
from schemaforge.core.errors import ScopeMismatchError
from schemaforge.domain.scopes import DatabaseTarget


logger = logging.getLogger(__name__)

UrlResolver = Callable[[DatabaseTarget], str]
EngineFactory = Callable[..., AsyncEngine]


def settings_url_resolver(settings: Settings | None = None) -> UrlResolver:
    # Connection parameters come from the environment; only the database name varies per target.
    resolved = settings or get_settings()

    def _resolve(target: DatabaseTarget) -> str:
        return resolved.database_url_template.format(database=target.database)

    return _resolve


def engine_kwargs(url: str, settings: Settings) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Configure bounded pools per scoped database; SQLite manages its own pooling.
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
        kwargs["pool_timeout"] = settings.db_pool_timeout_s
        kwargs["pool_recycle"] = settings.db_pool_recycle_s
    return kwargs


def enable_sqlite_transactional_ddl(engine: AsyncEngine) -> None:
    # The sqlite driver commits implicitly before DDL; take over BEGIN so DDL rolls back.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")


class ConnectionRegistry:
    """One lazily created engine (and pool) per (scope, identifier)."""

    def __init__(
        self,
        *,
        url_resolver: UrlResolver | None = None,
        settings: Settings | None = None,
        max_pools: int | None = None,
        engine_factory: EngineFactory = create_async_engine,
    ) -> None:
        self._settings = settings or get_settings()
        self._url_resolver = url_resolver or settings_url_resolver(self._settings)
        self._max_pools = max(1, max_pools if max_pools is not None else self._settings.registry_max_pools)
        self._engine_factory = engine_factory
        # Ordered from least to most recently used.
        self._engines: OrderedDict[tuple[str, str], tuple[DatabaseTarget, AsyncEngine]] = OrderedDict()
        # Keys with callers still holding the engine; never evicted.
        self._leases: dict[tuple[str, str], int] = {}
        # Held only while creating or destroying pools, never during queries.
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._engines)

    def __contains__(self, target: DatabaseTarget) -> bool:
        return target.key in self._engines

    def targets(self) -> list[DatabaseTarget]:
        return [target for target, _ in self._engines.values()]

    async def get(self, target: DatabaseTarget) -> AsyncEngine:
        entry = self._engines.get(target.key)
        if entry is None:
            async with self._lock:
                # Re-check under the lock so concurrent first use creates a single pool.
                entry = self._engines.get(target.key)
                if entry is None:
                    entry = (target, self._create(target))
                    self._engines[target.key] = entry
                    await self._evict_overflow(keep=target.key)
        else:
            self._engines.move_to_end(target.key)
        owner, engine = entry
        if owner.database != target.database:
            raise ScopeMismatchError(
                f"Connection for {owner.describe()} cannot serve {target.describe()}"
            )
        return engine

    @asynccontextmanager
    async def lease(self, target: DatabaseTarget) -> AsyncIterator[AsyncEngine]:
        # Pin the engine for the duration of the block so eviction cannot dispose it.
        engine = await self.get(target)
        key = target.key
        self._leases[key] = self._leases.get(key, 0) + 1
        try:
            yield engine
        finally:
            remaining = self._leases[key] - 1
            if remaining:
                self._leases[key] = remaining
            else:
                del self._leases[key]
                if len(self._engines) > self._max_pools:
                    async with self._lock:
                        await self._evict_overflow()

    def _create(self, target: DatabaseTarget) -> AsyncEngine:
        url = self._url_resolver(target)
        engine = self._engine_factory(url, **engine_kwargs(url, self._settings))
        if url.startswith("sqlite"):
            enable_sqlite_transactional_ddl(engine)
        logger.info("registry_pool_created target=%s", target.describe())
        return engine

    async def _evict_overflow(self, keep: tuple[str, str] | None = None) -> None:
        # Evict least recently used, unleased pools past the cap (caller holds the lock).
        while len(self._engines) > self._max_pools:
            victim = next(
                (key for key in self._engines if key != keep and not self._leases.get(key)),
                None,
            )
            if victim is None:
                logger.warning(
                    "registry_pool_cap_exceeded pools=%d max_pools=%d", len(self._engines), self._max_pools
                )
                return
            target, engine = self._engines.pop(victim)
            await engine.dispose()
            logger.info("registry_pool_evicted target=%s", target.describe())

    async def dispose(self, target: DatabaseTarget) -> bool:
        async with self._lock:
            entry = self._engines.pop(target.key, None)
            if entry is None:
                return False
            await entry[1].dispose()
        logger.info("registry_pool_disposed target=%s", target.describe())
        return True

    async def close(self) -> None:
        async with self._lock:
            entries = list(self._engines.values())
            self._engines.clear()
            for target, engine in entries:
                await engine.dispose()
        logger.info("registry_closed pools=%d", len(entries))
