from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession

from schemaforge.core.config import Settings, get_settings
from schemaforge.core.errors import (
    DefinitionConflictError,
    LockContentionError,
    MigrationDeadlineExceeded,
    NotAppliedError,
    PartialFailure,
    ValidationError,
)
from schemaforge.domain.definitions import TableDefinition
from schemaforge.domain.models import MigrationRecord
from schemaforge.domain.scopes import DatabaseTarget
from schemaforge.persistence import ddl
from schemaforge.persistence.registry import ConnectionRegistry
from schemaforge.persistence.repos import change_log as change_log_repo
from schemaforge.persistence.repos import definitions as definitions_repo
from schemaforge.persistence.repos import ledger as ledger_repo
from schemaforge.schema.operations import MigrationPlan, SchemaOperation
from schemaforge.services.scope_router import ensure_plan_scope


logger = logging.getLogger(__name__)

UP = "up"
DOWN = "down"


@dataclass(frozen=True)
class MigrationOutcome:
    record_id: int
    checksum: str
    database: str
    scope: str
    direction: str
    # False when the checksum was already applied and nothing ran.
    applied: bool
    operations: int
    reversible: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "checksum": self.checksum,
            "database": self.database,
            "scope": self.scope,
            "direction": self.direction,
            "applied": self.applied,
            "operations": self.operations,
            "reversible": self.reversible,
        }


def advisory_lock_key(database: str) -> int:
    # Stable signed 64-bit key so every process agrees on the lock for a database.
    digest = hashlib.sha256(f"schemaforge:{database}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def require_confirmation(operations: Sequence[SchemaOperation], confirm_destructive: bool) -> None:
    destructive = [operation.describe() for operation in operations if operation.destructive]
    if destructive and not confirm_destructive:
        raise ValidationError.single(
            "confirmDestructive",
            "confirm_destructive",
            f"destructive operations need explicit confirmation: {', '.join(destructive)}",
        )


def _same_definition(stored: TableDefinition | None, expected: TableDefinition | None) -> bool:
    if stored is None or expected is None:
        return stored is None and expected is None
    return stored.fingerprint() == expected.fingerprint()


class MigrationOrchestrator:
    """Applies and reverts compiled plans against one scoped database at a time."""

    def __init__(self, registry: ConnectionRegistry, *, settings: Settings | None = None) -> None:
        self._registry = registry
        self._settings = settings or get_settings()
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, target: DatabaseTarget) -> asyncio.Lock:
        # Same-database migrations serialize; different databases never contend.
        lock = self._locks.get(target.database)
        if lock is None:
            lock = self._locks.setdefault(target.database, asyncio.Lock())
        return lock

    async def apply(
        self,
        plan: MigrationPlan,
        target: DatabaseTarget,
        *,
        confirm_destructive: bool = False,
        deadline_s: float | None = None,
        lock_timeout_s: float | None = None,
    ) -> MigrationOutcome:
        ensure_plan_scope(plan, target)
        require_confirmation(plan.operations, confirm_destructive)

        async def _work(conn: AsyncConnection) -> MigrationOutcome:
            return await self._apply_in_transaction(conn, plan, target)

        return await self._run(
            plan, target, UP, _work, deadline_s=deadline_s, lock_timeout_s=lock_timeout_s
        )

    async def revert(
        self,
        plan: MigrationPlan,
        target: DatabaseTarget,
        *,
        confirm_destructive: bool = False,
        deadline_s: float | None = None,
        lock_timeout_s: float | None = None,
    ) -> MigrationOutcome:
        ensure_plan_scope(plan, target)
        require_confirmation(plan.inverse_operations, confirm_destructive)

        async def _work(conn: AsyncConnection) -> MigrationOutcome:
            return await self._revert_in_transaction(conn, plan, target)

        return await self._run(
            plan, target, DOWN, _work, deadline_s=deadline_s, lock_timeout_s=lock_timeout_s
        )

    async def find_record(self, target: DatabaseTarget, checksum: str) -> MigrationRecord | None:
        # Read-only ledger lookup; never creates the ledger.
        async with self._registry.lease(target) as engine, engine.connect() as conn:
            if not await conn.run_sync(ddl.has_ledger):
                return None
            async with AsyncSession(bind=conn, expire_on_commit=False) as session:
                return await ledger_repo.find_by_checksum(session, checksum)

    async def is_applied(self, plan: MigrationPlan, target: DatabaseTarget) -> bool:
        return await self.find_record(target, plan.checksum) is not None

    async def _run(
        self,
        plan: MigrationPlan,
        target: DatabaseTarget,
        direction: str,
        work: Callable[[AsyncConnection], Awaitable[MigrationOutcome]],
        *,
        deadline_s: float | None,
        lock_timeout_s: float | None,
    ) -> MigrationOutcome:
        deadline = self._settings.migration_deadline_s if deadline_s is None else deadline_s
        locked = self._locked(plan, target, direction, work, lock_timeout_s=lock_timeout_s)
        if not deadline or deadline <= 0:
            return await locked
        try:
            return await asyncio.wait_for(locked, timeout=deadline)
        except asyncio.TimeoutError as exc:
            # Cancellation unwinds the open transaction, so nothing was recorded.
            logger.warning(
                "migration_deadline_exceeded table=%s database=%s direction=%s deadline_s=%s",
                plan.table,
                target.database,
                direction,
                deadline,
            )
            raise MigrationDeadlineExceeded(
                f"Migration {plan.checksum} on {target.database} exceeded {deadline}s and was rolled back"
            ) from exc

    async def _acquire(self, target: DatabaseTarget, timeout: float) -> asyncio.Lock:
        lock = self.lock_for(target)
        if timeout <= 0:
            await lock.acquire()
            return lock
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("migration_lock_contention database=%s timeout_s=%s", target.database, timeout)
            raise LockContentionError(target.database, timeout) from exc
        return lock

    async def _locked(
        self,
        plan: MigrationPlan,
        target: DatabaseTarget,
        direction: str,
        work: Callable[[AsyncConnection], Awaitable[MigrationOutcome]],
        *,
        lock_timeout_s: float | None,
    ) -> MigrationOutcome:
        timeout = self._settings.migration_lock_timeout_s if lock_timeout_s is None else lock_timeout_s
        lock = await self._acquire(target, timeout)
        try:
            async with self._registry.lease(target) as engine:
                try:
                    async with engine.connect() as conn:
                        async with conn.begin():
                            await self._acquire_advisory_lock(conn, target, timeout)
                            return await work(conn)
                except PartialFailure as exc:
                    await self._record_failure(engine, plan, target, direction, exc)
                    raise
        finally:
            lock.release()

    async def _acquire_advisory_lock(
        self, conn: AsyncConnection, target: DatabaseTarget, timeout: float
    ) -> None:
        # Cross-process exclusion on Postgres; released with the transaction.
        if conn.dialect.name != "postgresql":
            return
        key = advisory_lock_key(target.database)
        loop = asyncio.get_running_loop()
        started = loop.time()
        poll_s = max(self._settings.migration_lock_poll_ms, 1) / 1000.0
        while True:
            result = await conn.execute(sa.text("SELECT pg_try_advisory_xact_lock(:key)"), {"key": key})
            if result.scalar():
                return
            if timeout > 0 and loop.time() - started >= timeout:
                logger.warning("migration_advisory_lock_contention database=%s", target.database)
                raise LockContentionError(target.database, timeout)
            await asyncio.sleep(poll_s)

    async def _execute(
        self, conn: AsyncConnection, operations: Sequence[SchemaOperation]
    ) -> None:
        # Strictly in order; the first failure aborts the whole transaction.
        for index, operation in enumerate(operations):
            try:
                await conn.run_sync(ddl.execute_operation, operation)
            except SQLAlchemyError as exc:
                logger.warning(
                    "migration_operation_failed index=%s op=%s error=%s",
                    index,
                    operation.describe(),
                    exc,
                )
                raise PartialFailure(index=index, operation=operation, cause=exc) from exc

    async def _apply_in_transaction(
        self, conn: AsyncConnection, plan: MigrationPlan, target: DatabaseTarget
    ) -> MigrationOutcome:
        await conn.run_sync(ddl.ensure_ledger)
        async with AsyncSession(bind=conn, expire_on_commit=False) as session:
            existing = await ledger_repo.find_by_checksum(session, plan.checksum)
            stored = await definitions_repo.load_definition(session, plan.table)
            if existing is not None and _same_definition(stored, plan.definition):
                logger.info(
                    "migration_noop table=%s database=%s checksum=%s",
                    plan.table,
                    target.database,
                    plan.checksum,
                )
                return MigrationOutcome(
                    record_id=existing.id,
                    checksum=plan.checksum,
                    database=target.database,
                    scope=target.scope.value,
                    direction=UP,
                    applied=False,
                    operations=0,
                    reversible=bool(existing.reversible) if existing.reversible is not None else plan.reversible,
                )

            if not _same_definition(stored, plan.prior):
                if plan.prior is None:
                    message = f"Table {plan.table} is already defined in {target.database}"
                else:
                    message = f"Stored definition of {plan.table} changed since this plan was compiled"
                raise DefinitionConflictError(message)

            await self._execute(conn, plan.operations)

            if plan.definition is not None:
                await definitions_repo.upsert_definition(session, plan.definition, checksum=plan.checksum)
            else:
                await definitions_repo.delete_definition(session, plan.table)
            await definitions_repo.add_version(
                session,
                table_name=plan.table,
                checksum=plan.checksum,
                definition=plan.definition,
                prior=plan.prior,
            )
            change_log_repo.add_entries(
                session,
                table_name=plan.table,
                checksum=plan.checksum,
                direction=UP,
                target=target,
                operations=plan.operations,
            )
            record = await ledger_repo.add_record(
                session, checksum=plan.checksum, target=target, reversible=plan.reversible
            )
            await session.flush()
            logger.info(
                "migration_applied table=%s database=%s checksum=%s operations=%s record_id=%s",
                plan.table,
                target.database,
                plan.checksum,
                len(plan.operations),
                record.id,
            )
            return MigrationOutcome(
                record_id=record.id,
                checksum=plan.checksum,
                database=target.database,
                scope=target.scope.value,
                direction=UP,
                applied=True,
                operations=len(plan.operations),
                reversible=plan.reversible,
            )

    async def _revert_in_transaction(
        self, conn: AsyncConnection, plan: MigrationPlan, target: DatabaseTarget
    ) -> MigrationOutcome:
        # Look the ledger up before any DDL, including ledger creation.
        if not await conn.run_sync(ddl.has_ledger):
            raise NotAppliedError(plan.checksum, target.database)
        await conn.run_sync(ddl.ensure_ledger)
        async with AsyncSession(bind=conn, expire_on_commit=False) as session:
            record = await ledger_repo.find_by_checksum(session, plan.checksum)
            if record is None:
                raise NotAppliedError(plan.checksum, target.database)

            stored = await definitions_repo.load_definition(session, plan.table)
            if not _same_definition(stored, plan.definition):
                raise DefinitionConflictError(
                    f"Table {plan.table} changed after {plan.checksum} was applied; revert newer migrations first"
                )

            inverse = plan.inverse_operations
            await self._execute(conn, inverse)

            await definitions_repo.delete_version(session, plan.table, plan.checksum)
            if plan.prior is not None:
                previous = await definitions_repo.latest_version(session, plan.table)
                await definitions_repo.upsert_definition(
                    session, plan.prior, checksum=previous.checksum if previous is not None else plan.checksum
                )
            else:
                await definitions_repo.delete_definition(session, plan.table)
            change_log_repo.add_entries(
                session,
                table_name=plan.table,
                checksum=plan.checksum,
                direction=DOWN,
                target=target,
                operations=inverse,
            )
            record_id = record.id
            await ledger_repo.delete_record(session, record_id)
            await session.flush()
            logger.info(
                "migration_reverted table=%s database=%s checksum=%s operations=%s",
                plan.table,
                target.database,
                plan.checksum,
                len(inverse),
            )
            return MigrationOutcome(
                record_id=record_id,
                checksum=plan.checksum,
                database=target.database,
                scope=target.scope.value,
                direction=DOWN,
                applied=True,
                operations=len(inverse),
                reversible=plan.reversible,
            )

    async def _record_failure(
        self,
        engine: AsyncEngine,
        plan: MigrationPlan,
        target: DatabaseTarget,
        direction: str,
        failure: PartialFailure,
    ) -> None:
        # Separate transaction after rollback; the original failure always propagates.
        try:
            async with engine.begin() as conn:
                await conn.run_sync(ddl.ensure_ledger)
                async with AsyncSession(bind=conn, expire_on_commit=False) as session:
                    change_log_repo.add_failure(
                        session,
                        table_name=plan.table,
                        checksum=plan.checksum,
                        direction=direction,
                        target=target,
                        position=failure.index,
                        operation=failure.operation,
                        error_message=str(failure.cause),
                    )
                    await session.flush()
        except SQLAlchemyError:
            logger.exception(
                "migration_failure_log_failed table=%s database=%s checksum=%s",
                plan.table,
                target.database,
                plan.checksum,
            )
