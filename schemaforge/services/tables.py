from __future__ import annotations

import logging
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from schemaforge.core.config import Settings, get_settings
from schemaforge.core.errors import (
    DefinitionConflictError,
    NotAppliedError,
    TableNotFoundError,
    ValidationError,
    Violation,
)
from schemaforge.domain.definitions import TableDefinition
from schemaforge.domain.scopes import DatabaseTarget, Scope, ScopeContext
from schemaforge.persistence import ddl
from schemaforge.persistence.registry import ConnectionRegistry
from schemaforge.persistence.repos import definitions as definitions_repo
from schemaforge.schema.catalog import get_field_type
from schemaforge.schema.compiler import STANDARD_COLUMNS, compile_drop_table, compile_table
from schemaforge.schema.operations import MigrationPlan
from schemaforge.schema.validation import validate_table
from schemaforge.services.migrations import MigrationOrchestrator, MigrationOutcome
from schemaforge.services.scope_router import ScopeRouter


logger = logging.getLogger(__name__)


class TableService:
    """Define, update, drop and revert dynamic tables in one scoped database per call."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        *,
        settings: Settings | None = None,
        router: ScopeRouter | None = None,
        orchestrator: MigrationOrchestrator | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._registry = registry
        self._router = router or ScopeRouter(self._settings)
        self._orchestrator = orchestrator or MigrationOrchestrator(registry, settings=self._settings)

    @property
    def orchestrator(self) -> MigrationOrchestrator:
        return self._orchestrator

    def resolve(self, context: ScopeContext, scope: Scope | str | None = None) -> DatabaseTarget:
        # Without an explicit declaration the definition belongs to the caller's own scope.
        return self._router.resolve(scope if scope is not None else context.scope, context)

    async def define_table(
        self,
        raw: Mapping[str, Any],
        *,
        context: ScopeContext,
        scope: Scope | str | None = None,
        deadline_s: float | None = None,
    ) -> MigrationOutcome:
        definition = validate_table(raw).raise_for_violations()
        target = self.resolve(context, scope)
        await self._check_references(definition, target)
        plan = compile_table(definition, scope=target.scope)
        logger.info(
            "table_define_requested table=%s database=%s operations=%s",
            definition.name,
            target.database,
            len(plan.operations),
        )
        return await self._orchestrator.apply(plan, target, deadline_s=deadline_s)

    async def update_table(
        self,
        name: str,
        raw: Mapping[str, Any],
        *,
        context: ScopeContext,
        scope: Scope | str | None = None,
        confirm_destructive: bool = False,
        deadline_s: float | None = None,
    ) -> MigrationOutcome:
        definition = validate_table(raw).raise_for_violations()
        if definition.name != name:
            raise ValidationError.single("name", "immutable", "table name cannot change in an update")
        target = self.resolve(context, scope)
        prior = await self.get_table(name, context=context, scope=scope)
        if prior.fingerprint() == definition.fingerprint():
            return await self._unchanged(prior, target)
        await self._check_references(definition, target)
        plan = compile_table(definition, prior, scope=target.scope)
        logger.info(
            "table_update_requested table=%s database=%s operations=%s",
            name,
            target.database,
            len(plan.operations),
        )
        return await self._orchestrator.apply(
            plan, target, confirm_destructive=confirm_destructive, deadline_s=deadline_s
        )

    async def drop_table(
        self,
        name: str,
        *,
        context: ScopeContext,
        scope: Scope | str | None = None,
        confirm_destructive: bool = False,
        deadline_s: float | None = None,
    ) -> MigrationOutcome:
        target = self.resolve(context, scope)
        current = await self.get_table(name, context=context, scope=scope)
        plan = compile_drop_table(current, scope=target.scope)
        logger.info("table_drop_requested table=%s database=%s", name, target.database)
        return await self._orchestrator.apply(
            plan, target, confirm_destructive=confirm_destructive, deadline_s=deadline_s
        )

    async def revert_table(
        self,
        name: str,
        *,
        context: ScopeContext,
        scope: Scope | str | None = None,
        confirm_destructive: bool = False,
        deadline_s: float | None = None,
    ) -> MigrationOutcome:
        # Undo the newest applied plan for this table.
        target = self.resolve(context, scope)
        plan, checksum = await self._latest_plan(name, target)
        if plan.checksum != checksum:
            raise DefinitionConflictError(
                f"Recorded migration {checksum} for {name} does not recompile to the same plan"
            )
        logger.info("table_revert_requested table=%s database=%s checksum=%s", name, target.database, checksum)
        return await self._orchestrator.revert(
            plan, target, confirm_destructive=confirm_destructive, deadline_s=deadline_s
        )

    async def get_table(
        self,
        name: str,
        *,
        context: ScopeContext,
        scope: Scope | str | None = None,
    ) -> TableDefinition:
        target = self.resolve(context, scope)
        async with self._registry.lease(target) as engine, engine.connect() as conn:
            if not await conn.run_sync(ddl.has_ledger):
                raise TableNotFoundError(name, target.database)
            async with AsyncSession(bind=conn, expire_on_commit=False) as session:
                definition = await definitions_repo.load_definition(session, name)
        if definition is None:
            raise TableNotFoundError(name, target.database)
        return definition

    async def list_tables(
        self,
        *,
        context: ScopeContext,
        scope: Scope | str | None = None,
    ) -> list[TableDefinition]:
        target = self.resolve(context, scope)
        async with self._registry.lease(target) as engine, engine.connect() as conn:
            if not await conn.run_sync(ddl.has_ledger):
                return []
            async with AsyncSession(bind=conn, expire_on_commit=False) as session:
                return await definitions_repo.list_definitions(session)

    async def _latest_plan(self, name: str, target: DatabaseTarget) -> tuple[MigrationPlan, str]:
        async with self._registry.lease(target) as engine, engine.connect() as conn:
            version = None
            if await conn.run_sync(ddl.has_ledger):
                async with AsyncSession(bind=conn, expire_on_commit=False) as session:
                    version = await definitions_repo.latest_version(session, name)
        if version is None:
            raise NotAppliedError(None, target.database, table=name)
        definition = TableDefinition.from_dict(version.definition_json) if version.definition_json else None
        prior = TableDefinition.from_dict(version.prior_json) if version.prior_json else None
        if definition is None:
            # The newest change dropped the table.
            return compile_drop_table(prior, scope=target.scope), version.checksum
        return compile_table(definition, prior, scope=target.scope), version.checksum

    async def _unchanged(self, current: TableDefinition, target: DatabaseTarget) -> MigrationOutcome:
        async with self._registry.lease(target) as engine, engine.connect() as conn:
            async with AsyncSession(bind=conn, expire_on_commit=False) as session:
                record = await definitions_repo.get_record(session, current.name)
        checksum = record.checksum if record is not None else ""
        ledger_row = await self._orchestrator.find_record(target, checksum)
        logger.info("table_update_noop table=%s database=%s", current.name, target.database)
        return MigrationOutcome(
            record_id=ledger_row.id if ledger_row is not None else 0,
            checksum=checksum,
            database=target.database,
            scope=target.scope.value,
            direction="up",
            applied=False,
            operations=0,
            reversible=True,
        )

    async def _check_references(self, definition: TableDefinition, target: DatabaseTarget) -> None:
        # Referenced tables and columns must already exist in the same scoped database.
        pending = [
            (index, field)
            for index, field in enumerate(definition.fields)
            if get_field_type(field.type).is_reference and field.reference_table
        ]
        if not pending:
            return
        # A self-reference targets columns this definition is about to create.
        own_columns = {column["name"] for column in STANDARD_COLUMNS} | {
            field.column_name for field in definition.fields
        }
        violations: list[Violation] = []
        async with self._registry.lease(target) as engine, engine.connect() as conn:
            for index, field in pending:
                table = field.reference_table
                if table == definition.physical_name:
                    columns = own_columns
                else:
                    columns = await conn.run_sync(ddl.column_names, table)
                if columns is None:
                    violations.append(
                        Violation(
                            field=f"fields[{index}].config.referenceTable",
                            rule="reference_target",
                            message=f"table {table} does not exist in {target.database}",
                        )
                    )
                elif field.reference_column not in columns:
                    violations.append(
                        Violation(
                            field=f"fields[{index}].config.referenceColumn",
                            rule="reference_target",
                            message=f"column {table}.{field.reference_column} does not exist in {target.database}",
                        )
                    )
        if violations:
            raise ValidationError(violations)
