"""Compile table definitions into ordered, reversible schema operations.

A fresh definition compiles to CreateTable, one AddColumn per field, then the
indexes and constraints of each field in declaration order. A definition
compiled against a prior one compiles to the delta only, ordered so that
dependent objects are dropped before their columns and created after them:

    dependent drops -> column drops -> column alters -> column adds -> dependent adds
"""

from __future__ import annotations

import hashlib
from typing import Any

from schemaforge.core.config import MAX_PHYSICAL_NAME_LENGTH
from schemaforge.core.errors import ValidationError
from schemaforge.domain.definitions import FieldDefinition, TableDefinition
from schemaforge.domain.scopes import Scope
from schemaforge.schema.catalog import get_field_type
from schemaforge.schema.operations import MigrationPlan, OperationKind, SchemaOperation


# Audit columns every dynamic table carries, created with the table itself.
STANDARD_COLUMNS: tuple[dict[str, Any], ...] = (
    {"name": "id", "kind": "reference", "nullable": False, "default": None, "primary_key": True},
    {"name": "created_at", "kind": "datetime", "nullable": False, "default": None, "default_expression": "CURRENT_TIMESTAMP"},
    {"name": "updated_at", "kind": "datetime", "nullable": False, "default": None, "default_expression": "CURRENT_TIMESTAMP"},
    {"name": "created_by", "kind": "reference", "nullable": True, "default": None},
    {"name": "updated_by", "kind": "reference", "nullable": True, "default": None},
    {"name": "is_deleted", "kind": "boolean", "nullable": False, "default": "0"},
    {"name": "deleted_at", "kind": "datetime", "nullable": True, "default": None},
)


def physical_name(prefix: str, table: str, column: str) -> str:
    # Keep generated names within the Postgres identifier limit while staying unique.
    name = f"{prefix}_{table}_{column}"
    if len(name) <= MAX_PHYSICAL_NAME_LENGTH:
        return name
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:8]
    return f"{name[: MAX_PHYSICAL_NAME_LENGTH - 9]}_{digest}"


def column_spec(field: FieldDefinition) -> dict[str, Any]:
    field_type = get_field_type(field.type)
    default = field_type.server_default(field.default_value)
    if default is None and not field.required:
        default = field_type.implicit_default
    return {
        "name": field.column_name,
        "kind": field.type,
        "nullable": not field.required,
        "default": default,
    }


def _dependents(scope: Scope, table: str, field: FieldDefinition) -> list[SchemaOperation]:
    # Indexes and constraints owned by one column, in their creation form.
    column = field.column_name
    field_type = get_field_type(field.type)
    operations: list[SchemaOperation] = []
    if field.is_unique:
        name = physical_name("uq", table, column)
        operations.append(
            SchemaOperation(
                kind=OperationKind.ADD_CONSTRAINT,
                scope=scope,
                table=table,
                target=name,
                payload={"name": name, "type": "unique", "columns": [column]},
            )
        )
    elif field.is_indexed or field_type.is_reference:
        # Reference columns are always indexed for join lookups.
        name = physical_name("ix", table, column)
        operations.append(
            SchemaOperation(
                kind=OperationKind.ADD_INDEX,
                scope=scope,
                table=table,
                target=name,
                payload={"name": name, "columns": [column], "unique": False},
            )
        )
    if field_type.is_reference:
        name = physical_name("fk", table, column)
        operations.append(
            SchemaOperation(
                kind=OperationKind.ADD_CONSTRAINT,
                scope=scope,
                table=table,
                target=name,
                payload={
                    "name": name,
                    "type": "foreign_key",
                    "columns": [column],
                    "referent_table": field.reference_table,
                    "referent_columns": [field.reference_column],
                },
            )
        )
    return operations


def _add_column(scope: Scope, table: str, field: FieldDefinition) -> SchemaOperation:
    return SchemaOperation(
        kind=OperationKind.ADD_COLUMN,
        scope=scope,
        table=table,
        target=field.column_name,
        payload={"column": column_spec(field)},
    )


def _create_table(scope: Scope, table: str) -> SchemaOperation:
    return SchemaOperation(
        kind=OperationKind.CREATE_TABLE,
        scope=scope,
        table=table,
        target=table,
        payload={"columns": [dict(column) for column in STANDARD_COLUMNS]},
    )


def _fresh_operations(scope: Scope, definition: TableDefinition) -> list[SchemaOperation]:
    table = definition.physical_name
    operations = [_create_table(scope, table)]
    operations.extend(_add_column(scope, table, field) for field in definition.fields)
    for field in definition.fields:
        operations.extend(_dependents(scope, table, field))
    return operations


def _delta_operations(
    scope: Scope, definition: TableDefinition, prior: TableDefinition
) -> list[SchemaOperation]:
    table = definition.physical_name
    old_fields = prior.field_map()
    new_fields = definition.field_map()

    # A changed storagePath moves data to a new column, so it compiles as remove + add.
    def _same_column(name: str) -> bool:
        return old_fields[name].column_name == new_fields[name].column_name

    removed = [f for f in prior.fields if f.name not in new_fields or not _same_column(f.name)]
    added = [f for f in definition.fields if f.name not in old_fields or not _same_column(f.name)]
    kept = [f for f in definition.fields if f.name in old_fields and _same_column(f.name)]

    dependent_drops: list[SchemaOperation] = []
    column_drops: list[SchemaOperation] = []
    alters: list[SchemaOperation] = []
    column_adds: list[SchemaOperation] = []
    dependent_adds: list[SchemaOperation] = []

    for field in removed:
        dependent_drops.extend(op.inverse() for op in _dependents(scope, table, field))
        column_drops.append(_add_column(scope, table, field).inverse())

    for field in kept:
        old = old_fields[field.name]
        old_dependents = _dependents(scope, table, old)
        new_dependents = _dependents(scope, table, field)
        dependent_drops.extend(op.inverse() for op in old_dependents if op not in new_dependents)
        before, after = column_spec(old), column_spec(field)
        if before != after:
            alters.append(
                SchemaOperation(
                    kind=OperationKind.ALTER_COLUMN,
                    scope=scope,
                    table=table,
                    target=field.column_name,
                    payload={"column": field.column_name, "before": before, "after": after},
                )
            )

    for field in added:
        column_adds.append(_add_column(scope, table, field))

    # Dependent creation follows the new declaration order.
    for field in definition.fields:
        new_dependents = _dependents(scope, table, field)
        if field in added:
            dependent_adds.extend(new_dependents)
            continue
        old_dependents = _dependents(scope, table, old_fields[field.name])
        dependent_adds.extend(op for op in new_dependents if op not in old_dependents)

    return dependent_drops + column_drops + alters + column_adds + dependent_adds


def compile_table(
    definition: TableDefinition,
    prior: TableDefinition | None = None,
    *,
    scope: Scope | str,
) -> MigrationPlan:
    # Pure: the same inputs always yield the same plan and checksum.
    resolved_scope = Scope.parse(scope)
    if prior is None:
        operations = _fresh_operations(resolved_scope, definition)
    else:
        if prior.name != definition.name:
            raise ValidationError.single("name", "immutable", "table name cannot change in an update")
        if prior.physical_name != definition.physical_name:
            raise ValidationError.single(
                "storageTable", "immutable", "physical table name cannot change in an update"
            )
        operations = _delta_operations(resolved_scope, definition, prior)
    return MigrationPlan(
        scope=resolved_scope,
        table=definition.name,
        operations=tuple(operations),
        definition=definition,
        prior=prior,
    )


def compile_drop_table(definition: TableDefinition, *, scope: Scope | str) -> MigrationPlan:
    # Dropping a table is the exact inverse of creating it from scratch.
    resolved_scope = Scope.parse(scope)
    fresh = _fresh_operations(resolved_scope, definition)
    return MigrationPlan(
        scope=resolved_scope,
        table=definition.name,
        operations=tuple(operation.inverse() for operation in reversed(fresh)),
        definition=None,
        prior=definition,
    )
