from __future__ import annotations

import logging
from typing import Any, Mapping

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy.engine import Connection

from schemaforge.domain.models import LEDGER_OPTIONAL_COLUMNS, LEDGER_TABLES, Base, MigrationRecord
from schemaforge.schema.catalog import get_field_type
from schemaforge.schema.operations import OperationKind, SchemaOperation


logger = logging.getLogger(__name__)

_CONSTRAINT_TYPES = {"unique": "unique", "foreign_key": "foreignkey"}


def _operations(connection: Connection) -> Operations:
    return Operations(MigrationContext.configure(connection))


def _batch(op: Operations, connection: Connection, table: str):
    # SQLite cannot ALTER most things in place; copy-and-move inside the open transaction.
    recreate = "always" if connection.dialect.name == "sqlite" else "auto"
    return op.batch_alter_table(table, recreate=recreate)


def _server_default(spec: Mapping[str, Any]) -> Any:
    if spec.get("default_expression"):
        return sa.text(spec["default_expression"])
    return spec.get("default")


def build_column(spec: Mapping[str, Any]) -> sa.Column:
    field_type = get_field_type(spec["kind"])
    return sa.Column(
        spec["name"],
        field_type.column_type(),
        primary_key=bool(spec.get("primary_key", False)),
        nullable=bool(spec.get("nullable", True)),
        server_default=_server_default(spec),
    )


def _alter_column(op: Operations, connection: Connection, operation: SchemaOperation) -> None:
    before = operation.payload["before"]
    after = operation.payload["after"]
    kwargs: dict[str, Any] = {
        "existing_type": get_field_type(before["kind"]).column_type(),
        "existing_nullable": bool(before.get("nullable", True)),
        "existing_server_default": _server_default(before),
    }
    if before["kind"] != after["kind"]:
        kwargs["type_"] = get_field_type(after["kind"]).column_type()
    if before.get("nullable") != after.get("nullable"):
        kwargs["nullable"] = bool(after.get("nullable", True))
    if (before.get("default"), before.get("default_expression")) != (
        after.get("default"),
        after.get("default_expression"),
    ):
        # None drops the default; False (alembic's sentinel) leaves it alone.
        kwargs["server_default"] = _server_default(after)
    with _batch(op, connection, operation.table) as batch:
        batch.alter_column(operation.payload["column"], **kwargs)


def execute_operation(connection: Connection, operation: SchemaOperation) -> None:
    """Run one schema operation on a synchronous connection inside the caller's transaction."""
    op = _operations(connection)
    payload = operation.payload
    kind = operation.kind

    if kind is OperationKind.CREATE_TABLE:
        op.create_table(operation.table, *(build_column(spec) for spec in payload["columns"]))
    elif kind is OperationKind.DROP_TABLE:
        op.drop_table(operation.table)
    elif kind is OperationKind.ADD_COLUMN:
        with _batch(op, connection, operation.table) as batch:
            batch.add_column(build_column(payload["column"]))
    elif kind is OperationKind.DROP_COLUMN:
        with _batch(op, connection, operation.table) as batch:
            batch.drop_column(operation.target)
    elif kind is OperationKind.ALTER_COLUMN:
        _alter_column(op, connection, operation)
    elif kind is OperationKind.ADD_INDEX:
        op.create_index(
            payload["name"], operation.table, list(payload["columns"]), unique=bool(payload.get("unique"))
        )
    elif kind is OperationKind.DROP_INDEX:
        op.drop_index(payload["name"], table_name=operation.table)
    elif kind is OperationKind.ADD_CONSTRAINT:
        with _batch(op, connection, operation.table) as batch:
            if payload["type"] == "unique":
                batch.create_unique_constraint(payload["name"], list(payload["columns"]))
            else:
                batch.create_foreign_key(
                    payload["name"],
                    payload["referent_table"],
                    list(payload["columns"]),
                    list(payload["referent_columns"]),
                )
    elif kind is OperationKind.DROP_CONSTRAINT:
        with _batch(op, connection, operation.table) as batch:
            batch.drop_constraint(payload["name"], type_=_CONSTRAINT_TYPES[payload["type"]])
    else:  # pragma: no cover - OperationKind is closed
        raise ValueError(f"Unsupported operation kind: {kind}")
    logger.debug("ddl_operation_executed op=%s", operation.describe())


def has_ledger(connection: Connection) -> bool:
    return sa.inspect(connection).has_table(MigrationRecord.__tablename__)


def ensure_ledger(connection: Connection) -> None:
    # Ledgers written by earlier deployments only carry id/timestamp/name.
    existed = has_ledger(connection)
    Base.metadata.create_all(connection, tables=list(LEDGER_TABLES), checkfirst=True)
    if not existed:
        return
    present = {column["name"] for column in sa.inspect(connection).get_columns(MigrationRecord.__tablename__)}
    missing = [name for name in LEDGER_OPTIONAL_COLUMNS if name not in present]
    if not missing:
        return
    op = _operations(connection)
    for name in missing:
        op.add_column(
            MigrationRecord.__tablename__,
            sa.Column(name, MigrationRecord.__table__.c[name].type, nullable=True),
        )
    logger.info("ledger_columns_added columns=%s", ",".join(missing))


def column_names(connection: Connection, table: str) -> set[str] | None:
    # None when the table itself is missing.
    inspector = sa.inspect(connection)
    if not inspector.has_table(table):
        return None
    return {column["name"] for column in inspector.get_columns(table)}


def describe_table(connection: Connection, table: str) -> dict[str, Any]:
    # Physical shape of a table as reflected by the database.
    inspector = sa.inspect(connection)
    if not inspector.has_table(table):
        return {}
    return {
        "columns": {column["name"]: column for column in inspector.get_columns(table)},
        "indexes": {index["name"]: index for index in inspector.get_indexes(table)},
        "unique_constraints": {item["name"]: item for item in inspector.get_unique_constraints(table)},
        "foreign_keys": {item["name"]: item for item in inspector.get_foreign_keys(table)},
    }


def list_tables(connection: Connection) -> list[str]:
    return sorted(sa.inspect(connection).get_table_names())
