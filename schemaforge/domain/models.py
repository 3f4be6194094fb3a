from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    func,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class MigrationRecord(Base):
    # Column semantics of id/timestamp/name match ledgers written by the previous
    # implementation; the remaining columns are nullable additions.
    __tablename__ = "migrations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Epoch milliseconds of application.
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # Checksum of the applied operation sequence.
    name: Mapped[str] = mapped_column(String, nullable=False)
    scope: Mapped[str | None] = mapped_column(String, nullable=True)
    database_identifier: Mapped[str | None] = mapped_column(String, nullable=True)
    # False when the forward sequence dropped data the inverse cannot restore.
    reversible: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    @property
    def checksum(self) -> str:
        return self.name

    @property
    def applied_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp / 1000.0, tz=timezone.utc)


# Ledger columns added to pre-existing `migrations` tables that lack them.
LEDGER_OPTIONAL_COLUMNS = ("scope", "database_identifier", "reversible")


class TableDefinitionRecord(Base):
    __tablename__ = "table_definitions"

    # Logical table name; unique within the scoped database.
    name: Mapped[str] = mapped_column(String, primary_key=True)
    storage_table: Mapped[str] = mapped_column(String, nullable=False)
    definition_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    fingerprint: Mapped[str] = mapped_column(String, nullable=False)
    # Checksum of the plan that produced the current definition.
    checksum: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SchemaChangeLog(Base):
    __tablename__ = "schema_change_log"
    __table_args__ = (
        Index("ix_schema_change_log_table_created", "table_name", "created_at"),
        Index("ix_schema_change_log_checksum", "checksum"),
    )

    # Audit trail of every executed (or failed) physical operation.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    table_name: Mapped[str] = mapped_column(String, nullable=False)
    checksum: Mapped[str] = mapped_column(String, nullable=False)
    # "up" for apply, "down" for revert.
    direction: Mapped[str] = mapped_column(String, nullable=False)
    position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    operation: Mapped[str | None] = mapped_column(String, nullable=True)
    target: Mapped[str | None] = mapped_column(String, nullable=True)
    payload_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TableDefinitionVersion(Base):
    __tablename__ = "table_definition_versions"
    __table_args__ = (
        Index("ix_table_definition_versions_table", "table_name", "id"),
        Index("ix_table_definition_versions_checksum", "checksum"),
    )

    # One row per applied plan; the newest row per table is what a revert undoes.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    table_name: Mapped[str] = mapped_column(String, nullable=False)
    checksum: Mapped[str] = mapped_column(String, nullable=False)
    # Null definition means the plan dropped the table; null prior means it created it.
    definition_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    prior_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


LEDGER_TABLES = (
    MigrationRecord.__table__,
    TableDefinitionRecord.__table__,
    TableDefinitionVersion.__table__,
    SchemaChangeLog.__table__,
)
