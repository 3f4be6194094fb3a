from __future__ import annotations

from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from schemaforge.domain.models import SchemaChangeLog
from schemaforge.domain.scopes import DatabaseTarget
from schemaforge.schema.operations import SchemaOperation


def add_entries(
    session: AsyncSession,
    *,
    table_name: str,
    checksum: str,
    direction: str,
    target: DatabaseTarget,
    operations: Iterable[SchemaOperation],
) -> list[SchemaChangeLog]:
    # One row per executed operation, in execution order.
    entries = [
        SchemaChangeLog(
            table_name=table_name,
            checksum=checksum,
            direction=direction,
            position=position,
            operation=operation.kind.value,
            target=f"{target.database}:{operation.table}.{operation.target}",
            payload_json=operation.payload,
            success=True,
        )
        for position, operation in enumerate(operations)
    ]
    session.add_all(entries)
    return entries


def add_failure(
    session: AsyncSession,
    *,
    table_name: str,
    checksum: str,
    direction: str,
    target: DatabaseTarget,
    position: int | None,
    operation: SchemaOperation | None,
    error_message: str,
) -> SchemaChangeLog:
    entry = SchemaChangeLog(
        table_name=table_name,
        checksum=checksum,
        direction=direction,
        position=position,
        operation=operation.kind.value if operation is not None else None,
        target=(
            f"{target.database}:{operation.table}.{operation.target}"
            if operation is not None
            else target.database
        ),
        payload_json=operation.payload if operation is not None else None,
        success=False,
        error_message=error_message[:2000],
    )
    session.add(entry)
    return entry


async def list_entries(
    session: AsyncSession,
    *,
    table_name: str | None = None,
    checksum: str | None = None,
    limit: int = 200,
) -> list[SchemaChangeLog]:
    stmt = select(SchemaChangeLog)
    if table_name:
        stmt = stmt.where(SchemaChangeLog.table_name == table_name)
    if checksum:
        stmt = stmt.where(SchemaChangeLog.checksum == checksum)
    stmt = stmt.order_by(SchemaChangeLog.id).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
