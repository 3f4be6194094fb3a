from __future__ import annotations

import time

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from schemaforge.domain.models import MigrationRecord
from schemaforge.domain.scopes import DatabaseTarget


def now_ms() -> int:
    return int(time.time() * 1000)


async def find_by_checksum(session: AsyncSession, checksum: str) -> MigrationRecord | None:
    # A plan re-applied after its table moved away and back is recorded again; newest row wins.
    result = await session.execute(
        select(MigrationRecord)
        .where(MigrationRecord.name == checksum)
        .order_by(MigrationRecord.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_records(session: AsyncSession, *, limit: int = 100) -> list[MigrationRecord]:
    result = await session.execute(select(MigrationRecord).order_by(MigrationRecord.id.desc()).limit(limit))
    return list(result.scalars().all())


async def add_record(
    session: AsyncSession,
    *,
    checksum: str,
    target: DatabaseTarget,
    reversible: bool,
    applied_at_ms: int | None = None,
) -> MigrationRecord:
    record = MigrationRecord(
        timestamp=applied_at_ms if applied_at_ms is not None else now_ms(),
        name=checksum,
        scope=target.scope.value,
        database_identifier=target.identifier,
        reversible=reversible,
    )
    session.add(record)
    await session.flush()
    return record


async def delete_record(session: AsyncSession, record_id: int) -> None:
    await session.execute(delete(MigrationRecord).where(MigrationRecord.id == record_id))
