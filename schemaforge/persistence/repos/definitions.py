from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from schemaforge.domain.definitions import TableDefinition
from schemaforge.domain.models import TableDefinitionRecord, TableDefinitionVersion


async def get_record(session: AsyncSession, name: str) -> TableDefinitionRecord | None:
    return await session.get(TableDefinitionRecord, name)


async def load_definition(session: AsyncSession, name: str) -> TableDefinition | None:
    record = await get_record(session, name)
    if record is None:
        return None
    return TableDefinition.from_dict(record.definition_json)


async def list_definitions(session: AsyncSession) -> list[TableDefinition]:
    result = await session.execute(select(TableDefinitionRecord).order_by(TableDefinitionRecord.name))
    return [TableDefinition.from_dict(record.definition_json) for record in result.scalars().all()]


async def upsert_definition(
    session: AsyncSession, definition: TableDefinition, *, checksum: str
) -> TableDefinitionRecord:
    record = await get_record(session, definition.name)
    if record is None:
        record = TableDefinitionRecord(name=definition.name)
        session.add(record)
    record.storage_table = definition.physical_name
    record.definition_json = definition.to_dict()
    record.fingerprint = definition.fingerprint()
    record.checksum = checksum
    await session.flush()
    return record


async def delete_definition(session: AsyncSession, name: str) -> None:
    await session.execute(delete(TableDefinitionRecord).where(TableDefinitionRecord.name == name))


def _as_json(definition: TableDefinition | None) -> dict | None:
    return definition.to_dict() if definition is not None else None


async def add_version(
    session: AsyncSession,
    *,
    table_name: str,
    checksum: str,
    definition: TableDefinition | None,
    prior: TableDefinition | None,
) -> TableDefinitionVersion:
    version = TableDefinitionVersion(
        table_name=table_name,
        checksum=checksum,
        definition_json=_as_json(definition),
        prior_json=_as_json(prior),
    )
    session.add(version)
    return version


async def latest_version(session: AsyncSession, table_name: str) -> TableDefinitionVersion | None:
    result = await session.execute(
        select(TableDefinitionVersion)
        .where(TableDefinitionVersion.table_name == table_name)
        .order_by(TableDefinitionVersion.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def delete_version(session: AsyncSession, table_name: str, checksum: str) -> None:
    # Only the newest row for the checksum; older rows belong to earlier history.
    newest = (
        select(TableDefinitionVersion.id)
        .where(
            TableDefinitionVersion.table_name == table_name,
            TableDefinitionVersion.checksum == checksum,
        )
        .order_by(TableDefinitionVersion.id.desc())
        .limit(1)
        .scalar_subquery()
    )
    await session.execute(
        delete(TableDefinitionVersion)
        .where(TableDefinitionVersion.id == newest)
        .execution_options(synchronize_session=False)
    )
