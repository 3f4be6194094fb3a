from __future__ import annotations

import asyncio

import pytest
import sqlalchemy as sa

from schemaforge.core.errors import (
    DefinitionConflictError,
    NotAppliedError,
    ScopeMismatchError,
    TableNotFoundError,
    ValidationError,
)
from schemaforge.domain.scopes import Scope, ScopeContext
from schemaforge.persistence import ddl
from schemaforge.schema.catalog import STRING_LENGTH, CHOICE_LENGTH
from schemaforge.tests.utils.definitions import PLATFORM, TENANT_ACME, invoices_definition, with_fields


DUE_DATE = {"name": "due_date", "type": "date"}


async def _tables(table_service, context: ScopeContext = TENANT_ACME) -> list[str]:
    target = table_service.resolve(context)
    async with table_service._registry.lease(target) as engine, engine.connect() as conn:
        return await conn.run_sync(ddl.list_tables)


async def _describe(table_service, context: ScopeContext, table: str) -> dict:
    target = table_service.resolve(context)
    engine = await table_service._registry.get(target)
    async with engine.connect() as conn:
        return await conn.run_sync(ddl.describe_table, table)


@pytest.mark.asyncio
async def test_define_invoices_in_tenant_database(table_service, tmp_path) -> None:
    outcome = await table_service.define_table(invoices_definition(), context=TENANT_ACME)

    assert outcome.applied
    assert outcome.database == "eam_tenant_acme"
    assert outcome.operations == 2
    assert (tmp_path / "eam_tenant_acme.db").exists()
    assert not (tmp_path / "eam_platform.db").exists()
    stored = await table_service.get_table("invoices", context=TENANT_ACME)
    assert [field.name for field in stored.fields] == ["amount"]


@pytest.mark.asyncio
async def test_every_kind_reflects_as_catalogued(table_service) -> None:
    raw = {
        "name": "catalog_items",
        "fields": [
            {"name": "title", "type": "string", "required": True, "isUnique": True},
            {"name": "body", "type": "text"},
            {"name": "price", "type": "number", "defaultValue": 9.99},
            {"name": "qty", "type": "integer", "isIndexed": True},
            {"name": "active", "type": "boolean", "defaultValue": True},
            {"name": "released_on", "type": "date"},
            {"name": "seen_at", "type": "datetime"},
            {"name": "status", "type": "choice", "options": ["draft", "live"], "defaultValue": "draft"},
            {"name": "category", "type": "reference", "config": {"referenceTable": "categories"}},
        ],
    }
    await table_service.define_table(
        {"name": "categories", "fields": [{"name": "label_text", "type": "string"}]}, context=PLATFORM
    )
    await table_service.define_table(raw, context=PLATFORM)
    shape = await _describe(table_service, PLATFORM, "catalog_items")
    columns = shape["columns"]

    expected = {
        "title": sa.String,
        "body": sa.Text,
        "price": sa.Numeric,
        "qty": sa.Integer,
        "active": sa.Boolean,
        "released_on": sa.Date,
        "seen_at": sa.DateTime,
        "status": sa.String,
        # SQLite has no native UUID and stores it as CHAR(32).
        "category": sa.String,
    }
    for name, sa_type in expected.items():
        assert isinstance(columns[name]["type"], sa_type), (name, columns[name]["type"])
    assert columns["title"]["type"].length == STRING_LENGTH
    assert columns["status"]["type"].length == CHOICE_LENGTH
    assert columns["title"]["nullable"] is False
    assert columns["body"]["nullable"] is True
    assert "uq_catalog_items_title" in shape["unique_constraints"]
    assert {"ix_catalog_items_qty", "ix_catalog_items_category"} <= set(shape["indexes"])
    assert shape["foreign_keys"]["fk_catalog_items_category"]["referred_table"] == "categories"


@pytest.mark.asyncio
async def test_update_adds_due_date_then_revert_restores(table_service) -> None:
    await table_service.define_table(invoices_definition(), context=TENANT_ACME)
    outcome = await table_service.update_table(
        "invoices", with_fields(invoices_definition(), DUE_DATE), context=TENANT_ACME
    )
    assert outcome.operations == 1
    assert "due_date" in (await _describe(table_service, TENANT_ACME, "invoices"))["columns"]

    with pytest.raises(ValidationError):
        await table_service.revert_table("invoices", context=TENANT_ACME)
    reverted = await table_service.revert_table("invoices", context=TENANT_ACME, confirm_destructive=True)
    assert reverted.direction == "down"
    assert reverted.checksum == outcome.checksum
    assert "due_date" not in (await _describe(table_service, TENANT_ACME, "invoices"))["columns"]
    stored = await table_service.get_table("invoices", context=TENANT_ACME)
    assert [field.name for field in stored.fields] == ["amount"]


@pytest.mark.asyncio
async def test_revert_walks_back_through_history(table_service) -> None:
    await table_service.define_table(invoices_definition(), context=TENANT_ACME)
    await table_service.update_table("invoices", with_fields(invoices_definition(), DUE_DATE), context=TENANT_ACME)

    await table_service.revert_table("invoices", context=TENANT_ACME, confirm_destructive=True)
    await table_service.revert_table("invoices", context=TENANT_ACME, confirm_destructive=True)

    assert await table_service.list_tables(context=TENANT_ACME) == []
    assert (await _describe(table_service, TENANT_ACME, "invoices")) == {}
    with pytest.raises(NotAppliedError):
        await table_service.revert_table("invoices", context=TENANT_ACME)


@pytest.mark.asyncio
async def test_revert_of_never_migrated_table_runs_no_ddl(table_service) -> None:
    with pytest.raises(NotAppliedError) as excinfo:
        await table_service.revert_table("invoices", context=TENANT_ACME, confirm_destructive=True)
    assert excinfo.value.table == "invoices"
    assert excinfo.value.database == "eam_tenant_acme"
    assert await _tables(table_service) == []


@pytest.mark.asyncio
async def test_drop_then_revert_recreates_table(table_service) -> None:
    await table_service.define_table(invoices_definition(), context=TENANT_ACME)
    with pytest.raises(ValidationError):
        await table_service.drop_table("invoices", context=TENANT_ACME)

    await table_service.drop_table("invoices", context=TENANT_ACME, confirm_destructive=True)
    assert (await _describe(table_service, TENANT_ACME, "invoices")) == {}
    with pytest.raises(TableNotFoundError):
        await table_service.get_table("invoices", context=TENANT_ACME)

    await table_service.revert_table("invoices", context=TENANT_ACME)
    assert "amount" in (await _describe(table_service, TENANT_ACME, "invoices"))["columns"]


@pytest.mark.asyncio
async def test_unchanged_update_is_a_noop(table_service) -> None:
    created = await table_service.define_table(invoices_definition(), context=TENANT_ACME)
    outcome = await table_service.update_table("invoices", invoices_definition(), context=TENANT_ACME)
    assert not outcome.applied
    assert outcome.record_id == created.record_id
    assert outcome.checksum == created.checksum


@pytest.mark.asyncio
async def test_validation_errors_reach_the_caller(table_service) -> None:
    raw = invoices_definition(fields=[{"name": "status", "type": "choice", "options": []}])
    with pytest.raises(ValidationError) as excinfo:
        await table_service.define_table(raw, context=TENANT_ACME)
    assert [(v.field, v.rule) for v in excinfo.value.violations] == [("fields[0].options", "options")]


@pytest.mark.asyncio
async def test_missing_reference_target_is_rejected(table_service) -> None:
    raw = with_fields(
        invoices_definition(),
        {"name": "customer", "type": "reference", "config": {"referenceTable": "customers"}},
    )
    with pytest.raises(ValidationError) as excinfo:
        await table_service.define_table(raw, context=TENANT_ACME)
    assert excinfo.value.rules() == {"reference_target"}

    await table_service.define_table(
        {"name": "customers", "fields": [{"name": "full_name", "type": "string"}]}, context=TENANT_ACME
    )
    outcome = await table_service.define_table(raw, context=TENANT_ACME)
    assert outcome.applied


@pytest.mark.asyncio
async def test_missing_reference_column_is_rejected(table_service) -> None:
    await table_service.define_table(
        {"name": "customers", "fields": [{"name": "full_name", "type": "string"}]}, context=TENANT_ACME
    )
    raw = with_fields(
        invoices_definition(),
        {"name": "customer", "type": "reference", "config": {"referenceTable": "customers", "referenceColumn": "nope"}},
    )
    with pytest.raises(ValidationError) as excinfo:
        await table_service.define_table(raw, context=TENANT_ACME)
    assert [(v.field, v.rule) for v in excinfo.value.violations] == [
        ("fields[1].config.referenceColumn", "reference_target")
    ]
    assert "invoices" not in await _tables(table_service)

    raw["fields"][1]["config"]["referenceColumn"] = "id"
    assert (await table_service.define_table(raw, context=TENANT_ACME)).applied


@pytest.mark.asyncio
async def test_self_reference_checks_its_own_columns(table_service) -> None:
    raw = with_fields(
        invoices_definition(),
        {"name": "parent", "type": "reference", "config": {"referenceTable": "invoices", "referenceColumn": "missing"}},
    )
    with pytest.raises(ValidationError) as excinfo:
        await table_service.define_table(raw, context=TENANT_ACME)
    assert excinfo.value.rules() == {"reference_target"}


@pytest.mark.asyncio
async def test_rename_in_update_is_rejected(table_service) -> None:
    await table_service.define_table(invoices_definition(), context=TENANT_ACME)
    with pytest.raises(ValidationError) as excinfo:
        await table_service.update_table("invoices", invoices_definition(name="bills"), context=TENANT_ACME)
    assert excinfo.value.rules() == {"immutable"}


@pytest.mark.asyncio
async def test_redefining_with_other_fields_conflicts(table_service) -> None:
    await table_service.define_table(invoices_definition(), context=TENANT_ACME)
    with pytest.raises(DefinitionConflictError):
        await table_service.define_table(with_fields(invoices_definition(), DUE_DATE), context=TENANT_ACME)


@pytest.mark.asyncio
async def test_concurrent_defines_produce_one_table(table_service) -> None:
    outcomes = await asyncio.gather(
        *(table_service.define_table(invoices_definition(), context=TENANT_ACME) for _ in range(4))
    )
    assert [outcome.applied for outcome in outcomes].count(True) == 1
    tables = await table_service.list_tables(context=TENANT_ACME)
    assert [definition.name for definition in tables] == ["invoices"]


@pytest.mark.asyncio
async def test_scopes_are_isolated(table_service) -> None:
    await table_service.define_table(invoices_definition(), context=TENANT_ACME)
    globex = ScopeContext(Scope.TENANT, tenant_id="globex")
    assert await table_service.list_tables(context=globex) == []

    with pytest.raises(ScopeMismatchError):
        await table_service.define_table(invoices_definition(), context=TENANT_ACME, scope=Scope.PLATFORM)
    with pytest.raises(ScopeMismatchError):
        await table_service.define_table(invoices_definition(), context=ScopeContext(Scope.TENANT))


@pytest.mark.asyncio
async def test_returning_to_an_earlier_shape_applies_again(table_service) -> None:
    base = invoices_definition()
    extended = with_fields(invoices_definition(), DUE_DATE)
    await table_service.define_table(base, context=TENANT_ACME)
    first = await table_service.update_table("invoices", extended, context=TENANT_ACME)
    await table_service.update_table("invoices", base, context=TENANT_ACME, confirm_destructive=True)

    again = await table_service.update_table("invoices", extended, context=TENANT_ACME)
    assert again.applied
    assert again.checksum == first.checksum
    assert again.record_id != first.record_id
    assert "due_date" in (await _describe(table_service, TENANT_ACME, "invoices"))["columns"]

    await table_service.revert_table("invoices", context=TENANT_ACME, confirm_destructive=True)
    assert "due_date" not in (await _describe(table_service, TENANT_ACME, "invoices"))["columns"]
    # The earlier application of the same plan is still the next step back in history.
    await table_service.revert_table("invoices", context=TENANT_ACME)
    assert "due_date" in (await _describe(table_service, TENANT_ACME, "invoices"))["columns"]
