from __future__ import annotations

import pytest

from schemaforge.core.errors import ValidationError
from schemaforge.domain.scopes import Scope
from schemaforge.schema.compiler import STANDARD_COLUMNS, compile_drop_table, compile_table, physical_name
from schemaforge.schema.operations import OperationKind
from schemaforge.schema.validation import validate_table


def _definition(fields: list[dict], **extra):
    return validate_table({"name": "invoices", "fields": fields, **extra}).raise_for_violations()


AMOUNT = {"name": "amount", "type": "number", "required": True}


def test_fresh_table_compiles_to_create_and_columns() -> None:
    plan = compile_table(_definition([AMOUNT]), scope=Scope.TENANT)
    assert plan.kinds() == [OperationKind.CREATE_TABLE, OperationKind.ADD_COLUMN]
    create, add = plan.operations
    assert create.table == "invoices"
    assert [column["name"] for column in create.payload["columns"]] == [c["name"] for c in STANDARD_COLUMNS]
    assert add.target == "amount"
    assert add.payload["column"] == {"name": "amount", "kind": "number", "nullable": False, "default": None}
    assert all(operation.scope is Scope.TENANT for operation in plan.operations)
    assert plan.prior is None
    assert not plan.is_destructive


def test_adding_a_field_is_one_add_column() -> None:
    prior = _definition([AMOUNT])
    updated = _definition([AMOUNT, {"name": "due_date", "type": "date"}])
    plan = compile_table(updated, prior, scope=Scope.TENANT)
    assert plan.kinds() == [OperationKind.ADD_COLUMN]
    assert plan.operations[0].target == "due_date"


def test_dependents_follow_columns_in_declaration_order() -> None:
    plan = compile_table(
        _definition(
            [
                {"name": "number", "type": "string", "isUnique": True},
                {"name": "customer", "type": "reference", "config": {"referenceTable": "customers"}},
                {"name": "issued_on", "type": "date", "isIndexed": True},
            ]
        ),
        scope="tenant",
    )
    assert plan.kinds() == [
        OperationKind.CREATE_TABLE,
        OperationKind.ADD_COLUMN,
        OperationKind.ADD_COLUMN,
        OperationKind.ADD_COLUMN,
        OperationKind.ADD_CONSTRAINT,
        OperationKind.ADD_INDEX,
        OperationKind.ADD_CONSTRAINT,
        OperationKind.ADD_INDEX,
    ]
    targets = [operation.target for operation in plan.operations[4:]]
    assert targets == [
        "uq_invoices_number",
        "ix_invoices_customer",
        "fk_invoices_customer",
        "ix_invoices_issued_on",
    ]
    fk = plan.operations[6]
    assert fk.payload["referent_table"] == "customers"
    assert fk.payload["referent_columns"] == ["id"]


def test_delta_ordering() -> None:
    prior = _definition(
        [
            AMOUNT,
            {"name": "code", "type": "string", "isIndexed": True},
            {"name": "notes", "type": "text"},
        ]
    )
    updated = _definition(
        [
            {"name": "amount", "type": "number", "required": False},
            {"name": "code", "type": "string", "isUnique": True},
            {"name": "paid", "type": "boolean"},
        ]
    )
    plan = compile_table(updated, prior, scope=Scope.TENANT)
    assert [(operation.kind, operation.target) for operation in plan.operations] == [
        (OperationKind.DROP_INDEX, "ix_invoices_code"),
        (OperationKind.DROP_COLUMN, "notes"),
        (OperationKind.ALTER_COLUMN, "amount"),
        (OperationKind.ADD_COLUMN, "paid"),
        (OperationKind.ADD_CONSTRAINT, "uq_invoices_code"),
    ]
    assert plan.is_destructive
    assert not plan.reversible
    alter = plan.operations[2]
    assert alter.payload["before"]["nullable"] is False
    assert alter.payload["after"]["nullable"] is True


def test_unchanged_fields_emit_nothing() -> None:
    prior = _definition([AMOUNT])
    plan = compile_table(_definition([AMOUNT]), prior, scope=Scope.TENANT)
    assert plan.operations == ()


def test_storage_path_change_moves_the_column() -> None:
    prior = _definition([{"name": "amount", "type": "number"}])
    updated = _definition([{"name": "amount", "type": "number", "storagePath": "amount_value"}])
    plan = compile_table(updated, prior, scope=Scope.TENANT)
    assert [(operation.kind, operation.target) for operation in plan.operations] == [
        (OperationKind.DROP_COLUMN, "amount"),
        (OperationKind.ADD_COLUMN, "amount_value"),
    ]


def test_inverse_round_trip() -> None:
    prior = _definition([AMOUNT, {"name": "code", "type": "string", "isIndexed": True}])
    updated = _definition([AMOUNT, {"name": "code", "type": "integer", "isUnique": True}])
    plan = compile_table(updated, prior, scope=Scope.TENANT)
    inverse = plan.inverse_operations
    assert [operation.kind for operation in inverse] == [
        OperationKind.DROP_CONSTRAINT,
        OperationKind.ALTER_COLUMN,
        OperationKind.ADD_INDEX,
    ]
    # Inverting twice gives back the forward sequence.
    assert tuple(operation.inverse() for operation in reversed(inverse)) == plan.operations
    assert inverse[1].payload["after"]["kind"] == "string"


def test_compilation_is_deterministic() -> None:
    first = compile_table(_definition([AMOUNT]), scope=Scope.TENANT)
    second = compile_table(_definition([AMOUNT]), scope=Scope.TENANT)
    assert first == second
    assert first.checksum == second.checksum
    assert compile_table(_definition([AMOUNT]), scope=Scope.PLATFORM).checksum != first.checksum


def test_metadata_change_has_distinct_checksum() -> None:
    prior = _definition([AMOUNT])
    relabelled = _definition([{**AMOUNT, "label": "Amount due"}])
    plan = compile_table(relabelled, prior, scope=Scope.TENANT)
    assert plan.operations == ()
    assert plan.checksum != compile_table(prior, prior, scope=Scope.TENANT).checksum


def test_table_rename_is_rejected() -> None:
    prior = _definition([AMOUNT])
    moved = _definition([AMOUNT], storageTable="invoices_v2")
    with pytest.raises(ValidationError) as excinfo:
        compile_table(moved, prior, scope=Scope.TENANT)
    assert excinfo.value.rules() == {"immutable"}


def test_drop_table_is_inverse_of_create() -> None:
    definition = _definition([AMOUNT, {"name": "code", "type": "string", "isUnique": True}])
    create = compile_table(definition, scope=Scope.TENANT)
    drop = compile_drop_table(definition, scope=Scope.TENANT)
    assert drop.operations == create.inverse_operations
    assert drop.kinds()[-1] is OperationKind.DROP_TABLE
    assert drop.prior == definition and drop.definition is None
    assert drop.is_destructive


def test_long_names_are_truncated_with_hash() -> None:
    name = physical_name("ix", "t" * 60, "c" * 30)
    assert len(name) == 63
    assert name != physical_name("ix", "t" * 60, "c" * 31)
    assert physical_name("ix", "invoices", "code") == "ix_invoices_code"
