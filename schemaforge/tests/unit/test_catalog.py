from __future__ import annotations

from decimal import Decimal

import pytest
import sqlalchemy as sa

from schemaforge.schema.catalog import (
    FIELD_TYPES,
    INTEGER_MAX,
    INTEGER_MIN,
    FieldKind,
    get_field_type,
    is_known_kind,
    known_kinds,
)


def test_catalog_covers_every_kind() -> None:
    assert set(FIELD_TYPES) == set(FieldKind)
    assert known_kinds()[0] == "string"
    assert is_known_kind("reference")
    assert not is_known_kind("money")
    assert not is_known_kind(None)


@pytest.mark.parametrize(
    ("kind", "sa_type"),
    [
        ("string", sa.String),
        ("text", sa.Text),
        ("number", sa.Numeric),
        ("integer", sa.Integer),
        ("boolean", sa.Boolean),
        ("date", sa.Date),
        ("datetime", sa.DateTime),
        ("choice", sa.String),
        ("reference", sa.Uuid),
    ],
)
def test_physical_types(kind: str, sa_type: type) -> None:
    column_type = get_field_type(kind).column_type()
    assert isinstance(column_type, sa_type)


def test_types_are_not_shared() -> None:
    field_type = get_field_type("string")
    assert field_type.column_type() is not field_type.column_type()
    assert field_type.column_type().length == 255
    assert get_field_type("choice").column_type().length == 100


def test_server_default_rendering() -> None:
    assert get_field_type("boolean").server_default(True) == "1"
    assert get_field_type("boolean").server_default(False) == "0"
    assert get_field_type("number").server_default(12.5) == str(Decimal("12.5"))
    assert get_field_type("integer").server_default(7) == "7"
    assert get_field_type("string").server_default(None) is None
    assert get_field_type("boolean").implicit_default == "0"


def test_reference_kind_flags() -> None:
    reference = get_field_type("reference")
    assert reference.is_reference
    assert not reference.supports_default
    assert not get_field_type("text").supports_unique
    assert get_field_type("choice").check_default("open", ("open", "closed"))
    assert not get_field_type("choice").check_default("void", ("open",))


def test_integer_defaults_stay_in_column_range() -> None:
    integer = get_field_type("integer")
    assert integer.check_default(INTEGER_MAX, ())
    assert integer.check_default(INTEGER_MIN, ())
    assert not integer.check_default(INTEGER_MAX + 1, ())
    assert not integer.check_default(2**40, ())
    assert not integer.check_default(True, ())
