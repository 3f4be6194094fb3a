"""Closed registry of supported field kinds.

Each entry says how a kind is stored physically, which constraints apply to it,
how a ``defaultValue`` is checked and rendered as a server default, and whether
the kind points at another table. Adding a kind means adding one entry to
``FIELD_TYPES``; call sites look kinds up and never branch on names.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable

import sqlalchemy as sa


class FieldKind(str, Enum):
    STRING = "string"
    TEXT = "text"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    CHOICE = "choice"
    REFERENCE = "reference"


STRING_LENGTH = 255
CHOICE_LENGTH = 100


@dataclass(frozen=True)
class FieldType:
    kind: FieldKind
    # Builds a fresh SQLAlchemy type; types are mutable so never share instances.
    storage: Callable[[], sa.types.TypeEngine]
    # Short physical description used in logs and change-log payloads.
    physical: str
    supports_unique: bool = True
    supports_index: bool = True
    supports_default: bool = True
    is_reference: bool = False
    check_default: Callable[[Any, tuple[str, ...]], bool] = lambda value, options: False
    render_default: Callable[[Any], str] = str
    # Server default applied when a nullable field declares none.
    implicit_default: str | None = None

    def column_type(self) -> sa.types.TypeEngine:
        return self.storage()

    def server_default(self, value: Any) -> str | None:
        if value is None:
            return None
        return self.render_default(value)


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float, Decimal)):
        return True
    if isinstance(value, str):
        try:
            Decimal(value)
        except InvalidOperation:
            return False
        return value.strip() != ""
    return False


# Signed 32-bit INTEGER column range.
INTEGER_MIN = -(2**31)
INTEGER_MAX = 2**31 - 1


def _is_integer(value: Any) -> bool:
    if not isinstance(value, int) or isinstance(value, bool):
        return False
    return INTEGER_MIN <= value <= INTEGER_MAX


def _is_iso_date(value: Any) -> bool:
    if isinstance(value, date) and not isinstance(value, datetime):
        return True
    if not isinstance(value, str):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def _is_iso_datetime(value: Any) -> bool:
    if isinstance(value, datetime):
        return True
    if not isinstance(value, str):
        return False
    try:
        datetime.fromisoformat(value)
    except ValueError:
        return False
    return True


def _render_number(value: Any) -> str:
    # Decimal keeps the literal exact; str(float) would reintroduce rounding noise.
    return str(Decimal(str(value)))


def _render_boolean(value: Any) -> str:
    # '1'/'0' are accepted boolean literals on both Postgres and SQLite.
    return "1" if value else "0"


def _render_temporal(value: Any) -> str:
    return value.isoformat() if isinstance(value, (date, datetime)) else str(value)


FIELD_TYPES: dict[FieldKind, FieldType] = {
    FieldKind.STRING: FieldType(
        kind=FieldKind.STRING,
        storage=lambda: sa.String(STRING_LENGTH),
        physical=f"VARCHAR({STRING_LENGTH})",
        check_default=lambda value, options: isinstance(value, str) and len(value) <= STRING_LENGTH,
    ),
    FieldKind.TEXT: FieldType(
        kind=FieldKind.TEXT,
        storage=sa.Text,
        physical="TEXT",
        # Unbounded text is neither unique-constrained nor btree-indexed.
        supports_unique=False,
        supports_index=False,
        check_default=lambda value, options: isinstance(value, str),
    ),
    FieldKind.NUMBER: FieldType(
        kind=FieldKind.NUMBER,
        storage=sa.Numeric,
        physical="NUMERIC",
        check_default=lambda value, options: _is_number(value),
        render_default=_render_number,
    ),
    FieldKind.INTEGER: FieldType(
        kind=FieldKind.INTEGER,
        storage=sa.Integer,
        physical="INTEGER",
        check_default=lambda value, options: _is_integer(value),
        render_default=_render_number,
    ),
    FieldKind.BOOLEAN: FieldType(
        kind=FieldKind.BOOLEAN,
        storage=lambda: sa.Boolean(create_constraint=False),
        physical="BOOLEAN",
        supports_unique=False,
        check_default=lambda value, options: isinstance(value, bool),
        render_default=_render_boolean,
        implicit_default="0",
    ),
    FieldKind.DATE: FieldType(
        kind=FieldKind.DATE,
        storage=sa.Date,
        physical="DATE",
        check_default=lambda value, options: _is_iso_date(value),
        render_default=_render_temporal,
    ),
    FieldKind.DATETIME: FieldType(
        kind=FieldKind.DATETIME,
        storage=lambda: sa.DateTime(timezone=True),
        physical="TIMESTAMPTZ",
        check_default=lambda value, options: _is_iso_datetime(value),
        render_default=_render_temporal,
    ),
    FieldKind.CHOICE: FieldType(
        kind=FieldKind.CHOICE,
        storage=lambda: sa.String(CHOICE_LENGTH),
        physical=f"VARCHAR({CHOICE_LENGTH})",
        check_default=lambda value, options: isinstance(value, str) and value in options,
    ),
    FieldKind.REFERENCE: FieldType(
        kind=FieldKind.REFERENCE,
        storage=sa.Uuid,
        physical="UUID",
        supports_default=False,
        is_reference=True,
    ),
}


def is_known_kind(value: Any) -> bool:
    return isinstance(value, str) and value in FieldKind._value2member_map_


def get_field_type(kind: FieldKind | str) -> FieldType:
    return FIELD_TYPES[FieldKind(kind)]


def known_kinds() -> list[str]:
    return [kind.value for kind in FIELD_TYPES]
