"""Identifier and type validation for raw table definitions.

Rules live in explicit tables of ``(attribute, rule, predicate, message)`` and
every rule is evaluated, so a caller sees all violations at once. Validation is
pure: it never touches storage and never raises for bad input.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from schemaforge.core.errors import ValidationError, Violation
from schemaforge.domain.definitions import FieldDefinition, TableDefinition
from schemaforge.schema.catalog import CHOICE_LENGTH, FieldType, get_field_type, is_known_kind, known_kinds


IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
MAX_TABLE_NAME_LENGTH = 100
MAX_FIELD_NAME_LENGTH = 100
MAX_LABEL_LENGTH = 255
MAX_CATEGORY_LENGTH = 100

# Names owned by the platform or by this engine's own bookkeeping tables.
RESERVED_TABLE_NAMES = frozenset(
    {
        "user", "users", "role", "roles", "permission", "permissions",
        "group", "groups", "tenant", "tenants", "instance", "instances",
        "migration", "migrations", "table_definitions", "table_definition_versions", "schema_change_log",
        "system", "admin", "api", "auth", "config", "settings", "audit", "log", "logs",
    }
)
# Standard audit columns created with every table, plus scoping columns.
RESERVED_COLUMN_NAMES = frozenset(
    {
        "id", "uuid", "created_at", "updated_at", "created_by", "updated_by",
        "is_deleted", "deleted_at", "deleted_by", "version",
        "tenant_id", "instance_id", "organization_id",
    }
)


def is_identifier(value: Any, max_length: int = MAX_FIELD_NAME_LENGTH) -> bool:
    return (
        isinstance(value, str)
        and 1 <= len(value) <= max_length
        and IDENTIFIER_PATTERN.match(value) is not None
    )


@dataclass(frozen=True)
class Rule:
    attribute: str
    rule: str
    # Returns True when the raw mapping satisfies the rule.
    predicate: Callable[[Mapping[str, Any]], bool]
    message: str


@dataclass(frozen=True)
class ValidationResult:
    definition: TableDefinition | None
    violations: tuple[Violation, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return not self.violations

    def raise_for_violations(self) -> TableDefinition:
        if self.violations or self.definition is None:
            raise ValidationError(list(self.violations))
        return self.definition


def _optional_text(key: str, max_length: int) -> Callable[[Mapping[str, Any]], bool]:
    def _check(raw: Mapping[str, Any]) -> bool:
        value = raw.get(key)
        return value is None or (isinstance(value, str) and 1 <= len(value) <= max_length)

    return _check


def _optional_bool(key: str) -> Callable[[Mapping[str, Any]], bool]:
    def _check(raw: Mapping[str, Any]) -> bool:
        return raw.get(key) is None or isinstance(raw.get(key), bool)

    return _check


def _optional_identifier(key: str, max_length: int) -> Callable[[Mapping[str, Any]], bool]:
    def _check(raw: Mapping[str, Any]) -> bool:
        value = raw.get(key)
        return value is None or is_identifier(value, max_length)

    return _check


def _field_type(raw: Mapping[str, Any]) -> FieldType | None:
    kind = raw.get("type")
    return get_field_type(kind) if is_known_kind(kind) else None


def _options(raw: Mapping[str, Any]) -> tuple[str, ...]:
    value = raw.get("options")
    if isinstance(value, (list, tuple)) and all(isinstance(item, str) for item in value):
        return tuple(value)
    return ()


def _not_reserved(names: frozenset[str], key: str) -> Callable[[Mapping[str, Any]], bool]:
    def _check(raw: Mapping[str, Any]) -> bool:
        value = raw.get(key)
        return not isinstance(value, str) or value.lower() not in names

    return _check


def _options_valid(raw: Mapping[str, Any]) -> bool:
    value = raw.get("options")
    if raw.get("type") != "choice":
        return value is None or value == [] or value == ()
    if not isinstance(value, (list, tuple)) or not value:
        return False
    if not all(isinstance(item, str) and 1 <= len(item) <= CHOICE_LENGTH for item in value):
        return False
    return len(set(value)) == len(value)


def _default_valid(raw: Mapping[str, Any]) -> bool:
    value = raw.get("defaultValue")
    field_type = _field_type(raw)
    if value is None or field_type is None:
        return True
    if not field_type.supports_default:
        return False
    return field_type.check_default(value, _options(raw))


def _unique_supported(raw: Mapping[str, Any]) -> bool:
    field_type = _field_type(raw)
    return raw.get("isUnique") is not True or field_type is None or field_type.supports_unique


def _index_supported(raw: Mapping[str, Any]) -> bool:
    field_type = _field_type(raw)
    return raw.get("isIndexed") is not True or field_type is None or field_type.supports_index


def _reference_valid(raw: Mapping[str, Any]) -> bool:
    field_type = _field_type(raw)
    if field_type is None or not field_type.is_reference:
        return True
    config = raw.get("config")
    if not isinstance(config, Mapping):
        return False
    column = config.get("referenceColumn")
    return is_identifier(config.get("referenceTable"), MAX_TABLE_NAME_LENGTH) and (
        column is None or is_identifier(column)
    )


FIELD_RULES: tuple[Rule, ...] = (
    Rule(
        "name",
        "identifier",
        lambda raw: is_identifier(raw.get("name"), MAX_FIELD_NAME_LENGTH),
        f"must match {IDENTIFIER_PATTERN.pattern} and be 1-{MAX_FIELD_NAME_LENGTH} characters",
    ),
    Rule("name", "reserved", _not_reserved(RESERVED_COLUMN_NAMES, "name"), "is reserved for standard columns"),
    Rule("label", "label_length", _optional_text("label", MAX_LABEL_LENGTH), f"must be 1-{MAX_LABEL_LENGTH} characters"),
    Rule("type", "type", lambda raw: is_known_kind(raw.get("type")), f"must be one of: {', '.join(known_kinds())}"),
    Rule("required", "boolean_flag", _optional_bool("required"), "must be a boolean"),
    Rule("isUnique", "boolean_flag", _optional_bool("isUnique"), "must be a boolean"),
    Rule("isIndexed", "boolean_flag", _optional_bool("isIndexed"), "must be a boolean"),
    Rule("isUnique", "constraint", _unique_supported, "is not supported for this field type"),
    Rule("isIndexed", "constraint", _index_supported, "is not supported for this field type"),
    Rule(
        "options",
        "options",
        _options_valid,
        "must be a non-empty list of distinct strings for choice fields and absent otherwise",
    ),
    Rule("defaultValue", "default_value", _default_valid, "does not type-check against the field type"),
    Rule(
        "storagePath",
        "storage_path",
        _optional_identifier("storagePath", MAX_FIELD_NAME_LENGTH),
        "must be a valid column identifier",
    ),
    Rule("storagePath", "reserved", _not_reserved(RESERVED_COLUMN_NAMES, "storagePath"), "is reserved for standard columns"),
    Rule("config", "config", lambda raw: raw.get("config") is None or isinstance(raw.get("config"), Mapping), "must be an object"),
    Rule(
        "config.referenceTable",
        "reference",
        _reference_valid,
        "reference fields need identifier config.referenceTable and optional config.referenceColumn",
    ),
)

TABLE_RULES: tuple[Rule, ...] = (
    Rule(
        "name",
        "identifier",
        lambda raw: is_identifier(raw.get("name"), MAX_TABLE_NAME_LENGTH),
        f"must match {IDENTIFIER_PATTERN.pattern} and be 1-{MAX_TABLE_NAME_LENGTH} characters",
    ),
    Rule("name", "reserved", _not_reserved(RESERVED_TABLE_NAMES, "name"), "is a reserved table name"),
    Rule("displayName", "label_length", _optional_text("displayName", MAX_LABEL_LENGTH), f"must be 1-{MAX_LABEL_LENGTH} characters"),
    Rule("category", "label_length", _optional_text("category", MAX_CATEGORY_LENGTH), f"must be 1-{MAX_CATEGORY_LENGTH} characters"),
    Rule(
        "storageTable",
        "storage_table",
        _optional_identifier("storageTable", MAX_TABLE_NAME_LENGTH),
        "must be a valid table identifier",
    ),
    Rule("storageTable", "reserved", _not_reserved(RESERVED_TABLE_NAMES, "storageTable"), "is a reserved table name"),
    Rule(
        "fields",
        "fields",
        lambda raw: isinstance(raw.get("fields"), (list, tuple)) and len(raw.get("fields")) > 0,
        "must contain at least one field",
    ),
)


def _apply_rules(rules: tuple[Rule, ...], raw: Mapping[str, Any], prefix: str = "") -> list[Violation]:
    return [
        Violation(field=f"{prefix}{rule.attribute}", rule=rule.rule, message=rule.message)
        for rule in rules
        if not rule.predicate(raw)
    ]


def _duplicates(values: list[tuple[int, Any]], rule: str, attribute: str, message: str) -> list[Violation]:
    seen: set[Any] = set()
    violations: list[Violation] = []
    for index, value in values:
        if value in seen:
            violations.append(Violation(field=f"fields[{index}].{attribute}", rule=rule, message=message))
        seen.add(value)
    return violations


def _build_field(raw: Mapping[str, Any]) -> FieldDefinition:
    return FieldDefinition(
        name=raw["name"],
        type=raw["type"],
        label=raw.get("label") or raw["name"],
        required=bool(raw.get("required", False)),
        is_unique=bool(raw.get("isUnique", False)),
        is_indexed=bool(raw.get("isIndexed", False)),
        default_value=raw.get("defaultValue"),
        options=_options(raw),
        config=dict(raw.get("config") or {}),
        storage_path=raw.get("storagePath"),
    )


def validate_table(raw: Any) -> ValidationResult:
    # Collect every violation across table- and field-level rules before building anything.
    if not isinstance(raw, Mapping):
        return ValidationResult(None, (Violation("", "definition", "must be an object"),))

    violations = _apply_rules(TABLE_RULES, raw)
    raw_fields = raw.get("fields") if isinstance(raw.get("fields"), (list, tuple)) else []

    names: list[tuple[int, Any]] = []
    columns: list[tuple[int, Any]] = []
    for index, raw_field in enumerate(raw_fields):
        prefix = f"fields[{index}]."
        if not isinstance(raw_field, Mapping):
            violations.append(Violation(f"fields[{index}]", "field", "must be an object"))
            continue
        violations.extend(_apply_rules(FIELD_RULES, raw_field, prefix))
        if isinstance(raw_field.get("name"), str):
            names.append((index, raw_field["name"]))
            columns.append((index, raw_field.get("storagePath") or raw_field["name"]))

    violations.extend(_duplicates(names, "unique_name", "name", "field names must be unique within a table"))
    duplicate_names = {value for _, value in names if sum(1 for _, other in names if other == value) > 1}
    # Only report column clashes the name check has not already covered.
    violations.extend(
        _duplicates(
            [(index, column) for (index, column), (_, name) in zip(columns, names) if name not in duplicate_names],
            "unique_column",
            "storagePath",
            "physical column names must be unique within a table",
        )
    )

    if violations:
        return ValidationResult(None, tuple(violations))

    definition = TableDefinition(
        name=raw["name"],
        display_name=raw.get("displayName") or raw["name"],
        category=raw.get("category"),
        storage_table=raw.get("storageTable"),
        fields=tuple(_build_field(item) for item in raw_fields),
    )
    return ValidationResult(definition, ())
