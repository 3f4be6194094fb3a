from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from schemaforge.core.hashing import canonical_hash


DEFAULT_REFERENCE_COLUMN = "id"


@dataclass(frozen=True)
class FieldDefinition:
    name: str
    type: str
    label: str = ""
    required: bool = False
    is_unique: bool = False
    is_indexed: bool = False
    default_value: Any = None
    options: tuple[str, ...] = ()
    config: dict[str, Any] = field(default_factory=dict)
    storage_path: str | None = None

    @property
    def column_name(self) -> str:
        # storagePath overrides the physical column; otherwise the field name is used.
        return self.storage_path or self.name

    @property
    def reference_table(self) -> str | None:
        value = self.config.get("referenceTable")
        return value if isinstance(value, str) else None

    @property
    def reference_column(self) -> str:
        value = self.config.get("referenceColumn")
        return value if isinstance(value, str) and value else DEFAULT_REFERENCE_COLUMN

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "label": self.label or self.name,
            "type": self.type,
            "required": self.required,
            "isUnique": self.is_unique,
            "isIndexed": self.is_indexed,
            "defaultValue": self.default_value,
            "options": list(self.options),
            "config": dict(self.config),
            "storagePath": self.storage_path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FieldDefinition":
        # Trusted input only (stored definitions); raw requests go through validation.
        return cls(
            name=data["name"],
            type=data["type"],
            label=data.get("label") or data["name"],
            required=bool(data.get("required", False)),
            is_unique=bool(data.get("isUnique", False)),
            is_indexed=bool(data.get("isIndexed", False)),
            default_value=data.get("defaultValue"),
            options=tuple(data.get("options") or ()),
            config=dict(data.get("config") or {}),
            storage_path=data.get("storagePath"),
        )


@dataclass(frozen=True)
class TableDefinition:
    name: str
    fields: tuple[FieldDefinition, ...]
    display_name: str = ""
    category: str | None = None
    storage_table: str | None = None

    @property
    def physical_name(self) -> str:
        return self.storage_table or self.name

    def field_map(self) -> dict[str, FieldDefinition]:
        return {item.name: item for item in self.fields}

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "displayName": self.display_name or self.name,
            "category": self.category,
            "storageTable": self.storage_table,
            "fields": [item.to_dict() for item in self.fields],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TableDefinition":
        return cls(
            name=data["name"],
            display_name=data.get("displayName") or data["name"],
            category=data.get("category"),
            storage_table=data.get("storageTable"),
            fields=tuple(FieldDefinition.from_dict(item) for item in data.get("fields", [])),
        )

    def fingerprint(self) -> str:
        return canonical_hash(self.to_dict())
