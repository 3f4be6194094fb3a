from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from schemaforge.core.hashing import canonical_hash
from schemaforge.domain.definitions import TableDefinition
from schemaforge.domain.scopes import Scope


class OperationKind(str, Enum):
    CREATE_TABLE = "create_table"
    DROP_TABLE = "drop_table"
    ADD_COLUMN = "add_column"
    ALTER_COLUMN = "alter_column"
    DROP_COLUMN = "drop_column"
    ADD_INDEX = "add_index"
    DROP_INDEX = "drop_index"
    ADD_CONSTRAINT = "add_constraint"
    DROP_CONSTRAINT = "drop_constraint"


_INVERSE_KIND: dict[OperationKind, OperationKind] = {
    OperationKind.CREATE_TABLE: OperationKind.DROP_TABLE,
    OperationKind.DROP_TABLE: OperationKind.CREATE_TABLE,
    OperationKind.ADD_COLUMN: OperationKind.DROP_COLUMN,
    OperationKind.DROP_COLUMN: OperationKind.ADD_COLUMN,
    OperationKind.ALTER_COLUMN: OperationKind.ALTER_COLUMN,
    OperationKind.ADD_INDEX: OperationKind.DROP_INDEX,
    OperationKind.DROP_INDEX: OperationKind.ADD_INDEX,
    OperationKind.ADD_CONSTRAINT: OperationKind.DROP_CONSTRAINT,
    OperationKind.DROP_CONSTRAINT: OperationKind.ADD_CONSTRAINT,
}

# Operations that discard stored data and therefore need caller confirmation.
DESTRUCTIVE_KINDS = frozenset({OperationKind.DROP_TABLE, OperationKind.DROP_COLUMN})


@dataclass(frozen=True)
class SchemaOperation:
    kind: OperationKind
    scope: Scope
    table: str
    target: str
    # JSON-serializable; carries whatever the inverse needs to recreate prior state.
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def destructive(self) -> bool:
        return self.kind in DESTRUCTIVE_KINDS

    def inverse(self) -> "SchemaOperation":
        if self.kind is OperationKind.ALTER_COLUMN:
            payload = {
                "column": self.payload["column"],
                "before": self.payload["after"],
                "after": self.payload["before"],
            }
        else:
            payload = self.payload
        return SchemaOperation(
            kind=_INVERSE_KIND[self.kind],
            scope=self.scope,
            table=self.table,
            target=self.target,
            payload=payload,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "scope": self.scope.value,
            "table": self.table,
            "target": self.target,
            "payload": self.payload,
        }

    def describe(self) -> str:
        if self.target == self.table:
            return f"{self.kind.value} {self.table}"
        return f"{self.kind.value} {self.table}.{self.target}"


@dataclass(frozen=True)
class MigrationPlan:
    scope: Scope
    # Logical table name the plan belongs to.
    table: str
    operations: tuple[SchemaOperation, ...]
    definition: TableDefinition | None = None
    prior: TableDefinition | None = None

    @property
    def inverse_operations(self) -> tuple[SchemaOperation, ...]:
        # Undo in reverse so dependents are dropped before what they depend on.
        return tuple(operation.inverse() for operation in reversed(self.operations))

    @property
    def checksum(self) -> str:
        # Definitions are part of the content so metadata-only changes stay distinguishable.
        return canonical_hash(
            {
                "table": self.table,
                "scope": self.scope.value,
                "operations": [operation.to_dict() for operation in self.operations],
                "definition": self.definition.fingerprint() if self.definition else None,
                "prior": self.prior.fingerprint() if self.prior else None,
            }
        )

    @property
    def is_destructive(self) -> bool:
        return any(operation.destructive for operation in self.operations)

    @property
    def reversible(self) -> bool:
        # Schema can always be inverted; data removed by a drop cannot be restored.
        return not self.is_destructive

    def kinds(self) -> list[OperationKind]:
        return [operation.kind for operation in self.operations]
