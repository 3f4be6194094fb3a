from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class SchemaForgeError(Exception):
    """Base error for schemaforge."""


@dataclass(frozen=True)
class Violation:
    # One broken rule; field is a dotted path such as "fields[0].options".
    field: str
    rule: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "rule": self.rule, "message": self.message}


class ValidationError(SchemaForgeError):
    """Definition failed identifier/type rules; nothing was executed."""

    def __init__(self, violations: list[Violation]) -> None:
        self.violations = list(violations)
        summary = "; ".join(f"{v.field}: {v.message}" for v in self.violations[:3])
        if len(self.violations) > 3:
            summary += f" (+{len(self.violations) - 3} more)"
        super().__init__(summary or "validation failed")

    @classmethod
    def single(cls, field: str, rule: str, message: str) -> "ValidationError":
        return cls([Violation(field=field, rule=rule, message=message)])

    def rules(self) -> set[str]:
        return {violation.rule for violation in self.violations}


class ScopeMismatchError(SchemaForgeError):
    """Operation targets a database outside its scope; never retried."""


class NotAppliedError(SchemaForgeError):
    """Down-migration requested for a checksum missing from the ledger."""

    def __init__(self, checksum: str | None, database: str, *, table: str | None = None) -> None:
        self.checksum = checksum
        self.database = database
        self.table = table
        if checksum is None:
            super().__init__(f"No applied migration for table {table} in {database}")
        else:
            super().__init__(f"Migration {checksum} is not applied to {database}")


class LockContentionError(SchemaForgeError):
    """Another migration holds the database lock; callers may retry with backoff."""

    def __init__(self, database: str, timeout_s: float) -> None:
        self.database = database
        self.timeout_s = timeout_s
        super().__init__(f"Migration lock for {database} not acquired within {timeout_s}s")


class PartialFailure(SchemaForgeError):
    """An operation failed mid-sequence; the whole sequence was rolled back."""

    def __init__(self, *, index: int, operation: Any, cause: BaseException) -> None:
        self.index = index
        self.operation = operation
        self.cause = cause
        super().__init__(f"Operation #{index} {operation.describe()} failed: {cause}")


class DefinitionConflictError(SchemaForgeError):
    """Stored table definition no longer matches the plan's prior definition."""


class MigrationDeadlineExceeded(SchemaForgeError):
    """Migration exceeded the caller deadline and was rolled back."""


class TableNotFoundError(SchemaForgeError):
    """No stored definition exists for the table in the target database."""

    def __init__(self, table: str, database: str) -> None:
        self.table = table
        self.database = database
        super().__init__(f"Table {table} is not defined in {database}")
