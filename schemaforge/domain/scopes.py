from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Scope(str, Enum):
    PLATFORM = "platform"
    TENANT = "tenant"
    INSTANCE = "instance"
    CONTROL_PLANE = "control_plane"

    @classmethod
    def parse(cls, value: "Scope | str") -> "Scope":
        # Accept the hyphenated spelling used by operators alongside the enum value.
        if isinstance(value, Scope):
            return value
        normalized = str(value).strip().lower().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ValueError(f"Unsupported scope: {value}") from exc

    @property
    def requires_identifier(self) -> bool:
        return self in (Scope.TENANT, Scope.INSTANCE)


@dataclass(frozen=True)
class ScopeContext:
    # Resolved by the external authorization layer and passed on every call.
    scope: Scope
    tenant_id: str | None = None
    instance_id: str | None = None


@dataclass(frozen=True)
class DatabaseTarget:
    # One physical database; identifier is the tenant/instance id or the scope name.
    scope: Scope
    identifier: str
    database: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.scope.value, self.identifier)

    def describe(self) -> str:
        return f"{self.scope.value}:{self.identifier} ({self.database})"
