from __future__ import annotations

import logging
import re
from typing import Iterable

from schemaforge.core.config import Settings, get_settings
from schemaforge.core.errors import ScopeMismatchError, ValidationError
from schemaforge.domain.scopes import DatabaseTarget, Scope, ScopeContext
from schemaforge.schema.operations import MigrationPlan, SchemaOperation


logger = logging.getLogger(__name__)

# Tenant/instance ids become part of a database name, so keep them to safe slugs.
SCOPE_IDENTIFIER_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_]{0,47}$")


class ScopeRouter:
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def database_name(self, scope: Scope, identifier: str | None = None) -> str:
        settings = self._settings
        if scope is Scope.PLATFORM:
            return settings.platform_database
        if scope is Scope.CONTROL_PLANE:
            return settings.control_plane_database
        if scope is Scope.TENANT:
            return f"{settings.tenant_database_prefix}{identifier}"
        return f"{settings.instance_database_prefix}{identifier}"

    def resolve(self, scope: Scope | str, context: ScopeContext) -> DatabaseTarget:
        # The declared scope must equal the caller's resolved scope; no fallback between scopes.
        try:
            declared = Scope.parse(scope)
        except ValueError as exc:
            allowed = ", ".join(item.value for item in Scope)
            raise ValidationError.single("scope", "scope", f"must be one of {allowed}") from exc
        if context.scope is not declared:
            logger.warning(
                "scope_mismatch declared=%s context=%s", declared.value, context.scope.value
            )
            raise ScopeMismatchError(
                f"Definition declared for {declared.value} scope but caller context is {context.scope.value}"
            )
        if declared is Scope.TENANT:
            if context.instance_id:
                raise ScopeMismatchError("Tenant scope does not take an instance identifier")
            identifier = self._require_identifier(context.tenant_id, declared, "tenantId")
        elif declared is Scope.INSTANCE:
            identifier = self._require_identifier(context.instance_id, declared, "instanceId")
        else:
            if context.tenant_id or context.instance_id:
                raise ScopeMismatchError(
                    f"{declared.value} scope does not take tenant or instance identifiers"
                )
            identifier = declared.value
        return DatabaseTarget(
            scope=declared,
            identifier=identifier,
            database=self.database_name(declared, identifier),
        )

    def _require_identifier(self, value: str | None, scope: Scope, attribute: str) -> str:
        if not value:
            raise ScopeMismatchError(f"{scope.value} scope requires an explicit {attribute}")
        if not SCOPE_IDENTIFIER_PATTERN.match(value):
            raise ValidationError.single(
                attribute,
                "identifier",
                f"must match {SCOPE_IDENTIFIER_PATTERN.pattern}",
            )
        return value


def ensure_operations_scope(operations: Iterable[SchemaOperation], target: DatabaseTarget) -> None:
    # Fail fast before any connection is touched.
    for operation in operations:
        if operation.scope is not target.scope:
            raise ScopeMismatchError(
                f"{operation.describe()} compiled for {operation.scope.value} scope cannot run "
                f"against {target.describe()}"
            )


def ensure_plan_scope(plan: MigrationPlan, target: DatabaseTarget) -> None:
    if plan.scope is not target.scope:
        raise ScopeMismatchError(
            f"Plan for {plan.table} compiled for {plan.scope.value} scope cannot run against {target.describe()}"
        )
    ensure_operations_scope(plan.operations, target)
