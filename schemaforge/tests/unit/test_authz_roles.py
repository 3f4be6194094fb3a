from __future__ import annotations

from schemaforge.apps.api.deps import role_allows
from schemaforge.core.config import get_settings


def test_role_ordering() -> None:
    assert role_allows(role="admin", minimum_role="reader")
    assert role_allows(role="editor", minimum_role="editor")
    assert not role_allows(role="reader", minimum_role="admin")
    assert not role_allows(role="unknown", minimum_role="reader")


def test_platform_admin_bypass_is_off_by_default() -> None:
    assert not role_allows(role="platform_admin", minimum_role="reader")


def test_platform_admin_bypass_when_enabled(monkeypatch) -> None:
    monkeypatch.setenv("AUTHZ_PLATFORM_ADMIN_BYPASS", "true")
    get_settings.cache_clear()
    assert role_allows(role="platform_admin", minimum_role="admin")
