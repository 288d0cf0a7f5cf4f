"""Tests for access-control settings."""

import pytest
from pydantic import ValidationError

from config.settings import (
    ConfigurationError,
    MultiTenancySettings,
    ScopeHierarchySettings,
    Settings,
    get_settings,
    get_validated_settings,
)


class TestDefaults:
    """Tests for default configuration values."""

    def test_scope_defaults(self):
        scopes = ScopeHierarchySettings()
        assert scopes.enable_hrbac is True
        assert scopes.cache_ttl_minutes == 15
        assert scopes.cache_ttl_seconds == 900
        assert scopes.cache_max_entries == 5000
        assert scopes.active_levels == []
        assert scopes.max_depth == 32

    def test_tenancy_defaults(self):
        tenancy = MultiTenancySettings()
        assert tenancy.enable_multi_tenancy is True
        assert tenancy.org_cache_ttl_seconds == 900
        assert tenancy.org_cache_max_entries == 1000
        assert tenancy.default_user_limit == 0
        assert tenancy.max_depth == 32

    def test_main_settings(self):
        settings = Settings()
        assert settings.log_permission_denials is True
        assert settings.is_production is False
        assert isinstance(settings.scope_hierarchy, ScopeHierarchySettings)
        assert isinstance(settings.multi_tenancy, MultiTenancySettings)


class TestEnvironment:
    """Tests for environment overrides."""

    def test_prefixed_variables(self, monkeypatch):
        monkeypatch.setenv("SCOPE_CACHE_TTL_MINUTES", "5")
        monkeypatch.setenv("SCOPE_ACTIVE_LEVELS", '["HQ", "Team"]')
        monkeypatch.setenv("TENANCY_DEFAULT_USER_LIMIT", "25")

        settings = Settings()

        assert settings.scope_hierarchy.cache_ttl_seconds == 300
        assert settings.scope_hierarchy.active_levels == ["HQ", "Team"]
        assert settings.multi_tenancy.default_user_limit == 25

    def test_rejects_non_positive_sizes(self, monkeypatch):
        monkeypatch.setenv("SCOPE_CACHE_MAX_ENTRIES", "0")
        with pytest.raises(ValidationError):
            ScopeHierarchySettings()

    def test_tenancy_depth_guard_is_independent(self, monkeypatch):
        monkeypatch.setenv("TENANCY_MAX_DEPTH", "4")

        settings = Settings()

        assert settings.multi_tenancy.max_depth == 4
        assert settings.scope_hierarchy.max_depth == 32

    def test_rejects_non_positive_tenancy_depth(self):
        with pytest.raises(ValidationError):
            MultiTenancySettings(max_depth=0)

    def test_rejects_negative_user_limit(self):
        with pytest.raises(ValidationError):
            MultiTenancySettings(default_user_limit=-1)

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()


class TestValidation:
    """Tests for cross-field validation."""

    def test_valid_by_default(self):
        assert Settings().validate_settings() == []

    def test_duplicate_levels(self, monkeypatch):
        monkeypatch.setenv("SCOPE_ACTIVE_LEVELS", '["HQ", "HQ"]')
        errors = Settings().validate_settings()
        assert any("duplicate" in e for e in errors)

    def test_production_requirements(self):
        settings = Settings(
            environment="production",
            log_permission_denials=False,
            database_url="sqlite+aiosqlite:///./prod.db",
        )
        errors = settings.validate_settings()
        assert len(errors) == 2

    def test_user_limit_without_tenancy(self, monkeypatch):
        monkeypatch.setenv("TENANCY_ENABLE_MULTI_TENANCY", "false")
        monkeypatch.setenv("TENANCY_DEFAULT_USER_LIMIT", "10")
        errors = Settings().validate_settings()
        assert errors == [
            "TENANCY_DEFAULT_USER_LIMIT: Has no effect while multi-tenancy is disabled"
        ]

    def test_get_validated_settings_raises(self, monkeypatch):
        monkeypatch.setenv("ACCESS_ENVIRONMENT", "production")
        monkeypatch.setenv("ACCESS_LOG_PERMISSION_DENIALS", "false")
        get_settings.cache_clear()
        with pytest.raises(ConfigurationError) as exc_info:
            get_validated_settings()
        assert "ACCESS_LOG_PERMISSION_DENIALS" in str(exc_info.value)
