"""Access-control settings using Pydantic Settings.

Centralized configuration for the access-control resolution engine.

Environment variables:
- SCOPE_*: HRBAC scope hierarchy and Scope Cache settings
- TENANCY_*: multi-tenancy and Organization Cache settings
- ACCESS_*: general settings (environment, denial logging)
"""

import logging
from functools import lru_cache
from typing import Dict, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when access-control settings are invalid."""
    pass


class ScopeHierarchySettings(BaseSettings):
    """HRBAC scope hierarchy configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SCOPE_",
        extra="ignore",
    )

    enable_hrbac: bool = Field(default=True, description="Evaluate target-scope access")
    default_org: str = Field(
        default="",
        description="Tenant filter for scope tree reads (single-tenant apps)",
    )

    # Scope Cache
    cache_ttl_minutes: float = Field(default=15, description="Scope Cache TTL in minutes")
    cache_max_entries: int = Field(default=5000, description="Scope Cache size bound")

    # Level tags accepted as scope_type; empty means any level present in the tree
    active_levels: List[str] = Field(default_factory=list, description="Valid scope levels")

    max_depth: int = Field(default=32, description="Depth guard for hierarchy traversal")

    @field_validator("cache_ttl_minutes", "cache_max_entries", "max_depth")
    @classmethod
    def _must_be_positive(cls, value):
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_minutes * 60


class MultiTenancySettings(BaseSettings):
    """Multi-tenancy (organization hierarchy) configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TENANCY_",
        extra="ignore",
    )

    enable_multi_tenancy: bool = Field(default=True, description="Evaluate org access")

    # Organization Cache
    org_cache_ttl_minutes: float = Field(default=15, description="Org Cache TTL in minutes")
    org_cache_max_entries: int = Field(default=1000, description="Org Cache size bound")

    default_user_limit: int = Field(default=0, description="User limit per org (0 = unlimited)")

    max_depth: int = Field(default=32, description="Depth guard for org hierarchy traversal")

    @field_validator("org_cache_ttl_minutes", "org_cache_max_entries", "max_depth")
    @classmethod
    def _must_be_positive(cls, value):
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("default_user_limit")
    @classmethod
    def _not_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @property
    def org_cache_ttl_seconds(self) -> float:
        return self.org_cache_ttl_minutes * 60


class Settings(BaseSettings):
    """Main access-control settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = Field(default="development", description="Environment name")
    log_permission_denials: bool = Field(
        default=True,
        description="Log a warning for every denied access decision",
    )

    # Strict-mode error messages
    friendly_error_messages: bool = Field(
        default=True,
        description="Attach a user-facing message to PermissionDeniedError",
    )
    permission_error_messages: Dict[str, str] = Field(
        default_factory=dict,
        description="Per-permission user-facing messages",
    )

    # Storage used by the SQL collaborator
    database_url: str = Field(
        default="sqlite+aiosqlite:///./access_control.db",
        description="Async SQLAlchemy database URL",
    )
    database_echo: bool = Field(default=False, description="Log SQL statements")

    # Nested settings (loaded separately)
    @property
    def scope_hierarchy(self) -> ScopeHierarchySettings:
        return ScopeHierarchySettings()

    @property
    def multi_tenancy(self) -> MultiTenancySettings:
        return MultiTenancySettings()

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment in ("production", "prod", "staging")

    def validate_settings(self) -> List[str]:
        """
        Validate cross-field requirements.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        scopes = self.scope_hierarchy
        tenancy = self.multi_tenancy

        if len(set(scopes.active_levels)) != len(scopes.active_levels):
            errors.append("SCOPE_ACTIVE_LEVELS: Contains duplicate level tags")

        if any(not level.strip() for level in scopes.active_levels):
            errors.append("SCOPE_ACTIVE_LEVELS: Level tags must not be blank")

        if self.is_production and not self.log_permission_denials:
            errors.append("ACCESS_LOG_PERMISSION_DENIALS: Should be True in production")

        if self.is_production and self.database_url.startswith("sqlite"):
            errors.append("ACCESS_DATABASE_URL: SQLite is not supported in production")

        if tenancy.default_user_limit and not tenancy.enable_multi_tenancy:
            errors.append(
                "TENANCY_DEFAULT_USER_LIMIT: Has no effect while multi-tenancy is disabled"
            )

        return errors


@lru_cache
def get_settings() -> Settings:
    """
    Get cached access-control settings instance.

    Returns:
        Settings: Cached settings loaded from environment.
    """
    return Settings()


def get_validated_settings() -> Settings:
    """
    Get settings with validation.

    Call this once at application startup.

    Raises:
        ConfigurationError: If any validation check fails
    """
    settings = get_settings()
    errors = settings.validate_settings()
    if errors:
        message = "Invalid access-control configuration:\n" + "\n".join(
            f"  {i}. {err}" for i, err in enumerate(errors, 1)
        )
        logger.critical(message)
        raise ConfigurationError(message)
    return settings
