"""Configuration module for the access-control engine."""

from .settings import (
    ConfigurationError,
    MultiTenancySettings,
    ScopeHierarchySettings,
    Settings,
    get_settings,
    get_validated_settings,
)

__all__ = [
    "ConfigurationError",
    "MultiTenancySettings",
    "ScopeHierarchySettings",
    "Settings",
    "get_settings",
    "get_validated_settings",
]
