"""
Core Module - Shared infrastructure for cross-cutting concerns.

This module provides:
- Hierarchical multi-tenant access control (core.access)
"""
