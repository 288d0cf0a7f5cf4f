"""Tests for the access decision facade."""

import logging
from unittest.mock import patch

import pytest

from core.access.exceptions import (
    AccessStorageError,
    HierarchyIntegrityError,
    PermissionDeniedError,
    ScopeAccessDeniedError,
)
from core.access.models import ScopeNode
from core.access.service import DEFAULT_DENIAL_MESSAGE, AccessDecisionService


def _service_with_env(monkeypatch, storage, clock, **env):
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    from config.settings import Settings
    service = AccessDecisionService(storage, settings=Settings(), clock=clock)
    storage.set_listener(service)
    return service


class TestCheckAccess:
    """Tests for check_access decisions."""

    @pytest.mark.asyncio
    async def test_root_assignment_grants_descendant(self, service):
        decision = await service.check_access("alice", ["reports.edit"], "Team", "team-a1")

        assert decision.allowed is True
        assert decision.authenticated is True
        assert decision.scope_ok is True
        assert decision.scope_access_via.scope_id == "hq"
        assert decision.permissions == ["reports.edit", "reports.view"]
        assert decision.user.email == "alice@acme.test"

    @pytest.mark.asyncio
    async def test_department_assignment(self, service):
        assert (await service.check_access("bob", [], "Team", "team-a1")).scope_ok is True
        assert (await service.check_access("bob", [], "Department", "dept-b")).scope_ok is False
        assert (await service.check_access("bob", [], "HQ", "hq")).scope_ok is False

    @pytest.mark.asyncio
    async def test_unrelated_root_denied(self, service):
        decision = await service.check_access("alice", [], "HQ", "hq2")
        assert decision.scope_ok is False
        assert decision.allowed is False

    @pytest.mark.asyncio
    async def test_missing_permission(self, service):
        decision = await service.check_access("carol", ["a", "c"])

        assert decision.permission_ok is False
        assert decision.missing_permissions == ["c"]
        assert decision.scope_ok is None

    @pytest.mark.asyncio
    async def test_permission_evaluated_independently_of_scope(self, service):
        decision = await service.check_access("bob", ["reports.edit"], "Team", "team-a1")
        assert decision.scope_ok is True
        assert decision.permission_ok is False
        assert decision.allowed is False

    @pytest.mark.asyncio
    async def test_no_assignments_denies_scope(self, service):
        decision = await service.check_access("carol", [], "HQ", "hq")
        assert decision.scope_ok is False

    @pytest.mark.asyncio
    async def test_unknown_inactive_and_anonymous_users(self, service):
        for user_id in ("ghost", "dave", None, ""):
            decision = await service.check_access(user_id, ["reports.view"])
            assert decision.authenticated is False
            assert decision.permission_ok is False
            assert decision.allowed is False

    @pytest.mark.asyncio
    async def test_invalid_scope_type(self, service, caplog):
        with caplog.at_level(logging.WARNING):
            decision = await service.check_access("alice", [], "Galaxy", "team-a1")
        assert decision.scope_ok is False
        assert "Invalid scope_type 'Galaxy'" in caplog.text

    @pytest.mark.asyncio
    async def test_incomplete_scope_target(self, service):
        decision = await service.check_access("alice", [], "Team", None)
        assert decision.scope_ok is False

    @pytest.mark.asyncio
    async def test_unknown_target_scope(self, service):
        decision = await service.check_access("alice", [], "Team", "team-zz")
        assert decision.scope_ok is False

    @pytest.mark.asyncio
    async def test_hrbac_disabled(self, monkeypatch, storage, clock):
        service = _service_with_env(monkeypatch, storage, clock, SCOPE_ENABLE_HRBAC="false")
        decision = await service.check_access("carol", [], "HQ", "hq")
        assert decision.scope_ok is None
        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_active_levels_whitelist(self, monkeypatch, storage, clock):
        service = _service_with_env(
            monkeypatch, storage, clock, SCOPE_ACTIVE_LEVELS='["HQ", "Department"]'
        )
        assert (await service.check_access("alice", [], "Department", "dept-a")).scope_ok is True
        assert (await service.check_access("alice", [], "Team", "team-a1")).scope_ok is False

    @pytest.mark.asyncio
    async def test_to_dict(self, service):
        decision = await service.check_access("bob", ["reports.view"], "Team", "team-a1")
        assert decision.to_dict() == {
            "authenticated": True,
            "permission_ok": True,
            "missing_permissions": [],
            "permissions": ["reports.view"],
            "scope_ok": True,
            "scope_access_via": {
                "scope_type": "Department",
                "scope_id": "dept-a",
                "scope_name": "Department A",
            },
            "org": {
                "org_id": "acme-east",
                "org_name": "Acme East",
                "parent_org_id": "acme",
                "parent_org_name": "Acme",
                "root_org_id": "acme",
                "root_org_name": "Acme",
            },
        }


class TestScopeCaching:
    """Tests for Scope Cache use and invalidation round trips."""

    @pytest.mark.asyncio
    async def test_assignments_are_cached(self, service, storage):
        with patch.object(
            storage,
            "fetch_user_scope_assignments",
            wraps=storage.fetch_user_scope_assignments,
        ) as fetch:
            await service.check_access("bob", [], "Team", "team-a1")
            await service.check_access("bob", [], "Department", "dept-a")

        fetch.assert_called_once_with("bob")
        assert "bob" in service.caches.scope_cache

    @pytest.mark.asyncio
    async def test_removed_assignment_takes_effect(self, service, storage):
        assert (await service.check_access("bob", [], "Team", "team-a1")).scope_ok is True

        storage.remove_scope("bob", "Department", "dept-a")

        assert (await service.check_access("bob", [], "Team", "team-a1")).scope_ok is False

    @pytest.mark.asyncio
    async def test_new_assignment_takes_effect(self, service, storage):
        assert (await service.check_access("bob", [], "Department", "dept-b")).scope_ok is False

        storage.assign_scope("bob", "Department", "dept-b")

        assert (await service.check_access("bob", [], "Department", "dept-b")).scope_ok is True

    @pytest.mark.asyncio
    async def test_assign_scope_is_idempotent(self, storage):
        storage.assign_scope("bob", "Department", "dept-a")
        assert len(await storage.fetch_user_scope_assignments("bob")) == 1

    @pytest.mark.asyncio
    async def test_replace_user_scopes(self, service, storage):
        await service.check_access("bob", [], "Team", "team-a1")

        storage.replace_user_scopes("bob", [("HQ", "hq2")])

        assert (await service.check_access("bob", [], "Team", "team-a1")).scope_ok is False
        assert (await service.check_access("bob", [], "HQ", "hq2")).scope_ok is True

    @pytest.mark.asyncio
    async def test_new_child_scope_is_inherited(self, service, storage):
        await service.check_access("bob", [], "Team", "team-a1")

        storage.add_scope("team-a2", "Team A2", "Team", parent_id="dept-a")

        assert "bob" not in service.caches.scope_cache
        assert (await service.check_access("bob", [], "Team", "team-a2")).scope_ok is True

    @pytest.mark.asyncio
    async def test_moved_scope_changes_access(self, service, storage):
        assert (await service.check_access("bob", [], "Team", "team-a1")).scope_ok is True

        storage.move_scope("team-a1", "dept-b")

        assert (await service.check_access("bob", [], "Team", "team-a1")).scope_ok is False
        assert (await service.check_access("alice", [], "Team", "team-a1")).scope_ok is True

    @pytest.mark.asyncio
    async def test_move_under_own_subtree_rejected(self, storage):
        with pytest.raises(ValueError):
            storage.move_scope("dept-a", "team-a1")

    @pytest.mark.asyncio
    async def test_removed_scope_node(self, service, storage):
        assert (await service.check_access("alice", [], "Department", "dept-b")).scope_ok is True

        storage.remove_scope_node("dept-b")

        assert (await service.check_access("alice", [], "Department", "dept-b")).scope_ok is False

    @pytest.mark.asyncio
    async def test_remove_scope_node_with_children_rejected(self, storage):
        with pytest.raises(ValueError):
            storage.remove_scope_node("dept-a")

    @pytest.mark.asyncio
    async def test_renamed_level(self, service, storage):
        await service.check_access("bob", [], "Team", "team-a1")

        storage.rename_level("Department", "Division")

        assert "bob" not in service.caches.scope_cache
        assert (await service.check_access("bob", [], "Division", "dept-a")).scope_ok is True
        assert (await service.check_access("bob", [], "Department", "dept-a")).scope_ok is False

    @pytest.mark.asyncio
    async def test_user_miss_refreshes_hierarchy(self, service, storage):
        await service.check_access("bob", [], "Team", "team-a1")

        # Hierarchy write this process was not told about
        storage.set_listener(None)
        storage.add_scope("team-a2", "Team A2", "Team", parent_id="dept-a")
        assert (await service.check_access("bob", [], "Team", "team-a2")).scope_ok is False

        service.invalidate_user("bob")
        assert (await service.check_access("bob", [], "Team", "team-a2")).scope_ok is True

    @pytest.mark.asyncio
    async def test_unnotified_change_visible_after_ttl(self, service, storage, clock):
        await service.check_access("bob", [], "Team", "team-a1")
        storage.set_listener(None)
        storage.remove_scope("bob", "Department", "dept-a")

        assert (await service.check_access("bob", [], "Team", "team-a1")).scope_ok is True
        clock.advance(15 * 60 + 1)
        assert (await service.check_access("bob", [], "Team", "team-a1")).scope_ok is False

    @pytest.mark.asyncio
    async def test_deactivated_user(self, service, storage):
        await service.check_access("bob", [], "Team", "team-a1")
        storage.set_user_active("bob", False)

        assert "bob" not in service.caches.scope_cache
        assert (await service.check_access("bob", [])).authenticated is False

    @pytest.mark.asyncio
    async def test_role_changes_are_read_per_decision(self, service, storage):
        assert (await service.check_access("bob", ["reports.edit"])).permission_ok is False

        storage.assign_role("bob", "editor")
        assert (await service.check_access("bob", ["reports.edit"])).permission_ok is True

        storage.set_role_permissions("editor", ["reports.view"])
        assert (await service.check_access("bob", ["reports.edit"])).permission_ok is False

        storage.remove_role("bob", "editor")
        assert (await service.check_access("bob", ["reports.view"])).permission_ok is True


class TestStorageFailures:
    """Tests for storage failure propagation."""

    @pytest.mark.asyncio
    async def test_wrapped_and_propagated(self, service, storage):
        with patch.object(
            storage, "fetch_roles_with_permissions", side_effect=RuntimeError("db down")
        ):
            with pytest.raises(AccessStorageError) as exc_info:
                await service.check_access("alice", ["reports.view"])

        assert exc_info.value.operation == "fetch_roles_with_permissions"
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_failed_fetch_is_not_cached(self, service, storage):
        with patch.object(
            storage, "fetch_user_scope_assignments", side_effect=ConnectionError("timeout")
        ):
            with pytest.raises(AccessStorageError):
                await service.check_access("bob", [], "Team", "team-a1")

        assert "bob" not in service.caches.scope_cache
        assert (await service.check_access("bob", [], "Team", "team-a1")).scope_ok is True

    @pytest.mark.asyncio
    async def test_tree_fetch_failure(self, service, storage):
        with patch.object(storage, "fetch_scope_tree", side_effect=OSError("disk")):
            with pytest.raises(AccessStorageError):
                await service.check_access("bob", [], "Team", "team-a1")


class TestStrictMode:
    """Tests for strict mode exceptions."""

    @pytest.mark.asyncio
    async def test_permission_denied(self, service):
        with pytest.raises(PermissionDeniedError) as exc_info:
            await service.check_access("bob", ["reports.view", "reports.edit"], strict=True)

        error = exc_info.value
        assert error.missing_permissions == ["reports.edit"]
        assert error.user_permissions == ["reports.view"]
        assert error.required_permissions == ["reports.view", "reports.edit"]
        assert error.user_friendly_message == DEFAULT_DENIAL_MESSAGE

    @pytest.mark.asyncio
    async def test_configured_friendly_message(self, monkeypatch, storage, clock):
        service = _service_with_env(
            monkeypatch,
            storage,
            clock,
            ACCESS_PERMISSION_ERROR_MESSAGES='{"reports.edit": "Only editors can change reports"}',
        )
        with pytest.raises(PermissionDeniedError) as exc_info:
            await service.check_access("bob", ["reports.edit"], strict=True)
        assert exc_info.value.user_friendly_message == "Only editors can change reports"

    @pytest.mark.asyncio
    async def test_friendly_messages_disabled(self, monkeypatch, storage, clock):
        service = _service_with_env(
            monkeypatch, storage, clock, ACCESS_FRIENDLY_ERROR_MESSAGES="false"
        )
        with pytest.raises(PermissionDeniedError) as exc_info:
            await service.check_access("bob", ["reports.edit"], strict=True)
        assert exc_info.value.user_friendly_message is None

    @pytest.mark.asyncio
    async def test_scope_denied(self, service):
        with pytest.raises(ScopeAccessDeniedError) as exc_info:
            await service.check_access("bob", [], "HQ", "hq", strict=True)

        assert exc_info.value.scope_type == "HQ"
        assert exc_info.value.scope_id == "hq"
        assert [s.scope_id for s in exc_info.value.user_scopes] == ["dept-a"]

    @pytest.mark.asyncio
    async def test_allowed_returns_decision(self, service):
        decision = await service.check_access("alice", ["reports.view"], "HQ", "hq", strict=True)
        assert decision.allowed is True


class TestDenialLogging:
    """Tests for denial warnings."""

    @pytest.mark.asyncio
    async def test_denials_logged(self, service, caplog):
        with caplog.at_level(logging.WARNING, logger="core.access.service"):
            await service.check_access("bob", ["reports.edit"], "HQ", "hq")

        assert "Access denied for user bob" in caplog.text
        assert "reports.edit" in caplog.text
        assert "HQ/hq" in caplog.text

    @pytest.mark.asyncio
    async def test_denial_logging_disabled(self, monkeypatch, storage, clock, caplog):
        service = _service_with_env(
            monkeypatch, storage, clock, ACCESS_LOG_PERMISSION_DENIALS="false"
        )
        with caplog.at_level(logging.WARNING, logger="core.access.service"):
            await service.check_access("bob", ["reports.edit"])
        assert "Access denied" not in caplog.text


class TestScopeQueries:
    """Tests for scope reads and service housekeeping."""

    @pytest.mark.asyncio
    async def test_get_user_scopes(self, service):
        scopes = await service.get_user_scopes("alice")
        assert [(s.scope_type, s.scope_id) for s in scopes] == [("HQ", "hq")]

    @pytest.mark.asyncio
    async def test_accessible_scopes(self, service):
        accessible = await service.get_accessible_scopes("alice")
        assert set(accessible) == {"hq", "dept-a", "team-a1", "dept-b"}

    @pytest.mark.asyncio
    async def test_scope_tree(self, service):
        roots = await service.get_scope_tree()
        assert [r.id for r in roots] == ["hq", "hq2"]
        assert [c.id for c in roots[0].children] == ["dept-a", "dept-b"]

    @pytest.mark.asyncio
    async def test_scope_tree_tenant_filter(self, monkeypatch, storage, clock):
        storage.add_scope("acme-hq", "Acme HQ", "HQ", tenant_id="acme")
        service = _service_with_env(monkeypatch, storage, clock, SCOPE_DEFAULT_ORG="acme")

        roots = await service.get_scope_tree()

        assert [r.id for r in roots] == ["acme-hq"]

    @pytest.mark.asyncio
    async def test_stats_and_reset(self, service):
        await service.check_access("alice", [], "HQ", "hq")
        await service.get_org_info("acme")

        stats = service.get_stats()
        assert stats["scope_cache"]["size"] == 1
        assert stats["org_cache"]["size"] == 1
        assert stats["scope_snapshot_nodes"] == 5
        assert stats["org_snapshot_nodes"] == 4

        service.reset()

        stats = service.get_stats()
        assert stats["scope_cache"]["size"] == 0
        assert stats["org_cache"]["size"] == 0
        assert stats["scope_snapshot_nodes"] == 0

    @pytest.mark.asyncio
    async def test_invalidate_all(self, service):
        await service.check_access("alice", [], "HQ", "hq")
        service.invalidate_all()
        assert len(service.caches.scope_cache) == 0
        assert (await service.check_access("alice", [], "HQ", "hq")).scope_ok is True


class TestDecisionOrgInfo:
    """Tests for the user's org carried on decisions."""

    @pytest.mark.asyncio
    async def test_decision_fills_org_cache(self, service):
        decision = await service.check_access(
            "bob", ["reports.view"], target_org_id="acme-east-ny"
        )

        assert decision.org_ok is True
        assert decision.org.org_id == "acme-east"
        assert decision.org.parent_org_name == "Acme"
        assert decision.org.root_org_name == "Acme"
        assert "acme-east" in service.caches.org_cache
        assert service.get_stats()["org_cache"]["size"] == 1

    @pytest.mark.asyncio
    async def test_later_decisions_hit_org_cache(self, service, storage):
        await service.check_access("bob", [])

        with patch.object(storage, "fetch_org_tree", side_effect=AssertionError("not cached")):
            decision = await service.check_access("bob", [])

        assert decision.org.org_name == "Acme East"

    @pytest.mark.asyncio
    async def test_root_invalidation_refreshes_names(self, service, storage):
        await service.check_access("bob", [])

        storage.set_listener(None)
        storage.update_org("acme", name="Acme Corp")
        assert (await service.check_access("bob", [])).org.root_org_name == "Acme"

        service.invalidate_org("acme")

        decision = await service.check_access("bob", [])
        assert decision.org.parent_org_name == "Acme Corp"
        assert decision.org.root_org_name == "Acme Corp"

    @pytest.mark.asyncio
    async def test_no_org_info_without_org(self, service, storage):
        storage.add_user("frank")
        decision = await service.check_access("frank", [])
        assert decision.org is None
        assert "org" not in decision.to_dict()

    @pytest.mark.asyncio
    async def test_no_org_info_when_tenancy_disabled(self, monkeypatch, storage, clock):
        service = _service_with_env(
            monkeypatch, storage, clock, TENANCY_ENABLE_MULTI_TENANCY="false"
        )
        decision = await service.check_access("bob", ["reports.view"])
        assert decision.org is None
        assert len(service.caches.org_cache) == 0


class TestCorruptHierarchy:
    """Tests for decisions over cyclic or over-deep hierarchy rows."""

    @pytest.mark.asyncio
    async def test_scope_cycle_raises(self, service, storage):
        cyclic = [
            ScopeNode("x", "X", parent_id="y", level_label="Team"),
            ScopeNode("y", "Y", parent_id="x", level_label="Team"),
        ]
        with patch.object(storage, "fetch_scope_tree", return_value=cyclic):
            with pytest.raises(HierarchyIntegrityError) as exc_info:
                await service.check_access("alice", ["reports.view"], "Team", "x")

        assert exc_info.value.node_id == "x"

    @pytest.mark.asyncio
    async def test_org_depth_guard_uses_tenancy_setting(self, monkeypatch, storage, clock):
        service = _service_with_env(
            monkeypatch, storage, clock, TENANCY_MAX_DEPTH="1", SCOPE_MAX_DEPTH="32"
        )
        with pytest.raises(HierarchyIntegrityError):
            await service.check_org_access("alice", "acme-east-ny")

    @pytest.mark.asyncio
    async def test_scope_depth_setting_does_not_limit_orgs(self, monkeypatch, storage, clock):
        service = _service_with_env(monkeypatch, storage, clock, SCOPE_MAX_DEPTH="1")
        assert (await service.check_org_access("alice", "acme-east-ny")).org_ok is True


class TestStrictScopeDenialReads:
    """Tests for the assignments reported by strict scope denials."""

    @pytest.mark.asyncio
    async def test_reports_checked_assignments_without_rereading_cache(self, service):
        await service.check_access("bob", [], "Team", "team-a1")
        scope_cache = service.caches.scope_cache

        with patch.object(scope_cache, "get", wraps=scope_cache.get) as spy:
            with pytest.raises(ScopeAccessDeniedError) as exc_info:
                await service.check_access("bob", [], "HQ", "hq", strict=True)

        assert spy.call_count == 1
        assert [s.scope_id for s in exc_info.value.user_scopes] == ["dept-a"]

    @pytest.mark.asyncio
    async def test_incomplete_target_reports_no_assignments(self, service):
        with pytest.raises(ScopeAccessDeniedError) as exc_info:
            await service.check_access("bob", [], "HQ", None, strict=True)
        assert list(exc_info.value.user_scopes) == []
