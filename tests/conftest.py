"""Pytest configuration and fixtures for test suite."""

import os
import sys
from pathlib import Path

import pytest

# Set test environment BEFORE any other imports
os.environ.setdefault("ACCESS_ENVIRONMENT", "test")
os.environ.setdefault("ACCESS_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    """Drop memoized settings so env overrides apply per test."""
    yield
    from config.settings import get_settings
    get_settings.cache_clear()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    from config.settings import Settings
    return Settings()


@pytest.fixture
def caches(settings, clock):
    from core.access.cache import CacheManager
    return CacheManager(settings, clock=clock)


def seed_storage(storage):
    """
    Populate a storage with a small two-tenant world.

    Scopes:
        hq (HQ) -> dept-a (Department) -> team-a1 (Team)
                -> dept-b (Department)
        hq2 (HQ)

    Orgs:
        acme (limit 3) -> acme-east -> acme-east-ny
        globex (unlimited)
    """
    storage.add_role("viewer", "Viewer", ["reports.view"])
    storage.add_role("editor", "Editor", ["reports.view", "reports.edit"])
    storage.add_role("ab", "AB", ["a", "b"])

    storage.add_scope("hq", "Headquarters", "HQ")
    storage.add_scope("dept-a", "Department A", "Department", parent_id="hq")
    storage.add_scope("team-a1", "Team A1", "Team", parent_id="dept-a")
    storage.add_scope("dept-b", "Department B", "Department", parent_id="hq")
    storage.add_scope("hq2", "Second HQ", "HQ")

    storage.add_org("acme", "Acme", user_limit=3)
    storage.add_org("acme-east", "Acme East", parent_id="acme")
    storage.add_org("acme-east-ny", "Acme East NY", parent_id="acme-east")
    storage.add_org("globex", "Globex")

    storage.add_user("alice", org_id="acme", email="alice@acme.test")
    storage.assign_role("alice", "editor")
    storage.assign_scope("alice", "HQ", "hq")

    storage.add_user("bob", org_id="acme-east", email="bob@acme.test")
    storage.assign_role("bob", "viewer")
    storage.assign_scope("bob", "Department", "dept-a")

    storage.add_user("carol", org_id="globex")
    storage.assign_role("carol", "ab")

    storage.add_user("dave", org_id="acme", active=False)
    storage.assign_role("dave", "editor")
    return storage


@pytest.fixture
def storage():
    from core.access.storage import InMemoryAccessStorage
    return seed_storage(InMemoryAccessStorage())


@pytest.fixture
def service(storage, caches, settings, clock):
    from core.access.service import AccessDecisionService
    svc = AccessDecisionService(storage, caches=caches, settings=settings, clock=clock)
    storage.set_listener(svc)
    yield svc
    svc.reset()
