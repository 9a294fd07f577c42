"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend, and give every test a fresh
in-memory tenancy repository and session store so tenants, coordinators and
sessions never leak between tests.
"""
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_env_toggles(monkeypatch: pytest.MonkeyPatch):
    """Clear env-driven toggles so every test starts from dev defaults."""
    for var in (
        "SCHOOLOPS_ENV",
        "SCHOOLOPS_TRUST_PROXY",
        "TENANCY_REPO",
        "TENANCY_DATABASE_URL",
        "SESSIONS_BACKEND",
        "COORDINATOR_GATED_RESOURCES",
    ):
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(autouse=True)
def memory_repo(_clear_env_toggles, monkeypatch: pytest.MonkeyPatch):
    """Fresh in-memory repository wired into the web adapter for each test."""
    from backend.identity_access.stores import SessionStore
    from backend.tenancy.repo_memory import MemoryTenancyRepo
    from backend.web import main, wiring

    repo = MemoryTenancyRepo()
    wiring.set_repo(repo)
    monkeypatch.setattr(main, "SESSION_STORE", SessionStore())
    yield repo
    wiring._SERVICES = None


@pytest.fixture
def services(memory_repo):
    from backend.web import wiring

    return wiring.get_services()
