"""
Tenant directory: lazy creation, first-use races, and organization binding.
"""
from __future__ import annotations

import pytest

from backend.tenancy.directory import PLACEHOLDER_TENANT_NAME, TenantDirectory
from backend.tenancy.errors import Conflict, Invalid, NotFound
from backend.tenancy.repo_memory import MemoryTenancyRepo


def test_resolve_creates_tenant_lazily_with_placeholder_name():
    repo = MemoryTenancyRepo()
    directory = TenantDirectory(repo)

    tenant_id = directory.resolve_tenant("org-alpha")

    row = repo.get_tenant(tenant_id)
    assert row["name"] == PLACEHOLDER_TENANT_NAME
    assert row["external_org_id"] == "org-alpha"


def test_resolve_is_stable_for_same_org_and_distinct_across_orgs():
    directory = TenantDirectory(MemoryTenancyRepo())

    first = directory.resolve_tenant("org-a")
    again = directory.resolve_tenant("org-a")
    other = directory.resolve_tenant("org-b")

    assert first == again
    assert first != other


def test_resolve_rejects_blank_org():
    directory = TenantDirectory(MemoryTenancyRepo())
    with pytest.raises(Invalid):
        directory.resolve_tenant("  ")


class _RacingRepo(MemoryTenancyRepo):
    """Simulates a concurrent first request that inserts between our read and write."""

    def __init__(self):
        super().__init__()
        self.raced = False

    def find_tenant_by_org(self, external_org_id):
        row = super().find_tenant_by_org(external_org_id)
        if row is None and not self.raced:
            self.raced = True
            super().insert_tenant(name="winner", external_org_id=external_org_id)
            return None
        return row


def test_concurrent_first_use_yields_one_tenant():
    repo = _RacingRepo()
    directory = TenantDirectory(repo)

    tenant_id = directory.resolve_tenant("org-race")

    tenants = [t for t in repo._rows("tenants").values() if t["external_org_id"] == "org-race"]
    assert len(tenants) == 1
    assert tenants[0]["id"] == tenant_id
    assert tenants[0]["name"] == "winner"


def test_bind_conflicts_when_org_bound_elsewhere():
    repo = MemoryTenancyRepo()
    directory = TenantDirectory(repo)
    bound = directory.resolve_tenant("org-x")
    other = repo.insert_tenant(name="Other", external_org_id=None)["id"]

    with pytest.raises(Conflict):
        directory.bind_tenant(other, "org-x")

    assert directory.resolve_tenant("org-x") == bound


def test_bind_then_unbind():
    repo = MemoryTenancyRepo()
    directory = TenantDirectory(repo)
    tenant_id = repo.insert_tenant(name="Manual", external_org_id=None)["id"]

    directory.bind_tenant(tenant_id, "org-manual")
    assert directory.resolve_tenant("org-manual") == tenant_id

    row = directory.bind_tenant(tenant_id, None)
    assert row["external_org_id"] is None
    assert repo.find_tenant_by_org("org-manual") is None


def test_bind_same_org_to_same_tenant_is_allowed():
    directory = TenantDirectory(MemoryTenancyRepo())
    tenant_id = directory.resolve_tenant("org-same")
    row = directory.bind_tenant(tenant_id, "org-same")
    assert row["id"] == tenant_id


def test_bind_unknown_tenant_is_not_found():
    directory = TenantDirectory(MemoryTenancyRepo())
    with pytest.raises(NotFound):
        directory.bind_tenant("00000000-0000-0000-0000-000000000000", "org-y")


def test_rename_validates_name():
    directory = TenantDirectory(MemoryTenancyRepo())
    tenant_id = directory.resolve_tenant("org-r")

    assert directory.rename_tenant(tenant_id, "  Riverside Academy ")["name"] == "Riverside Academy"
    with pytest.raises(Invalid):
        directory.rename_tenant(tenant_id, "")
    with pytest.raises(Invalid):
        directory.rename_tenant(tenant_id, "x" * 201)
