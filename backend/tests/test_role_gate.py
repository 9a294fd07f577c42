"""
Role gate predicate and the configurable gate policy.
"""
from __future__ import annotations

import pytest

from backend.tenancy.errors import Forbidden
from backend.tenancy.repo_memory import MemoryTenancyRepo
from backend.tenancy.role_gate import DEFAULT_GATED, GatePolicy, RoleGate
from backend.tests.utils.tenancy import add_coordinator


def test_coordinator_passes_and_others_are_forbidden():
    repo = MemoryTenancyRepo()
    t1 = repo.insert_tenant(name="One", external_org_id="org-1")["id"]
    t2 = repo.insert_tenant(name="Two", external_org_id="org-2")["id"]
    add_coordinator(repo, t1, "coord-1")
    gate = RoleGate(repo)

    gate.require_coordinator(t1, "coord-1")
    with pytest.raises(Forbidden):
        gate.require_coordinator(t1, "someone-else")
    # coordinator membership does not carry over to another tenant
    with pytest.raises(Forbidden):
        gate.require_coordinator(t2, "coord-1")


def test_default_policy_gates_assignments_and_announcements():
    policy = GatePolicy.parse(DEFAULT_GATED)
    for op in ("create", "update", "delete"):
        assert policy.is_gated("assignments", op)
        assert policy.is_gated("announcements", op)
    assert not policy.is_gated("batches", "create")
    assert not policy.is_gated("assignments", "read")


def test_policy_accepts_family_op_pairs():
    policy = GatePolicy.parse(" Batches:delete , trainers ")
    assert policy.is_gated("batches", "delete")
    assert not policy.is_gated("batches", "update")
    assert policy.is_gated("trainers", "update")


def test_policy_rejects_unknown_operation():
    with pytest.raises(ValueError):
        GatePolicy.parse("batches:purge")


def test_policy_from_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("COORDINATOR_GATED_RESOURCES", "students:create")
    policy = GatePolicy.from_env()
    assert policy.is_gated("students", "create")
    assert not policy.is_gated("assignments", "create")


def test_empty_policy_gates_nothing():
    assert not GatePolicy.parse("").is_gated("assignments", "create")
