"""
Tenant and membership routes: sync, my school, coordinators and binding.
"""
from __future__ import annotations

import pytest

from backend.tenancy.directory import PLACEHOLDER_TENANT_NAME
from backend.web import main
from backend.tests.utils.tenancy import client, login

pytestmark = pytest.mark.anyio("asyncio")


async def test_sync_without_org_is_skipped():
    sid = login(main, "lonely", org_role="trainer")
    async with client(main, sid) as c:
        r = await c.post("/api/sync/me")
    assert r.status_code == 200
    assert r.json() == {"synced": False, "reason": "no_organization"}


async def test_sync_links_by_email():
    coord = login(main, "boss", org_id="org-s", org_role="coordinator")
    async with client(main, coord) as c:
        await c.post("/api/sync/me")
        pre = (await c.post("/api/trainers", json={"first_name": "Tam", "email": "Tam@Example.org"})).json()

    tam = login(main, "tam-sub", org_id="org-s", org_role="org:trainer", email="tam@example.org")
    async with client(main, tam) as c:
        r = await c.post("/api/sync/me")
    body = r.json()
    assert body["member_id"] == pre["id"]
    assert body["linked"] is True


async def test_my_school_read_and_rename():
    coord = login(main, "boss", org_id="org-school", org_role="coordinator")
    member = login(main, "kid", org_id="org-school", org_role="student")
    async with client(main, member) as c:
        r = await c.get("/api/me/school")
        assert r.status_code == 200
        assert r.json()["name"] == PLACEHOLDER_TENANT_NAME
        r = await c.patch("/api/me/school", json={"name": "Hill School"})
        assert r.status_code == 403

    async with client(main, coord) as c:
        await c.post("/api/sync/me")
        r = await c.patch("/api/me/school", json={"name": "  Hill School  "})
        assert r.status_code == 200
        assert r.json()["name"] == "Hill School"
        r = await c.patch("/api/me/school", json={"name": "   "})
        assert r.status_code == 400
        r = await c.patch("/api/me/school", json={})
        assert r.status_code == 400


async def test_coordinator_routes():
    sid = login(main, "founder", org_id="org-co", org_role="coordinator")
    async with client(main, sid) as c:
        assert (await c.get("/api/coordinators")).json() == []
        r = await c.patch("/api/coordinators/me", json={"phone": "1"})
        assert r.status_code == 404

        r = await c.post("/api/coordinators", json={"first_name": "Fay"})
        assert r.status_code == 201
        assert r.json()["external_user_id"] is None
        r = await c.post("/api/sync/me")
        assert r.json()["linked"] is True
        r = await c.patch("/api/coordinators/me", json={"bio": "Runs the place"})
        assert r.status_code == 200
        assert r.json()["bio"] == "Runs the place"

        r = await c.post("/api/coordinators", json={"first_name": "Gus"})
        assert r.status_code == 409
        assert len((await c.get("/api/coordinators")).json()) == 1


async def test_binding_requires_admin_and_reports_conflicts(services):
    taken = services.directory.resolve_tenant("org-taken")
    spare = services.repo.insert_tenant(name="Spare", external_org_id=None)["id"]

    plain = login(main, "plain", org_id="org-taken")
    async with client(main, plain) as c:
        r = await c.put(f"/api/tenants/{spare}/binding", json={"external_org_id": "org-free"})
        assert r.status_code == 403

    admin = login(main, "root", roles=["admin"])
    async with client(main, admin) as c:
        r = await c.put(f"/api/tenants/{spare}/binding", json={"external_org_id": "org-taken"})
        assert r.status_code == 409
        r = await c.put(f"/api/tenants/{spare}/binding", json={"external_org_id": "org-free"})
        assert r.status_code == 200
        assert r.json()["external_org_id"] == "org-free"
        r = await c.put(f"/api/tenants/{taken}/binding", json={"external_org_id": None})
        assert r.json()["external_org_id"] is None
        r = await c.put("/api/tenants/00000000-0000-0000-0000-000000000000/binding", json={})
        assert r.status_code == 404

    assert services.directory.resolve_tenant("org-free") == spare


async def test_clients_cannot_write_identity_links():
    mallory = login(main, "mallory", org_id="org-a", org_role="trainer")
    async with client(main, mallory) as c:
        r = await c.post("/api/trainers", json={"first_name": "Bob", "external_user_id": "bob"})
        assert r.status_code == 201
        assert r.json()["external_user_id"] is None
        trainer_id = r.json()["id"]
        r = await c.patch(f"/api/trainers/{trainer_id}", json={"external_user_id": "bob"})
        assert r.status_code == 400

    bob = login(main, "bob", org_id="org-b", org_role="trainer")
    async with client(main, bob) as c:
        r = await c.post("/api/sync/me")
    assert r.status_code == 200
    assert r.json()["synced"] is True


async def test_self_created_coordinator_row_grants_nothing():
    student = login(main, "stud", org_id="org-open", org_role="student")
    async with client(main, student) as c:
        r = await c.post("/api/coordinators", json={"first_name": "Stu", "external_user_id": "stud"})
        assert r.status_code == 201
        assert r.json()["external_user_id"] is None
        r = await c.patch("/api/me/school", json={"name": "Pwned"})
        assert r.status_code == 403
        r = await c.get("/api/me/school")
        assert r.json()["name"] == PLACEHOLDER_TENANT_NAME


async def test_sync_in_a_second_organization():
    tom_d = login(main, "tom", org_id="org-d", org_role="trainer")
    async with client(main, tom_d) as c:
        first = (await c.post("/api/sync/me")).json()

    tom_e = login(main, "tom", org_id="org-e", org_role="trainer")
    async with client(main, tom_e) as c:
        r = await c.post("/api/sync/me")
        assert r.status_code == 200
        second = r.json()
        again = (await c.post("/api/sync/me")).json()

    assert second["synced"] is True and second["tenant_id"] != first["tenant_id"]
    assert second["member_id"] != first["member_id"]
    assert again["member_id"] == second["member_id"] and again["linked"] is False

    async with client(main, tom_d) as c:
        r = await c.get(f"/api/trainers/{first['member_id']}")
    assert r.status_code == 200
    assert r.json()["external_user_id"] == "tom"
