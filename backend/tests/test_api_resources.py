"""
Uniform resource routes: authentication, tenant resolution, isolation,
cache headers, payload validation and same-origin checks.
"""
from __future__ import annotations

import pytest

from backend.web import main
from backend.tests.utils.tenancy import client, login

pytestmark = pytest.mark.anyio("asyncio")


def _assert_private(r):
    cc = r.headers.get("Cache-Control", "")
    assert "private" in cc and "no-store" in cc


async def test_unauthenticated_is_401():
    async with client(main) as c:
        r = await c.get("/api/batches")
    assert r.status_code == 401
    assert r.json() == {"error": "Not authenticated", "code": "unauthenticated"}
    _assert_private(r)


async def test_health_is_public():
    async with client(main) as c:
        r = await c.get("/health")
    assert r.status_code == 200
    assert r.headers.get("X-Content-Type-Options") == "nosniff"


async def test_session_without_org_is_403():
    sid = login(main, "no-org-user")
    async with client(main, sid) as c:
        r = await c.get("/api/batches")
    assert r.status_code == 403
    assert r.json()["code"] == "no_tenant_selected"


async def test_first_request_creates_tenant_and_lists_empty():
    sid = login(main, "u1", org_id="org-new", org_role="trainer")
    async with client(main, sid) as c:
        r = await c.get("/api/batches")
    assert r.status_code == 200
    assert r.json() == []
    _assert_private(r)


async def test_crud_and_cross_tenant_isolation():
    a = login(main, "ua", org_id="org-1", org_role="trainer")
    b = login(main, "ub", org_id="org-2", org_role="trainer")
    async with client(main, a) as c:
        r = await c.post("/api/students", json={"first_name": "Ann", "tenant_id": "forged"})
        assert r.status_code == 201
        _assert_private(r)
        student = r.json()
        r = await c.patch(f"/api/students/{student['id']}", json={"phone": "555"})
        assert r.json()["phone"] == "555"

    async with client(main, b) as c:
        assert (await c.get("/api/students")).json() == []
        for r in (
            await c.get(f"/api/students/{student['id']}"),
            await c.patch(f"/api/students/{student['id']}", json={"phone": "666"}),
            await c.delete(f"/api/students/{student['id']}"),
        ):
            assert r.status_code == 404
            assert r.json()["code"] == "not_found"
            _assert_private(r)

    async with client(main, a) as c:
        r = await c.get(f"/api/students/{student['id']}")
        assert r.json()["phone"] == "555"
        r = await c.delete(f"/api/students/{student['id']}")
        assert r.json() == {"success": True}
        assert (await c.get(f"/api/students/{student['id']}")).status_code == 404


async def test_validation_errors_are_400():
    sid = login(main, "uv", org_id="org-v", org_role="trainer")
    async with client(main, sid) as c:
        r = await c.post("/api/batches", json=["not", "an", "object"])
        assert r.status_code == 400
        assert r.json()["code"] == "bad_request"
        r = await c.post("/api/batches", json={"status": "active"})
        assert r.status_code == 400
        created = (await c.post("/api/batches", json={"name": "B"})).json()
        r = await c.patch(f"/api/batches/{created['id']}", json={})
        assert r.status_code == 400
        assert r.json()["error"] == "No updatable fields provided"
        r = await c.get("/api/batches", params={"name": "B"})
        assert r.status_code == 400
        r = await c.get("/api/batches", params={"status": "pending"})
        assert [row["id"] for row in r.json()] == [created["id"]]


async def test_unknown_family_is_404():
    sid = login(main, "uf", org_id="org-f")
    async with client(main, sid) as c:
        r = await c.get("/api/invoices")
    assert r.status_code == 404


async def test_cross_origin_write_is_rejected():
    sid = login(main, "uc", org_id="org-c")
    async with client(main, sid) as c:
        r = await c.post("/api/batches", json={"name": "B"}, headers={"Origin": "http://evil.example"})
        assert r.status_code == 403
        assert r.json()["error"] == "csrf_violation"
        assert (await c.get("/api/batches")).json() == []


async def test_prod_requires_origin_on_writes(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("SCHOOLOPS_ENV", "prod")
    sid = login(main, "up", org_id="org-p")
    async with client(main, sid) as c:
        del c.headers["Origin"]
        r = await c.post("/api/batches", json={"name": "B"})
    assert r.status_code == 403
    assert "Strict-Transport-Security" in r.headers


async def test_gated_family_over_http():
    coord = login(main, "boss", org_id="org-g", org_role="coordinator")
    trainer = login(main, "tina", org_id="org-g", org_role="trainer")
    async with client(main, coord) as c:
        await c.post("/api/sync/me")
        batch = (await c.post("/api/batches", json={"name": "B"})).json()
        tr = (await c.post("/api/trainers", json={"first_name": "Tina"})).json()
        payload = {"batch_id": batch["id"], "trainer_id": tr["id"], "title": "Essay"}
        r = await c.post("/api/assignments", json=payload)
        assert r.status_code == 201
        assignment = r.json()

    async with client(main, trainer) as c:
        r = await c.post("/api/assignments", json=payload)
        assert r.status_code == 403
        r = await c.get(f"/api/assignments/{assignment['id']}")
        assert r.status_code == 200
        # posting an announcement is gated by default as well
        r = await c.post("/api/announcements", json={"batch_id": batch["id"], "trainer_id": tr["id"], "title": "Hi"})
        assert r.status_code == 403


async def test_batch_roster_route():
    a = login(main, "ra", org_id="org-r1")
    b = login(main, "rb", org_id="org-r2")
    async with client(main, b) as c:
        foreign = (await c.post("/api/students", json={"first_name": "Far"})).json()

    async with client(main, a) as c:
        batch = (await c.post("/api/batches", json={"name": "R"})).json()
        tr = (await c.post("/api/trainers", json={"first_name": "Tom"})).json()
        st = (await c.post("/api/students", json={"first_name": "Sal"})).json()

        r = await c.put(f"/api/batches/{batch['id']}/members", json={"trainer_ids": [tr["id"]], "student_ids": [st["id"]]})
        assert r.status_code == 200
        assert r.json()["trainer_ids"] == [tr["id"]]

        r = await c.put(f"/api/batches/{batch['id']}/members", json={"student_ids": [foreign["id"]]})
        assert r.status_code == 404

        r = await c.get(f"/api/batches/{batch['id']}")
        assert r.json()["student_ids"] == [st["id"]]


async def test_unexpected_failure_is_json_500(memory_repo, monkeypatch: pytest.MonkeyPatch):
    def broken_select(*args, **kwargs):
        raise RuntimeError("connection reset: host=db.internal")

    monkeypatch.setattr(memory_repo, "select", broken_select)
    sid = login(main, "u1", org_id="org-boom")
    async with client(main, sid, raise_app_exceptions=False) as c:
        r = await c.get("/api/batches")
    assert r.status_code == 500
    assert r.headers["content-type"].startswith("application/json")
    assert r.json() == {"error": "Datastore unavailable", "code": "store_unavailable"}
    assert "db.internal" not in r.text
    _assert_private(r)
