"""
DBTenancyRepo SQL paths against a scripted psycopg stand-in.

Rationale: keep CI green without a Postgres server while still checking the
ownership joins, constraint translation and transaction boundaries.
"""
from __future__ import annotations

import uuid

import pytest

from backend.tenancy import repo_db
from backend.tenancy.directory import TenantDirectory
from backend.tenancy.errors import Conflict, NotFound
from backend.tenancy.resources import FAMILIES, TRAINER_LEVELS
from backend.tests.utils.fake_psycopg import FakeDBError, install_scripted_psycopg


def _norm(sql: str) -> str:
    return " ".join(sql.split()).lower()


def _repo(monkeypatch, handler):
    driver = install_scripted_psycopg(monkeypatch, repo_db, handler)
    return repo_db.DBTenancyRepo(dsn="postgresql://fake/db"), driver


def test_requires_dsn(monkeypatch: pytest.MonkeyPatch):
    install_scripted_psycopg(monkeypatch, repo_db, lambda sql, params: [])
    monkeypatch.delenv("TENANCY_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError):
        repo_db.DBTenancyRepo()


def test_requires_psycopg(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(repo_db, "HAVE_PSYCOPG", False)
    with pytest.raises(RuntimeError):
        repo_db.DBTenancyRepo(dsn="postgresql://fake/db")


def test_transitive_select_joins_up_to_tenant(monkeypatch: pytest.MonkeyPatch):
    repo, driver = _repo(monkeypatch, lambda sql, params: [{"id": uuid.UUID(int=7), "grade": None}])

    rows = repo.select(FAMILIES["submissions"], "tenant-1", {"student_id": "s-1"}, resource_id="sub-1")

    sql, params = driver.statements[0]
    sql = _norm(sql)
    assert "from public.submissions t join public.trainer_assignments p0 on p0.id = t.assignment_id" in sql
    assert "join public.batches p1 on p1.id = p0.batch_id" in sql
    assert "where p1.tenant_id = %s and t.id = %s and t.student_id = %s" in sql
    assert params == ("tenant-1", "sub-1", "s-1")
    assert rows == [{"id": str(uuid.UUID(int=7)), "grade": None}]


def test_direct_update_is_scoped_by_tenant(monkeypatch: pytest.MonkeyPatch):
    repo, driver = _repo(monkeypatch, lambda sql, params: [])

    assert repo.update(FAMILIES["batches"], "b-1", "tenant-1", {"name": "New"}) is None

    sql, params = driver.statements[0]
    assert _norm(sql).startswith("update public.batches set name = %s where id = %s and id in (select t.id")
    assert "where t.tenant_id = %s" in _norm(sql)
    assert params == ("New", "b-1", "tenant-1")
    assert driver.events == ["begin", "commit"]


def test_null_filter_becomes_is_null(monkeypatch: pytest.MonkeyPatch):
    repo, driver = _repo(monkeypatch, lambda sql, params: [])
    repo.select(FAMILIES["trainers"], "t", {"external_user_id": None, "email": "a@b"})
    sql, params = driver.statements[0]
    assert "t.external_user_id is null and t.email = %s" in _norm(sql)
    assert params == ("t", "a@b")


def test_unique_violation_becomes_conflict_and_rolls_back(monkeypatch: pytest.MonkeyPatch):
    def handler(sql, params):
        raise FakeDBError("23505")

    repo, driver = _repo(monkeypatch, handler)
    with pytest.raises(Conflict):
        repo.insert(FAMILIES["coordinators"], {"tenant_id": "t", "first_name": "Second"})
    assert driver.events == ["begin", "rollback"]


def test_missing_table_reads_as_empty(monkeypatch: pytest.MonkeyPatch):
    def handler(sql, params):
        raise FakeDBError("42P01")

    repo, _ = _repo(monkeypatch, handler)
    assert repo.list_levels() == []
    assert repo.get_tenant("t") is None


def test_malformed_uuid_on_write_is_not_found(monkeypatch: pytest.MonkeyPatch):
    def handler(sql, params):
        raise FakeDBError("22P02")

    repo, _ = _repo(monkeypatch, handler)
    with pytest.raises(NotFound):
        repo.delete(FAMILIES["batches"], "not-a-uuid", "t")


def test_other_driver_errors_propagate(monkeypatch: pytest.MonkeyPatch):
    def handler(sql, params):
        raise FakeDBError("08006")

    repo, _ = _repo(monkeypatch, handler)
    with pytest.raises(FakeDBError):
        repo.list_levels()


def test_resolve_tenant_race_rereads_winner(monkeypatch: pytest.MonkeyPatch):
    state = {"finds": 0}

    def handler(sql, params):
        sql = _norm(sql)
        if sql.startswith("select * from public.tenants where external_org_id"):
            state["finds"] += 1
            return [] if state["finds"] == 1 else [{"id": "winner", "external_org_id": params[0]}]
        if sql.startswith("insert into public.tenants"):
            raise FakeDBError("23505")
        raise AssertionError(sql)

    repo, _ = _repo(monkeypatch, handler)
    assert TenantDirectory(repo).resolve_tenant("org-race") == "winner"
    assert state["finds"] == 2


def test_level_assignment_is_single_upsert(monkeypatch: pytest.MonkeyPatch):
    repo, driver = _repo(monkeypatch, lambda sql, params: [{"trainer_id": "t", "level_id": 1, "active": True}])

    repo.upsert_level_assignment(TRAINER_LEVELS, "t", 1, "coord")

    assert len(driver.statements) == 1
    sql, params = driver.statements[0]
    sql = _norm(sql)
    assert "insert into public.trainer_level_assignments" in sql
    assert "on conflict (trainer_id, level_id) do update set active = true" in sql
    assert params == ("t", 1, "coord")


def test_level_delete_with_history_is_conflict(monkeypatch: pytest.MonkeyPatch):
    def handler(sql, params):
        raise FakeDBError("23503")

    repo, _ = _repo(monkeypatch, handler)
    with pytest.raises(Conflict):
        repo.delete_level(1)


def test_completion_upsert_targets_actor_index(monkeypatch: pytest.MonkeyPatch):
    repo, driver = _repo(monkeypatch, lambda sql, params: [{"id": "c"}])

    repo.upsert_completion(lesson_id="l", course_id="c", actor={"trainer_id": "t"}, completed=True)
    repo.upsert_completion(lesson_id="l", course_id="c", actor={"student_id": "s", "batch_id": "b"}, completed=False)

    first, second = driver.sql()
    assert "on conflict (lesson_id, trainer_id) where trainer_id is not null" in first
    assert "on conflict (lesson_id, student_id, batch_id) where student_id is not null" in second
    assert driver.statements[1][1] == ("l", "c", "s", "b", None, False, False)


def test_latest_attempts_uses_distinct_on(monkeypatch: pytest.MonkeyPatch):
    repo, driver = _repo(monkeypatch, lambda sql, params: [])
    repo.latest_attempts("c", {"student_id": "s", "batch_id": "b"}, quiz_id="q")
    sql, params = driver.statements[0]
    sql = _norm(sql)
    assert sql.startswith("select distinct on (quiz_id) * from public.quiz_attempts")
    assert "trainer_id is null" in sql
    assert sql.endswith("order by quiz_id, attempted_at desc, id desc")
    assert params == ("c", "s", "b", "q")


def _section_handler(fail_on=None):
    def handler(sql, params):
        sql = _norm(sql)
        if sql.startswith("select id from public.course_sections"):
            return [{"id": params[0]}]
        if fail_on and sql.startswith(f"delete from public.{fail_on} "):
            raise FakeDBError("40001")
        if sql.startswith("delete from public.lessons"):
            return 2
        if sql.startswith("delete from public."):
            return 1
        raise AssertionError(sql)

    return handler


def test_section_cascade_runs_in_one_transaction(monkeypatch: pytest.MonkeyPatch):
    repo, driver = _repo(monkeypatch, _section_handler())

    counts = repo.delete_section_cascade("sec-1")

    assert counts == {"lessons": 2, "quizzes": 1, "assignments": 1}
    tables = [s.split()[2] for s in driver.sql()[1:]]
    assert tables == ["public.lessons", "public.quizzes", "public.course_assignments", "public.course_sections"]
    assert driver.events == ["begin", "commit"]


def test_section_cascade_failure_rolls_back(monkeypatch: pytest.MonkeyPatch):
    repo, driver = _repo(monkeypatch, _section_handler(fail_on="quizzes"))

    with pytest.raises(FakeDBError):
        repo.delete_section_cascade("sec-1")

    assert driver.events == ["begin", "rollback"]
    assert not any(s.startswith("delete from public.course_sections") for s in driver.sql())


def test_section_cascade_missing_section(monkeypatch: pytest.MonkeyPatch):
    repo, driver = _repo(monkeypatch, lambda sql, params: [])
    assert repo.delete_section_cascade("nope") is None
    assert len(driver.statements) == 1


def test_section_reorder_parks_positions_in_one_transaction(monkeypatch: pytest.MonkeyPatch):
    repo, driver = _repo(monkeypatch, lambda sql, params: [])

    repo.reorder_sections("c-1", ["s-2", "s-1"])

    statements = driver.sql()
    assert statements[0] == "update public.course_sections set position = -position where course_id = %s"
    assert [p for _, p in driver.statements[1:3]] == [(1, "s-2", "c-1"), (2, "s-1", "c-1")]
    assert statements[3].startswith("select * from public.course_sections where course_id = %s")
    assert driver.events == ["begin", "commit"]


def test_level_courses_are_filtered_by_course_tenant(monkeypatch: pytest.MonkeyPatch):
    repo, driver = _repo(monkeypatch, lambda sql, params: [])

    repo.list_level_courses(3, "tenant-1")
    repo.upsert_level_course(3, "c-1", None)

    listing, upsert = driver.sql()
    assert "join public.courses c on c.id = lc.course_id" in listing
    assert "where lc.level_id = %s and c.tenant_id = %s" in listing
    assert driver.statements[0][1] == (3, "tenant-1")
    assert "on conflict (level_id, course_id) do update set label = excluded.label" in upsert
