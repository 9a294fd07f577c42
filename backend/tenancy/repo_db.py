"""
Postgres-backed repository for the tenancy core.

Design:
- Minimal psycopg3 usage; each call opens a short-lived connection and uses
  `dict_row` so rows come back as plain dicts, like the in-memory repo.
- Table and column names come only from the resource specs in
  `resources.py` and are checked against `_IDENT_RE` before they reach SQL;
  every value is passed as a bind parameter.
- Tenant ownership is part of every statement. Transitive ownership joins up
  the `owner_path` chain, so a foreign id never matches another tenant's row.

Constraints:
- Unique violations (SQLSTATE 23505) surface as `Conflict`.
- Reads of a table that does not exist yet (SQLSTATE 42P01) return an empty
  list on first run instead of failing the page.
"""
from __future__ import annotations

import logging
import os
import re
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from .errors import Conflict, Invalid, NotFound
from .resources import LEAF_TABLES, TENANT_COLUMN, RelationSpec, ResourceSpec

try:
    import psycopg
    from psycopg.rows import dict_row
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional in some dev envs
    psycopg = None  # type: ignore
    dict_row = None  # type: ignore
    HAVE_PSYCOPG = False

logger = logging.getLogger("schoolops.tenancy.repo_db")

_IDENT_RE = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")
_UNIQUE_VIOLATION = "23505"
_FOREIGN_KEY_VIOLATION = "23503"
_UNDEFINED_TABLE = "42P01"
_INVALID_TEXT = "22P02"

_ACTOR_COLUMNS = ("student_id", "batch_id", "trainer_id")


def _dsn() -> str:
    for dsn in (os.getenv("TENANCY_DATABASE_URL"), os.getenv("DATABASE_URL")):
        if dsn:
            return dsn
    raise RuntimeError("Database DSN unavailable for DBTenancyRepo")


def _sqlstate(exc: BaseException) -> Optional[str]:
    return getattr(exc, "sqlstate", None) or getattr(exc, "pgcode", None)


def _plain(row: Optional[Mapping[str, Any]]) -> Optional[dict]:
    if row is None:
        return None
    return {k: str(v) if isinstance(v, uuid.UUID) else v for k, v in row.items()}


def _ident(name: str) -> str:
    if not _IDENT_RE.match(name or ""):
        raise ValueError(f"invalid identifier: {name!r}")
    return name


def _scope(spec: ResourceSpec) -> Tuple[str, str]:
    """Return (FROM clause, tenant column expression) for `spec`'s ownership chain."""
    clause = f"public.{_ident(spec.table)} t"
    alias = "t"
    for i, (fk, parent) in enumerate(spec.owner_path):
        nxt = f"p{i}"
        clause += f" join public.{_ident(parent)} {nxt} on {nxt}.id = {alias}.{_ident(fk)}"
        alias = nxt
    return clause, f"{alias}.{TENANT_COLUMN}"


def _actor_where(actor: Mapping[str, Any], prefix: str = "") -> Tuple[str, list]:
    parts, params = [], []
    for column in _ACTOR_COLUMNS:
        value = actor.get(column)
        if value is None:
            parts.append(f"{prefix}{column} is null")
        else:
            parts.append(f"{prefix}{column} = %s")
            params.append(value)
    return " and ".join(parts), params


class DBTenancyRepo:
    def __init__(self, dsn: Optional[str] = None) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBTenancyRepo")
        self._dsn = dsn or _dsn()

    @property
    def supports_transactions(self) -> bool:
        return True

    def _connect(self):
        return psycopg.connect(self._dsn, row_factory=dict_row)

    @contextmanager
    def _write(self) -> Iterator[Any]:
        """Yield a cursor inside a transaction; translate constraint violations."""
        try:
            with self._connect() as conn:
                with conn.transaction():
                    with conn.cursor() as cur:
                        yield cur
        except Exception as exc:
            state = _sqlstate(exc)
            if state == _UNIQUE_VIOLATION:
                raise Conflict() from exc
            if state == _FOREIGN_KEY_VIOLATION:
                raise Invalid("Referenced record does not exist") from exc
            if state == _INVALID_TEXT:
                raise NotFound() from exc
            raise

    def _read(self, sql: str, params: Iterable[Any] = ()) -> List[dict]:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, tuple(params))
                    return [_plain(r) for r in cur.fetchall() or []]
        except Exception as exc:
            state = _sqlstate(exc)
            if state == _UNDEFINED_TABLE:
                logger.warning("tenancy table missing; returning empty result (run migrations)")
                return []
            if state == _INVALID_TEXT:
                return []
            raise

    def _read_one(self, sql: str, params: Iterable[Any] = ()) -> Optional[dict]:
        rows = self._read(sql, params)
        return rows[0] if rows else None

    # --- Tenants ----------------------------------------------------------------
    def find_tenant_by_org(self, external_org_id: str) -> Optional[dict]:
        return self._read_one("select * from public.tenants where external_org_id = %s", (external_org_id,))

    def get_tenant(self, tenant_id: str) -> Optional[dict]:
        return self._read_one("select * from public.tenants where id = %s", (tenant_id,))

    def insert_tenant(self, *, name: str, external_org_id: Optional[str]) -> dict:
        with self._write() as cur:
            cur.execute(
                "insert into public.tenants (name, external_org_id) values (%s, %s) returning *",
                (name, external_org_id),
            )
            return _plain(cur.fetchone())

    def set_tenant_binding(self, tenant_id: str, external_org_id: Optional[str]) -> Optional[dict]:
        with self._write() as cur:
            cur.execute(
                "update public.tenants set external_org_id = %s where id = %s returning *",
                (external_org_id, tenant_id),
            )
            return _plain(cur.fetchone())

    def rename_tenant(self, tenant_id: str, name: str) -> Optional[dict]:
        with self._write() as cur:
            cur.execute("update public.tenants set name = %s where id = %s returning *", (name, tenant_id))
            return _plain(cur.fetchone())

    def has_coordinator(self, tenant_id: str, external_user_id: str) -> bool:
        row = self._read_one(
            "select 1 as ok from public.coordinators where tenant_id = %s and external_user_id = %s limit 1",
            (tenant_id, external_user_id),
        )
        return row is not None

    # --- Tenant-owned rows ------------------------------------------------------
    def select(
        self,
        spec: ResourceSpec,
        tenant_id: str,
        filters: Optional[Mapping[str, Any]] = None,
        resource_id: Optional[str] = None,
    ) -> List[dict]:
        clause, tenant_col = _scope(spec)
        where, params = [f"{tenant_col} = %s"], [tenant_id]
        if resource_id is not None:
            where.append("t.id = %s")
            params.append(resource_id)
        for column, value in (filters or {}).items():
            if value is None:
                where.append(f"t.{_ident(column)} is null")
            else:
                where.append(f"t.{_ident(column)} = %s")
                params.append(value)
        sql = f"select t.* from {clause} where {' and '.join(where)} order by t.{_ident(spec.order_by)}, t.id"
        return self._read(sql, params)

    def insert(self, spec: ResourceSpec, values: Mapping[str, Any]) -> dict:
        columns = [_ident(c) for c in values]
        placeholders = ", ".join(["%s"] * len(columns))
        sql = f"insert into public.{_ident(spec.table)} ({', '.join(columns)}) values ({placeholders}) returning *"
        with self._write() as cur:
            cur.execute(sql, tuple(values.values()))
            return _plain(cur.fetchone())

    def update(self, spec: ResourceSpec, resource_id: str, tenant_id: str, patch: Mapping[str, Any]) -> Optional[dict]:
        clause, tenant_col = _scope(spec)
        assignments = ", ".join(f"{_ident(c)} = %s" for c in patch)
        sql = (
            f"update public.{_ident(spec.table)} set {assignments} "
            f"where id = %s and id in (select t.id from {clause} where {tenant_col} = %s) returning *"
        )
        with self._write() as cur:
            cur.execute(sql, (*patch.values(), resource_id, tenant_id))
            return _plain(cur.fetchone())

    def delete(self, spec: ResourceSpec, resource_id: str, tenant_id: str) -> bool:
        clause, tenant_col = _scope(spec)
        sql = (
            f"delete from public.{_ident(spec.table)} "
            f"where id = %s and id in (select t.id from {clause} where {tenant_col} = %s) returning id"
        )
        with self._write() as cur:
            cur.execute(sql, (resource_id, tenant_id))
            return cur.fetchone() is not None

    # --- Batch roster -----------------------------------------------------------
    def replace_batch_roster(self, batch_id: str, trainer_ids: Iterable[str], student_ids: Iterable[str]) -> dict:
        with self._write() as cur:
            for table, column, ids in (
                ("batch_trainers", "trainer_id", trainer_ids),
                ("batch_students", "student_id", student_ids),
            ):
                cur.execute(f"delete from public.{table} where batch_id = %s", (batch_id,))
                for member_id in dict.fromkeys(ids):
                    cur.execute(
                        f"insert into public.{table} (batch_id, {column}) values (%s, %s)",
                        (batch_id, member_id),
                    )
        return self.batch_roster(batch_id)

    def batch_roster(self, batch_id: str) -> dict:
        trainers = self._read("select trainer_id from public.batch_trainers where batch_id = %s", (batch_id,))
        students = self._read("select student_id from public.batch_students where batch_id = %s", (batch_id,))
        return {
            "trainer_ids": [str(r["trainer_id"]) for r in trainers],
            "student_ids": [str(r["student_id"]) for r in students],
        }

    # --- Level catalog ----------------------------------------------------------
    def list_levels(self) -> List[dict]:
        return self._read("select * from public.levels order by level_order asc, name asc")

    def get_level(self, level_id: int) -> Optional[dict]:
        return self._read_one("select * from public.levels where id = %s", (level_id,))

    def insert_level(self, values: Mapping[str, Any]) -> dict:
        columns = [_ident(c) for c in values]
        sql = (
            f"insert into public.levels ({', '.join(columns)}) "
            f"values ({', '.join(['%s'] * len(columns))}) returning *"
        )
        with self._write() as cur:
            cur.execute(sql, tuple(values.values()))
            return _plain(cur.fetchone())

    def update_level(self, level_id: int, patch: Mapping[str, Any]) -> Optional[dict]:
        assignments = ", ".join(f"{_ident(c)} = %s" for c in patch)
        with self._write() as cur:
            cur.execute(f"update public.levels set {assignments} where id = %s returning *", (*patch.values(), level_id))
            return _plain(cur.fetchone())

    def delete_level(self, level_id: int) -> bool:
        try:
            with self._write() as cur:
                cur.execute("delete from public.levels where id = %s returning id", (level_id,))
                return cur.fetchone() is not None
        except Invalid as exc:
            # restrict FK from the assignment tables
            raise Conflict("Level has assignment history") from exc

    # --- Level courses ----------------------------------------------------------
    def upsert_level_course(self, level_id: int, course_id: str, label: Optional[str]) -> dict:
        with self._write() as cur:
            cur.execute(
                "insert into public.level_courses (level_id, course_id, label) values (%s, %s, %s) "
                "on conflict (level_id, course_id) do update set label = excluded.label returning *",
                (level_id, course_id, label),
            )
            return _plain(cur.fetchone())

    def delete_level_course(self, level_id: int, course_id: str) -> bool:
        with self._write() as cur:
            cur.execute(
                "delete from public.level_courses where level_id = %s and course_id = %s returning level_id",
                (level_id, course_id),
            )
            return cur.fetchone() is not None

    def list_level_courses(self, level_id: int, tenant_id: str) -> List[dict]:
        return self._read(
            "select c.*, lc.label from public.level_courses lc "
            "join public.courses c on c.id = lc.course_id "
            "where lc.level_id = %s and c.tenant_id = %s order by c.title asc, c.id asc",
            (level_id, tenant_id),
        )

    def list_course_levels(self, course_id: str) -> List[dict]:
        return self._read(
            "select l.*, lc.label from public.level_courses lc "
            "join public.levels l on l.id = lc.level_id "
            "where lc.course_id = %s order by l.level_order asc, l.id asc",
            (course_id,),
        )

    # --- Level assignments ------------------------------------------------------
    def upsert_level_assignment(self, rel: RelationSpec, subject_id: str, level_id: int, assigned_by: str) -> dict:
        table, subject = _ident(rel.table), _ident(rel.subject_column)
        sql = (
            f"insert into public.{table} ({subject}, level_id, active, assigned_at, assigned_by) "
            "values (%s, %s, true, now(), %s) "
            f"on conflict ({subject}, level_id) do update "
            "set active = true, assigned_at = now(), assigned_by = excluded.assigned_by "
            "returning *"
        )
        with self._write() as cur:
            cur.execute(sql, (subject_id, level_id, assigned_by))
            return _plain(cur.fetchone())

    def deactivate_level_assignment(self, rel: RelationSpec, subject_id: str, level_id: int) -> Optional[dict]:
        table, subject = _ident(rel.table), _ident(rel.subject_column)
        with self._write() as cur:
            cur.execute(
                f"update public.{table} set active = false where {subject} = %s and level_id = %s returning *",
                (subject_id, level_id),
            )
            return _plain(cur.fetchone())

    def list_assignment_rows(self, rel: RelationSpec, subject_id: str) -> List[dict]:
        table, subject = _ident(rel.table), _ident(rel.subject_column)
        return self._read(
            f"select * from public.{table} where {subject} = %s order by assigned_at asc",
            (subject_id,),
        )

    def list_active_levels(self, rel: RelationSpec, subject_id: str) -> List[dict]:
        table, subject = _ident(rel.table), _ident(rel.subject_column)
        return self._read(
            f"select l.*, a.assigned_at, a.assigned_by from public.{table} a "
            "join public.levels l on l.id = a.level_id "
            f"where a.{subject} = %s and a.active = true "
            "order by l.level_order asc, l.name asc",
            (subject_id,),
        )

    # --- Course structure -------------------------------------------------------
    def insert_section(self, course_id: str, title: str) -> dict:
        with self._write() as cur:
            cur.execute(
                "insert into public.course_sections (course_id, title, position) "
                "values (%s, %s, (select coalesce(max(position), 0) + 1 from public.course_sections where course_id = %s)) "
                "returning *",
                (course_id, title, course_id),
            )
            return _plain(cur.fetchone())

    def list_sections(self, course_id: str) -> List[dict]:
        return self._read(
            "select * from public.course_sections where course_id = %s order by position asc",
            (course_id,),
        )

    def get_section(self, section_id: str) -> Optional[dict]:
        return self._read_one("select * from public.course_sections where id = %s", (section_id,))

    def rename_section(self, section_id: str, title: str) -> Optional[dict]:
        with self._write() as cur:
            cur.execute("update public.course_sections set title = %s where id = %s returning *", (title, section_id))
            return _plain(cur.fetchone())

    def reorder_sections(self, course_id: str, section_ids: List[str]) -> List[dict]:
        with self._write() as cur:
            # (course_id, position) is unique: park every row on a negative slot first.
            cur.execute("update public.course_sections set position = -position where course_id = %s", (course_id,))
            for position, section_id in enumerate(section_ids, start=1):
                cur.execute(
                    "update public.course_sections set position = %s where id = %s and course_id = %s",
                    (position, section_id, course_id),
                )
        return self.list_sections(course_id)

    def insert_leaf(self, kind: str, values: Mapping[str, Any]) -> dict:
        table = _ident(LEAF_TABLES[kind])
        columns = [_ident(c) for c in values]
        sql = (
            f"insert into public.{table} ({', '.join(columns)}, position) "
            f"values ({', '.join(['%s'] * len(columns))}, "
            f"(select coalesce(max(position), 0) + 1 from public.{table} where section_id = %s)) "
            "returning *"
        )
        with self._write() as cur:
            cur.execute(sql, (*values.values(), values["section_id"]))
            return _plain(cur.fetchone())

    def get_leaf(self, kind: str, leaf_id: str) -> Optional[dict]:
        table = _ident(LEAF_TABLES[kind])
        return self._read_one(f"select * from public.{table} where id = %s", (leaf_id,))

    def update_leaf(self, kind: str, leaf_id: str, patch: Mapping[str, Any]) -> Optional[dict]:
        table = _ident(LEAF_TABLES[kind])
        assignments = ", ".join(f"{_ident(c)} = %s" for c in patch)
        with self._write() as cur:
            cur.execute(f"update public.{table} set {assignments} where id = %s returning *", (*patch.values(), leaf_id))
            return _plain(cur.fetchone())

    def delete_leaf(self, kind: str, leaf_id: str) -> bool:
        table = _ident(LEAF_TABLES[kind])
        with self._write() as cur:
            cur.execute(f"delete from public.{table} where id = %s returning id", (leaf_id,))
            return cur.fetchone() is not None

    def reorder_leaves(self, kind: str, section_id: str, leaf_ids: List[str]) -> List[dict]:
        table = _ident(LEAF_TABLES[kind])
        with self._write() as cur:
            for position, leaf_id in enumerate(leaf_ids, start=1):
                cur.execute(
                    f"update public.{table} set position = %s where id = %s and section_id = %s",
                    (position, leaf_id, section_id),
                )
        return self.list_leaves(kind, section_id)

    def list_leaves(self, kind: str, section_id: str) -> List[dict]:
        table = _ident(LEAF_TABLES[kind])
        return self._read(f"select * from public.{table} where section_id = %s order by position asc", (section_id,))

    def delete_section_cascade(self, section_id: str) -> Optional[Dict[str, int]]:
        """Delete a section's lessons, quizzes and assignments, then the section, atomically."""
        with self._connect() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute("select id from public.course_sections where id = %s for update", (section_id,))
                    if cur.fetchone() is None:
                        return None
                    counts: Dict[str, int] = {}
                    for kind, table in LEAF_TABLES.items():
                        cur.execute(f"delete from public.{_ident(table)} where section_id = %s", (section_id,))
                        counts[kind] = max(int(getattr(cur, "rowcount", 0) or 0), 0)
                    cur.execute("delete from public.course_sections where id = %s", (section_id,))
                    return counts

    # --- Progress ---------------------------------------------------------------
    def upsert_completion(self, *, lesson_id: str, course_id: str, actor: Mapping[str, Any], completed: bool) -> dict:
        # lesson_completions carries one partial unique index per actor kind
        if actor.get("trainer_id") is not None:
            target = "(lesson_id, trainer_id) where trainer_id is not null"
        else:
            target = "(lesson_id, student_id, batch_id) where student_id is not null"
        sql = (
            "insert into public.lesson_completions "
            "(lesson_id, course_id, student_id, batch_id, trainer_id, completed, completed_at, updated_at) "
            "values (%s, %s, %s, %s, %s, %s, case when %s then now() else null end, now()) "
            f"on conflict {target} do update set "
            "completed = excluded.completed, completed_at = excluded.completed_at, updated_at = now() "
            "returning *"
        )
        params = (
            lesson_id,
            course_id,
            actor.get("student_id"),
            actor.get("batch_id"),
            actor.get("trainer_id"),
            bool(completed),
            bool(completed),
        )
        with self._write() as cur:
            cur.execute(sql, params)
            return _plain(cur.fetchone())

    def insert_attempt(self, *, quiz_id: str, course_id: str, actor: Mapping[str, Any], score: float, max_score: float) -> dict:
        with self._write() as cur:
            cur.execute(
                "insert into public.quiz_attempts "
                "(quiz_id, course_id, student_id, batch_id, trainer_id, score, max_score) "
                "values (%s, %s, %s, %s, %s, %s, %s) returning *",
                (
                    quiz_id,
                    course_id,
                    actor.get("student_id"),
                    actor.get("batch_id"),
                    actor.get("trainer_id"),
                    score,
                    max_score,
                ),
            )
            return _plain(cur.fetchone())

    def list_completed(self, course_id: str, actor: Mapping[str, Any]) -> List[str]:
        where, params = _actor_where(actor)
        rows = self._read(
            f"select lesson_id from public.lesson_completions where course_id = %s and completed = true and {where} "
            "order by completed_at asc",
            (course_id, *params),
        )
        return [str(r["lesson_id"]) for r in rows]

    def latest_attempts(self, course_id: str, actor: Mapping[str, Any], quiz_id: Optional[str] = None) -> List[dict]:
        where, params = _actor_where(actor)
        sql = f"select distinct on (quiz_id) * from public.quiz_attempts where course_id = %s and {where}"
        args: list = [course_id, *params]
        if quiz_id is not None:
            sql += " and quiz_id = %s"
            args.append(quiz_id)
        sql += " order by quiz_id, attempted_at desc, id desc"
        return self._read(sql, args)


__all__ = ["DBTenancyRepo"]
