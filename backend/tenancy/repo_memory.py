"""
In-memory tenancy repository for development and tests.

Why:
    API tests must not depend on a running Postgres. This repository mirrors
    the method surface of `repo_db.DBTenancyRepo` one to one, including the
    unique constraints (raised as `Conflict`) and the foreign-key cascades of
    the SQL migration, so services behave the same against both.

Transactions:
    `transaction()` snapshots all tables under a re-entrant lock and restores
    the snapshot when the block raises. Nested blocks join the outer one.
"""
from __future__ import annotations

import copy
import itertools
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from .errors import Conflict
from .resources import LEAF_TABLES, TENANT_COLUMN, RelationSpec, ResourceSpec


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# parent table -> [(child table, fk column)] deleted together with the parent
_CASCADES: Dict[str, List[tuple]] = {
    "batches": [
        ("class_sessions", "batch_id"),
        ("trainer_assignments", "batch_id"),
        ("batch_announcements", "batch_id"),
        ("batch_trainers", "batch_id"),
        ("batch_students", "batch_id"),
        ("batch_level_assignments", "batch_id"),
        ("lesson_completions", "batch_id"),
        ("quiz_attempts", "batch_id"),
    ],
    "trainers": [
        ("class_sessions", "trainer_id"),
        ("trainer_assignments", "trainer_id"),
        ("batch_announcements", "trainer_id"),
        ("batch_trainers", "trainer_id"),
        ("trainer_level_assignments", "trainer_id"),
        ("lesson_completions", "trainer_id"),
        ("quiz_attempts", "trainer_id"),
    ],
    "students": [
        ("submissions", "student_id"),
        ("batch_students", "student_id"),
        ("lesson_completions", "student_id"),
        ("quiz_attempts", "student_id"),
    ],
    "trainer_assignments": [("submissions", "assignment_id")],
    "courses": [
        ("level_courses", "course_id"),
        ("lessons", "course_id"),
        ("quizzes", "course_id"),
        ("course_assignments", "course_id"),
        ("course_sections", "course_id"),
    ],
    "lessons": [("lesson_completions", "lesson_id")],
    "quizzes": [("quiz_attempts", "quiz_id")],
}

# parent table -> [(child table, fk column)] nulled when the parent goes away
_SET_NULL: Dict[str, List[tuple]] = {
    "courses": [("batches", "course_id")],
}

_TABLES = (
    "tenants",
    "coordinators",
    "trainers",
    "students",
    "batches",
    "batch_trainers",
    "batch_students",
    "courses",
    "class_sessions",
    "trainer_assignments",
    "submissions",
    "batch_announcements",
    "levels",
    "trainer_level_assignments",
    "batch_level_assignments",
    "level_courses",
    "course_sections",
    "lessons",
    "quizzes",
    "course_assignments",
    "lesson_completions",
    "quiz_attempts",
)

DEFAULT_LEVELS = (
    {"name": "Level 1", "category": "General", "level_order": 1},
    {"name": "Level 2", "category": "General", "level_order": 2},
    {"name": "Level 3", "category": "General", "level_order": 3},
)

_ACTOR_COLUMNS = ("student_id", "batch_id", "trainer_id")


class MemoryTenancyRepo:
    def __init__(self, *, seed_levels: bool = True) -> None:
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: Dict[str, Dict[Any, dict]] = {name: {} for name in _TABLES}
        self._level_ids = itertools.count(1)
        self._seq = itertools.count(1)
        if seed_levels:
            for level in DEFAULT_LEVELS:
                self.insert_level(dict(level))

    @property
    def supports_transactions(self) -> bool:
        return True

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return
            snapshot = copy.deepcopy(self._tables)
            self._depth = 1
            try:
                yield
            except BaseException:
                self._tables = snapshot
                raise
            finally:
                self._depth = 0

    # --- Helpers ----------------------------------------------------------------
    def _rows(self, table: str) -> Dict[Any, dict]:
        return self._tables[table]

    def _tenant_of(self, spec: ResourceSpec, row: Mapping[str, Any]) -> Optional[str]:
        current: Optional[Mapping[str, Any]] = row
        for fk, parent in spec.owner_path:
            if current is None:
                return None
            current = self._rows(parent).get(current.get(fk))
        return current.get(TENANT_COLUMN) if current is not None else None

    @staticmethod
    def _matches(row: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
        for key, value in filters.items():
            if value is None:
                if row.get(key) is not None:
                    return False
            elif row.get(key) != value:
                return False
        return True

    def _check_unique(self, table: str, groups: Iterable[tuple], row: Mapping[str, Any]) -> None:
        for columns in groups:
            values = tuple(row.get(c) for c in columns)
            if any(v is None for v in values):
                continue
            for other in self._rows(table).values():
                if other.get("id") == row.get("id"):
                    continue
                if tuple(other.get(c) for c in columns) == values:
                    raise Conflict(f"duplicate {table} ({', '.join(columns)})")

    def _delete_where(self, table: str, column: str, value: Any) -> int:
        doomed = [rid for rid, row in self._rows(table).items() if row.get(column) == value]
        for rid in doomed:
            self._delete_row(table, rid)
        return len(doomed)

    def _delete_row(self, table: str, row_id: Any) -> None:
        if self._rows(table).pop(row_id, None) is None:
            return
        for child, fk in _CASCADES.get(table, ()):
            self._delete_where(child, fk, row_id)
        for child, fk in _SET_NULL.get(table, ()):
            for row in self._rows(child).values():
                if row.get(fk) == row_id:
                    row[fk] = None

    # --- Tenants ----------------------------------------------------------------
    def find_tenant_by_org(self, external_org_id: str) -> Optional[dict]:
        with self._lock:
            for row in self._rows("tenants").values():
                if row.get("external_org_id") == external_org_id:
                    return dict(row)
            return None

    def get_tenant(self, tenant_id: str) -> Optional[dict]:
        with self._lock:
            row = self._rows("tenants").get(tenant_id)
            return dict(row) if row else None

    def insert_tenant(self, *, name: str, external_org_id: Optional[str]) -> dict:
        with self._lock:
            row = {"id": _new_id(), "name": name, "external_org_id": external_org_id, "created_at": _now()}
            self._check_unique("tenants", [("external_org_id",)], row)
            self._rows("tenants")[row["id"]] = row
            return dict(row)

    def set_tenant_binding(self, tenant_id: str, external_org_id: Optional[str]) -> Optional[dict]:
        with self._lock:
            row = self._rows("tenants").get(tenant_id)
            if row is None:
                return None
            candidate = dict(row, external_org_id=external_org_id)
            self._check_unique("tenants", [("external_org_id",)], candidate)
            row["external_org_id"] = external_org_id
            return dict(row)

    def rename_tenant(self, tenant_id: str, name: str) -> Optional[dict]:
        with self._lock:
            row = self._rows("tenants").get(tenant_id)
            if row is None:
                return None
            row["name"] = name
            return dict(row)

    def has_coordinator(self, tenant_id: str, external_user_id: str) -> bool:
        with self._lock:
            return any(
                r.get(TENANT_COLUMN) == tenant_id and r.get("external_user_id") == external_user_id
                for r in self._rows("coordinators").values()
            )

    # --- Tenant-owned rows ------------------------------------------------------
    def select(
        self,
        spec: ResourceSpec,
        tenant_id: str,
        filters: Optional[Mapping[str, Any]] = None,
        resource_id: Optional[str] = None,
    ) -> List[dict]:
        out = []
        with self._lock:
            for row in self._rows(spec.table).values():
                if resource_id is not None and row.get("id") != resource_id:
                    continue
                if self._tenant_of(spec, row) != tenant_id:
                    continue
                if filters and not self._matches(row, filters):
                    continue
                out.append(dict(row))
        out.sort(key=lambda r: (r.get(spec.order_by) or _now(), str(r.get("id"))))
        return out

    def insert(self, spec: ResourceSpec, values: Mapping[str, Any]) -> dict:
        with self._lock:
            row = {c: None for c in spec.columns}
            for group in spec.unique:
                row.update((c, None) for c in group)
            row.update(values)
            row["id"] = _new_id()
            row[spec.order_by] = _now()
            self._check_unique(spec.table, spec.unique, row)
            self._rows(spec.table)[row["id"]] = row
            return dict(row)

    def update(self, spec: ResourceSpec, resource_id: str, tenant_id: str, patch: Mapping[str, Any]) -> Optional[dict]:
        with self._lock:
            row = self._rows(spec.table).get(resource_id)
            if row is None or self._tenant_of(spec, row) != tenant_id:
                return None
            candidate = dict(row, **patch)
            self._check_unique(spec.table, spec.unique, candidate)
            row.update(patch)
            return dict(row)

    def delete(self, spec: ResourceSpec, resource_id: str, tenant_id: str) -> bool:
        with self._lock:
            row = self._rows(spec.table).get(resource_id)
            if row is None or self._tenant_of(spec, row) != tenant_id:
                return False
            self._delete_row(spec.table, resource_id)
            return True

    # --- Batch roster -----------------------------------------------------------
    def replace_batch_roster(self, batch_id: str, trainer_ids: Iterable[str], student_ids: Iterable[str]) -> dict:
        with self.transaction():
            for table, column, ids in (
                ("batch_trainers", "trainer_id", trainer_ids),
                ("batch_students", "student_id", student_ids),
            ):
                self._delete_where(table, "batch_id", batch_id)
                for member_id in dict.fromkeys(ids):
                    key = (batch_id, member_id)
                    self._rows(table)[key] = {"id": key, "batch_id": batch_id, column: member_id}
        return self.batch_roster(batch_id)

    def batch_roster(self, batch_id: str) -> dict:
        with self._lock:
            trainers = self._rows("batch_trainers").values()
            students = self._rows("batch_students").values()
            return {
                "trainer_ids": [r["trainer_id"] for r in trainers if r["batch_id"] == batch_id],
                "student_ids": [r["student_id"] for r in students if r["batch_id"] == batch_id],
            }

    # --- Level catalog ----------------------------------------------------------
    def list_levels(self) -> List[dict]:
        with self._lock:
            rows = [dict(r) for r in self._rows("levels").values()]
        rows.sort(key=lambda r: (r.get("level_order") or 0, r.get("name") or ""))
        return rows

    def get_level(self, level_id: int) -> Optional[dict]:
        with self._lock:
            row = self._rows("levels").get(level_id)
            return dict(row) if row else None

    def insert_level(self, values: Mapping[str, Any]) -> dict:
        with self._lock:
            row = {"name": None, "category": None, "level_order": 0, "description": None}
            row.update(values)
            row["id"] = next(self._level_ids)
            row["created_at"] = _now()
            self._check_unique("levels", [("name",)], row)
            self._rows("levels")[row["id"]] = row
            return dict(row)

    def update_level(self, level_id: int, patch: Mapping[str, Any]) -> Optional[dict]:
        with self._lock:
            row = self._rows("levels").get(level_id)
            if row is None:
                return None
            self._check_unique("levels", [("name",)], dict(row, **patch))
            row.update(patch)
            return dict(row)

    def delete_level(self, level_id: int) -> bool:
        with self._lock:
            if level_id not in self._rows("levels"):
                return False
            for table in ("trainer_level_assignments", "batch_level_assignments"):
                if any(r["level_id"] == level_id for r in self._rows(table).values()):
                    raise Conflict("Level has assignment history")
            self._delete_where("level_courses", "level_id", level_id)
            del self._rows("levels")[level_id]
            return True

    # --- Level courses ----------------------------------------------------------
    def upsert_level_course(self, level_id: int, course_id: str, label: Optional[str]) -> dict:
        with self._lock:
            key = (level_id, course_id)
            row = self._rows("level_courses").get(key)
            if row is None:
                row = {"id": key, "level_id": level_id, "course_id": course_id, "created_at": _now()}
                self._rows("level_courses")[key] = row
            row["label"] = label
            return {k: v for k, v in row.items() if k != "id"}

    def delete_level_course(self, level_id: int, course_id: str) -> bool:
        with self._lock:
            return self._rows("level_courses").pop((level_id, course_id), None) is not None

    def list_level_courses(self, level_id: int, tenant_id: str) -> List[dict]:
        with self._lock:
            courses = self._rows("courses")
            out = []
            for row in self._rows("level_courses").values():
                course = courses.get(row["course_id"])
                if row["level_id"] != level_id or course is None or course.get(TENANT_COLUMN) != tenant_id:
                    continue
                out.append(dict(course, label=row["label"]))
        out.sort(key=lambda r: (r.get("title") or "", str(r["id"])))
        return out

    def list_course_levels(self, course_id: str) -> List[dict]:
        with self._lock:
            levels = self._rows("levels")
            out = [
                dict(levels[row["level_id"]], label=row["label"])
                for row in self._rows("level_courses").values()
                if row["course_id"] == course_id and row["level_id"] in levels
            ]
        out.sort(key=lambda r: (r.get("level_order") or 0, r["id"]))
        return out

    # --- Level assignments ------------------------------------------------------
    def upsert_level_assignment(self, rel: RelationSpec, subject_id: str, level_id: int, assigned_by: str) -> dict:
        with self._lock:
            key = (subject_id, level_id)
            row = self._rows(rel.table).get(key)
            if row is None:
                row = {"id": key, rel.subject_column: subject_id, "level_id": level_id}
                self._rows(rel.table)[key] = row
            row.update(active=True, assigned_at=_now(), assigned_by=assigned_by)
            return dict(row)

    def deactivate_level_assignment(self, rel: RelationSpec, subject_id: str, level_id: int) -> Optional[dict]:
        with self._lock:
            row = self._rows(rel.table).get((subject_id, level_id))
            if row is None:
                return None
            row["active"] = False
            return dict(row)

    def list_assignment_rows(self, rel: RelationSpec, subject_id: str) -> List[dict]:
        with self._lock:
            rows = [dict(r) for r in self._rows(rel.table).values() if r[rel.subject_column] == subject_id]
        rows.sort(key=lambda r: r["assigned_at"])
        return rows

    def list_active_levels(self, rel: RelationSpec, subject_id: str) -> List[dict]:
        out = []
        with self._lock:
            levels = self._rows("levels")
            for row in self._rows(rel.table).values():
                if row[rel.subject_column] != subject_id or not row["active"]:
                    continue
                level = levels.get(row["level_id"])
                if level is not None:
                    out.append(dict(level, assigned_at=row["assigned_at"], assigned_by=row["assigned_by"]))
        out.sort(key=lambda r: (r.get("level_order") or 0, r.get("name") or ""))
        return out

    # --- Course structure -------------------------------------------------------
    def insert_section(self, course_id: str, title: str) -> dict:
        with self._lock:
            positions = [r["position"] for r in self._rows("course_sections").values() if r["course_id"] == course_id]
            row = {
                "id": _new_id(),
                "course_id": course_id,
                "title": title,
                "position": max(positions, default=0) + 1,
                "created_at": _now(),
            }
            self._rows("course_sections")[row["id"]] = row
            return dict(row)

    def list_sections(self, course_id: str) -> List[dict]:
        with self._lock:
            rows = [dict(r) for r in self._rows("course_sections").values() if r["course_id"] == course_id]
        rows.sort(key=lambda r: r["position"])
        return rows

    def get_section(self, section_id: str) -> Optional[dict]:
        with self._lock:
            row = self._rows("course_sections").get(section_id)
            return dict(row) if row else None

    def rename_section(self, section_id: str, title: str) -> Optional[dict]:
        with self._lock:
            row = self._rows("course_sections").get(section_id)
            if row is None:
                return None
            row["title"] = title
            return dict(row)

    def reorder_sections(self, course_id: str, section_ids: List[str]) -> List[dict]:
        with self.transaction():
            rows = self._rows("course_sections")
            for position, section_id in enumerate(section_ids, start=1):
                if rows[section_id]["course_id"] == course_id:
                    rows[section_id]["position"] = position
        return self.list_sections(course_id)

    def insert_leaf(self, kind: str, values: Mapping[str, Any]) -> dict:
        table = LEAF_TABLES[kind]
        with self._lock:
            section_id = values["section_id"]
            positions = [r["position"] for r in self._rows(table).values() if r["section_id"] == section_id]
            row = dict(values)
            row.update(id=_new_id(), position=max(positions, default=0) + 1, created_at=_now())
            self._rows(table)[row["id"]] = row
            return dict(row)

    def get_leaf(self, kind: str, leaf_id: str) -> Optional[dict]:
        with self._lock:
            row = self._rows(LEAF_TABLES[kind]).get(leaf_id)
            return dict(row) if row else None

    def update_leaf(self, kind: str, leaf_id: str, patch: Mapping[str, Any]) -> Optional[dict]:
        with self._lock:
            row = self._rows(LEAF_TABLES[kind]).get(leaf_id)
            if row is None:
                return None
            row.update(patch)
            return dict(row)

    def delete_leaf(self, kind: str, leaf_id: str) -> bool:
        with self._lock:
            if leaf_id not in self._rows(LEAF_TABLES[kind]):
                return False
            self._delete_row(LEAF_TABLES[kind], leaf_id)
            return True

    def reorder_leaves(self, kind: str, section_id: str, leaf_ids: List[str]) -> List[dict]:
        with self.transaction():
            rows = self._rows(LEAF_TABLES[kind])
            for position, leaf_id in enumerate(leaf_ids, start=1):
                if rows[leaf_id]["section_id"] == section_id:
                    rows[leaf_id]["position"] = position
        return self.list_leaves(kind, section_id)

    def list_leaves(self, kind: str, section_id: str) -> List[dict]:
        with self._lock:
            rows = [dict(r) for r in self._rows(LEAF_TABLES[kind]).values() if r["section_id"] == section_id]
        rows.sort(key=lambda r: r["position"])
        return rows

    def delete_section_cascade(self, section_id: str) -> Optional[Dict[str, int]]:
        with self.transaction():
            if section_id not in self._rows("course_sections"):
                return None
            counts = {kind: self._delete_where(table, "section_id", section_id) for kind, table in LEAF_TABLES.items()}
            self._delete_row("course_sections", section_id)
            return counts

    # --- Progress ---------------------------------------------------------------
    @staticmethod
    def _actor_filter(actor: Mapping[str, Any]) -> Dict[str, Any]:
        return {c: actor.get(c) for c in _ACTOR_COLUMNS}

    def upsert_completion(self, *, lesson_id: str, course_id: str, actor: Mapping[str, Any], completed: bool) -> dict:
        with self._lock:
            match = dict(self._actor_filter(actor), lesson_id=lesson_id)
            row = next((r for r in self._rows("lesson_completions").values() if self._matches(r, match)), None)
            if row is None:
                row = dict(match, id=_new_id(), course_id=course_id)
                self._rows("lesson_completions")[row["id"]] = row
            row["completed"] = bool(completed)
            row["completed_at"] = _now() if completed else None
            row["updated_at"] = _now()
            return dict(row)

    def insert_attempt(self, *, quiz_id: str, course_id: str, actor: Mapping[str, Any], score: float, max_score: float) -> dict:
        with self._lock:
            row = dict(
                self._actor_filter(actor),
                id=_new_id(),
                quiz_id=quiz_id,
                course_id=course_id,
                score=score,
                max_score=max_score,
                attempted_at=_now(),
                seq=next(self._seq),
            )
            self._rows("quiz_attempts")[row["id"]] = row
            return {k: v for k, v in row.items() if k != "seq"}

    def list_completed(self, course_id: str, actor: Mapping[str, Any]) -> List[str]:
        match = dict(self._actor_filter(actor), course_id=course_id, completed=True)
        with self._lock:
            rows = [r for r in self._rows("lesson_completions").values() if self._matches(r, match)]
        rows.sort(key=lambda r: r["completed_at"])
        return [r["lesson_id"] for r in rows]

    def latest_attempts(self, course_id: str, actor: Mapping[str, Any], quiz_id: Optional[str] = None) -> List[dict]:
        match = dict(self._actor_filter(actor), course_id=course_id)
        if quiz_id is not None:
            match["quiz_id"] = quiz_id
        latest: Dict[str, dict] = {}
        with self._lock:
            for row in self._rows("quiz_attempts").values():
                if not self._matches(row, match):
                    continue
                best = latest.get(row["quiz_id"])
                if best is None or (row["attempted_at"], row["seq"]) > (best["attempted_at"], best["seq"]):
                    latest[row["quiz_id"]] = dict(row)
        return [{k: v for k, v in r.items() if k != "seq"} for r in latest.values()]


__all__ = ["MemoryTenancyRepo", "DEFAULT_LEVELS"]
