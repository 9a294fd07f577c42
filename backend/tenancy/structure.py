"""
Course structure: Course -> Section (ordered) -> Lesson | Quiz | Assignment.

Why:
    A leaf never outlives its section. Deleting a section removes its
    lessons, quizzes and assignments and then the section itself inside one
    datastore transaction; a failure anywhere rolls the whole deletion back
    and the caller sees a single `StoreUnavailable`.

Invariants:
    - Every leaf's `course_id` equals the `course_id` of its section; a leaf
      update never moves it to another section.
    - Reordering takes the complete list of sibling ids and renumbers them
      1..n in one transaction; a partial or foreign list is `Invalid`.

Mutations check ownership (`NotFound`), then the coordinator gate
(`Forbidden`), then the payload (`Invalid`).
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol

from .accessor import AccessorRegistry
from .context import RequestContext
from .errors import Invalid, NotFound, StoreUnavailable, TenancyError
from .resources import LEAF_COLUMNS, LEAF_TABLES
from .role_gate import RoleGate

logger = logging.getLogger("schoolops.tenancy.structure")

_LEAF_LABELS = {"lessons": "Lesson", "quizzes": "Quiz", "assignments": "Assignment"}


class StructureRepoProtocol(Protocol):
    def insert_section(self, course_id: str, title: str) -> dict:
        ...

    def list_sections(self, course_id: str) -> List[dict]:
        ...

    def get_section(self, section_id: str) -> Optional[dict]:
        ...

    def rename_section(self, section_id: str, title: str) -> Optional[dict]:
        ...

    def reorder_sections(self, course_id: str, section_ids: List[str]) -> List[dict]:
        ...

    def insert_leaf(self, kind: str, values: Mapping[str, Any]) -> dict:
        ...

    def get_leaf(self, kind: str, leaf_id: str) -> Optional[dict]:
        ...

    def update_leaf(self, kind: str, leaf_id: str, patch: Mapping[str, Any]) -> Optional[dict]:
        ...

    def delete_leaf(self, kind: str, leaf_id: str) -> bool:
        ...

    def reorder_leaves(self, kind: str, section_id: str, leaf_ids: List[str]) -> List[dict]:
        ...

    def list_leaves(self, kind: str, section_id: str) -> List[dict]:
        ...

    def delete_section_cascade(self, section_id: str) -> Optional[Dict[str, int]]:
        ...


def _title(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise Invalid("title is required")
    title = value.strip()
    if len(title) > 200:
        raise Invalid("title too long")
    return title


def _ordering(value: Any, current: List[dict]) -> List[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise Invalid("ids must be a list of ids")
    if len(value) != len(set(value)) or set(value) != {str(r["id"]) for r in current}:
        raise Invalid("ids must name every item exactly once")
    return list(value)


class CourseStructure:
    def __init__(self, repo: StructureRepoProtocol, gate: RoleGate, registry: AccessorRegistry) -> None:
        self._repo = repo
        self._gate = gate
        self._courses = registry.get("courses")

    def _owned_section(self, ctx: RequestContext, section_id: str) -> dict:
        section = self._repo.get_section(section_id)
        if section is None or not self._courses.owns(ctx.tenant_id, str(section["course_id"])):
            raise NotFound("Section not found")
        return section

    def create_section(self, ctx: RequestContext, course_id: str, title: Any) -> dict:
        self._courses.require_owned(ctx.tenant_id, course_id)
        self._gate.require_coordinator(ctx.tenant_id, ctx.user_id)
        return self._repo.insert_section(course_id, _title(title))

    def list_sections(self, ctx: RequestContext, course_id: str) -> List[dict]:
        self._courses.require_owned(ctx.tenant_id, course_id)
        return self._repo.list_sections(course_id)

    def add_leaf(self, ctx: RequestContext, section_id: str, kind: str, payload: Mapping[str, Any]) -> dict:
        if kind not in LEAF_TABLES:
            raise NotFound("Unknown content kind")
        section = self._owned_section(ctx, section_id)
        self._gate.require_coordinator(ctx.tenant_id, ctx.user_id)
        course_id = str(section["course_id"])
        claimed = payload.get("course_id")
        if claimed is not None and str(claimed) != course_id:
            raise Invalid("Section does not belong to the given course")
        values = {k: payload.get(k) for k in LEAF_COLUMNS[kind] if payload.get(k) is not None}
        values["title"] = _title(payload.get("title"))
        values.update(course_id=course_id, section_id=section_id)
        return self._repo.insert_leaf(kind, values)

    def rename_section(self, ctx: RequestContext, section_id: str, title: Any) -> dict:
        self._owned_section(ctx, section_id)
        self._gate.require_coordinator(ctx.tenant_id, ctx.user_id)
        row = self._repo.rename_section(section_id, _title(title))
        if row is None:
            raise NotFound("Section not found")
        return row

    def reorder_sections(self, ctx: RequestContext, course_id: str, section_ids: Any) -> List[dict]:
        self._courses.require_owned(ctx.tenant_id, course_id)
        self._gate.require_coordinator(ctx.tenant_id, ctx.user_id)
        ids = _ordering(section_ids, self._repo.list_sections(course_id))
        rows = self._repo.reorder_sections(course_id, ids)
        logger.info("sections reordered course_id=%s count=%s", course_id, len(ids))
        return rows

    def get_leaf(self, ctx: RequestContext, kind: str, leaf_id: str) -> dict:
        """Return a leaf of `kind` if its course belongs to the caller's tenant."""
        if kind not in LEAF_TABLES:
            raise NotFound("Unknown content kind")
        leaf = self._repo.get_leaf(kind, leaf_id)
        if leaf is None or not self._courses.owns(ctx.tenant_id, str(leaf["course_id"])):
            raise NotFound(f"{_LEAF_LABELS[kind]} not found")
        return leaf

    def update_leaf(self, ctx: RequestContext, kind: str, leaf_id: str, patch: Mapping[str, Any]) -> dict:
        self.get_leaf(ctx, kind, leaf_id)
        self._gate.require_coordinator(ctx.tenant_id, ctx.user_id)
        values = {k: patch[k] for k in LEAF_COLUMNS[kind] if k in (patch or {})}
        if not values:
            raise Invalid("No updatable fields provided")
        if "title" in values:
            values["title"] = _title(values["title"])
        row = self._repo.update_leaf(kind, leaf_id, values)
        if row is None:
            raise NotFound(f"{_LEAF_LABELS[kind]} not found")
        return row

    def delete_leaf(self, ctx: RequestContext, kind: str, leaf_id: str) -> None:
        self.get_leaf(ctx, kind, leaf_id)
        self._gate.require_coordinator(ctx.tenant_id, ctx.user_id)
        if not self._repo.delete_leaf(kind, leaf_id):
            raise NotFound(f"{_LEAF_LABELS[kind]} not found")
        logger.info("%s deleted id=%s", kind, leaf_id)

    def reorder_leaves(self, ctx: RequestContext, section_id: str, kind: str, leaf_ids: Any) -> List[dict]:
        if kind not in LEAF_TABLES:
            raise NotFound("Unknown content kind")
        self._owned_section(ctx, section_id)
        self._gate.require_coordinator(ctx.tenant_id, ctx.user_id)
        ids = _ordering(leaf_ids, self._repo.list_leaves(kind, section_id))
        return self._repo.reorder_leaves(kind, section_id, ids)

    def section_contents(self, ctx: RequestContext, section_id: str) -> dict:
        section = self._owned_section(ctx, section_id)
        out = dict(section)
        for kind in LEAF_TABLES:
            out[kind] = self._repo.list_leaves(kind, section_id)
        return out

    def delete_section(self, ctx: RequestContext, section_id: str) -> Dict[str, int]:
        self._owned_section(ctx, section_id)
        self._gate.require_coordinator(ctx.tenant_id, ctx.user_id)
        try:
            counts = self._repo.delete_section_cascade(section_id)
        except TenancyError:
            raise
        except Exception as exc:
            logger.warning("section delete rolled back section_id=%s error=%s", section_id, exc.__class__.__name__)
            raise StoreUnavailable("Failed to delete section") from exc
        if counts is None:
            raise NotFound("Section not found")
        logger.info("section deleted section_id=%s counts=%s", section_id, counts)
        return counts


__all__ = ["CourseStructure", "StructureRepoProtocol"]
