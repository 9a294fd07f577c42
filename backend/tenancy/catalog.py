"""Level catalog: shared across tenants, readable by anyone, maintained by coordinators.

A level groups courses. The level itself is global, but each level-course
mapping belongs to the course's tenant: callers only see and change mappings
for their own courses.
"""
from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional, Protocol

from .accessor import AccessorRegistry
from .assignments import parse_level_id
from .context import RequestContext
from .errors import Invalid, NotFound
from .role_gate import RoleGate

logger = logging.getLogger("schoolops.tenancy.catalog")

_LEVEL_FIELDS = ("name", "category", "level_order", "description")


class LevelRepoProtocol(Protocol):
    def list_levels(self) -> List[dict]:
        ...

    def get_level(self, level_id: int) -> Optional[dict]:
        ...

    def insert_level(self, values: Mapping[str, Any]) -> dict:
        ...

    def update_level(self, level_id: int, patch: Mapping[str, Any]) -> Optional[dict]:
        ...

    def delete_level(self, level_id: int) -> bool:
        ...

    def upsert_level_course(self, level_id: int, course_id: str, label: Optional[str]) -> dict:
        ...

    def delete_level_course(self, level_id: int, course_id: str) -> bool:
        ...

    def list_level_courses(self, level_id: int, tenant_id: str) -> List[dict]:
        ...

    def list_course_levels(self, course_id: str) -> List[dict]:
        ...


def _clean(payload: Mapping[str, Any]) -> dict:
    values = {k: payload[k] for k in _LEVEL_FIELDS if k in payload}
    if "name" in values:
        if not isinstance(values["name"], str) or not values["name"].strip():
            raise Invalid("name is required")
        values["name"] = values["name"].strip()
    if "level_order" in values:
        order = values["level_order"]
        if isinstance(order, bool) or not isinstance(order, int):
            raise Invalid("level_order must be an integer")
    return values


class LevelCatalog:
    def __init__(self, repo: LevelRepoProtocol, gate: RoleGate, registry: AccessorRegistry) -> None:
        self._repo = repo
        self._gate = gate
        self._courses = registry.get("courses")

    def list(self) -> List[dict]:
        return self._repo.list_levels()

    def get(self, level_id: Any) -> dict:
        row = self._repo.get_level(parse_level_id(level_id))
        if row is None:
            raise NotFound("Level not found")
        return row

    def create(self, ctx: RequestContext, payload: Mapping[str, Any]) -> dict:
        self._gate.require_coordinator(ctx.tenant_id, ctx.user_id)
        values = _clean(payload)
        if "name" not in values:
            raise Invalid("name is required")
        values.setdefault("category", "General")
        values.setdefault("level_order", 0)
        return self._repo.insert_level(values)

    def update(self, ctx: RequestContext, level_id: Any, patch: Mapping[str, Any]) -> dict:
        lid = parse_level_id(level_id)
        self._gate.require_coordinator(ctx.tenant_id, ctx.user_id)
        values = _clean(patch)
        if not values:
            raise Invalid("No updatable fields provided")
        row = self._repo.update_level(lid, values)
        if row is None:
            raise NotFound("Level not found")
        return row

    def delete(self, ctx: RequestContext, level_id: Any) -> None:
        lid = parse_level_id(level_id)
        self._gate.require_coordinator(ctx.tenant_id, ctx.user_id)
        if not self._repo.delete_level(lid):
            raise NotFound("Level not found")

    # --- Level courses ----------------------------------------------------------
    def _prepare_mapping(self, ctx: RequestContext, level_id: Any, course_id: str) -> int:
        self._courses.require_owned(ctx.tenant_id, course_id)
        self._gate.require_coordinator(ctx.tenant_id, ctx.user_id)
        return parse_level_id(level_id)

    def add_course(self, ctx: RequestContext, level_id: Any, course_id: str, label: Any = None) -> dict:
        lid = self._prepare_mapping(ctx, level_id, course_id)
        if label is not None and not isinstance(label, str):
            raise Invalid("label must be a string")
        if self._repo.get_level(lid) is None:
            raise NotFound("Level not found")
        row = self._repo.upsert_level_course(lid, course_id, (label or "").strip() or None)
        logger.info("course mapped to level level_id=%s course_id=%s", lid, course_id)
        return row

    def remove_course(self, ctx: RequestContext, level_id: Any, course_id: str) -> None:
        lid = self._prepare_mapping(ctx, level_id, course_id)
        self._repo.delete_level_course(lid, course_id)

    def courses_for_level(self, ctx: RequestContext, level_id: Any) -> List[dict]:
        lid = parse_level_id(level_id)
        if self._repo.get_level(lid) is None:
            raise NotFound("Level not found")
        return self._repo.list_level_courses(lid, ctx.tenant_id)

    def levels_for_course(self, ctx: RequestContext, course_id: str) -> List[dict]:
        self._courses.require_owned(ctx.tenant_id, course_id)
        return self._repo.list_course_levels(course_id)


__all__ = ["LevelCatalog", "LevelRepoProtocol"]
