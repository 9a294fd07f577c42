"""
Level catalog and level assignment routes.

Assignment routes (`/api/{trainers|batches}/{id}/levels`) check, in order:
subject belongs to the caller's tenant (404), caller is a coordinator of the
tenant (403, mutations only), `level_id` is a number (400).

Level-course routes (`/api/levels/{id}/courses`, `/api/courses/{id}/levels`)
only ever show or change mappings of the caller's own courses.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Request
from pydantic import BaseModel

from backend.tenancy.errors import Invalid, NotFound

from .common import _json_private, current_principal, read_context, services, write_context

levels_router = APIRouter(tags=["Levels"])

_SUBJECT_FAMILIES = ("trainers", "batches")


class LevelAssignPayload(BaseModel):
    level_id: Any = None


class LevelCoursePayload(BaseModel):
    course_id: Optional[str] = None
    label: Any = None


def _course_id(value: Optional[str]) -> str:
    if not value or not value.strip():
        raise Invalid("course_id is required")
    return value.strip()


def _relation(family: str):
    if family not in _SUBJECT_FAMILIES:
        raise NotFound("Unknown resource")
    return services().levels_for(family)


# --- Catalog --------------------------------------------------------------------

@levels_router.get("/api/levels")
async def list_levels(request: Request):
    current_principal(request)
    return _json_private(services().catalog.list())


@levels_router.get("/api/levels/{level_id}")
async def get_level(request: Request, level_id: str):
    current_principal(request)
    return _json_private(services().catalog.get(level_id))


@levels_router.post("/api/levels")
async def create_level(request: Request, payload: Dict[str, Any] = Body(...)):
    ctx = write_context(request)
    return _json_private(services().catalog.create(ctx, payload), status_code=201)


@levels_router.patch("/api/levels/{level_id}")
async def update_level(request: Request, level_id: str, payload: Dict[str, Any] = Body(...)):
    ctx = write_context(request)
    return _json_private(services().catalog.update(ctx, level_id, payload))


@levels_router.delete("/api/levels/{level_id}")
async def delete_level(request: Request, level_id: str):
    ctx = write_context(request)
    services().catalog.delete(ctx, level_id)
    return _json_private({"success": True})


# --- Level courses --------------------------------------------------------------

@levels_router.get("/api/levels/{level_id}/courses")
async def list_level_courses(request: Request, level_id: str):
    ctx = read_context(request)
    return _json_private(services().catalog.courses_for_level(ctx, level_id))


@levels_router.post("/api/levels/{level_id}/courses")
async def add_level_course(request: Request, level_id: str, payload: LevelCoursePayload):
    ctx = write_context(request)
    row = services().catalog.add_course(ctx, level_id, _course_id(payload.course_id), payload.label)
    return _json_private(row, status_code=201)


@levels_router.delete("/api/levels/{level_id}/courses")
async def remove_level_course(request: Request, level_id: str, course_id: Optional[str] = None):
    ctx = write_context(request)
    services().catalog.remove_course(ctx, level_id, _course_id(course_id))
    return _json_private({"success": True})


# Declared before the generic assignment routes, which would claim `courses`.
@levels_router.get("/api/courses/{course_id}/levels")
async def list_course_levels(request: Request, course_id: str):
    ctx = read_context(request)
    return _json_private(services().catalog.levels_for_course(ctx, course_id))


# --- Assignments ----------------------------------------------------------------

@levels_router.get("/api/{family}/{subject_id}/levels")
async def list_assigned_levels(request: Request, family: str, subject_id: str, history: bool = False):
    relation = _relation(family)
    ctx = read_context(request)
    if history:
        return _json_private(relation.history(ctx, subject_id))
    return _json_private(relation.list_active(ctx, subject_id))


@levels_router.post("/api/{family}/{subject_id}/levels")
async def assign_level(request: Request, family: str, subject_id: str, payload: LevelAssignPayload):
    relation = _relation(family)
    ctx = write_context(request)
    relation.assign(ctx, subject_id, payload.level_id)
    return _json_private({"success": True})


@levels_router.delete("/api/{family}/{subject_id}/levels")
async def unassign_level(request: Request, family: str, subject_id: str, level_id: Optional[str] = None):
    relation = _relation(family)
    ctx = write_context(request)
    relation.unassign(ctx, subject_id, level_id)
    return _json_private({"success": True})
