"""
Uniform CRUD routes for tenant-owned resource families.

`/api/{family}` and `/api/{family}/{id}` serve batches, trainers, students,
courses, sessions, assignments, submissions and announcements through the
tenant-scoped accessor. Query parameters on the list route are equality
filters restricted to each family's allow-list.

This router is mounted last: its `{family}` segment would otherwise shadow
the more specific routes of the other routers.
"""
from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Body, Request
from pydantic import BaseModel, Field

from backend.tenancy.accessor import TenantScopedAccessor
from backend.tenancy.errors import NotFound
from backend.tenancy.resources import PUBLIC_FAMILIES

from .common import _json_private, read_context, services, write_context

resources_router = APIRouter(tags=["Resources"])


class RosterPayload(BaseModel):
    trainer_ids: List[str] = Field(default_factory=list)
    student_ids: List[str] = Field(default_factory=list)


def _accessor(family: str) -> TenantScopedAccessor:
    if family not in PUBLIC_FAMILIES:
        raise NotFound("Unknown resource")
    return services().registry.get(family)


@resources_router.put("/api/batches/{batch_id}/members")
async def replace_batch_members(request: Request, batch_id: str, payload: RosterPayload):
    """Replace a batch's trainer/student roster; every id must belong to the batch's tenant."""
    ctx = write_context(request)
    batches = services().registry.get("batches")
    row = batches.set_roster(ctx, batch_id, trainer_ids=payload.trainer_ids, student_ids=payload.student_ids)
    return _json_private(row)


@resources_router.get("/api/{family}")
async def list_resources(request: Request, family: str):
    accessor = _accessor(family)
    ctx = read_context(request)
    filters = dict(request.query_params)
    return _json_private(accessor.list(ctx, filters))


@resources_router.post("/api/{family}")
async def create_resource(request: Request, family: str, payload: Dict[str, Any] = Body(...)):
    accessor = _accessor(family)
    ctx = write_context(request)
    return _json_private(accessor.create(ctx, payload), status_code=201)


@resources_router.get("/api/{family}/{resource_id}")
async def get_resource(request: Request, family: str, resource_id: str):
    accessor = _accessor(family)
    ctx = read_context(request)
    return _json_private(accessor.get(ctx, resource_id))


@resources_router.patch("/api/{family}/{resource_id}")
async def update_resource(request: Request, family: str, resource_id: str, payload: Dict[str, Any] = Body(...)):
    accessor = _accessor(family)
    ctx = write_context(request)
    return _json_private(accessor.update(ctx, resource_id, payload))


@resources_router.delete("/api/{family}/{resource_id}")
async def delete_resource(request: Request, family: str, resource_id: str):
    accessor = _accessor(family)
    ctx = write_context(request)
    accessor.delete(ctx, resource_id)
    return _json_private({"success": True})
