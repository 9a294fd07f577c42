"""
Tenant and membership routes.

- `POST /api/sync/me` links the caller to their coordinator/trainer/student
  record in the selected organization's tenant.
- `GET/PATCH /api/me/school` reads or renames the caller's tenant.
- `/api/coordinators` lists and creates coordinators; a tenant holds at most
  one, so a second create answers 409. `PATCH /api/coordinators/me` is the
  self-service profile edit and is not role-gated.
- `PUT /api/tenants/{tenant_id}/binding` (platform `admin` role) binds or
  unbinds an external organization.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Request
from pydantic import BaseModel, field_validator

from backend.tenancy.errors import Forbidden

from .common import _json_private, csrf_guard, current_principal, read_context, services, write_context

tenancy_router = APIRouter(tags=["Tenancy"])
logger = logging.getLogger("schoolops.web.tenancy")


class SchoolUpdatePayload(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()


class BindingPayload(BaseModel):
    external_org_id: Optional[str] = None


@tenancy_router.post("/api/sync/me")
async def sync_me(request: Request):
    csrf_guard(request)
    principal = current_principal(request)
    return _json_private(services().memberships.sync_principal(principal))


@tenancy_router.get("/api/me/school")
async def get_my_school(request: Request):
    ctx = read_context(request)
    row = services().directory.get_tenant(ctx.tenant_id)
    return _json_private({"tenant_id": ctx.tenant_id, "name": row.get("name")})


@tenancy_router.patch("/api/me/school")
async def rename_my_school(request: Request, payload: SchoolUpdatePayload):
    ctx = write_context(request)
    svc = services()
    svc.gate.require_coordinator(ctx.tenant_id, ctx.user_id)
    row = svc.directory.rename_tenant(ctx.tenant_id, payload.name)
    return _json_private({"tenant_id": ctx.tenant_id, "name": row.get("name")})


@tenancy_router.get("/api/coordinators")
async def list_coordinators(request: Request):
    ctx = read_context(request)
    return _json_private(services().memberships.list_coordinators(ctx))


@tenancy_router.post("/api/coordinators")
async def create_coordinator(request: Request, payload: Dict[str, Any] = Body(...)):
    ctx = write_context(request)
    return _json_private(services().memberships.create_coordinator(ctx, payload), status_code=201)


@tenancy_router.patch("/api/coordinators/me")
async def update_my_coordinator_profile(request: Request, payload: Dict[str, Any] = Body(...)):
    ctx = write_context(request)
    return _json_private(services().memberships.update_own_profile(ctx, payload))


@tenancy_router.put("/api/tenants/{tenant_id}/binding")
async def bind_tenant(request: Request, tenant_id: str, payload: BindingPayload):
    csrf_guard(request)
    principal = current_principal(request)
    if not principal.has_role("admin"):
        raise Forbidden("Admin role required")
    row = services().directory.bind_tenant(tenant_id, payload.external_org_id)
    logger.info("tenant binding updated by admin tenant_id=%s", tenant_id)
    return _json_private(row)
