"""
Shared helpers for the tenancy API routes.

Every tenant-scoped handler starts with `read_context` or `write_context`,
which resolve the principal and the tenant exactly once per request and hand
a `RequestContext` to the services. Errors are raised as `TenancyError`
subclasses and rendered centrally by the app's exception handler.
"""
from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from backend.identity_access.principal import Principal, resolve_principal
from backend.tenancy.context import RequestContext
from backend.tenancy.errors import Forbidden, TenancyError
from backend.web import config
from backend.web.wiring import Services, get_services

from .security import is_same_origin

PRIVATE_HEADERS = {"Cache-Control": "private, no-store"}


def _json_private(payload: Any, *, status_code: int = 200) -> JSONResponse:
    """JSON with caching disabled; tenant-scoped data must not land in shared caches."""
    from fastapi.encoders import jsonable_encoder

    return JSONResponse(content=jsonable_encoder(payload), status_code=status_code, headers=dict(PRIVATE_HEADERS))


def _private_error(exc: TenancyError) -> JSONResponse:
    return JSONResponse(
        {"error": exc.message, "code": exc.code},
        status_code=exc.status_code,
        headers=dict(PRIVATE_HEADERS),
    )


def services() -> Services:
    return get_services()


def read_context(request: Request) -> RequestContext:
    principal = resolve_principal(request)
    tenant_id = services().directory.resolve_tenant(principal.external_org_id or "")
    return RequestContext(principal=principal, tenant_id=tenant_id)


def csrf_guard(request: Request) -> None:
    if not is_same_origin(request, require_header=config.is_prod_like()):
        raise Forbidden("csrf_violation")


def write_context(request: Request) -> RequestContext:
    csrf_guard(request)
    return read_context(request)


def current_principal(request: Request, *, require_org: bool = False) -> Principal:
    return resolve_principal(request, require_org=require_org)
