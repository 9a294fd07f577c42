"""Tenant directory: maps external organization ids to internal tenant ids.

Why:
    Every tenant-scoped request starts by turning the organization the
    principal selected into our tenant id. The first request of a new
    organization creates the tenant lazily under a placeholder name.

Concurrency:
    Two first requests of the same organization may race. The unique
    constraint on `external_org_id` lets exactly one insert win; the loser
    catches `Conflict` and re-reads the winner's row. Both callers return the
    same tenant id and exactly one tenant row exists.
"""
from __future__ import annotations

import logging
from typing import Optional, Protocol

from .errors import Conflict, Invalid, NotFound

logger = logging.getLogger("schoolops.tenancy.directory")

PLACEHOLDER_TENANT_NAME = "Unnamed School"


class TenantRepoProtocol(Protocol):
    def find_tenant_by_org(self, external_org_id: str) -> Optional[dict]:
        ...

    def get_tenant(self, tenant_id: str) -> Optional[dict]:
        ...

    def insert_tenant(self, *, name: str, external_org_id: Optional[str]) -> dict:
        ...

    def set_tenant_binding(self, tenant_id: str, external_org_id: Optional[str]) -> Optional[dict]:
        ...

    def rename_tenant(self, tenant_id: str, name: str) -> Optional[dict]:
        ...


class TenantDirectory:
    def __init__(self, repo: TenantRepoProtocol) -> None:
        self._repo = repo

    def resolve_tenant(self, external_org_id: str) -> str:
        """Return the tenant id bound to `external_org_id`, creating it on first use."""
        org = (external_org_id or "").strip()
        if not org:
            raise Invalid("external organization id required")
        row = self._repo.find_tenant_by_org(org)
        if row:
            return str(row["id"])
        try:
            row = self._repo.insert_tenant(name=PLACEHOLDER_TENANT_NAME, external_org_id=org)
        except Conflict:
            row = self._repo.find_tenant_by_org(org)
            if not row:
                raise
            logger.info("tenant create race lost; reusing tenant_id=%s", row["id"])
            return str(row["id"])
        logger.info("tenant created lazily tenant_id=%s", row["id"])
        return str(row["id"])

    def bind_tenant(self, tenant_id: str, external_org_id: Optional[str]) -> dict:
        """Bind or unbind (None) an organization; `Conflict` if bound to another tenant."""
        org = (external_org_id or "").strip() or None
        if org:
            other = self._repo.find_tenant_by_org(org)
            if other and str(other["id"]) != str(tenant_id):
                raise Conflict("Organization is already bound to another tenant")
        row = self._repo.set_tenant_binding(tenant_id, org)
        if row is None:
            raise NotFound("Tenant not found")
        logger.info("tenant binding changed tenant_id=%s bound=%s", tenant_id, bool(org))
        return row

    def get_tenant(self, tenant_id: str) -> dict:
        row = self._repo.get_tenant(tenant_id)
        if row is None:
            raise NotFound("Tenant not found")
        return row

    def rename_tenant(self, tenant_id: str, name: str) -> dict:
        name = (name or "").strip()
        if not name or len(name) > 200:
            raise Invalid("invalid_name")
        row = self._repo.rename_tenant(tenant_id, name)
        if row is None:
            raise NotFound("Tenant not found")
        return row


__all__ = ["TenantDirectory", "TenantRepoProtocol", "PLACEHOLDER_TENANT_NAME"]
