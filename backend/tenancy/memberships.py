"""
Membership sync and coordinator self-service.

Why:
    People are managed in the identity provider; our tables hold their
    coordinator/trainer/student profile per tenant. When a principal is first
    seen inside an organization we link them to the matching record instead
    of asking an admin to do it by hand.

Sync order (first match wins, always within the principal's own tenant):
    1. a record already claimed by the principal (`external_user_id`)
    2. an unclaimed record with the principal's e-mail
    3. for coordinators, the tenant's unclaimed coordinator row
    4. a new record; a second coordinator for a tenant fails with `Conflict`

An identity link is unique per tenant, not globally: a person who switches to
another organization gets a record there, and the record in the organization
they left is not touched.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from backend.identity_access.domain import canonical_org_role
from backend.identity_access.principal import Principal

from .accessor import AccessorRegistry, RowRepoProtocol, clean_payload
from .context import RequestContext
from .directory import TenantDirectory
from .errors import Invalid, NotFound
from .resources import FAMILIES, TENANT_COLUMN

logger = logging.getLogger("schoolops.tenancy.memberships")

_FAMILY_BY_ROLE = {"coordinator": "coordinators", "trainer": "trainers", "student": "students"}


def _split_name(name: str) -> Dict[str, Optional[str]]:
    parts = (name or "").strip().split(None, 1)
    if not parts:
        return {"first_name": "Unnamed", "last_name": None}
    return {"first_name": parts[0], "last_name": parts[1] if len(parts) > 1 else None}


class Memberships:
    def __init__(self, repo: RowRepoProtocol, directory: TenantDirectory, registry: AccessorRegistry) -> None:
        self._repo = repo
        self._directory = directory
        self._registry = registry

    def sync_principal(self, principal: Principal) -> Dict[str, Any]:
        if not principal.external_org_id:
            return {"synced": False, "reason": "no_organization"}
        role = canonical_org_role(principal.org_role)
        if role is None:
            return {"synced": False, "reason": "no_role"}
        tenant_id = self._directory.resolve_tenant(principal.external_org_id)
        spec = FAMILIES[_FAMILY_BY_ROLE[role]]
        user_id = principal.external_user_id

        def result(row: dict, linked: bool) -> Dict[str, Any]:
            return {"synced": True, "tenant_id": tenant_id, "role": role, "member_id": str(row["id"]), "linked": linked}

        claimed = self._repo.select(spec, tenant_id, {"external_user_id": user_id})
        if claimed:
            return result(claimed[0], False)

        candidates: List[dict] = []
        if principal.email:
            candidates = self._repo.select(spec, tenant_id, {"email": principal.email, "external_user_id": None})
        if not candidates and role == "coordinator":
            candidates = self._repo.select(spec, tenant_id, {"external_user_id": None})
        if candidates:
            row = self._repo.update(spec, str(candidates[0]["id"]), tenant_id, {"external_user_id": user_id})
            if row is not None:
                logger.info("membership linked role=%s tenant_id=%s member_id=%s", role, tenant_id, row["id"])
                return result(row, True)

        values = dict(_split_name(principal.name), external_user_id=user_id, email=principal.email or None)
        values[TENANT_COLUMN] = tenant_id
        row = self._repo.insert(spec, values)
        logger.info("membership created role=%s tenant_id=%s member_id=%s", role, tenant_id, row["id"])
        return result(row, True)

    def create_coordinator(self, ctx: RequestContext, payload: Mapping[str, Any]) -> dict:
        return self._registry.get("coordinators").create(ctx, payload)

    def list_coordinators(self, ctx: RequestContext) -> List[dict]:
        return self._registry.get("coordinators").list(ctx)

    def update_own_profile(self, ctx: RequestContext, patch: Mapping[str, Any]) -> dict:
        """Self-service edit of the caller's own coordinator row; not role-gated."""
        spec = FAMILIES["coordinators"]
        rows = self._repo.select(spec, ctx.tenant_id, {"external_user_id": ctx.user_id})
        if not rows:
            raise NotFound("Coordinator not found")
        values = clean_payload(patch, spec.patchable)
        if not values:
            raise Invalid("No updatable fields provided")
        row = self._repo.update(spec, str(rows[0]["id"]), ctx.tenant_id, values)
        if row is None:
            raise NotFound("Coordinator not found")
        return row


__all__ = ["Memberships"]
