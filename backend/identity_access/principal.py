"""
Principal resolution for inbound requests.

Why:
    Handlers used to ask the session for "current user" and "current
    organization" ad hoc. The auth middleware stores the session facts on
    `request.state.user` once; `resolve_principal` turns them into an explicit
    `Principal` value that is passed downstream and never re-derived.

Behavior:
    - No session on the request -> `Unauthenticated` (blocks all access).
    - Session without a selected organization -> `NoTenantSelected`, but only
      when the caller asks for an organization (`require_org=True`); routes
      that are not tenant-scoped (level catalog, membership sync) still work.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from backend.identity_access.domain import ALLOWED_ROLES
from backend.tenancy.errors import NoTenantSelected, Unauthenticated


@dataclass(frozen=True)
class Principal:
    external_user_id: str
    external_org_id: Optional[str]
    org_role: Optional[str] = None
    roles: tuple[str, ...] = field(default_factory=tuple)
    name: str = ""
    email: str = ""

    def has_role(self, role: str) -> bool:
        return role in self.roles


def principal_from_user(user: Any, *, require_org: bool = True) -> Principal:
    """Build a `Principal` from the middleware's user mapping."""
    if not isinstance(user, dict):
        raise Unauthenticated()
    sub = str(user.get("sub") or "").strip()
    if not sub:
        raise Unauthenticated()
    org_id = str(user.get("org_id") or "").strip() or None
    if require_org and not org_id:
        raise NoTenantSelected()
    roles = user.get("roles") or []
    if not isinstance(roles, (list, tuple)):
        roles = []
    return Principal(
        external_user_id=sub,
        external_org_id=org_id,
        org_role=user.get("org_role") or None,
        roles=tuple(str(r) for r in roles if str(r) in ALLOWED_ROLES),
        name=str(user.get("name") or ""),
        email=str(user.get("email") or "").strip().lower(),
    )


def resolve_principal(request, *, require_org: bool = True) -> Principal:
    return principal_from_user(getattr(request.state, "user", None), require_org=require_org)


__all__ = ["Principal", "principal_from_user", "resolve_principal"]
