"""Per-request tenancy context, built once from the principal and passed downstream."""
from __future__ import annotations

from dataclasses import dataclass

from backend.identity_access.principal import Principal


@dataclass(frozen=True)
class RequestContext:
    principal: Principal
    tenant_id: str

    @property
    def user_id(self) -> str:
        return self.principal.external_user_id
