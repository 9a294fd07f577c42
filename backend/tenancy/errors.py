"""
Error taxonomy for the tenancy core.

Why:
    Handlers used to map failures to ad-hoc status codes one by one. Services
    now raise one of these exceptions and the web adapter renders them in a
    single place, so a cross-tenant lookup can never turn into a 403 in one
    route and a 404 in another.

Behavior:
    - `code` is the machine-readable kind, `message` the human-readable text.
    - `status_code` is the HTTP status the web adapter responds with.
    - `NotFound` deliberately covers "absent" and "owned by another tenant".
"""
from __future__ import annotations


class TenancyError(Exception):
    code = "error"
    status_code = 500
    default_message = "Unexpected error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(TenancyError):
    code = "unauthenticated"
    status_code = 401
    default_message = "Not authenticated"


class NoTenantSelected(TenancyError):
    code = "no_tenant_selected"
    status_code = 403
    default_message = "Organization not selected"


class Forbidden(TenancyError):
    code = "forbidden"
    status_code = 403
    default_message = "Only coordinators can perform this action"


class NotFound(TenancyError):
    code = "not_found"
    status_code = 404
    default_message = "Not found"


class Conflict(TenancyError):
    code = "conflict"
    status_code = 409
    default_message = "Conflicting record exists"


class Invalid(TenancyError):
    code = "bad_request"
    status_code = 400
    default_message = "Invalid input"


class StoreUnavailable(TenancyError):
    """Datastore failure that must surface as a single 500."""

    code = "store_unavailable"
    status_code = 500
    default_message = "Datastore unavailable"


__all__ = [
    "TenancyError",
    "Unauthenticated",
    "NoTenantSelected",
    "Forbidden",
    "NotFound",
    "Conflict",
    "Invalid",
    "StoreUnavailable",
]
