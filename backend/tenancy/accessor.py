"""Tenant-scoped resource accessor (Clean Architecture boundary).

Why:
    Every resource family (batches, trainers, sessions, ...) needs the same
    five operations, each scoped to the caller's tenant. Handlers used to
    re-implement "resolve school, check ownership, maybe check role" per
    route, with drift between copies. One accessor per `ResourceSpec` now
    does it the same way for all of them.

Behavior:
    - Reads and writes only ever match rows whose ownership chain ends in
      `ctx.tenant_id`. A row owned by another tenant is reported exactly like
      an absent one (`NotFound`).
    - A client-supplied `tenant_id` is ignored; the tenant always comes from
      the request context.
    - Referenced ids in a payload (e.g. `batch_id`, `trainer_id`) must belong
      to the same tenant, else `NotFound` before anything is written.
    - For update and delete the order of checks is ownership, then the role
      gate (when the family/operation is gated), then payload validation.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol

from .context import RequestContext
from .errors import Invalid, NotFound
from .resources import FAMILIES, PROTECTED_COLUMNS, TENANT_COLUMN, ResourceSpec
from .role_gate import GatePolicy, RoleGate

logger = logging.getLogger("schoolops.tenancy.accessor")


class RowRepoProtocol(Protocol):
    def select(
        self,
        spec: ResourceSpec,
        tenant_id: str,
        filters: Optional[Mapping[str, Any]] = None,
        resource_id: Optional[str] = None,
    ) -> List[dict]:
        ...

    def insert(self, spec: ResourceSpec, values: Mapping[str, Any]) -> dict:
        ...

    def update(self, spec: ResourceSpec, resource_id: str, tenant_id: str, patch: Mapping[str, Any]) -> Optional[dict]:
        ...

    def delete(self, spec: ResourceSpec, resource_id: str, tenant_id: str) -> bool:
        ...


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _normalize(values: Dict[str, Any]) -> Dict[str, Any]:
    email = values.get("email")
    if isinstance(email, str):
        values["email"] = email.strip().lower() or None
    return values


def clean_payload(payload: Mapping[str, Any], allowed: Iterable[str]) -> Dict[str, Any]:
    """Keep the allow-listed, non-protected keys of `payload` and normalize e-mail."""
    allowed = set(allowed) - PROTECTED_COLUMNS
    return _normalize({k: v for k, v in dict(payload or {}).items() if k in allowed})


class TenantScopedAccessor:
    def __init__(
        self,
        spec: ResourceSpec,
        repo: RowRepoProtocol,
        gate: RoleGate,
        policy: GatePolicy,
        registry: "AccessorRegistry",
    ) -> None:
        self.spec = spec
        self._repo = repo
        self._gate = gate
        self._policy = policy
        self._registry = registry

    # --- Internal checks --------------------------------------------------------
    def _not_found(self) -> NotFound:
        return NotFound(f"{self.spec.label} not found")

    def _check_gate(self, ctx: RequestContext, op: str) -> None:
        if self._policy.is_gated(self.spec.name, op):
            self._gate.require_coordinator(ctx.tenant_id, ctx.user_id)

    def _verify_references(self, ctx: RequestContext, values: Mapping[str, Any]) -> None:
        for column, family in self.spec.references.items():
            value = values.get(column)
            if value is not None:
                self._registry.get(family).require_owned(ctx.tenant_id, str(value))

    def require_owned(self, tenant_id: str, resource_id: str) -> dict:
        rows = self._repo.select(self.spec, tenant_id, resource_id=resource_id)
        if not rows:
            raise self._not_found()
        return rows[0]

    def owns(self, tenant_id: str, resource_id: str) -> bool:
        return bool(self._repo.select(self.spec, tenant_id, resource_id=resource_id))

    # --- Operations -------------------------------------------------------------
    def list(self, ctx: RequestContext, filters: Optional[Mapping[str, Any]] = None) -> List[dict]:
        filters = dict(filters or {})
        unknown = set(filters) - set(self.spec.filters)
        if unknown:
            raise Invalid(f"unknown filter: {', '.join(sorted(unknown))}")
        return self._repo.select(self.spec, ctx.tenant_id, _normalize(filters))

    def get(self, ctx: RequestContext, resource_id: str) -> dict:
        return self.require_owned(ctx.tenant_id, resource_id)

    def create(self, ctx: RequestContext, payload: Mapping[str, Any]) -> dict:
        self._check_gate(ctx, "create")
        values = clean_payload(payload, self.spec.columns)
        for column in self.spec.required:
            if _is_blank(values.get(column)):
                raise Invalid(f"{column} is required")
        for column, default in self.spec.defaults.items():
            if values.get(column) is None:
                values[column] = default
        self._verify_references(ctx, values)
        if self.spec.direct:
            values[TENANT_COLUMN] = ctx.tenant_id
        row = self._repo.insert(self.spec, values)
        logger.info("%s created tenant_id=%s id=%s", self.spec.name, ctx.tenant_id, row.get("id"))
        return row

    def update(self, ctx: RequestContext, resource_id: str, patch: Mapping[str, Any]) -> dict:
        self.require_owned(ctx.tenant_id, resource_id)
        self._check_gate(ctx, "update")
        values = clean_payload(patch, self.spec.patchable)
        if not values:
            raise Invalid("No updatable fields provided")
        for column in self.spec.required:
            if column in values and _is_blank(values[column]):
                raise Invalid(f"{column} is required")
        self._verify_references(ctx, values)
        if self.spec.on_patch is not None:
            values.update(self.spec.on_patch(values, ctx.user_id))
        row = self._repo.update(self.spec, resource_id, ctx.tenant_id, values)
        if row is None:
            raise self._not_found()
        return row

    def delete(self, ctx: RequestContext, resource_id: str) -> None:
        self.require_owned(ctx.tenant_id, resource_id)
        self._check_gate(ctx, "delete")
        if not self._repo.delete(self.spec, resource_id, ctx.tenant_id):
            raise self._not_found()
        logger.info("%s deleted tenant_id=%s id=%s", self.spec.name, ctx.tenant_id, resource_id)


class BatchAccessor(TenantScopedAccessor):
    """Batches additionally carry a trainer/student roster from the same tenant."""

    def _with_roster(self, row: dict) -> dict:
        return dict(row, **self._repo.batch_roster(str(row["id"])))

    def list(self, ctx: RequestContext, filters: Optional[Mapping[str, Any]] = None) -> List[dict]:
        return [self._with_roster(r) for r in super().list(ctx, filters)]

    def get(self, ctx: RequestContext, resource_id: str) -> dict:
        return self._with_roster(super().get(ctx, resource_id))

    def set_roster(
        self,
        ctx: RequestContext,
        batch_id: str,
        *,
        trainer_ids: Iterable[str] = (),
        student_ids: Iterable[str] = (),
    ) -> dict:
        row = self.require_owned(ctx.tenant_id, batch_id)
        self._check_gate(ctx, "update")
        trainer_ids, student_ids = [str(t) for t in trainer_ids], [str(s) for s in student_ids]
        trainers, students = self._registry.get("trainers"), self._registry.get("students")
        for trainer_id in trainer_ids:
            trainers.require_owned(ctx.tenant_id, trainer_id)
        for student_id in student_ids:
            students.require_owned(ctx.tenant_id, student_id)
        roster = self._repo.replace_batch_roster(batch_id, trainer_ids, student_ids)
        return dict(row, **roster)


class AccessorRegistry:
    def __init__(self, repo: RowRepoProtocol, gate: RoleGate, policy: GatePolicy) -> None:
        self._accessors: Dict[str, TenantScopedAccessor] = {}
        for name, spec in FAMILIES.items():
            cls = BatchAccessor if name == "batches" else TenantScopedAccessor
            self._accessors[name] = cls(spec, repo, gate, policy, self)

    def get(self, family: str) -> TenantScopedAccessor:
        try:
            return self._accessors[family]
        except KeyError:
            raise NotFound("Unknown resource") from None

    def __contains__(self, family: str) -> bool:
        return family in self._accessors


__all__ = ["TenantScopedAccessor", "BatchAccessor", "AccessorRegistry", "RowRepoProtocol", "clean_payload"]
