"""
Activatable assignment relation between tenant-owned subjects and levels.

Why:
    Levels rotate between trainers and batches term to term. Instead of
    deleting link rows, a link is switched off (`active = false`) so the audit
    pair `assigned_at`/`assigned_by` survives and re-assignment reuses the row.

Invariants:
    - At most one row per (subject, level). `assign` is a single upsert in the
      datastore, so concurrent assigns cannot produce duplicates.
    - `unassign` is idempotent; an absent row is not an error.
    - `list_active` orders by the level's catalog order, then name.

Order of checks for mutations: subject ownership (`NotFound`), coordinator
gate (`Forbidden`), `level_id` shape (`Invalid`), level existence (`NotFound`).
"""
from __future__ import annotations

import logging
from typing import Any, List, Optional, Protocol

from .accessor import AccessorRegistry
from .context import RequestContext
from .errors import Invalid, NotFound
from .resources import RelationSpec
from .role_gate import RoleGate

logger = logging.getLogger("schoolops.tenancy.assignments")


class RelationRepoProtocol(Protocol):
    def get_level(self, level_id: int) -> Optional[dict]:
        ...

    def upsert_level_assignment(self, rel: RelationSpec, subject_id: str, level_id: int, assigned_by: str) -> dict:
        ...

    def deactivate_level_assignment(self, rel: RelationSpec, subject_id: str, level_id: int) -> Optional[dict]:
        ...

    def list_active_levels(self, rel: RelationSpec, subject_id: str) -> List[dict]:
        ...

    def list_assignment_rows(self, rel: RelationSpec, subject_id: str) -> List[dict]:
        ...


def parse_level_id(value: Any) -> int:
    """Accept ints and digit strings; reject bools, floats and anything else."""
    if isinstance(value, bool):
        raise Invalid("level_id must be a number")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise Invalid("level_id must be a number")


class LevelAssignments:
    def __init__(self, rel: RelationSpec, repo: RelationRepoProtocol, gate: RoleGate, registry: AccessorRegistry) -> None:
        self.rel = rel
        self._repo = repo
        self._gate = gate
        self._subjects = registry.get(rel.subject_family)

    def _prepare(self, ctx: RequestContext, subject_id: str, level_id: Any) -> int:
        self._subjects.require_owned(ctx.tenant_id, subject_id)
        self._gate.require_coordinator(ctx.tenant_id, ctx.user_id)
        return parse_level_id(level_id)

    def assign(self, ctx: RequestContext, subject_id: str, level_id: Any) -> dict:
        lid = self._prepare(ctx, subject_id, level_id)
        if self._repo.get_level(lid) is None:
            raise NotFound("Level not found")
        row = self._repo.upsert_level_assignment(self.rel, subject_id, lid, ctx.user_id)
        logger.info("%s assigned subject=%s level=%s", self.rel.name, subject_id, lid)
        return row

    def unassign(self, ctx: RequestContext, subject_id: str, level_id: Any) -> None:
        lid = self._prepare(ctx, subject_id, level_id)
        if self._repo.deactivate_level_assignment(self.rel, subject_id, lid) is not None:
            logger.info("%s unassigned subject=%s level=%s", self.rel.name, subject_id, lid)

    def list_active(self, ctx: RequestContext, subject_id: str) -> List[dict]:
        self._subjects.require_owned(ctx.tenant_id, subject_id)
        return self._repo.list_active_levels(self.rel, subject_id)

    def history(self, ctx: RequestContext, subject_id: str) -> List[dict]:
        self._subjects.require_owned(ctx.tenant_id, subject_id)
        return self._repo.list_assignment_rows(self.rel, subject_id)


__all__ = ["LevelAssignments", "RelationRepoProtocol", "parse_level_id"]
