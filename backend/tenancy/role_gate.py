"""
Role gate: coordinator check for mutating operations.

`RoleGate.require_coordinator` is a pure predicate over the coordinator
table. `GatePolicy` states which (resource family, operation) pairs pass
through it, read from `COORDINATOR_GATED_RESOURCES`:

    COORDINATOR_GATED_RESOURCES="assignments,announcements,batches:delete"

A bare family name gates create, update and delete; `family:op` gates only
that operation. Reads are never gated here.
"""
from __future__ import annotations

import logging
import os
from typing import FrozenSet, Iterable, Optional, Protocol, Tuple

from .errors import Forbidden

logger = logging.getLogger("schoolops.tenancy.role_gate")

MUTATIONS = ("create", "update", "delete")
DEFAULT_GATED = "assignments,announcements"


class CoordinatorLookup(Protocol):
    def has_coordinator(self, tenant_id: str, external_user_id: str) -> bool:
        ...


class RoleGate:
    def __init__(self, repo: CoordinatorLookup) -> None:
        self._repo = repo

    def is_coordinator(self, tenant_id: str, external_user_id: str) -> bool:
        return bool(self._repo.has_coordinator(tenant_id, external_user_id))

    def require_coordinator(self, tenant_id: str, external_user_id: str) -> None:
        if not self.is_coordinator(tenant_id, external_user_id):
            logger.info("coordinator gate denied tenant_id=%s", tenant_id)
            raise Forbidden()


class GatePolicy:
    def __init__(self, gated: Iterable[Tuple[str, str]] = ()) -> None:
        self._gated: FrozenSet[Tuple[str, str]] = frozenset(gated)

    @classmethod
    def parse(cls, raw: Optional[str]) -> "GatePolicy":
        pairs = set()
        for item in (raw or "").split(","):
            item = item.strip().lower()
            if not item:
                continue
            family, _, op = item.partition(":")
            if op:
                if op not in MUTATIONS:
                    raise ValueError(f"unknown gated operation: {item}")
                pairs.add((family, op))
            else:
                pairs.update((family, m) for m in MUTATIONS)
        return cls(pairs)

    @classmethod
    def from_env(cls) -> "GatePolicy":
        return cls.parse(os.getenv("COORDINATOR_GATED_RESOURCES", DEFAULT_GATED))

    def is_gated(self, family: str, op: str) -> bool:
        return (family, op) in self._gated


__all__ = ["RoleGate", "GatePolicy", "CoordinatorLookup", "DEFAULT_GATED", "MUTATIONS"]
