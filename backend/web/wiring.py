"""
Repository selection and service wiring for the web adapter.

Why:
    Routes should not know whether they talk to Postgres or the in-memory
    repository. `get_services()` returns one `Services` bundle built around the
    current repository; tests call `set_repo()` to swap in a fresh one.

Selection (`TENANCY_REPO`):
    - `auto` (default): Postgres when psycopg and a DSN are available,
      in-memory otherwise (with a warning).
    - `db`: Postgres or fail.
    - `memory`: in-memory (refused in prod-like envs by `config`).

Every repository must support transactions; section deletion and roster
replacement rely on all-or-nothing writes, so wiring refuses repositories
that cannot provide them.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from backend.tenancy.accessor import AccessorRegistry
from backend.tenancy.assignments import LevelAssignments
from backend.tenancy.catalog import LevelCatalog
from backend.tenancy.directory import TenantDirectory
from backend.tenancy.memberships import Memberships
from backend.tenancy.progress import ProgressLedger
from backend.tenancy.repo_memory import MemoryTenancyRepo
from backend.tenancy.resources import BATCH_LEVELS, TRAINER_LEVELS
from backend.tenancy.role_gate import GatePolicy, RoleGate
from backend.tenancy.structure import CourseStructure

logger = logging.getLogger("schoolops.web.wiring")

try:
    from backend.tenancy.repo_db import DBTenancyRepo  # type: ignore
except Exception as exc:  # pragma: no cover - psycopg optional in dev
    DBTenancyRepo = None  # type: ignore
    _DB_REPO_IMPORT_ERROR: Optional[Exception] = exc
else:
    _DB_REPO_IMPORT_ERROR = None


@dataclass(frozen=True)
class Services:
    repo: object
    directory: TenantDirectory
    gate: RoleGate
    policy: GatePolicy
    registry: AccessorRegistry
    trainer_levels: LevelAssignments
    batch_levels: LevelAssignments
    catalog: LevelCatalog
    structure: CourseStructure
    progress: ProgressLedger
    memberships: Memberships

    def levels_for(self, family: str) -> LevelAssignments:
        return self.trainer_levels if family == "trainers" else self.batch_levels


def require_transactions(repo) -> None:
    if not getattr(repo, "supports_transactions", False):
        raise RuntimeError(f"{type(repo).__name__} does not support transactions; refusing to wire it")


def build_services(repo, policy: Optional[GatePolicy] = None) -> Services:
    require_transactions(repo)
    policy = policy or GatePolicy.from_env()
    gate = RoleGate(repo)
    directory = TenantDirectory(repo)
    registry = AccessorRegistry(repo, gate, policy)
    structure = CourseStructure(repo, gate, registry)
    return Services(
        repo=repo,
        directory=directory,
        gate=gate,
        policy=policy,
        registry=registry,
        trainer_levels=LevelAssignments(TRAINER_LEVELS, repo, gate, registry),
        batch_levels=LevelAssignments(BATCH_LEVELS, repo, gate, registry),
        catalog=LevelCatalog(repo, gate, registry),
        structure=structure,
        progress=ProgressLedger(repo, registry, structure),
        memberships=Memberships(repo, directory, registry),
    )


def _build_default_repo():
    """Pick the repository from `TENANCY_REPO`, degrading to memory only in `auto`."""
    mode = (os.getenv("TENANCY_REPO", "auto") or "auto").strip().lower()
    if mode == "memory":
        return MemoryTenancyRepo()
    if DBTenancyRepo is None:
        if mode == "db":
            raise RuntimeError(f"TENANCY_REPO=db but the DB repository is unavailable: {_DB_REPO_IMPORT_ERROR}")
        logger.warning("Tenancy DB repo import failed (%s); using in-memory fallback", _DB_REPO_IMPORT_ERROR)
        return MemoryTenancyRepo()
    try:
        return DBTenancyRepo()
    except Exception as exc:
        if mode == "db":
            raise
        logger.warning("Tenancy DB repo unavailable (%s); using in-memory fallback", exc)
        return MemoryTenancyRepo()


_SERVICES: Optional[Services] = None


def get_services() -> Services:
    global _SERVICES
    if _SERVICES is None:
        _SERVICES = build_services(_build_default_repo())
    return _SERVICES


def set_repo(repo, policy: Optional[GatePolicy] = None) -> Services:
    """Swap the tenancy repository (tests, alternative deployments)."""
    global _SERVICES
    _SERVICES = build_services(repo, policy)
    return _SERVICES
