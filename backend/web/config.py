"""
Configuration and startup security checks for the schoolops backend.

Why: A tenant-isolation core that silently runs on an in-memory store or an
unencrypted database connection in production would lose data or leak it.
This module provides a single guard that enforces minimal production safety
constraints without burdening local development.

Permissions: The caller needs no special privileges. The function simply reads
environment variables and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

import os

PROD_LIKE = {"prod", "production", "stage", "staging"}


def environment() -> str:
    return (os.getenv("SCHOOLOPS_ENV", "dev") or "dev").strip().lower()


def is_prod_like(env: str | None = None) -> bool:
    return (env if env is not None else environment()) in PROD_LIKE


def tenancy_dsn() -> str:
    return (os.getenv("TENANCY_DATABASE_URL") or os.getenv("DATABASE_URL") or "").strip()


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Checks (prod-like envs only):
    - A tenancy DSN must be configured and must not disable TLS.
    - `TENANCY_REPO=memory` is not allowed.
    - Sessions must be stored in the database (`SESSIONS_BACKEND=db`).
    - `COORDINATOR_GATED_RESOURCES` must parse.
    """
    if not is_prod_like():
        return  # dev/test remain permissive

    dsn = tenancy_dsn()
    if not dsn:
        raise SystemExit("Refusing to start: DATABASE_URL (or TENANCY_DATABASE_URL) is unset in production.")
    for key in ("DATABASE_URL", "TENANCY_DATABASE_URL", "SESSION_DATABASE_URL"):
        if "sslmode=disable" in (os.getenv(key, "") or ""):
            raise SystemExit(
                f"Refusing to start: {key} contains sslmode=disable in production. Use sslmode=require or verify TLS."
            )

    if (os.getenv("TENANCY_REPO", "auto") or "").strip().lower() == "memory":
        raise SystemExit("Refusing to start: TENANCY_REPO=memory is not allowed in production/staging.")

    if (os.getenv("SESSIONS_BACKEND", "memory") or "").strip().lower() != "db":
        raise SystemExit("Refusing to start: SESSIONS_BACKEND=db is mandatory in production/staging.")

    from backend.tenancy.role_gate import GatePolicy

    try:
        GatePolicy.from_env()
    except ValueError as exc:
        raise SystemExit(f"Refusing to start: invalid COORDINATOR_GATED_RESOURCES ({exc}).")
