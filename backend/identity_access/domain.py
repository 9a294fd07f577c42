"""
Identity domain constants and simple helpers.

Why:
- Centralize platform and organization roles so the session layer, the
  membership sync and the web adapter agree on spelling.
- The identity provider reports organization roles in several spellings
  (`org:school_coordinator`, `School Coordinator`, `coordinator`);
  `canonical_org_role` folds them into one of `ORG_ROLES`.
"""

from __future__ import annotations

# Platform-wide roles carried on the session. Immutable to prevent accidental mutation.
ALLOWED_ROLES = frozenset({"coordinator", "trainer", "student", "admin"})

# Roles a principal can hold inside one organization (tenant).
ORG_ROLES = frozenset({"coordinator", "trainer", "student"})

_ROLE_ALIASES = {"schoolcoordinator": "coordinator"}


def canonical_org_role(role: str | None) -> str | None:
    """Normalize an identity-provider organization role, or None when unknown."""
    raw = (role or "").strip().lower()
    if raw.startswith("org:"):
        raw = raw[len("org:"):]
    for ch in (" ", "_", "-"):
        raw = raw.replace(ch, "")
    raw = _ROLE_ALIASES.get(raw, raw)
    return raw if raw in ORG_ROLES else None


__all__ = ["ALLOWED_ROLES", "ORG_ROLES", "canonical_org_role"]
