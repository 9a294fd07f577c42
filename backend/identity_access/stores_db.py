"""
Database-backed SessionStore for production use (Postgres).

Why: In-memory sessions are not durable and do not scale across instances. This
store persists sessions in Postgres while keeping the cookie opaque. Besides the
subject it records the organization the principal selected, which is what the
tenancy core resolves into a tenant.

Security:
- Intended to be used with a service connection string; application traffic
  never reads `app_sessions` directly.
- Only the opaque `session_id` is set in the cookie; all user context stays server-side.

Note: This module uses psycopg3. It is imported only when enabled via
`SESSIONS_BACKEND=db`. Tests can continue to use the in-memory store.
"""
from __future__ import annotations

from typing import Optional, Sequence
import os
import re
import time

from .stores import SessionRecord

try:
    import psycopg
    from psycopg import sql as _sql
    from psycopg.types.json import Json
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional dependency in dev
    psycopg = None  # type: ignore
    _sql = None  # type: ignore
    Json = None  # type: ignore
    HAVE_PSYCOPG = False

_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(?:\.[A-Za-z_][A-Za-z0-9_]{0,62})?$")
_COLUMNS = "session_id, sub, roles, name, email, org_id, org_role, extract(epoch from expires_at)::bigint"


def _now() -> int:
    return int(time.time())


class DBSessionStore:
    """Postgres-backed session store.

    Parameters
    ----------
    dsn:
        Psycopg3 connection string.
    table:
        Fully qualified table name. Defaults to `public.app_sessions`.
    """

    def __init__(self, dsn: str | None = None, table: str = "public.app_sessions") -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBSessionStore")
        self._dsn = dsn or os.getenv("SESSION_DATABASE_URL") or os.getenv("DATABASE_URL", "")
        if not self._dsn:
            raise RuntimeError("No database DSN provided for DBSessionStore")
        if not _TABLE_RE.match(table or ""):
            raise ValueError("Invalid table name")
        self._table = table

    def _ident(self):
        schema, name = self._table.split(".", 1) if "." in self._table else ("public", self._table)
        if _sql is None:  # fake driver in tests
            return f"{schema}.{name}"
        return _sql.Identifier(schema, name)

    def _stmt(self, template: str):
        if _sql is None:
            return template.format(self._ident())
        return _sql.SQL(template).format(self._ident())

    def create(
        self,
        *,
        sub: str,
        roles: Sequence[str] = (),
        name: str = "",
        email: str = "",
        org_id: Optional[str] = None,
        org_role: Optional[str] = None,
        ttl_seconds: int = 3600,
    ) -> SessionRecord:
        expires_at = _now() + ttl_seconds
        stmt = self._stmt(
            "insert into {} (session_id, sub, roles, name, email, org_id, org_role, expires_at) "
            "values (gen_random_uuid()::text, %s, %s, %s, %s, %s, %s, to_timestamp(%s)) returning session_id"
        )
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(stmt, (sub, Json(list(roles)), name, email, org_id, org_role, expires_at))
                row = cur.fetchone()
        sid = str(row[0]) if row else ""
        return SessionRecord(
            session_id=sid,
            sub=sub,
            roles=list(roles),
            name=name,
            email=email,
            org_id=org_id,
            org_role=org_role,
            expires_at=expires_at,
        )

    def get(self, session_id: str) -> Optional[SessionRecord]:
        stmt = self._stmt(f"select {_COLUMNS} from {{}} where session_id = %s and expires_at > now()")
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(stmt, (session_id,))
                row = cur.fetchone()
        if not row:
            return None
        roles = row[2] if isinstance(row[2], list) else []
        return SessionRecord(
            session_id=row[0],
            sub=row[1],
            roles=roles,
            name=row[3] or "",
            email=row[4] or "",
            org_id=row[5],
            org_role=row[6],
            expires_at=int(row[7]) if row[7] is not None else None,
        )

    def delete(self, session_id: str) -> None:
        stmt = self._stmt("delete from {} where session_id = %s")
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(stmt, (session_id,))
