"""
In-memory session store for development and tests.

Why: Sessions are issued by the identity collaborator. The core only needs to
look up who is calling and which organization they selected. Production uses
`stores_db.DBSessionStore`; both expose `create/get/delete`.

Security: Cookies carry only an opaque session id. Session data stays server-side.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence
import secrets
import time


def _now() -> int:
    return int(time.time())


@dataclass
class SessionRecord:
    session_id: str
    sub: str
    roles: list[str] = field(default_factory=list)
    name: str = ""
    email: str = ""
    org_id: Optional[str] = None
    org_role: Optional[str] = None
    expires_at: Optional[int] = None


class SessionStore:
    def __init__(self):
        self._data: Dict[str, SessionRecord] = {}

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
        sid = secrets.token_urlsafe(24)
        rec = SessionRecord(
            session_id=sid,
            sub=sub,
            roles=list(roles),
            name=name,
            email=email,
            org_id=org_id,
            org_role=org_role,
            expires_at=_now() + ttl_seconds,
        )
        self._data[sid] = rec
        return rec

    def get(self, session_id: str) -> Optional[SessionRecord]:
        rec = self._data.get(session_id)
        if not rec:
            return None
        if rec.expires_at and rec.expires_at < _now():
            self._data.pop(session_id, None)
            return None
        return rec

    def delete(self, session_id: str) -> None:
        self._data.pop(session_id, None)
