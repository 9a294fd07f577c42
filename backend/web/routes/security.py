"""
Same-origin check for browser write requests.

Origin (or, when absent, Referer) must match the server's scheme, host and
port. Requests carrying neither header are allowed so that non-browser
clients keep working; prod-like environments require one of them.
X-Forwarded-* headers are honoured only when SCHOOLOPS_TRUST_PROXY=true.
"""
from __future__ import annotations

import os
from typing import Optional, Tuple
from urllib.parse import urlparse

from fastapi import Request

_Origin = Tuple[str, str, int]


def _default_port(scheme: str) -> int:
    return 443 if scheme == "https" else 80


def _parse_origin(url: str) -> Optional[_Origin]:
    p = urlparse(url)
    if not p.scheme or not p.hostname:
        return None
    scheme = p.scheme.lower()
    try:
        port = p.port
    except ValueError:
        return None
    return scheme, p.hostname.lower(), port or _default_port(scheme)


def _server_origin(request: Request) -> _Origin:
    if (os.getenv("SCHOOLOPS_TRUST_PROXY", "false") or "").lower() == "true":
        proto = (request.headers.get("x-forwarded-proto") or "").split(",")[0].strip()
        host = (request.headers.get("x-forwarded-host") or "").split(",")[0].strip()
        if proto and host:
            parsed = _parse_origin(f"{proto}://{host}")
            if parsed is not None:
                return parsed
    scheme = (request.url.scheme or "http").lower()
    return scheme, (request.url.hostname or "").lower(), request.url.port or _default_port(scheme)


def is_same_origin(request: Request, *, require_header: bool = False) -> bool:
    claimed = request.headers.get("origin") or request.headers.get("referer")
    if not claimed:
        return not require_header
    parsed = _parse_origin(claimed)
    return parsed is not None and parsed == _server_origin(request)
