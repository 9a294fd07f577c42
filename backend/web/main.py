"schoolops tenancy core"
from __future__ import annotations

import logging
import os
import sys

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.identity_access.stores import SessionStore
from backend.tenancy.errors import Invalid, StoreUnavailable, TenancyError


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via SCHOOLOPS_ENABLE_DOTENV (default true
      outside pytest).
    """
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("SCHOOLOPS_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


try:
    from dotenv import load_dotenv
    if _should_load_dotenv():
        load_dotenv()
except ImportError:
    pass

from backend.web import config  # noqa: E402  (after .env is loaded)

# Minimal production safety checks (fail-fast on insecure config)
config.ensure_secure_config_on_startup()

from backend.web.routes.common import PRIVATE_HEADERS, _private_error  # noqa: E402
from backend.web.routes.content import content_router  # noqa: E402
from backend.web.routes.levels import levels_router  # noqa: E402
from backend.web.routes.progress import progress_router  # noqa: E402
from backend.web.routes.resources import resources_router  # noqa: E402
from backend.web.routes.tenancy import tenancy_router  # noqa: E402

logger = logging.getLogger("schoolops.web")
SESSION_COOKIE_NAME = "schoolops_session"

app = FastAPI(title="schoolops", description="Tenant-scoped learning operations core", version="0.1.0")


def _under_pytest() -> bool:
    return "pytest" in sys.modules or bool(os.getenv("PYTEST_CURRENT_TEST"))


if (not _under_pytest()) and os.getenv("SESSIONS_BACKEND", "memory").lower() == "db":
    from backend.identity_access.stores_db import DBSessionStore
    SESSION_STORE = DBSessionStore()
else:
    SESSION_STORE = SessionStore()


# --- Auth Middleware ------------------------------------------------------------

def _is_public_path(path: str) -> bool:
    return path in ("/health", "/docs", "/openapi.json")


@app.middleware("http")
async def auth_enforcement(request: Request, call_next):
    """Attach the session's user context to `request.state.user`; 401 for /api without one.

    Sessions are issued by the identity collaborator; this middleware only
    looks them up. The user mapping carries the selected organization
    (`org_id`, `org_role`) that the tenancy core resolves into a tenant.
    """
    path = request.url.path
    if _is_public_path(path):
        return await call_next(request)

    sid = request.cookies.get(SESSION_COOKIE_NAME)
    rec = None
    if sid:
        try:
            rec = SESSION_STORE.get(sid)
        except Exception as exc:
            logger.warning("Session store get failed: %s", exc.__class__.__name__)

    if not rec:
        return JSONResponse(
            {"error": "Not authenticated", "code": "unauthenticated"},
            status_code=401,
            headers=dict(PRIVATE_HEADERS),
        )

    # Expose minimal, read-only user context for downstream handlers.
    request.state.user = {
        "sub": rec.sub,
        "name": rec.name,
        "email": rec.email,
        "roles": list(rec.roles),
        "org_id": rec.org_id,
        "org_role": rec.org_role,
    }
    return await call_next(request)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if config.is_prod_like():
        response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


# --- Error rendering ------------------------------------------------------------

@app.exception_handler(TenancyError)
async def tenancy_error_handler(request: Request, exc: TenancyError):
    if exc.status_code >= 500:
        logger.warning("tenancy request failed path=%s code=%s", request.url.path, exc.code)
    return _private_error(exc)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    # Payload shape errors share the 400 contract with service-level validation.
    return _private_error(Invalid())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    # Only the class name is logged; driver messages never reach the client.
    logger.error("unhandled error path=%s error=%s", request.url.path, exc.__class__.__name__)
    return _private_error(StoreUnavailable())


# --- Routers --------------------------------------------------------------------

# Order matters: the generic /api/{family}/... routes are mounted last.
app.include_router(tenancy_router)
app.include_router(levels_router)
app.include_router(content_router)
app.include_router(progress_router)
app.include_router(resources_router)


@app.get("/health")
async def health_check():
    # Security: include no-store to avoid caching any runtime status.
    return JSONResponse({"status": "healthy"}, headers=dict(PRIVATE_HEADERS))
