"""FastAPI application for the Aftersales Planner."""
import os
import sys
import time as _startup_time_module
from contextlib import asynccontextmanager
from dotenv import load_dotenv

_APP_START_TIME = _startup_time_module.time()

# Load .env file if present
load_dotenv(os.path.join(os.path.dirname(__file__), '..', '.env'))

# Add parent dir to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio  # noqa: E402
import traceback  # noqa: E402

from fastapi import FastAPI, Request  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from fastapi.staticfiles import StaticFiles  # noqa: E402
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse  # noqa: E402
from fastapi.exceptions import RequestValidationError  # noqa: E402
from slowapi import _rate_limit_exceeded_handler  # noqa: E402
from slowapi.errors import RateLimitExceeded  # noqa: E402
from slowapi.middleware import SlowAPIMiddleware  # noqa: E402
from starlette.concurrency import run_in_threadpool  # noqa: E402

from aplib.database import dispose_engines  # noqa: E402
from aplib.errors import AuthenticationError, AuthorizationError, PersistenceError, PlannerError  # noqa: E402
from aplib.models import issues_from_errors  # noqa: E402
from aplib.security import verify_session  # noqa: E402

from . import guard  # noqa: E402
from .dependencies import (  # noqa: E402
    AUTH_SECRET,
    REQUEST_TIMEOUT,
    SESSION_COOKIE,
    get_db,
    _logger,
    limiter,
)

# ── Config ──────────────────────────────────────────────────────
DATABASE_URL = os.environ.get(
    'AP_DATABASE_URL',
    'sqlite:///' + os.path.normpath(os.path.join(os.path.dirname(__file__), '..', 'aftersales.db')),
)

# CORS origins from env
_raw_origins = os.environ.get('ALLOWED_ORIGINS', '')
ALLOWED_ORIGINS = (
    [o.strip() for o in _raw_origins.split(',') if o.strip()]
    or ['http://localhost:5173', 'http://localhost:8000']
)

_OPENAPI_TAGS = [
    {"name": "Health", "description": "System health and version info"},
    {"name": "Auth", "description": "Authentication: login, logout, session status"},
    {"name": "Users", "description": "API user management (MASTER only)"},
    {"name": "Employees", "description": "Employee directory (CRUD)"},
    {"name": "Capacity", "description": "Daily AW capacity per category"},
    {"name": "Day entries", "description": "Booked jobs against the daily capacity"},
    {"name": "Schedule", "description": "Availability and week view"},
    {"name": "Settings", "description": "Timezone, opening hours, holidays"},
]

_API_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        get_db().init_schema()
        _logger.info("Aftersales Planner API started, schema ready")
    except PersistenceError as _exc:
        _logger.error("Schema initialisation failed: %s", _exc)
    yield
    dispose_engines()
    _logger.info("Aftersales Planner API shutting down, engines disposed")


app = FastAPI(
    lifespan=lifespan,
    title="Aftersales Planner API",
    description=(
        "Workshop dispatch: employees, daily AW capacity and booked day entries.\n\n"
        "## Authentication\n"
        "Log in via `POST /api/auth/login`; the session travels in the `ae.session` cookie.\n\n"
        "## Roles\n"
        "- **USER** – read-only access\n"
        "- **MASTER** – may change employees, day entries, settings and users\n"
    ),
    version=_API_VERSION,
    openapi_tags=_OPENAPI_TAGS,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.exception_handler(PlannerError)
async def planner_exception_handler(request: Request, exc: PlannerError):
    """Map domain errors onto the JSON error envelope."""
    if isinstance(exc, PersistenceError):
        _logger.error(
            "Persistence error: %s %s | cause=%s",
            request.method, request.url.path, type(exc.__cause__).__name__ if exc.__cause__ else '-',
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Translate Pydantic validation errors into German user-friendly messages."""
    issues = issues_from_errors(exc.errors())
    detail = "; ".join(
        f"{i['field']}: {i['message']}" if i['field'] else i['message'] for i in issues
    ) or "Ungültige Eingabe"
    return JSONResponse(
        status_code=400,
        content={"ok": False, "error": "VALIDATION_FAILED", "detail": detail, "issues": issues},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch unhandled exceptions, log with details, return sanitized 500."""
    _logger.error(
        "Unhandled exception: %s %s | %s | %s",
        request.method, request.url.path,
        type(exc).__name__,
        traceback.format_exc().splitlines()[-1],
    )
    return JSONResponse(
        status_code=500,
        content={"ok": False, "error": "INTERNAL_ERROR", "detail": "Interner Serverfehler. Bitte versuche es erneut."},
    )


_WRITE_METHODS = ('POST', 'PUT', 'PATCH', 'DELETE')

_GUARD_ERRORS = {
    'UNAUTHORIZED': AuthenticationError(),
    'FORBIDDEN': AuthorizationError("Rolle 'MASTER' erforderlich"),
}


@app.middleware("http")
async def auth_middleware(request: Request, call_next):
    """Resolve the session cookie and apply the access guard before any router runs."""
    path = request.url.path
    method = request.method
    client_ip = request.client.host if request.client else 'unknown'

    session = verify_session(request.cookies.get(SESSION_COOKIE), AUTH_SECRET)
    if (session is not None and method in _WRITE_METHODS
            and guard.required_level(path, method) != guard.PUBLIC):
        # tokens of deleted users stop working for writes immediately
        user = await run_in_threadpool(get_db().get_user, session['user_id'])
        if user is None or user['role'] != session['role']:
            _logger.warning("AUTH REVOKED | path=%s user=%s", path, session.get('email', '?'))
            session = None
    request.state.session = session
    decision = guard.evaluate(path, method, session)
    if not decision.allowed:
        if decision.status == 401 or (decision.redirect or '').startswith(guard.LOGIN_PATH):
            _logger.warning("AUTH 401 | ip=%s method=%s path=%s", client_ip, method, path)
        else:
            _logger.warning(
                "AUTH 403 | ip=%s method=%s path=%s user=%s",
                client_ip, method, path, session.get('email', '?') if session else '?',
            )
        if decision.redirect:
            return RedirectResponse(decision.redirect, status_code=decision.status)
        return JSONResponse(
            status_code=decision.status,
            content=_GUARD_ERRORS[decision.error].to_dict(),
        )
    response = await call_next(request)
    if method in _WRITE_METHODS and response.status_code < 400 and session:
        _logger.info(
            "WRITE %s | ip=%s path=%s user=%s",
            method, client_ip, path, session.get('email', '?'),
        )
    return response


@app.middleware("http")
async def timeout_middleware(request: Request, call_next):
    """Bound every request to AP_REQUEST_TIMEOUT seconds."""
    try:
        return await asyncio.wait_for(call_next(request), timeout=REQUEST_TIMEOUT)
    except asyncio.TimeoutError:
        _logger.error("TIMEOUT | method=%s path=%s after=%ss", request.method, request.url.path, REQUEST_TIMEOUT)
        return JSONResponse(
            status_code=504,
            content={"ok": False, "error": "TIMEOUT", "detail": "Zeitüberschreitung. Bitte versuche es erneut."},
        )


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """Log every request as structured JSON with timing info and request-ID."""
    import time as _t
    import uuid as _uuid
    import json as _json_mod
    from datetime import datetime as _dt2, timezone as _tz2
    # Generate a short unique request ID for correlating log entries
    req_id = _uuid.uuid4().hex[:8]
    start = _t.time()
    response = await call_next(request)
    duration_ms = round((_t.time() - start) * 1000)
    session = getattr(request.state, 'session', None)
    user = session.get('email', '-') if session else '-'
    now = _dt2.now(_tz2.utc)
    ts = now.strftime('%Y-%m-%dT%H:%M:%S.') + f"{now.microsecond // 1000:03d}Z"
    entry = {
        "timestamp": ts,
        "req_id": req_id,
        "method": request.method,
        "path": request.url.path,
        "status": response.status_code,
        "duration_ms": duration_ms,
        "user": user,
    }
    _logger.info(_json_mod.dumps(entry, ensure_ascii=False))
    response.headers["X-Request-ID"] = req_id
    return response


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if request.url.path.startswith('/api/'):
        response.headers["Cache-Control"] = "no-store"
    # Only send HSTS if running in production (check env)
    if os.environ.get('AP_HSTS', '').lower() in ('1', 'true', 'yes'):
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


# ── Include routers ─────────────────────────────────────────────
from .routers import auth, employees, schedule, settings  # noqa: E402

app.include_router(auth.router)
app.include_router(employees.router)
app.include_router(schedule.router)
app.include_router(settings.router)


# ── Routes ──────────────────────────────────────────────────────

@app.get(
    "/api/health",
    tags=["Health"],
    summary="Health check",
    description="Returns service status, API version, uptime in seconds and DB state. Public.",
)
def health():
    db_status = "connected"
    try:
        get_db().ping()
    except PersistenceError:
        db_status = "error"
    return {
        "status": "ok",
        "version": _API_VERSION,
        "uptime_seconds": round(_startup_time_module.time() - _APP_START_TIME, 1),
        "db": {"status": db_status},
    }


@app.get("/api/version", tags=["Health"], summary="API version")
def version():
    return {"version": _API_VERSION, "service": "Aftersales Planner API"}


@app.get("/api", tags=["Health"], summary="API root", description="Returns basic service info.")
def root():
    return {"service": "Aftersales Planner API", "version": _API_VERSION}


# ── Frontend pages (muss NACH allen /api-Routen stehen!) ──
_FRONTEND_DIST = os.path.normpath(
    os.path.join(os.path.dirname(__file__), '..', '..', 'frontend', 'dist')
)

if os.path.isdir(os.path.join(_FRONTEND_DIST, "assets")):
    app.mount("/assets", StaticFiles(directory=os.path.join(_FRONTEND_DIST, "assets")), name="assets")


@app.get("/", include_in_schema=False)
@app.get("/login", include_in_schema=False)
@app.get("/terminplaner", include_in_schema=False)
@app.get("/settings", include_in_schema=False)
@app.get("/settings/{sub_path:path}", include_in_schema=False)
async def frontend_page(request: Request):
    """Serve the frontend index for page paths the guard let through."""
    index = os.path.join(_FRONTEND_DIST, 'index.html')
    if os.path.exists(index):
        return FileResponse(index)
    return {"service": "Aftersales Planner API", "version": _API_VERSION, "page": request.url.path}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.main:app", host="0.0.0.0", port=8000, reload=True)
