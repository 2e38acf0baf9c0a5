"""
Shared dependencies for the Aftersales Planner API.
Logging, configuration, rate limiting, body decoding and session access.
"""
import os
import json
import logging
import logging.handlers
import secrets
from typing import Any, Optional

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from aplib.database import PlannerDatabase
from aplib.errors import ValidationError

# ── Structured JSON Logging setup ───────────────────────────────
from datetime import datetime as _dt, timezone as _tz


class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": _dt.fromtimestamp(record.created, tz=_tz.utc).strftime('%Y-%m-%dT%H:%M:%S.') + f"{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


_log_file = os.environ.get('AP_LOG_FILE', '/tmp/aftersales-api.log')
_logger = logging.getLogger('apapi')
# Log level configurable via ENV
_log_level_str = os.environ.get('AP_LOG_LEVEL', 'INFO').upper()
_log_level = getattr(logging, _log_level_str, logging.INFO)
_logger.setLevel(_log_level)
try:
    _handler = logging.handlers.RotatingFileHandler(
        _log_file, maxBytes=10 * 1024 * 1024, backupCount=3
    )
    _handler.setFormatter(_JsonFormatter())
    _logger.addHandler(_handler)
except OSError:
    _log_file = None
_stderr_handler = logging.StreamHandler()
_stderr_handler.setFormatter(_JsonFormatter())
_logger.addHandler(_stderr_handler)
if _log_file is None:
    _logger.warning("AP_LOG_FILE not writable, logging to stderr only")

# Library loggers (aplib.*) share the JSON handlers
_lib_logger = logging.getLogger('aplib')
_lib_logger.setLevel(_log_level)
for _h in list(_logger.handlers):
    _lib_logger.addHandler(_h)


def _env_flag(name: str, default: str = '') -> bool:
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes')


# ── Session config ───────────────────────────────────────────────
SESSION_COOKIE = 'ae.session'
SESSION_TTL_HOURS = float(os.environ.get('AP_SESSION_TTL_HOURS', '168'))
COOKIE_SECURE = _env_flag('AP_COOKIE_SECURE')

AUTH_SECRET = os.environ.get('AP_AUTH_SECRET', '')
if not AUTH_SECRET:
    AUTH_SECRET = secrets.token_hex(32)
    _logger.warning("AP_AUTH_SECRET not set, using a random per-process secret. Sessions end on restart.")

REQUEST_TIMEOUT = float(os.environ.get('AP_REQUEST_TIMEOUT', '30'))
DB_TIMEOUT = float(os.environ.get('AP_DB_TIMEOUT', '10'))

# ── Rate Limiter ─────────────────────────────────────────────────
LOGIN_RATE_LIMIT = os.environ.get('AP_LOGIN_RATE_LIMIT', '5/minute')
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["200/minute"],
    enabled=_env_flag('AP_RATE_LIMIT_ENABLED', 'true'),
)


def session_ttl_seconds() -> int:
    return int(SESSION_TTL_HOURS * 3600)


def get_db() -> PlannerDatabase:
    """Get a database handle for the current DATABASE_URL from main module."""
    import api.main as _main
    return PlannerDatabase(_main.DATABASE_URL, timeout=DB_TIMEOUT)


def get_current_session(request: Request) -> Optional[dict]:
    """Session resolved by the access guard, or None on public paths."""
    return getattr(request.state, 'session', None)


def current_user_id(request: Request) -> Optional[str]:
    session = get_current_session(request)
    return session.get('user_id') if session else None


# ── Body decoding ────────────────────────────────────────────────
_JSON_FIELDS = ('opening',)


async def request_payload(request: Request) -> dict:
    """Decode JSON, urlencoded or multipart bodies into one dict.

    Form fields that carry JSON text (e.g. ``opening``) are parsed into
    structures. Anything that is not a JSON object raises ValidationError.
    """
    content_type = (request.headers.get('content-type') or '').lower()
    if 'application/x-www-form-urlencoded' in content_type or 'multipart/form-data' in content_type:
        form = await request.form()
        data: dict = {k: v for k, v in form.items() if isinstance(v, str)}
        for key in _JSON_FIELDS:
            if isinstance(data.get(key), str):
                try:
                    data[key] = json.loads(data[key])
                except ValueError:
                    raise ValidationError.single(key, 'Kein gültiges JSON')
        return data
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        raise ValidationError.single('', 'Ungültiges JSON im Request-Body')
    if not isinstance(data, dict):
        raise ValidationError.single('', 'Request-Body muss ein JSON-Objekt sein')
    return data


def require_id(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError.single('id', 'Pflichtfeld fehlt')
    return value.strip()

