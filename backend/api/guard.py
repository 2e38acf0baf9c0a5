"""
Access guard: decides per request whether it passes, gets an error status or
is redirected. Evaluated once by the auth middleware in ``api.main`` before
any router runs; routers never re-check roles.
"""
from typing import NamedTuple, Optional
from urllib.parse import quote

LOGIN_PATH = '/login'
FORBIDDEN_REDIRECT = '/?error=forbidden'

PUBLIC = 'public'
AUTHENTICATED = 'authenticated'
MASTER = 'master'

_PUBLIC_PATHS = {
    LOGIN_PATH,
    '/api/auth/login',
    '/api/auth/logout',
    '/api/auth/register',
    '/api/health',
    '/api/version',
    '/api',
    '/favicon.ico',
    '/manifest.json',
    '/docs',
    '/redoc',
    '/openapi.json',
}
_PUBLIC_PREFIXES = ('/static/', '/assets/', '/docs/')

# GET on these is open to anyone
_PUBLIC_READ_PATHS = {'/api/settings'}

# Writes on these prefixes require MASTER
_MASTER_WRITE_PREFIXES = ('/api/employees', '/api/day-entries', '/api/settings')
# Every method on these prefixes requires MASTER
_MASTER_PREFIXES = ('/api/users', '/settings')

_WRITE_METHODS = {'POST', 'PUT', 'PATCH', 'DELETE'}


class Decision(NamedTuple):
    allowed: bool
    status: int = 200
    error: Optional[str] = None
    redirect: Optional[str] = None


def _under(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + '/')


def is_api(path: str) -> bool:
    return _under(path, '/api')


def required_level(path: str, method: str) -> str:
    """Return PUBLIC, AUTHENTICATED or MASTER for a request."""
    method = method.upper()
    if method == 'OPTIONS':
        return PUBLIC
    if path in _PUBLIC_PATHS or path.startswith(_PUBLIC_PREFIXES):
        return PUBLIC
    if method in ('GET', 'HEAD') and path in _PUBLIC_READ_PATHS:
        return PUBLIC
    if any(_under(path, p) for p in _MASTER_PREFIXES):
        return MASTER
    if method in _WRITE_METHODS and any(_under(path, p) for p in _MASTER_WRITE_PREFIXES):
        return MASTER
    return AUTHENTICATED


def evaluate(path: str, method: str, session: Optional[dict]) -> Decision:
    level = required_level(path, method)
    if level == PUBLIC:
        return Decision(True)
    if session is None:
        if is_api(path):
            return Decision(False, 401, 'UNAUTHORIZED')
        return Decision(False, 307, redirect=f"{LOGIN_PATH}?callbackUrl={quote(path, safe='')}")
    if level == MASTER and session.get('role') != 'MASTER':
        if is_api(path):
            return Decision(False, 403, 'FORBIDDEN')
        return Decision(False, 307, redirect=FORBIDDEN_REDIRECT)
    return Decision(True)
