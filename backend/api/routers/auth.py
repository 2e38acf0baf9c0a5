"""Auth and user management router."""
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from aplib.errors import AuthenticationError, NotFoundError, ValidationError
from aplib.security import issue_session
from ..dependencies import (
    get_db, get_current_session, request_payload, _logger, limiter, LOGIN_RATE_LIMIT,
    AUTH_SECRET, SESSION_COOKIE, COOKIE_SECURE, session_ttl_seconds, require_id,
)

router = APIRouter()


def _set_session_cookie(response: JSONResponse, token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE, token,
        max_age=session_ttl_seconds(),
        httponly=True,
        samesite='lax',
        secure=COOKIE_SECURE,
        path='/',
    )


@router.post("/api/auth/login", tags=["Auth"], summary="Login", description="Authenticate with email and password (JSON or form). Sets the session cookie.")
@limiter.limit(LOGIN_RATE_LIMIT)
def login(request: Request, payload: dict = Depends(request_payload)):
    client_ip = request.client.host if request.client else 'unknown'
    email = payload.get('email')
    password = payload.get('password')
    email = email.strip() if isinstance(email, str) else ''
    password = password.strip() if isinstance(password, str) else ''
    if not email or not password:
        return JSONResponse(
            status_code=400,
            content={"ok": False, "error": "MISSING_CREDENTIALS", "detail": "E-Mail und Passwort erforderlich"},
        )

    user = get_db().verify_user_password(email, password)
    if user is None:
        _logger.warning("AUTH LOGIN_FAIL | ip=%s email=%s", client_ip, email)
        return JSONResponse(
            status_code=401,
            content={"ok": False, "error": "INVALID_LOGIN", "detail": "Ungültige E-Mail oder Passwort"},
        )

    _logger.info("AUTH LOGIN_OK | ip=%s email=%s role=%s", client_ip, user['email'], user['role'])
    token = issue_session(user['id'], user['email'], user['role'], AUTH_SECRET, session_ttl_seconds())
    response = JSONResponse(status_code=200, content={"ok": True, "user": user})
    _set_session_cookie(response, token)
    return response


@router.post("/api/auth/logout", tags=["Auth"], summary="Logout", description="Clear the session cookie.")
def logout():
    response = JSONResponse(status_code=200, content={"ok": True})
    response.delete_cookie(SESSION_COOKIE, path='/', httponly=True, samesite='lax', secure=COOKIE_SECURE)
    return response


@router.get("/api/auth/status", tags=["Auth"], summary="Session status")
def status(session: dict = Depends(get_current_session)):
    if session is None:
        raise AuthenticationError()
    return {"ok": True, "session": session}


@router.post("/api/auth/register", tags=["Auth"], summary="Register first MASTER", description="Creates the first MASTER account. Closed once any user exists.")
@limiter.limit(LOGIN_RATE_LIMIT)
def register(request: Request, payload: dict = Depends(request_payload)):
    user = get_db().create_user(
        {'email': payload.get('email'), 'password': payload.get('password'), 'role': 'MASTER'},
        require_empty=True,
    )
    _logger.warning("AUDIT USER_REGISTER | email=%s role=MASTER", user['email'])
    token = issue_session(user['id'], user['email'], user['role'], AUTH_SECRET, session_ttl_seconds())
    response = JSONResponse(status_code=201, content={"ok": True, "user": user})
    _set_session_cookie(response, token)
    return response


# ── User Management (MASTER) ─────────────────────────────────

@router.get("/api/users", tags=["Users"], summary="List users")
def get_users():
    return {"ok": True, "users": get_db().get_users()}


@router.post("/api/users", tags=["Users"], summary="Create user", status_code=201)
def create_user(payload: dict = Depends(request_payload), session: dict = Depends(get_current_session)):
    user = get_db().create_user(payload)
    _logger.warning(
        "AUDIT USER_CREATE | by=%s new_user=%s role=%s",
        session.get('email') if session else '?', user['email'], user['role'],
    )
    return {"ok": True, "user": user}


@router.delete("/api/users", tags=["Users"], summary="Delete user")
def delete_user(id: str = Query(''), session: dict = Depends(get_current_session)):
    user_id = require_id(id)
    if session and session.get('user_id') == user_id:
        raise ValidationError.single('id', 'Der eigene Benutzer kann nicht gelöscht werden')
    if not get_db().delete_user(user_id):
        raise NotFoundError(f"Benutzer ID {user_id} nicht gefunden")
    _logger.warning(
        "AUDIT USER_DELETE | by=%s target_id=%s",
        session.get('email') if session else '?', user_id,
    )
    return {"ok": True, "id": user_id}
