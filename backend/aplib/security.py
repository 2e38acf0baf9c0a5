"""
Password hashing and signed session tokens.

Password hashes use scrypt and are stored as ``scrypt$<salt-hex>$<hash-hex>``.
Session tokens are compact HS256 tokens (``header.payload.signature``, each
part base64url without padding) carrying ``user_id``, ``email``, ``role``,
``iat`` and ``exp``. Nothing here touches the database.
"""
import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Dict, Optional

ROLES = ('MASTER', 'USER')

_SCHEME = 'scrypt'
_SCRYPT_N = 16384
_SCRYPT_R = 8
_SCRYPT_P = 1
_KEY_LEN = 64
_SALT_BYTES = 16

_TOKEN_HEADER = {'alg': 'HS256', 'typ': 'JWT'}


def _derive(plain: str, salt: bytes) -> bytes:
    return hashlib.scrypt(
        plain.encode('utf-8'), salt=salt, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P,
        maxmem=64 * 1024 * 1024, dklen=_KEY_LEN,
    )


def hash_password(plain: str) -> str:
    salt = secrets.token_bytes(_SALT_BYTES)
    return f"{_SCHEME}${salt.hex()}${_derive(plain, salt).hex()}"


def verify_password(plain: str, stored: Optional[str]) -> bool:
    """Return True if ``plain`` matches ``stored``. Malformed hashes never match."""
    if not stored or not isinstance(plain, str):
        return False
    parts = stored.split('$')
    if len(parts) != 3 or parts[0] != _SCHEME:
        return False
    try:
        salt = bytes.fromhex(parts[1])
        expected = bytes.fromhex(parts[2])
    except ValueError:
        return False
    if not salt or len(expected) != _KEY_LEN:
        return False
    return hmac.compare_digest(_derive(plain, salt), expected)


# ── Session tokens ───────────────────────────────────────────

def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b'=').decode('ascii')


def _b64decode(part: str) -> bytes:
    padded = part + '=' * (-len(part) % 4)
    return base64.urlsafe_b64decode(padded.encode('ascii'))


def _sign(signing_input: bytes, secret: str) -> bytes:
    return hmac.new(secret.encode('utf-8'), signing_input, hashlib.sha256).digest()


def issue_session(user_id: str, email: str, role: str, secret: str,
                  ttl_seconds: int, now: Optional[float] = None) -> str:
    if role not in ROLES:
        raise ValueError(f"Unknown role {role!r}")
    if not secret:
        raise ValueError("Session secret must not be empty")
    iat = int(now if now is not None else time.time())
    payload = {
        'user_id': user_id,
        'email': email,
        'role': role,
        'iat': iat,
        'exp': iat + int(ttl_seconds),
    }
    header_part = _b64encode(json.dumps(_TOKEN_HEADER, separators=(',', ':')).encode('utf-8'))
    payload_part = _b64encode(json.dumps(payload, separators=(',', ':')).encode('utf-8'))
    signing_input = f"{header_part}.{payload_part}".encode('ascii')
    return f"{header_part}.{payload_part}.{_b64encode(_sign(signing_input, secret))}"


def verify_session(token: Optional[str], secret: str,
                   now: Optional[float] = None) -> Optional[Dict[str, Any]]:
    """Return the session claims, or None for a missing, malformed, forged or expired token."""
    if not token or not secret or not isinstance(token, str):
        return None
    parts = token.split('.')
    if len(parts) != 3:
        return None
    header_part, payload_part, sig_part = parts
    try:
        signature = _b64decode(sig_part)
        expected = _sign(f"{header_part}.{payload_part}".encode('ascii'), secret)
        if not hmac.compare_digest(signature, expected):
            return None
        header = json.loads(_b64decode(header_part))
        payload = json.loads(_b64decode(payload_part))
    except (binascii.Error, ValueError, UnicodeError):
        return None
    if not isinstance(header, dict) or header.get('alg') != 'HS256':
        return None
    if not isinstance(payload, dict):
        return None
    exp = payload.get('exp')
    if not isinstance(exp, int) or isinstance(exp, bool):
        return None
    current = now if now is not None else time.time()
    if current >= exp:
        return None
    if payload.get('role') not in ROLES or not payload.get('user_id'):
        return None
    return {
        'user_id': payload['user_id'],
        'email': payload.get('email', ''),
        'role': payload['role'],
        'iat': payload.get('iat'),
        'exp': exp,
    }
