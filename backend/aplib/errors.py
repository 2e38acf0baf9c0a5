"""
Error taxonomy for the aftersales planner.

Every error carries a stable machine code (``code``), the HTTP status the API
layer maps it to and a German user-facing message.
"""
from typing import Any, Dict, List, Optional


class PlannerError(Exception):
    code = 'INTERNAL_ERROR'
    status_code = 500
    message = 'Interner Serverfehler. Bitte versuche es erneut.'

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        self.message = message or self.message

    def to_dict(self) -> Dict[str, Any]:
        return {'ok': False, 'error': self.code, 'detail': self.message}


class ValidationError(PlannerError):
    """Malformed or out-of-range input. ``issues`` lists field-level problems."""
    code = 'VALIDATION_FAILED'
    status_code = 400
    message = 'Ungültige Eingabe'

    def __init__(self, issues: List[Dict[str, str]], message: Optional[str] = None):
        self.issues = issues
        if message is None:
            parts = [f"{i['field']}: {i['message']}" if i.get('field') else i['message'] for i in issues]
            message = '; '.join(parts) if parts else None
        super().__init__(message)

    @classmethod
    def single(cls, field: str, message: str) -> 'ValidationError':
        return cls([{'field': field, 'message': message}])

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d['issues'] = self.issues
        return d


class AuthenticationError(PlannerError):
    code = 'UNAUTHORIZED'
    status_code = 401
    message = 'Nicht angemeldet'


class AuthorizationError(PlannerError):
    code = 'FORBIDDEN'
    status_code = 403
    message = 'Keine Berechtigung'


class RegistrationClosed(AuthorizationError):
    code = 'REGISTRATION_CLOSED'
    message = 'Registrierung geschlossen. Benutzer werden vom MASTER angelegt.'


class NotFoundError(PlannerError):
    code = 'NOT_FOUND'
    status_code = 404
    message = 'Nicht gefunden'


class ConflictError(PlannerError):
    code = 'CONFLICT'
    status_code = 409
    message = 'Eintrag existiert bereits'


class InsufficientCapacity(PlannerError):
    """Booking would exceed the remaining AW of its (work_day, category) bucket."""
    code = 'INSUFFICIENT_CAPACITY'
    status_code = 400

    def __init__(self, remaining: int, requested: int):
        self.remaining = remaining
        self.requested = requested
        super().__init__(
            f"Nicht genug Kapazität: {requested} AW angefragt, {remaining} AW frei"
        )

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d['details'] = {'remaining': self.remaining, 'requested': self.requested}
        return d


class PersistenceError(PlannerError):
    """Store unreachable or a statement failed. The message never leaks internals."""
    code = 'PERSISTENCE_ERROR'
    status_code = 500
