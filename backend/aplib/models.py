"""
Input models for the planner.

All write paths validate their payload here before a statement reaches the
store. ``parse()`` turns pydantic errors into a ``ValidationError`` with
German, field-level issues.
"""
import json
import re
from datetime import date
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from .errors import ValidationError

CATEGORIES = ('MECH', 'BODY', 'PREP')
WEEKDAYS = ('mon', 'tue', 'wed', 'thu', 'fri', 'sat', 'sun')

Category = Literal['MECH', 'BODY', 'PREP']
Role = Literal['MASTER', 'USER']

MAX_AW = 10000
MAX_PERFORMANCE = 300

_TIME_RE = re.compile(r'^([01]\d|2[0-3]):[0-5]\d$')
_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')
_EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

_TYPE_MSGS = {
    "missing": "Pflichtfeld fehlt",
    "int_parsing": "Muss eine ganze Zahl sein",
    "int_type": "Muss eine ganze Zahl sein",
    "int_from_float": "Muss eine ganze Zahl sein",
    "float_parsing": "Muss eine Zahl sein",
    "bool_parsing": "Muss true oder false sein",
    "string_type": "Muss ein Text sein",
    "string_too_short": "Eingabe zu kurz",
    "string_too_long": "Eingabe zu lang",
    "dict_type": "Muss ein Objekt sein",
    "list_type": "Muss eine Liste sein",
    "date_from_datetime_parsing": "Muss im Format YYYY-MM-DD sein",
    "date_parsing": "Muss im Format YYYY-MM-DD sein",
    "date_type": "Muss im Format YYYY-MM-DD sein",
    "type_error": "Falscher Datentyp",
}


def _issue_message(err: Dict[str, Any]) -> str:
    etype = err.get("type", "")
    ctx = err.get("ctx") or {}
    if etype == "value_error" and ctx.get("error") is not None:
        return str(ctx["error"])
    if etype == "literal_error":
        return f"Ungültiger Wert (erlaubt: {ctx.get('expected', '')})"
    if etype == "greater_than_equal":
        return f"Muss mindestens {ctx.get('ge')} sein"
    if etype == "less_than_equal":
        return f"Darf höchstens {ctx.get('le')} sein"
    return _TYPE_MSGS.get(etype, "Ungültiger Wert")


def issues_from_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Flatten pydantic/FastAPI error dicts into ``[{field, message}]``."""
    issues = []
    for e in errors:
        field = ".".join(str(loc) for loc in e.get("loc", []) if loc not in ("body", "query", "path"))
        issues.append({"field": field, "message": _issue_message(e)})
    return issues


M = TypeVar('M', bound=BaseModel)


def parse(model_cls: Type[M], data: Any) -> M:
    if not isinstance(data, dict):
        raise ValidationError.single('', 'Ungültige Eingabe')
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(issues_from_errors(e.errors()))


def parse_day(value: Any, field: str = 'work_day') -> date:
    """Strict ``YYYY-MM-DD`` parsing that also rejects impossible dates like 2024-02-30."""
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not _DATE_RE.match(value.strip()):
        raise ValidationError.single(field, 'Muss im Format YYYY-MM-DD sein')
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise ValidationError.single(field, 'Kein gültiges Kalenderdatum')


def _check_time(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    v = v.strip()
    if v == '':
        return None
    if not _TIME_RE.match(v):
        raise ValueError('Muss im Format HH:MM sein')
    return v


def _check_day(v: Any) -> Any:
    if isinstance(v, str):
        if not _DATE_RE.match(v.strip()):
            raise ValueError('Muss im Format YYYY-MM-DD sein')
        try:
            return date.fromisoformat(v.strip())
        except ValueError:
            raise ValueError('Kein gültiges Kalenderdatum')
    if isinstance(v, date):
        return v
    raise ValueError('Muss im Format YYYY-MM-DD sein')


def _reject_bool(v: Any) -> Any:
    if isinstance(v, bool):
        raise ValueError('Muss eine ganze Zahl sein')
    return v


def _check_name(v: Optional[str]) -> Optional[str]:
    if v is None:
        raise ValueError('Darf nicht leer sein')
    v = v.strip()
    if not v:
        raise ValueError('Darf nicht leer sein')
    if len(v) > 120:
        raise ValueError('Darf höchstens 120 Zeichen lang sein')
    return v


# ── Employees ────────────────────────────────────────────────

class EmployeeIn(BaseModel):
    name: str
    category: Category
    performance: int = Field(100, ge=0, le=MAX_PERFORMANCE)

    @field_validator('name')
    @classmethod
    def _name(cls, v):
        return _check_name(v)

    @field_validator('performance', mode='before')
    @classmethod
    def _performance(cls, v):
        return _reject_bool(v)


class EmployeePatch(BaseModel):
    name: Optional[str] = None
    category: Optional[Category] = None
    performance: Optional[int] = Field(None, ge=0, le=MAX_PERFORMANCE)

    @field_validator('name')
    @classmethod
    def _name(cls, v):
        return _check_name(v)

    @field_validator('performance', mode='before')
    @classmethod
    def _performance(cls, v):
        return _reject_bool(v)

    @field_validator('category', 'performance')
    @classmethod
    def _not_null(cls, v):
        if v is None:
            raise ValueError('Darf nicht leer sein')
        return v


# ── Day entries ──────────────────────────────────────────────

class DayEntryIn(BaseModel):
    work_day: date
    category: Category
    title: Optional[str] = Field(None, max_length=200)
    work_text: Optional[str] = Field('', max_length=2000)
    drop_off: Optional[str] = None
    pick_up: Optional[str] = None
    aw: int = Field(ge=0, le=MAX_AW)

    @field_validator('work_day', mode='before')
    @classmethod
    def _day(cls, v):
        return _check_day(v)

    @field_validator('aw', mode='before')
    @classmethod
    def _aw(cls, v):
        return _reject_bool(v)

    @field_validator('drop_off', 'pick_up')
    @classmethod
    def _time(cls, v):
        return _check_time(v)

    @field_validator('title')
    @classmethod
    def _title(cls, v):
        if v is None:
            return None
        return v.strip() or None

    @field_validator('work_text')
    @classmethod
    def _work_text(cls, v):
        return (v or '').strip()


class DayEntryPatch(BaseModel):
    work_day: Optional[date] = None
    category: Optional[Category] = None
    title: Optional[str] = Field(None, max_length=200)
    work_text: Optional[str] = Field(None, max_length=2000)
    drop_off: Optional[str] = None
    pick_up: Optional[str] = None
    aw: Optional[int] = Field(None, ge=0, le=MAX_AW)

    @field_validator('work_day', mode='before')
    @classmethod
    def _day(cls, v):
        if v is None:
            raise ValueError('Darf nicht leer sein')
        return _check_day(v)

    @field_validator('aw', mode='before')
    @classmethod
    def _aw(cls, v):
        return _reject_bool(v)

    @field_validator('category', 'aw')
    @classmethod
    def _not_null(cls, v):
        if v is None:
            raise ValueError('Darf nicht leer sein')
        return v

    @field_validator('drop_off', 'pick_up')
    @classmethod
    def _time(cls, v):
        return _check_time(v)

    @field_validator('title')
    @classmethod
    def _title(cls, v):
        if v is None:
            return None
        return v.strip() or None

    @field_validator('work_text')
    @classmethod
    def _work_text(cls, v):
        return (v or '').strip()


# ── Settings ─────────────────────────────────────────────────

def _check_interval(day: str, item: Any) -> Dict[str, str]:
    if not isinstance(item, dict):
        raise ValueError(f"{day}: Intervall muss ein Objekt mit start und end sein")
    start, end = item.get('start'), item.get('end')
    if not isinstance(start, str) or not _TIME_RE.match(start):
        raise ValueError(f"{day}: start muss im Format HH:MM sein")
    if not isinstance(end, str) or not _TIME_RE.match(end):
        raise ValueError(f"{day}: end muss im Format HH:MM sein")
    if start >= end:
        raise ValueError(f"{day}: start muss vor end liegen")
    return {'start': start, 'end': end}


def normalize_opening(value: Any) -> Dict[str, Any]:
    """Validate an opening-hours structure and fill in missing weekdays as closed."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            raise ValueError('Kein gültiges JSON')
    if not isinstance(value, dict):
        raise ValueError('Muss ein Objekt sein')
    unknown = [k for k in value if k not in WEEKDAYS and k != 'holidays']
    if unknown:
        raise ValueError(f"Unbekannte Schlüssel: {', '.join(sorted(map(str, unknown)))}")
    out: Dict[str, Any] = {}
    for day in WEEKDAYS:
        intervals = value.get(day) or []
        if not isinstance(intervals, list):
            raise ValueError(f"{day}: Muss eine Liste sein")
        checked = sorted((_check_interval(day, i) for i in intervals), key=lambda i: i['start'])
        for prev, cur in zip(checked, checked[1:]):
            if cur['start'] < prev['end']:
                raise ValueError(f"{day}: Intervalle überschneiden sich")
        out[day] = checked
    holidays = value.get('holidays') or []
    if not isinstance(holidays, list):
        raise ValueError('holidays: Muss eine Liste sein')
    days = set()
    for h in holidays:
        if not isinstance(h, str) or not _DATE_RE.match(h):
            raise ValueError('holidays: Datum muss im Format YYYY-MM-DD sein')
        try:
            days.add(date.fromisoformat(h).isoformat())
        except ValueError:
            raise ValueError(f"holidays: {h} ist kein gültiges Kalenderdatum")
    out['holidays'] = sorted(days)
    return out


class SettingsIn(BaseModel):
    timezone: str
    opening: Dict[str, Any]
    base_aw_per_day: Optional[int] = Field(None, ge=1, le=1000)

    @field_validator('timezone')
    @classmethod
    def _tz(cls, v):
        from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
        v = (v or '').strip()
        if not v:
            raise ValueError('Darf nicht leer sein')
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unbekannte Zeitzone '{v}'")
        return v

    @field_validator('opening', mode='before')
    @classmethod
    def _opening(cls, v):
        return normalize_opening(v)

    @field_validator('base_aw_per_day', mode='before')
    @classmethod
    def _base(cls, v):
        return _reject_bool(v)


# ── Users ────────────────────────────────────────────────────

class UserIn(BaseModel):
    email: str
    password: str = Field(min_length=8, max_length=200)
    role: Role = 'USER'

    @field_validator('email')
    @classmethod
    def _email(cls, v):
        v = (v or '').strip().lower()
        if not _EMAIL_RE.match(v):
            raise ValueError('Keine gültige E-Mail-Adresse')
        return v
