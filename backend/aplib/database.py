"""
High-level data access for the aftersales planner.

One ``PlannerDatabase`` wraps a shared SQLAlchemy engine. Every public method
runs in its own connection; storage failures surface as ``PersistenceError``.
Capacity-checked writes lock their (work_day, category) bucket for the whole
read-check-write sequence:

  • SQLite: the transaction starts with ``BEGIN IMMEDIATE``, which takes the
    database write lock up front.
  • PostgreSQL: ``pg_advisory_xact_lock`` keyed by the bucket.
"""
import logging
import threading
import uuid
import zlib
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import create_engine, delete, event, func, insert, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from . import tables
from .errors import (
    ConflictError, InsufficientCapacity, NotFoundError, PersistenceError, RegistrationClosed,
    ValidationError,
)
from .models import (
    CATEGORIES, WEEKDAYS, DayEntryIn, DayEntryPatch, EmployeeIn, EmployeePatch,
    SettingsIn, UserIn, parse, parse_day,
)
from .security import hash_password, verify_password

logger = logging.getLogger(__name__)

# Full-day AW of an employee at 100% performance.
BASE_AW_PER_DAY = 96
BASE_MINUTES_PER_DAY = 8 * 60

MAX_RANGE_DAYS = 62
LATEST_ENTRIES_LIMIT = 200

DEFAULT_TIMEZONE = 'Europe/Berlin'
DEFAULT_OPENING: Dict[str, Any] = {
    'mon': [{'start': '07:30', 'end': '17:00'}],
    'tue': [{'start': '07:30', 'end': '17:00'}],
    'wed': [{'start': '07:30', 'end': '17:00'}],
    'thu': [{'start': '07:30', 'end': '17:00'}],
    'fri': [{'start': '07:30', 'end': '17:00'}],
    'sat': [],
    'sun': [],
    'holidays': [],
}

_SETTINGS_ID = 1


# ── Engine registry ──────────────────────────────────────────
# One engine per URL, shared by all PlannerDatabase instances of the process.
_ENGINES: Dict[str, Engine] = {}
_ENGINES_LOCK = threading.Lock()


def _install_sqlite_transactions(engine: Engine) -> None:
    """Take over BEGIN from pysqlite so writes can start with BEGIN IMMEDIATE."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get('immediate'):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


def get_engine(url: str, timeout: float = 10.0) -> Engine:
    with _ENGINES_LOCK:
        engine = _ENGINES.get(url)
        if engine is not None:
            return engine
        if url.startswith('sqlite'):
            kwargs: Dict[str, Any] = {
                'connect_args': {'check_same_thread': False, 'timeout': timeout},
            }
            if url in ('sqlite://', 'sqlite:///:memory:'):
                kwargs['poolclass'] = StaticPool
            engine = create_engine(url, **kwargs)
            _install_sqlite_transactions(engine)
        else:
            engine = create_engine(url, pool_pre_ping=True, pool_timeout=timeout)
        _ENGINES[url] = engine
        return engine


def dispose_engines() -> None:
    with _ENGINES_LOCK:
        for engine in _ENGINES.values():
            engine.dispose()
        _ENGINES.clear()


# ── Pure helpers ─────────────────────────────────────────────

def employee_capacity(performance: int, base: int = BASE_AW_PER_DAY) -> int:
    """Daily AW of one employee: round(base * performance / 100), halves rounded up."""
    return (base * max(int(performance or 0), 0) + 50) // 100


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def _bucket_key(work_day: date, category: str) -> int:
    # signed 32-bit, fits pg_advisory_xact_lock(bigint)
    return zlib.crc32(f"{work_day.isoformat()}|{category}".encode('ascii')) - 2 ** 31


def _employee_row(r) -> Dict[str, Any]:
    return {
        'id': r.id,
        'name': r.name,
        'category': r.category,
        'performance': r.performance,
    }


def _entry_row(r) -> Dict[str, Any]:
    return {
        'id': r.id,
        'work_day': r.work_day.isoformat(),
        'category': r.category,
        'title': r.title,
        'work_text': r.work_text or '',
        'drop_off': r.drop_off,
        'pick_up': r.pick_up,
        'aw': r.aw,
        'created_by': r.created_by,
        'created_at': _iso(r.created_at),
    }


def _user_row(r) -> Dict[str, Any]:
    return {'id': r.id, 'email': r.email, 'role': r.role, 'created_at': _iso(r.created_at)}


class PlannerDatabase:
    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.engine = get_engine(url, timeout=timeout)

    # ── Connection helpers ─────────────────────────────────────
    @contextmanager
    def _read(self) -> Iterator[Connection]:
        try:
            with self.engine.connect() as conn:
                yield conn
        except SQLAlchemyError as e:
            logger.error("Store read failed: %s: %s", type(e).__name__, e)
            raise PersistenceError() from e

    @contextmanager
    def _write(self, immediate: bool = False) -> Iterator[Connection]:
        """Transaction that commits on success and rolls back on any exception."""
        try:
            with self.engine.connect() as conn:
                if immediate:
                    conn = conn.execution_options(immediate=True)
                with conn.begin():
                    yield conn
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            logger.error("Store write failed: %s: %s", type(e).__name__, e)
            raise PersistenceError() from e

    def init_schema(self) -> None:
        try:
            tables.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            logger.error("Schema creation failed: %s", e)
            raise PersistenceError() from e

    def ping(self) -> bool:
        with self._read() as conn:
            conn.execute(select(1))
        return True

    # ── Users ──────────────────────────────────────────────────
    def count_users(self) -> int:
        with self._read() as conn:
            return conn.execute(select(func.count()).select_from(tables.users)).scalar_one()

    def get_users(self) -> List[Dict]:
        u = tables.users
        with self._read() as conn:
            rows = conn.execute(select(u).order_by(u.c.email)).fetchall()
        return [_user_row(r) for r in rows]

    def find_user_by_email(self, email: str) -> Optional[Dict]:
        u = tables.users
        with self._read() as conn:
            r = conn.execute(
                select(u).where(func.lower(u.c.email) == (email or '').strip().lower()).limit(1)
            ).fetchone()
        if r is None:
            return None
        return {**_user_row(r), 'password_hash': r.password_hash}

    def get_user(self, user_id: str) -> Optional[Dict]:
        u = tables.users
        with self._read() as conn:
            r = conn.execute(select(u).where(u.c.id == user_id)).fetchone()
        return _user_row(r) if r is not None else None

    def create_user(self, data: dict, require_empty: bool = False) -> Dict:
        """Create a user. With ``require_empty`` only while no user exists yet (first-run registration)."""
        body = parse(UserIn, data)
        record = {
            'id': _new_id(),
            'email': body.email,
            'password_hash': hash_password(body.password),
            'role': body.role,
            'created_at': _now(),
        }
        try:
            with self._write(immediate=True) as conn:
                if conn.dialect.name == 'postgresql':
                    conn.execute(text("LOCK TABLE users IN SHARE ROW EXCLUSIVE MODE"))
                if require_empty and conn.execute(select(func.count()).select_from(tables.users)).scalar_one() > 0:
                    raise RegistrationClosed()
                existing = conn.execute(
                    select(tables.users.c.id).where(func.lower(tables.users.c.email) == body.email)
                ).fetchone()
                if existing is not None:
                    raise ConflictError(f"Benutzer '{body.email}' existiert bereits")
                conn.execute(insert(tables.users).values(**record))
                r = conn.execute(select(tables.users).where(tables.users.c.id == record['id'])).fetchone()
        except IntegrityError as e:
            raise ConflictError(f"Benutzer '{body.email}' existiert bereits") from e
        return _user_row(r)

    def delete_user(self, user_id: str) -> bool:
        with self._write() as conn:
            result = conn.execute(delete(tables.users).where(tables.users.c.id == user_id))
        return result.rowcount > 0

    def verify_user_password(self, email: str, password: str) -> Optional[Dict]:
        """Return the user (without hash) when email and password match, else None."""
        user = self.find_user_by_email(email)
        if user is None or not verify_password(password, user.pop('password_hash')):
            return None
        return user

    # ── Employees ──────────────────────────────────────────────
    def get_employees(self) -> List[Dict]:
        e = tables.employees
        with self._read() as conn:
            rows = conn.execute(select(e).order_by(func.lower(e.c.name), e.c.id)).fetchall()
        return [_employee_row(r) for r in rows]

    def get_employee(self, emp_id: str) -> Optional[Dict]:
        e = tables.employees
        with self._read() as conn:
            r = conn.execute(select(e).where(e.c.id == emp_id)).fetchone()
        return _employee_row(r) if r is not None else None

    def create_employee(self, data: dict) -> Dict:
        body = parse(EmployeeIn, data)
        record = {
            'id': _new_id(),
            'name': body.name,
            'category': body.category,
            'performance': body.performance,
            'created_at': _now(),
        }
        e = tables.employees
        with self._write() as conn:
            conn.execute(insert(e).values(**record))
            r = conn.execute(select(e).where(e.c.id == record['id'])).fetchone()
        return _employee_row(r)

    def update_employee(self, emp_id: str, data: dict) -> Dict:
        """Patch an employee. Fields missing from ``data`` keep their value."""
        patch = parse(EmployeePatch, data).model_dump(exclude_unset=True)
        e = tables.employees
        with self._write() as conn:
            if patch:
                result = conn.execute(update(e).where(e.c.id == emp_id).values(**patch))
                if result.rowcount == 0:
                    raise NotFoundError(f"Mitarbeiter ID {emp_id} nicht gefunden")
            r = conn.execute(select(e).where(e.c.id == emp_id)).fetchone()
        if r is None:
            raise NotFoundError(f"Mitarbeiter ID {emp_id} nicht gefunden")
        return _employee_row(r)

    def delete_employee(self, emp_id: str) -> bool:
        with self._write() as conn:
            result = conn.execute(delete(tables.employees).where(tables.employees.c.id == emp_id))
        return result.rowcount > 0

    # ── Settings ───────────────────────────────────────────────
    def _settings_row(self, conn: Connection):
        s = tables.settings
        return conn.execute(select(s).where(s.c.id == _SETTINGS_ID)).fetchone()

    def get_settings(self) -> Dict:
        """Stored settings, or the documented defaults (``is_default`` True) if none exist."""
        with self._read() as conn:
            r = self._settings_row(conn)
        if r is None:
            return {
                'timezone': DEFAULT_TIMEZONE,
                'opening': {k: list(v) for k, v in DEFAULT_OPENING.items()},
                'base_aw_per_day': BASE_AW_PER_DAY,
                'updated_at': None,
                'is_default': True,
            }
        return {
            'timezone': r.timezone,
            'opening': r.opening,
            'base_aw_per_day': r.base_aw_per_day or BASE_AW_PER_DAY,
            'updated_at': _iso(r.updated_at),
            'is_default': False,
        }

    def put_settings(self, data: dict) -> Dict:
        body = parse(SettingsIn, data)
        values = {
            'timezone': body.timezone,
            'opening': body.opening,
            'updated_at': _now(),
        }
        if body.base_aw_per_day is not None:
            values['base_aw_per_day'] = body.base_aw_per_day
        with self._write() as conn:
            upsert = pg_insert if conn.dialect.name == 'postgresql' else sqlite_insert
            stmt = upsert(tables.settings).values(
                id=_SETTINGS_ID, **{'base_aw_per_day': BASE_AW_PER_DAY, **values}
            )
            # an omitted base keeps the stored one
            conn.execute(stmt.on_conflict_do_update(index_elements=['id'], set_=values))
        return self.get_settings()

    def _base_aw(self, conn: Connection) -> int:
        r = conn.execute(
            select(tables.settings.c.base_aw_per_day).where(tables.settings.c.id == _SETTINGS_ID)
        ).fetchone()
        if r is None or not r[0] or r[0] <= 0:
            return BASE_AW_PER_DAY
        return r[0]

    # ── Capacity ───────────────────────────────────────────────
    def _capacity(self, conn: Connection, category: Optional[str] = None) -> Dict[str, int]:
        base = self._base_aw(conn)
        e = tables.employees
        stmt = select(e.c.category, e.c.performance)
        if category is not None:
            stmt = stmt.where(e.c.category == category)
        out = {c: 0 for c in CATEGORIES}
        for cat, perf in conn.execute(stmt):
            if cat in out:
                out[cat] += employee_capacity(perf, base)
        return out

    def capacity_for_category(self, category: str) -> int:
        if category not in CATEGORIES:
            raise ValidationError.single('category', f"Ungültige Kategorie '{category}'")
        with self._read() as conn:
            return self._capacity(conn, category)[category]

    def capacity_per_category(self) -> Dict[str, Any]:
        """AW and nominal minutes per category for one day, plus the base in use."""
        e = tables.employees
        with self._read() as conn:
            base = self._base_aw(conn)
            rows = conn.execute(select(e.c.category, e.c.performance)).fetchall()
        categories = {c: {'aw': 0, 'minutes': 0, 'employees': 0} for c in CATEGORIES}
        for cat, perf in rows:
            if cat not in categories:
                continue
            categories[cat]['aw'] += employee_capacity(perf, base)
            categories[cat]['minutes'] += employee_capacity(perf, BASE_MINUTES_PER_DAY)
            categories[cat]['employees'] += 1
        return {'base_aw_per_day': base, 'categories': categories}

    # ── Day entries ────────────────────────────────────────────
    def _used(self, conn: Connection, work_day: date, category: str,
              exclude_id: Optional[str] = None) -> int:
        d = tables.day_entries
        stmt = select(func.coalesce(func.sum(d.c.aw), 0)).where(
            d.c.work_day == work_day, d.c.category == category
        )
        if exclude_id is not None:
            stmt = stmt.where(d.c.id != exclude_id)
        return int(conn.execute(stmt).scalar_one())

    def _lock_bucket(self, conn: Connection, work_day: date, category: str) -> None:
        if conn.dialect.name == 'postgresql':
            conn.execute(text("SELECT pg_advisory_xact_lock(:k)"), {'k': _bucket_key(work_day, category)})

    def _check_capacity(self, conn: Connection, work_day: date, category: str, aw: int,
                        exclude_id: Optional[str] = None) -> None:
        capacity = self._capacity(conn, category)[category]
        used = self._used(conn, work_day, category, exclude_id=exclude_id)
        remaining = max(0, capacity - used)
        if aw > remaining:
            logger.info(
                "Booking rejected: day=%s category=%s requested=%d remaining=%d",
                work_day, category, aw, remaining,
            )
            raise InsufficientCapacity(remaining=remaining, requested=aw)

    def remaining(self, work_day: Any, category: str) -> Dict[str, int]:
        day = parse_day(work_day)
        if category not in CATEGORIES:
            raise ValidationError.single('category', f"Ungültige Kategorie '{category}'")
        with self._read() as conn:
            capacity = self._capacity(conn, category)[category]
            used = self._used(conn, day, category)
        return {
            'capacity': capacity,
            'used': used,
            'remaining': max(0, capacity - used),
            'delta': capacity - used,
        }

    def get_entries(self, date_from: Any = None, date_to: Any = None) -> List[Dict]:
        d = tables.day_entries
        if date_from in (None, '') and date_to in (None, ''):
            stmt = select(d).order_by(d.c.work_day.desc(), d.c.created_at.desc()).limit(LATEST_ENTRIES_LIMIT)
        else:
            start, end = self._range(date_from, date_to, limit=None)
            stmt = (
                select(d)
                .where(d.c.work_day >= start, d.c.work_day <= end)
                .order_by(d.c.work_day, d.c.created_at, d.c.id)
            )
        with self._read() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_entry_row(r) for r in rows]

    def get_entry(self, entry_id: str) -> Optional[Dict]:
        d = tables.day_entries
        with self._read() as conn:
            r = conn.execute(select(d).where(d.c.id == entry_id)).fetchone()
        return _entry_row(r) if r is not None else None

    def create_entry(self, data: dict, created_by: Optional[str] = None) -> Dict:
        """Book a day entry. Rejects with InsufficientCapacity if aw exceeds the bucket's free AW."""
        body = parse(DayEntryIn, data)
        record = {
            'id': _new_id(),
            'work_day': body.work_day,
            'category': body.category,
            'title': body.title,
            'work_text': body.work_text or '',
            'drop_off': body.drop_off,
            'pick_up': body.pick_up,
            'aw': body.aw,
            'created_by': created_by,
            'created_at': _now(),
        }
        with self._write(immediate=True) as conn:
            self._lock_bucket(conn, body.work_day, body.category)
            self._check_capacity(conn, body.work_day, body.category, body.aw)
            conn.execute(insert(tables.day_entries).values(**record))
            r = conn.execute(select(tables.day_entries).where(tables.day_entries.c.id == record['id'])).fetchone()
        return _entry_row(r)

    def update_entry(self, entry_id: str, data: dict) -> Dict:
        patch = parse(DayEntryPatch, data).model_dump(exclude_unset=True)
        if 'work_text' in patch and patch['work_text'] is None:
            patch['work_text'] = ''
        d = tables.day_entries
        with self._write(immediate=True) as conn:
            current = conn.execute(select(d).where(d.c.id == entry_id)).fetchone()
            if current is None:
                raise NotFoundError(f"Eintrag ID {entry_id} nicht gefunden")
            if patch:
                work_day = patch.get('work_day', current.work_day)
                category = patch.get('category', current.category)
                aw = patch.get('aw', current.aw)
                moved = (work_day, category) != (current.work_day, current.category)
                if moved or aw > current.aw:
                    self._lock_bucket(conn, work_day, category)
                    self._check_capacity(conn, work_day, category, aw, exclude_id=entry_id)
                conn.execute(update(d).where(d.c.id == entry_id).values(**patch))
                current = conn.execute(select(d).where(d.c.id == entry_id)).fetchone()
        return _entry_row(current)

    def delete_entry(self, entry_id: str) -> bool:
        with self._write() as conn:
            result = conn.execute(delete(tables.day_entries).where(tables.day_entries.c.id == entry_id))
        return result.rowcount > 0

    # ── Availability ───────────────────────────────────────────
    @staticmethod
    def _range(date_from: Any, date_to: Any, limit: Optional[int] = MAX_RANGE_DAYS):
        if date_from in (None, '') or date_to in (None, ''):
            raise ValidationError.single('from/to', 'from und to müssen beide angegeben werden')
        start = parse_day(date_from, 'from')
        end = parse_day(date_to, 'to')
        if start > end:
            raise ValidationError.single('from', 'from darf nicht nach to liegen')
        if limit is not None and (end - start).days + 1 > limit:
            raise ValidationError.single('to', f"Zeitraum darf höchstens {limit} Tage umfassen")
        return start, end

    def daily_availability(self, date_from: Any, date_to: Any) -> Dict[str, Dict[str, Any]]:
        """Per day and category: capacity, used, free (clamped at 0) and the signed delta."""
        start, end = self._range(date_from, date_to)
        d = tables.day_entries
        settings = self.get_settings()
        with self._read() as conn:
            capacity = self._capacity(conn)
            rows = conn.execute(
                select(d.c.work_day, d.c.category, func.coalesce(func.sum(d.c.aw), 0))
                .where(d.c.work_day >= start, d.c.work_day <= end)
                .group_by(d.c.work_day, d.c.category)
            ).fetchall()
        used: Dict[tuple, int] = {(r[0], r[1]): int(r[2]) for r in rows}
        opening = settings['opening'] or {}
        holidays = set(opening.get('holidays') or [])
        result: Dict[str, Dict[str, Any]] = {}
        for offset in range((end - start).days + 1):
            day = start + timedelta(days=offset)
            iso = day.isoformat()
            cats = {}
            for c in CATEGORIES:
                u = used.get((day, c), 0)
                cats[c] = {
                    'capacity': capacity[c],
                    'used': u,
                    'free': max(capacity[c] - u, 0),
                    'delta': capacity[c] - u,
                }
            result[iso] = {
                'open': bool(opening.get(WEEKDAYS[day.weekday()])) and iso not in holidays,
                'holiday': iso in holidays,
                'categories': cats,
            }
        return result

    def get_week(self, any_day: Any) -> Dict[str, Any]:
        """Monday-to-Sunday view containing ``any_day``: availability and entries per day."""
        day = parse_day(any_day, 'date')
        monday = day - timedelta(days=day.weekday())
        if monday > date.max - timedelta(days=6):
            raise ValidationError.single('date', 'Woche liegt außerhalb des Kalenders')
        sunday = monday + timedelta(days=6)
        availability = self.daily_availability(monday, sunday)
        entries = self.get_entries(monday, sunday)
        by_day: Dict[str, List[Dict]] = {iso: [] for iso in availability}
        for entry in entries:
            by_day[entry['work_day']].append(entry)
        days = []
        for iso, info in availability.items():
            days.append({
                'date': iso,
                'weekday': WEEKDAYS[date.fromisoformat(iso).weekday()],
                **info,
                'entries': by_day[iso],
            })
        iso_year, iso_week, _ = monday.isocalendar()
        return {
            'week': f"{iso_year}-W{iso_week:02d}",
            'from': monday.isoformat(),
            'to': sunday.isoformat(),
            'days': days,
        }

