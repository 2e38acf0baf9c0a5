"""
Shared test fixtures for the Aftersales Planner backend tests.
"""
import os
import sys
import pytest

# ── Python path setup ──────────────────────────────────────────────────────────
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

# ── Environment for the app under test (must be set before api.main is imported)
os.environ.setdefault("AP_AUTH_SECRET", "test-secret-" + "x" * 32)
os.environ.setdefault("AP_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("AP_LOG_LEVEL", "WARNING")

MASTER_EMAIL = 'meister@werkstatt.de'
USER_EMAIL = 'annahme@werkstatt.de'
PASSWORD = 'Werkstatt2024'


# ── Database ───────────────────────────────────────────────────────────────────

@pytest.fixture
def db_url(tmp_path):
    """Function-scoped: fresh SQLite file per test, wired into api.main."""
    url = f"sqlite:///{tmp_path / 'planner.db'}"
    import api.main as main_module
    from aplib.database import dispose_engines
    original = main_module.DATABASE_URL
    main_module.DATABASE_URL = url
    yield url
    main_module.DATABASE_URL = original
    dispose_engines()


@pytest.fixture
def db(db_url):
    from aplib.database import PlannerDatabase
    database = PlannerDatabase(db_url)
    database.init_schema()
    return database


@pytest.fixture
def master_user(db):
    return db.create_user({'email': MASTER_EMAIL, 'password': PASSWORD, 'role': 'MASTER'})


@pytest.fixture
def plain_user(db):
    return db.create_user({'email': USER_EMAIL, 'password': PASSWORD, 'role': 'USER'})


def make_token(user: dict, ttl: int = 3600) -> str:
    from api.dependencies import AUTH_SECRET
    from aplib.security import issue_session
    return issue_session(user['id'], user['email'], user['role'], AUTH_SECRET, ttl)


# ── Clients ────────────────────────────────────────────────────────────────────

@pytest.fixture
def app(db):
    """Return the FastAPI app pointed at the test database."""
    from api.main import app as _app
    return _app


def _client(app, token=None):
    from starlette.testclient import TestClient
    from api.dependencies import SESSION_COOKIE
    cookies = {SESSION_COOKIE: token} if token else None
    return TestClient(app, raise_server_exceptions=False, cookies=cookies)


@pytest.fixture
def anon_client(app):
    """Function-scoped TestClient without a session cookie."""
    with _client(app) as c:
        yield c


@pytest.fixture
def master_client(app, master_user):
    """Function-scoped TestClient with a MASTER session cookie."""
    with _client(app, make_token(master_user)) as c:
        yield c


@pytest.fixture
def user_client(app, plain_user):
    """Function-scoped TestClient with a USER session cookie."""
    with _client(app, make_token(plain_user)) as c:
        yield c


# ── Data helpers ───────────────────────────────────────────────────────────────

@pytest.fixture
def mech_96(db):
    """One MECH employee at 100% → 96 AW per day."""
    return db.create_employee({'name': 'Max Mechaniker', 'category': 'MECH', 'performance': 100})
