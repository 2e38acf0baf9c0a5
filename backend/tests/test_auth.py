"""
Tests for authentication: login, logout, session status, first-run
registration and MASTER-only user management.
"""
from starlette.testclient import TestClient

from conftest import MASTER_EMAIL, PASSWORD, USER_EMAIL, make_token


class TestLogin:
    def test_login_json_sets_cookie(self, anon_client: TestClient, master_user):
        res = anon_client.post('/api/auth/login', json={'email': MASTER_EMAIL, 'password': PASSWORD})
        assert res.status_code == 200
        data = res.json()
        assert data['ok'] is True
        assert data['user']['email'] == MASTER_EMAIL
        assert data['user']['role'] == 'MASTER'
        assert 'password_hash' not in data['user']
        cookie = res.headers['set-cookie'].lower()
        assert cookie.startswith('ae.session=')
        assert 'httponly' in cookie
        assert 'samesite=lax' in cookie

    def test_login_form_encoded(self, anon_client: TestClient, plain_user):
        res = anon_client.post('/api/auth/login', data={'email': USER_EMAIL, 'password': PASSWORD})
        assert res.status_code == 200
        assert res.json()['user']['role'] == 'USER'

    def test_email_case_insensitive(self, anon_client: TestClient, master_user):
        res = anon_client.post('/api/auth/login', json={'email': 'Meister@Werkstatt.DE', 'password': PASSWORD})
        assert res.status_code == 200

    def test_cookie_grants_access(self, anon_client: TestClient, master_user):
        anon_client.post('/api/auth/login', json={'email': MASTER_EMAIL, 'password': PASSWORD})
        res = anon_client.get('/api/employees')
        assert res.status_code == 200

    def test_wrong_password(self, anon_client: TestClient, master_user):
        res = anon_client.post('/api/auth/login', json={'email': MASTER_EMAIL, 'password': 'falsch-falsch'})
        assert res.status_code == 401
        assert res.json()['error'] == 'INVALID_LOGIN'
        assert 'set-cookie' not in res.headers

    def test_unknown_email(self, anon_client: TestClient, master_user):
        res = anon_client.post('/api/auth/login', json={'email': 'niemand@werkstatt.de', 'password': PASSWORD})
        assert res.status_code == 401
        assert res.json()['error'] == 'INVALID_LOGIN'

    def test_missing_credentials(self, anon_client: TestClient):
        res = anon_client.post('/api/auth/login', json={'email': MASTER_EMAIL})
        assert res.status_code == 400
        assert res.json()['error'] == 'MISSING_CREDENTIALS'

    def test_non_object_body(self, anon_client: TestClient):
        res = anon_client.post('/api/auth/login', json=['a', 'b'])
        assert res.status_code == 400
        assert res.json()['error'] == 'VALIDATION_FAILED'


class TestSession:
    def test_status_with_session(self, master_client: TestClient, master_user):
        res = master_client.get('/api/auth/status')
        assert res.status_code == 200
        session = res.json()['session']
        assert session['user_id'] == master_user['id']
        assert session['role'] == 'MASTER'
        assert session['exp'] > session['iat']

    def test_status_without_session(self, anon_client: TestClient):
        res = anon_client.get('/api/auth/status')
        assert res.status_code == 401
        assert res.json()['error'] == 'UNAUTHORIZED'

    def test_expired_cookie_is_anonymous(self, app, master_user):
        from api.dependencies import SESSION_COOKIE
        token = make_token(master_user, ttl=-1)
        with TestClient(app, raise_server_exceptions=False, cookies={SESSION_COOKIE: token}) as c:
            assert c.get('/api/employees').status_code == 401

    def test_forged_cookie_is_anonymous(self, app, master_user):
        from api.dependencies import SESSION_COOKIE
        token = make_token(master_user)
        with TestClient(app, raise_server_exceptions=False, cookies={SESSION_COOKIE: token[:-2] + 'xx'}) as c:
            assert c.get('/api/employees').status_code == 401

    def test_deleted_user_cannot_write(self, master_client: TestClient, db, master_user):
        db.delete_user(master_user['id'])
        res = master_client.post('/api/employees', json={'name': 'Max', 'category': 'MECH'})
        assert res.status_code == 401
        assert res.json()['error'] == 'UNAUTHORIZED'
        assert db.get_employees() == []

    def test_demoted_user_cannot_write_as_master(self, app, db, master_user):
        from api.dependencies import SESSION_COOKIE
        token = make_token(dict(master_user, role='USER'))
        with TestClient(app, raise_server_exceptions=False, cookies={SESSION_COOKIE: token}) as c:
            assert c.get('/api/employees').status_code == 200
            assert c.post('/api/employees', json={'name': 'Max', 'category': 'MECH'}).status_code == 401

    def test_logout_clears_cookie(self, master_client: TestClient):
        res = master_client.post('/api/auth/logout')
        assert res.status_code == 200
        assert res.json() == {'ok': True}
        cookie = res.headers['set-cookie'].lower()
        assert cookie.startswith('ae.session=')
        assert 'max-age=0' in cookie


class TestRegister:
    def test_first_user_becomes_master(self, anon_client: TestClient, db):
        res = anon_client.post('/api/auth/register', json={'email': 'chef@werkstatt.de', 'password': PASSWORD})
        assert res.status_code == 201
        assert res.json()['user']['role'] == 'MASTER'
        assert 'ae.session=' in res.headers['set-cookie']
        assert db.count_users() == 1

    def test_closed_once_users_exist(self, anon_client: TestClient, master_user):
        res = anon_client.post('/api/auth/register', json={'email': 'zweiter@werkstatt.de', 'password': PASSWORD})
        assert res.status_code == 403
        assert res.json()['error'] == 'REGISTRATION_CLOSED'

    def test_short_password(self, anon_client: TestClient, db):
        res = anon_client.post('/api/auth/register', json={'email': 'chef@werkstatt.de', 'password': 'kurz'})
        assert res.status_code == 400
        assert res.json()['issues'][0]['field'] == 'password'
        assert db.count_users() == 0


class TestUserManagement:
    def test_list_users(self, master_client: TestClient, master_user):
        res = master_client.get('/api/users')
        assert res.status_code == 200
        users = res.json()['users']
        assert [u['email'] for u in users] == [MASTER_EMAIL]
        assert 'password_hash' not in users[0]

    def test_create_user_defaults_to_user_role(self, master_client: TestClient):
        res = master_client.post('/api/users', json={'email': 'neu@werkstatt.de', 'password': PASSWORD})
        assert res.status_code == 201
        assert res.json()['user']['role'] == 'USER'

    def test_duplicate_email_conflict(self, master_client: TestClient):
        master_client.post('/api/users', json={'email': 'neu@werkstatt.de', 'password': PASSWORD})
        res = master_client.post('/api/users', json={'email': 'NEU@werkstatt.de', 'password': PASSWORD})
        assert res.status_code == 409
        assert res.json()['error'] == 'CONFLICT'

    def test_invalid_email(self, master_client: TestClient):
        res = master_client.post('/api/users', json={'email': 'keine-mail', 'password': PASSWORD})
        assert res.status_code == 400
        assert res.json()['issues'][0]['field'] == 'email'

    def test_delete_user(self, master_client: TestClient, plain_user):
        res = master_client.delete(f"/api/users?id={plain_user['id']}")
        assert res.status_code == 200
        assert res.json() == {'ok': True, 'id': plain_user['id']}
        assert master_client.delete(f"/api/users?id={plain_user['id']}").status_code == 404

    def test_cannot_delete_self(self, master_client: TestClient, master_user):
        res = master_client.delete(f"/api/users?id={master_user['id']}")
        assert res.status_code == 400

    def test_delete_without_id(self, master_client: TestClient):
        res = master_client.delete('/api/users')
        assert res.status_code == 400
        assert res.json()['issues'][0]['field'] == 'id'

    def test_user_role_cannot_manage_users(self, user_client: TestClient):
        assert user_client.get('/api/users').status_code == 403
        res = user_client.post('/api/users', json={'email': 'x@werkstatt.de', 'password': PASSWORD})
        assert res.status_code == 403
