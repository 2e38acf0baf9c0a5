"""Tests for the employee directory and capacity endpoints."""
from starlette.testclient import TestClient


def _create(client, **body):
    payload = {'name': 'Max Mechaniker', 'category': 'MECH', 'performance': 100}
    payload.update(body)
    return client.post('/api/employees', json=payload)


class TestListEmployees:
    def test_empty(self, user_client: TestClient):
        res = user_client.get('/api/employees')
        assert res.status_code == 200
        assert res.json() == {'ok': True, 'employees': []}

    def test_user_can_read(self, user_client: TestClient, mech_96):
        employees = user_client.get('/api/employees').json()['employees']
        assert employees == [mech_96]

    def test_requires_session(self, anon_client: TestClient):
        res = anon_client.get('/api/employees')
        assert res.status_code == 401
        assert res.json()['error'] == 'UNAUTHORIZED'


class TestCreateEmployee:
    def test_create(self, master_client: TestClient):
        res = _create(master_client, name='Lisa Lack', category='BODY', performance=80)
        assert res.status_code == 201
        emp = res.json()['employee']
        assert emp['name'] == 'Lisa Lack'
        assert emp['category'] == 'BODY'
        assert emp['performance'] == 80
        assert emp['id']

    def test_form_encoded(self, master_client: TestClient):
        res = master_client.post('/api/employees', data={'name': 'Paul', 'category': 'PREP', 'performance': '90'})
        assert res.status_code == 201
        assert res.json()['employee']['performance'] == 90

    def test_default_performance(self, master_client: TestClient):
        res = master_client.post('/api/employees', json={'name': 'Neu', 'category': 'MECH'})
        assert res.json()['employee']['performance'] == 100

    def test_invalid_category(self, master_client: TestClient):
        res = _create(master_client, category='PAINT')
        assert res.status_code == 400
        body = res.json()
        assert body['ok'] is False
        assert body['error'] == 'VALIDATION_FAILED'
        assert body['issues'][0]['field'] == 'category'

    def test_empty_name(self, master_client: TestClient):
        res = _create(master_client, name='   ')
        assert res.status_code == 400
        assert res.json()['issues'][0]['field'] == 'name'

    def test_performance_out_of_range(self, master_client: TestClient):
        assert _create(master_client, performance=-5).status_code == 400
        assert _create(master_client, performance=301).status_code == 400
        assert master_client.get('/api/employees').json()['employees'] == []

    def test_user_forbidden(self, user_client: TestClient):
        res = _create(user_client)
        assert res.status_code == 403
        assert res.json()['error'] == 'FORBIDDEN'
        assert user_client.get('/api/employees').json()['employees'] == []

    def test_boolean_performance_rejected(self, master_client: TestClient):
        res = _create(master_client, performance=True)
        assert res.status_code == 400
        assert res.json()['issues'][0]['field'] == 'performance'

class TestUpdateEmployee:
    def test_partial_update(self, master_client: TestClient, mech_96):
        res = master_client.patch('/api/employees', json={'id': mech_96['id'], 'performance': 120})
        assert res.status_code == 200
        emp = res.json()['employee']
        assert emp['performance'] == 120
        assert emp['name'] == mech_96['name']
        assert emp['category'] == 'MECH'

    def test_missing_id(self, master_client: TestClient):
        res = master_client.patch('/api/employees', json={'name': 'X'})
        assert res.status_code == 400
        assert res.json()['issues'][0]['field'] == 'id'

    def test_unknown_id(self, master_client: TestClient):
        res = master_client.patch('/api/employees', json={'id': 'unbekannt', 'name': 'X'})
        assert res.status_code == 404
        assert res.json()['error'] == 'NOT_FOUND'

    def test_invalid_value(self, master_client: TestClient, mech_96):
        res = master_client.patch('/api/employees', json={'id': mech_96['id'], 'category': 'XX'})
        assert res.status_code == 400

    def test_user_forbidden(self, user_client: TestClient, mech_96):
        res = user_client.patch('/api/employees', json={'id': mech_96['id'], 'performance': 10})
        assert res.status_code == 403


class TestDeleteEmployee:
    def test_delete(self, master_client: TestClient, mech_96):
        res = master_client.delete(f"/api/employees?id={mech_96['id']}")
        assert res.status_code == 200
        assert res.json() == {'ok': True, 'id': mech_96['id']}
        assert master_client.get('/api/employees').json()['employees'] == []

    def test_delete_twice(self, master_client: TestClient, mech_96):
        master_client.delete(f"/api/employees?id={mech_96['id']}")
        res = master_client.delete(f"/api/employees?id={mech_96['id']}")
        assert res.status_code == 404

    def test_missing_id(self, master_client: TestClient):
        assert master_client.delete('/api/employees').status_code == 400

    def test_user_forbidden(self, user_client: TestClient, mech_96):
        assert user_client.delete(f"/api/employees?id={mech_96['id']}").status_code == 403


class TestCapacityEndpoint:
    def test_capacity_follows_roster(self, master_client: TestClient, mech_96):
        cap = master_client.get('/api/capacity').json()
        assert cap['ok'] is True
        assert cap['base_aw_per_day'] == 96
        assert cap['categories']['MECH']['aw'] == 96
        assert cap['categories']['MECH']['minutes'] == 480

        _create(master_client, name='Zweiter', performance=50)
        assert master_client.get('/api/capacity').json()['categories']['MECH']['aw'] == 144

        master_client.delete(f"/api/employees?id={mech_96['id']}")
        assert master_client.get('/api/capacity').json()['categories']['MECH']['aw'] == 48

    def test_user_can_read(self, user_client: TestClient):
        assert user_client.get('/api/capacity').status_code == 200
