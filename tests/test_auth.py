import jwt
import pytest
from starlette.websockets import WebSocketDisconnect

from clinic_queue.auth import create_tv_token, decode_token, hash_password, verify_password
from clinic_queue.errors import AuthenticationError

TEST_SECRET = 'test-jwt-secret-for-clinic-queue-suite'


def test_password_hashing_roundtrip():
    hashed = hash_password('s3cret-pw')
    assert verify_password('s3cret-pw', hashed)
    assert not verify_password('wrong', hashed)
    assert not verify_password('s3cret-pw', 'not-a-hash')


def test_login_and_me(client, make_tenant):
    make_tenant('north-clinic', password='north-pass')

    resp = client.post('/api/auth/login', json={'username': 'north-clinic', 'password': 'north-pass'})
    assert resp.status_code == 200
    body = resp.json()
    assert body['token_type'] == 'bearer'
    claims = jwt.decode(body['access_token'], TEST_SECRET, algorithms=['HS256'])
    assert claims['type'] == 'access'
    assert claims['tenant'] == body['user']['id']

    me = client.get('/api/auth/me', headers={'Authorization': f"Bearer {body['access_token']}"})
    assert me.json()['username'] == 'north-clinic'


def test_login_rejects_bad_password(client, make_tenant):
    make_tenant('north-clinic', password='north-pass')
    resp = client.post('/api/auth/login', json={'username': 'north-clinic', 'password': 'nope'})
    assert resp.status_code == 401
    assert resp.json()['success'] is False


def test_tv_token_cannot_be_used_as_access_token(client, make_tenant):
    north = make_tenant('north-clinic')
    resp = client.get('/api/patients', headers={'Authorization': f'Bearer {north.tv_token}'})
    assert resp.status_code == 401


def test_decode_token_checks_type():
    token = create_tv_token('tenant-1', TEST_SECRET)
    assert decode_token(token, TEST_SECRET, 'tv')['tenant'] == 'tenant-1'
    with pytest.raises(AuthenticationError):
        decode_token(token, TEST_SECRET)
    with pytest.raises(AuthenticationError):
        decode_token(token, 'another-secret-that-is-long-enough', 'tv')


def test_change_password(client, make_tenant):
    north = make_tenant('north-clinic', password='north-pass')

    resp = client.post(
        '/api/auth/change-password',
        json={'currentPassword': 'wrong', 'newPassword': 'brand-new'},
        headers=north.headers,
    )
    assert resp.status_code == 400

    resp = client.post(
        '/api/auth/change-password',
        json={'currentPassword': 'north-pass', 'newPassword': 'brand-new'},
        headers=north.headers,
    )
    assert resp.json() == {'success': True}
    login = client.post('/api/auth/login', json={'username': 'north-clinic', 'password': 'brand-new'})
    assert login.status_code == 200


def test_admin_manages_users(client, runtime, make_tenant):
    admin = make_tenant('root', role='admin')
    clinic = make_tenant('north-clinic')

    assert client.get('/api/users', headers=clinic.headers).status_code == 403

    resp = client.post('/api/users', json={'username': 'east-clinic', 'password': 'east-pass'}, headers=admin.headers)
    assert resp.status_code == 201
    assert client.post(
        '/api/users', json={'username': 'east-clinic', 'password': 'east-pass'}, headers=admin.headers
    ).status_code == 409

    resp = client.patch(f'/api/users/{clinic.id}/status', headers=admin.headers)
    assert resp.json()['isActive'] is False
    # deactivated tenants lose access immediately
    assert client.get('/api/patients', headers=clinic.headers).status_code == 401

    runtime.cache.set(clinic.id, 'windows', [])
    assert client.delete(f'/api/users/{clinic.id}', headers=admin.headers).status_code == 204
    assert runtime.cache.tenant_size(clinic.id) == 0
    assert client.delete(f'/api/users/{admin.id}', headers=admin.headers).status_code == 400


def test_websocket_rejects_invalid_token(client):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect('/ws', headers={'Authorization': 'Bearer not-a-token'}):
            pass
    assert excinfo.value.code == 1008


def test_websocket_accepts_query_token(client, make_tenant):
    north = make_tenant('north-clinic')
    with client.websocket_connect(f'/ws?token={north.token}') as ws:
        joined = ws.receive_json()
    assert joined == {'event': 'clinic:joined', 'data': {'clinicId': north.id}}


def test_deactivation_closes_open_sockets(client, runtime, make_tenant):
    admin = make_tenant('root', role='admin')
    north = make_tenant('north-clinic')

    with client.websocket_connect('/ws', headers=north.headers) as staff:
        assert staff.receive_json()['event'] == 'clinic:joined'

        resp = client.patch(f'/api/users/{north.id}/status', headers=admin.headers)
        assert resp.json()['isActive'] is False

        with pytest.raises(WebSocketDisconnect) as excinfo:
            staff.receive_json()
    assert excinfo.value.code == 1008
    assert runtime.hub.connection_count(north.id) == 0


def test_deleting_tenant_closes_display_sockets(client, runtime, make_tenant):
    admin = make_tenant('root', role='admin')
    north = make_tenant('north-clinic')

    with client.websocket_connect(f'/ws?tv_token={north.tv_token}') as tv:
        assert tv.receive_json()['event'] == 'tv:joined'

        assert client.delete(f'/api/users/{north.id}', headers=admin.headers).status_code == 204

        with pytest.raises(WebSocketDisconnect) as excinfo:
            tv.receive_json()
    assert excinfo.value.code == 1008
