def _window(client, tenant, name='Window 1'):
    resp = client.post('/api/windows', json={'name': name}, headers=tenant.headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_window_crud(client, make_tenant):
    north = make_tenant('north-clinic')
    window = _window(client, north)
    assert window['isActive'] is True

    resp = client.put(f"/api/windows/{window['id']}", json={'name': 'Counter A'}, headers=north.headers)
    assert resp.json()['name'] == 'Counter A'

    resp = client.patch(f"/api/windows/{window['id']}/status", headers=north.headers)
    assert resp.json()['isActive'] is False

    resp = client.delete(f"/api/windows/{window['id']}", headers=north.headers)
    assert resp.status_code == 204
    assert client.get('/api/windows', headers=north.headers).json() == []


def test_blank_window_name_rejected(client, make_tenant):
    north = make_tenant('north-clinic')
    resp = client.post('/api/windows', json={'name': ''}, headers=north.headers)
    assert resp.status_code == 400

    resp = client.post('/api/windows', json={'name': '   '}, headers=north.headers)
    assert resp.status_code == 400


def test_occupied_window_cannot_be_deleted(client, make_tenant):
    north = make_tenant('north-clinic')
    window = _window(client, north)
    patient = client.post('/api/patients', json={}, headers=north.headers).json()

    resp = client.patch(
        f"/api/windows/{window['id']}/patient", json={'patientId': patient['id']}, headers=north.headers
    )
    assert resp.json()['currentPatientId'] == patient['id']

    resp = client.delete(f"/api/windows/{window['id']}", headers=north.headers)
    assert resp.status_code == 409
    assert resp.json()['error']['code'] == 'conflict'

    client.patch(f"/api/windows/{window['id']}/patient", json={'patientId': None}, headers=north.headers)
    assert client.delete(f"/api/windows/{window['id']}", headers=north.headers).status_code == 204


def test_windows_are_tenant_scoped(client, two_tenants):
    north, south = two_tenants
    window = _window(client, north)
    south_patient = client.post('/api/patients', json={}, headers=south.headers).json()

    assert client.get('/api/windows', headers=south.headers).json() == []
    assert client.delete(f"/api/windows/{window['id']}", headers=south.headers).status_code == 404
    # a window cannot be pointed at another tenant's patient
    resp = client.patch(
        f"/api/windows/{window['id']}/patient",
        json={'patientId': south_patient['id']},
        headers=north.headers,
    )
    assert resp.status_code == 404
