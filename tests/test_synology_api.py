from conftest import login_session

from technms.models import AuditLog
from technms.synology_service import SynologyServiceError

LOGIN = ('SYNO.API.Auth', 'login')


def test_login_requires_credentials(client):
    resp = client.post('/api/synology/login', json={'user': 'admin'})
    assert resp.status_code == 400
    assert resp.get_json()['success'] is False


def test_login_refused_returns_dsm_body(app, client, synology):
    synology.responses[LOGIN] = {'success': False, 'error': {'code': 400}}
    resp = client.post('/api/synology/login', json={'user': 'admin', 'pass': 'bad'})

    assert resp.status_code == 401
    assert resp.get_json() == {'success': False, 'error': "DSM login failed", 'dsm': {'success': False, 'error': {'code': 400}}}
    with app.app_context():
        entry = AuditLog.query.filter_by(event_type=AuditLog.EVENT_SYNOLOGY_LOGIN).one()
        assert entry.success is False


def test_login_unreachable(client, synology):
    synology.responses[LOGIN] = SynologyServiceError("Could not reach DSM")
    resp = client.post('/api/synology-login', json={'user': 'admin', 'pass': 'pw'})
    assert resp.status_code == 502


def test_login_stores_sid_for_later_calls(client, synology):
    synology.responses[LOGIN] = {'success': True, 'data': {'sid': 'S1'}}
    assert client.post('/api/synology/login', json={'user': 'admin', 'pass': 'pw'}).get_json() == {'success': True}

    login_params = synology.calls[0]['params']
    assert login_params['account'] == 'admin'
    assert login_params['format'] == 'sid'

    synology.responses[('SYNO.Core.User', 'list')] = {'success': True, 'data': {'users': [{'name': 'admin'}]}}
    body = client.get('/api/synology/users').get_json()
    assert body['data']['users'] == [{'name': 'admin'}]
    assert synology.calls[-1]['sid'] == 'S1'


def test_routes_require_dsm_session(client):
    for path in ('/api/synology/users', '/api/synology-users', '/api/synology/shares', '/api/synology-apps'):
        resp = client.get(path)
        assert resp.status_code == 401, path
    assert client.post('/api/synology/files', json={'path': '/x'}).status_code == 401


def test_acl_passes_path(client, synology):
    login_session(client, synology_sid='S2')
    client.get('/api/synology/acl?path=/volume1/share')
    params = synology.calls[-1]['params']
    assert params['api'] == 'SYNO.Core.ACL'
    assert params['path'] == '/volume1/share'


def test_acl_without_path_omits_parameter(client, synology):
    login_session(client, synology_sid='S2')
    client.get('/api/synology/acl')
    assert 'path' not in synology.calls[-1]['params']


def test_files_prefers_body_sid(client, synology):
    login_session(client, synology_sid='SESSION')
    client.post('/api/synology/files', json={'sid': 'BODY', 'path': '/volume1'})
    call = synology.calls[-1]
    assert call['sid'] == 'BODY'
    assert call['params']['folder_path'] == '/volume1'
    assert call['params']['version'] == 2


def test_group_permissions(client, synology):
    login_session(client, synology_sid='S3')
    resp = client.post('/api/synology-permissions/group', json={})
    assert resp.status_code == 400
    assert resp.get_json() == {'success': False, 'error': {'code': 400, 'message': "Username is required"}}

    client.post('/api/synology-permissions/group', json={'username': 'bob'})
    assert synology.calls[-1]['params']['user'] == 'bob'


def test_dsm_failure_maps_to_500(client, synology):
    login_session(client, synology_sid='S4')
    synology.responses[('SYNO.Core.Share', 'list')] = SynologyServiceError("boom")
    resp = client.get('/api/synology/shares')
    assert resp.status_code == 500
    assert resp.get_json()['error'] == {'code': 500, 'message': "boom"}


def test_ping(client, synology):
    synology.status = 403
    body = client.get('/api/synology/ping').get_json()
    assert body['ok'] is True
    assert body['status'] == 403


def test_logout_clears_sid(client, synology):
    login_session(client, synology_sid='S5')
    assert client.post('/api/synology/logout').get_json() == {'success': True, 'data': {}}
    assert synology.calls[-1]['params']['method'] == 'logout'

    assert client.get('/api/synology/users').status_code == 401
