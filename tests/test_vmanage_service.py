import pytest

from technms.vmanage_service import VManageService, VManageServiceError


class FakeResponse:

    def __init__(self, status_code=200, body=None, text=''):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeSession:
    """Answers vManage paths from a dict; records GET calls."""

    routes = {}

    def __init__(self):
        self.cookies = {'JSESSIONID': 'abc'}
        self.gets = []

    def post(self, url, data=None, headers=None, timeout=None, verify=None):
        return FakeResponse(200, text='')

    def get(self, url, params=None, headers=None, timeout=None, verify=None):
        self.gets.append((url, params))
        path = url.split('vmanage.test', 1)[1]
        if params and 'deviceId' in params:
            path = f"{path}?{params['deviceId']}"
        return FakeSession.routes[path]

    def close(self):
        pass


@pytest.fixture
def service(monkeypatch):
    monkeypatch.setattr('technms.vmanage_service.requests.Session', FakeSession)
    return VManageService('https://vmanage.test', 'admin', 'secret')


def test_poll_collects_sessions_per_device(service):
    FakeSession.routes = {
        '/dataservice/client/token': FakeResponse(text='xsrf-1\n'),
        '/dataservice/device': FakeResponse(body={'data': [
            {'deviceId': '1.1.1.1'}, {'deviceId': '1.1.1.1'}, {'deviceId': ''}, 'junk', {'deviceId': '2.2.2.2'},
        ]}),
        '/dataservice/device/bfd/sessions?1.1.1.1': FakeResponse(body={'data': [{'state': 'down'}]}),
        '/dataservice/device/bfd/sessions?2.2.2.2': FakeResponse(status_code=500, text='oops'),
    }

    result = service.poll()

    assert result['login'] == {'status': 200}
    assert result['token'] == 'xsrf-1'
    assert result['deviceIds'] == ['1.1.1.1', '2.2.2.2']
    assert result['bfdSessions'] == [
        {'deviceId': '1.1.1.1', 'sessions': [{'state': 'down'}]},
        {'deviceId': '2.2.2.2', 'sessions': []},
    ]


def test_poll_html_device_list_is_a_service_error(service):
    login_page = '<html><body>Login</body></html>'
    FakeSession.routes = {
        '/dataservice/client/token': FakeResponse(text='xsrf-1'),
        '/dataservice/device': FakeResponse(text=login_page),
    }

    with pytest.raises(VManageServiceError) as info:
        service.poll()
    assert info.value.detail == login_page


def test_poll_non_object_device_list_is_a_service_error(service):
    FakeSession.routes = {
        '/dataservice/client/token': FakeResponse(text='xsrf-1'),
        '/dataservice/device': FakeResponse(body=['not', 'an', 'object']),
    }
    with pytest.raises(VManageServiceError):
        service.poll()


def test_poll_html_token_is_a_service_error(service):
    FakeSession.routes = {
        '/dataservice/client/token': FakeResponse(text='<html>Login</html>'),
    }
    with pytest.raises(VManageServiceError) as info:
        service.poll()
    assert str(info.value) == "vManage returned no XSRF token"


def test_tunnels_route_reports_bad_device_list(app, client, monkeypatch):
    monkeypatch.setattr('technms.vmanage_service.requests.Session', FakeSession)
    app.extensions['technms.vmanage'] = VManageService('https://vmanage.test', 'admin', 'secret')
    FakeSession.routes = {
        '/dataservice/client/token': FakeResponse(text='xsrf-1'),
        '/dataservice/device': FakeResponse(text='<html>Login</html>'),
    }

    resp = client.post('/api/sdwan/tunnels')
    assert resp.status_code == 500
    assert resp.get_json() == {
        'success': False,
        'error': "vManage device list returned a non-JSON answer",
        'detail': '<html>Login</html>',
    }
