import pytest

from technms.app import create_app
from technms.models import db
from technms.security import encrypt_value
from technms.synology_service import SynologyService
from technms.vmanage_service import VManageService
from technms.zabbix_service import ZabbixService

SECRET = 'test-secret'


class FakeZabbix(ZabbixService):
    """Answers JSON-RPC calls from canned responses keyed by method."""

    def __init__(self):
        super().__init__('https://zabbix.test/api_jsonrpc.php')
        self.calls = []
        self.responses = {}

    def set_result(self, method, result):
        self.responses[method] = {'jsonrpc': '2.0', 'result': result, 'id': 1}

    def set_error(self, method, error):
        self.responses[method] = {'jsonrpc': '2.0', 'error': error, 'id': 1}

    def set_raise(self, method, exc):
        self.responses[method] = exc

    def request(self, payload, token=None):
        self.calls.append({'payload': payload, 'token': token})
        response = self.responses.get(payload.get('method'))
        if isinstance(response, Exception):
            raise response
        if response is None:
            return {'jsonrpc': '2.0', 'result': [], 'id': payload.get('id')}
        return response

    def params(self, method):
        return [c['payload'].get('params') for c in self.calls if c['payload'].get('method') == method]

    def methods(self):
        return [c['payload'].get('method') for c in self.calls]


class FakeSynology(SynologyService):

    def __init__(self):
        super().__init__('http://dsm.test:5000')
        self.calls = []
        self.responses = {}
        self.status = 200

    def request(self, params, sid=None, timeout=None):
        self.calls.append({'params': params, 'sid': sid})
        key = (params.get('api'), params.get('method'))
        response = self.responses.get(key, {'success': True, 'data': {}})
        if isinstance(response, Exception):
            raise response
        return self.status, response


class FakeVManage(VManageService):

    def __init__(self):
        super().__init__('https://vmanage.test', 'admin', 'secret')
        self.result = None
        self.error = None

    def poll(self):
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SECRET_KEY': SECRET,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'test.db'}",
        'DATA_DIR': str(tmp_path / 'data'),
        'WTF_CSRF_ENABLED': False,
        'RATELIMIT_ENABLED': False,
        'TRUST_PROXY': False,
        'ALLOWED_IPS': '',
        'ZABBIX_API_TOKEN': '',
        'ZABBIX_CPU_ITEMID': '',
        'SMTP_HOST': '',
        'ALERT_MAIL_TO': '',
        'SDWAN_TUNNELS_FILE': str(tmp_path / 'sdwan_tunnels.json'),
        'BRANCHES_FILE': '',
    })
    app.extensions['technms.zabbix'] = FakeZabbix()
    app.extensions['technms.synology'] = FakeSynology()
    app.extensions['technms.vmanage'] = FakeVManage()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def zabbix(app):
    return app.extensions['technms.zabbix']


@pytest.fixture
def synology(app):
    return app.extensions['technms.synology']


@pytest.fixture
def vmanage(app):
    return app.extensions['technms.vmanage']


def login_session(client, zabbix_token=None, synology_sid=None, username='admin'):
    """Put encrypted upstream credentials into the test client's session."""
    with client.session_transaction() as sess:
        if zabbix_token:
            sess['zabbix_token'] = encrypt_value(zabbix_token, SECRET)
            sess['username'] = username
        if synology_sid:
            sess['synology_sid'] = encrypt_value(synology_sid, SECRET)
