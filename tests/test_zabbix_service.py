import pytest
import requests

from technms.zabbix_service import ZabbixAPIError, ZabbixHTTPError, ZabbixService, ZabbixServiceError


class FakeResponse:

    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else ''

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


@pytest.fixture
def service():
    return ZabbixService('https://zabbix.test/api_jsonrpc.php')


def capture_post(monkeypatch, service, response):
    sent = {}

    def fake_post(url, json=None, headers=None, timeout=None, verify=None):
        sent.update(url=url, json=json, headers=headers, timeout=timeout, verify=verify)
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(service.session, 'post', fake_post)
    return sent


def test_call_sends_bearer_token_and_returns_result(monkeypatch, service):
    sent = capture_post(monkeypatch, service, FakeResponse(body={'jsonrpc': '2.0', 'result': [{'hostid': '1'}]}))

    result = service.call('host.get', {'output': 'extend'}, token='abc', request_id=7)

    assert result == [{'hostid': '1'}]
    assert sent['headers']['Authorization'] == 'Bearer abc'
    assert sent['headers']['Content-Type'] == 'application/json-rpc'
    assert sent['json'] == {'jsonrpc': '2.0', 'method': 'host.get', 'params': {'output': 'extend'}, 'id': 7}
    assert sent['verify'] is False


def test_version_is_sent_without_auth(monkeypatch, service):
    sent = capture_post(monkeypatch, service, FakeResponse(body={'jsonrpc': '2.0', 'result': '7.0.0'}))
    assert service.version() == '7.0.0'
    assert 'Authorization' not in sent['headers']


def test_login_uses_user_data_false(monkeypatch, service):
    sent = capture_post(monkeypatch, service, FakeResponse(body={'jsonrpc': '2.0', 'result': 'tok'}))
    assert service.login('admin', 'pw') == 'tok'
    assert sent['json']['params'] == {'username': 'admin', 'password': 'pw', 'userData': False}


def test_error_body_raises_api_error(monkeypatch, service):
    error = {'code': -32602, 'message': 'Invalid params.', 'data': 'Incorrect user name or password.'}
    capture_post(monkeypatch, service, FakeResponse(body={'jsonrpc': '2.0', 'error': error}))

    with pytest.raises(ZabbixAPIError) as info:
        service.call('user.login', {})
    assert info.value.error == error
    assert 'Incorrect user name' in str(info.value)


def test_missing_result_uses_default_error(monkeypatch, service):
    capture_post(monkeypatch, service, FakeResponse(body={'jsonrpc': '2.0'}))
    with pytest.raises(ZabbixAPIError) as info:
        service.call('host.get')
    assert info.value.error == {'message': "Zabbix rejected the request"}


def test_http_error_carries_status_and_body(monkeypatch, service):
    capture_post(monkeypatch, service, FakeResponse(status_code=412, body={'error': 'precondition'}))
    with pytest.raises(ZabbixHTTPError) as info:
        service.request({'method': 'host.get'})
    assert info.value.status == 412
    assert info.value.body == {'error': 'precondition'}


def test_network_failure_and_non_json(monkeypatch, service):
    capture_post(monkeypatch, service, requests.exceptions.ConnectionError("refused"))
    with pytest.raises(ZabbixServiceError):
        service.request({'method': 'host.get'})

    capture_post(monkeypatch, service, FakeResponse(status_code=200, body=None, text='<html>'))
    with pytest.raises(ZabbixServiceError):
        service.request({'method': 'host.get'})
