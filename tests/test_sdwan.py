import json

import pytest

from technms.models import AuditLog, LinkRecord, TunnelState
from technms.tunnel_report import branch_name, build_tunnel_rows, replace_isp_names, to_iso
from technms.vmanage_service import VManageServiceError, collect_down_sessions, format_alert_body


def write_snapshot(path, tunnels, hostname='blr-br01', system_ip='10.1.1.1'):
    path.write_text(json.dumps({
        'generatedAtIST': '2024-03-05T10:00:00.000Z',
        'sites': {system_ip: {'hostname': hostname, 'tunnels': tunnels}},
    }))


@pytest.fixture
def branches_file(app, tmp_path):
    path = tmp_path / 'branches.json'
    path.write_text(json.dumps({
        'branches': [{'code': '', 'name': 'Empty'}, {'code': 'blr', 'name': 'Bangalore'}],
        'isp': [{'type': 'mpls', 'name': 'Airtel MPLS'}],
    }))
    app.config['BRANCHES_FILE'] = str(path)
    return path


# ============================================================================
# Tunnel report helpers
# ============================================================================

def test_branch_and_isp_lookup():
    branches = [{'code': '', 'name': 'Empty'}, {'code': 'BLR', 'name': 'Bangalore'}]
    assert branch_name('blr-br01', branches) == 'Bangalore'
    assert branch_name('del-br01', branches) == 'NA'
    assert branch_name('', branches) == 'NA'
    assert replace_isp_names('MPLS-to-hub', [{'type': 'mpls', 'name': 'Airtel'}]) == 'Airtel-to-hub'
    assert replace_isp_names('a.b', [{'type': '.', 'name': '_'}]) == 'a_b'


def test_to_iso():
    assert to_iso(1000) == '1970-01-01T00:00:01.000Z'
    assert to_iso(0) != '1970-01-01T00:00:00.000Z'
    assert to_iso(0) > '2020'
    assert to_iso('2024-03-05T10:00:00.123Z') == '2024-03-05T10:00:00.123Z'
    assert to_iso('garbage').endswith('Z')


def test_build_tunnel_rows_transitions():
    sites = {'10.0.0.1': {'hostname': 'h', 'tunnels': [
        {'tunnelName': 'a', 'state': 'up', 'lastUpdated': 1000},
        {'tunnelName': 'b', 'state': 'DOWN', 'lastUpdated': 1000},
        {'tunnelName': 'c', 'state': 'partial', 'lastUpdated': 1000},
        {'tunnelName': 'd', 'state': 'weird', 'lastUpdated': 1000},
        {'tunnelName': '', 'state': 'down'},
    ]}}
    prev = {'10.0.0.1||a': 'down', '10.0.0.1||b': 'down'}

    rows, states = build_tunnel_rows(sites, prev, False, [], [])

    assert [(r['Tunnel'], r['State'], r['Type']) for r in rows] == [
        ('a', 'UP', 'RECOVERED'),
        ('c', 'PARTIAL', 'INITIAL'),
    ]
    assert states == {'10.0.0.1||a': 'up', '10.0.0.1||b': 'down', '10.0.0.1||c': 'partial'}


def test_build_tunnel_rows_forced_initial_and_changed():
    sites = {'10.0.0.1': {'hostname': 'h', 'tunnels': [{'tunnelName': 'a', 'state': 'down', 'lastUpdated': 1000}]}}

    rows, _ = build_tunnel_rows(sites, {'10.0.0.1||a': 'up'}, True, [], [])
    assert [(r['State'], r['Type']) for r in rows] == [('DOWN', 'INITIAL'), ('DOWN', 'CHANGED')]


# ============================================================================
# Tunnel report routes
# ============================================================================

def test_link_record_tunnel_flow(app, client, tmp_path, branches_file):
    snapshot = tmp_path / 'sdwan_tunnels.json'
    write_snapshot(snapshot, [
        {'tunnelName': 'mpls-to-hub', 'state': 'down', 'lastUpdated': 1_700_000_000_000},
        {'tunnelName': 'inet-to-hub', 'state': 'up', 'lastUpdated': 1_700_000_000_000},
    ])

    body = client.get('/api/sdwan/linkRecordTunnel').get_json()
    assert body['success'] is True
    assert body['generatedAt'] == '2024-03-05T10:00:00.000Z'
    assert body['debug']['forcedInitialSave'] is True
    assert body['debug']['appendedNow'] == 1

    # same snapshot again: nothing new
    body = client.get('/api/sdwan/linkRecordTunnel').get_json()
    assert body['debug']['forcedInitialSave'] is False
    assert body['debug']['appendedNow'] == 0

    write_snapshot(snapshot, [
        {'tunnelName': 'mpls-to-hub', 'state': 'up', 'lastUpdated': 1_700_000_600_000},
        {'tunnelName': 'inet-to-hub', 'state': 'partial', 'lastUpdated': 1_700_000_300_000},
    ])
    body = client.get('/api/sdwan/linkRecordTunnel').get_json()
    assert body['debug']['appendedNow'] == 2
    assert body['debug']['totalCsvRows'] == 3

    rows = client.get('/api/sdwan/readCsv').get_json()['rows']
    assert [(r['Tunnel'], r['State'], r['Type']) for r in rows] == [
        ('Airtel MPLS-to-hub', 'UP', 'RECOVERED'),
        ('inet-to-hub', 'PARTIAL', 'CHANGED'),
        ('Airtel MPLS-to-hub', 'DOWN', 'INITIAL'),
    ]
    assert rows[0]['Branch'] == 'Bangalore'
    assert rows[0]['System IP'] == '10.1.1.1'

    with app.app_context():
        assert TunnelState.load_all() == {'10.1.1.1||mpls-to-hub': 'up', '10.1.1.1||inet-to-hub': 'partial'}


def test_link_record_tunnel_missing_snapshot(client):
    resp = client.get('/api/sdwan/linkRecordTunnel')
    assert resp.status_code == 500
    assert resp.get_json()['success'] is False


def test_read_csv_without_report(client):
    body = client.get('/api/sdwan/readCsv').get_json()
    assert body['success'] is True
    assert body['rows'] == []


# ============================================================================
# Link records
# ============================================================================

def test_link_records_skip_unchanged(app, client):
    payload = {
        'systemIp': '10.1.1.1', 'hostname': 'blr-br01', 'reachability': 'reachable',
        'siteState': 'DOWN', 'downTunnels': [{'tunnelName': 'b'}, {'tunnelName': 'a'}],
    }
    first = client.post('/api/link-records', json=payload).get_json()
    assert first['success'] is True
    assert first['data']['siteState'] == 'DOWN'
    assert first['data']['eventType'] == 'STATE_CHANGE'
    assert first['data']['generatedAtUTC'] == 'NA'

    # same state, tunnels in another order
    payload['downTunnels'] = [{'tunnelName': 'a'}, {'tunnelName': 'b'}]
    second = client.post('/api/link-records', json=payload).get_json()
    assert second == {'success': True, 'skipped': True, 'message': "No change detected, skipped insert"}

    payload['siteState'] = 'UP'
    payload['downTunnels'] = []
    third = client.post('/api/link-records', json=payload).get_json()
    assert third['data']['siteState'] == 'UP'

    records = client.get('/api/link-records').get_json()['data']
    assert [r['siteState'] for r in records] == ['UP', 'DOWN']

    with app.app_context():
        assert LinkRecord.query.count() == 2


def test_link_records_explicit_snapshot_key(client):
    client.post('/api/link-records', json={'systemIp': '1.1.1.1', 'snapshotKey': 'k1', 'siteState': 'UP'})
    resp = client.post('/api/link-records', json={'systemIp': '1.1.1.1', 'snapshotKey': 'k1', 'siteState': 'DOWN'})
    assert resp.get_json()['skipped'] is True


def test_link_records_missing_fields_become_na(client):
    resp = client.post('/api/link-records', json={'siteState': 'UP'})
    assert resp.status_code == 200
    data = resp.get_json()['data']
    assert data['systemIp'] == 'NA'
    assert data['hostname'] == 'NA'
    assert data['siteState'] == 'UP'


# ============================================================================
# vManage polling and alert mail
# ============================================================================

POLL_RESULT = {
    'login': {'status': 200},
    'token': 'xsrf',
    'devices': [{'deviceId': '1.1.1.1'}],
    'deviceIds': ['1.1.1.1'],
    'bfdSessions': [{'deviceId': '1.1.1.1', 'sessions': [
        {'state': 'down', 'vdevice-host-name': 'br1', 'color': 'mpls', 'local-color': 'biz-internet'},
        {'state': 'up', 'vdevice-host-name': 'br1', 'color': 'lte', 'local-color': 'lte'},
    ]}],
}


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def ehlo(self):
        pass

    def has_extn(self, name):
        return False

    def login(self, user, password):
        pass

    def send_message(self, msg):
        FakeSMTP.sent.append(msg)


def test_collect_down_sessions_and_body():
    down = collect_down_sessions(POLL_RESULT['bfdSessions'])
    assert down == [{
        'deviceId': '1.1.1.1', 'hostname': 'br1', 'color': 'mpls',
        'localColor': 'biz-internet', 'state': 'down',
    }]
    body = format_alert_body(down)
    assert body.startswith("The following BFD tunnels are DOWN:")
    assert "Hostname: br1" in body


def test_tunnels_without_smtp_sends_nothing(client, vmanage):
    vmanage.result = dict(POLL_RESULT)
    body = client.post('/api/sdwan/tunnels').get_json()
    assert body['success'] is True
    assert body['api']['alertsSent'] == 0
    assert body['api']['deviceIds'] == ['1.1.1.1']


def test_tunnels_mails_down_sessions(app, client, vmanage, monkeypatch):
    monkeypatch.setattr('technms.vmanage_service.smtplib.SMTP', FakeSMTP)
    FakeSMTP.sent = []
    app.config.update(SMTP_HOST='smtp.test', ALERT_MAIL_TO='noc@example.com')
    vmanage.result = dict(POLL_RESULT)

    body = client.post('/api/sdwan/tunnels').get_json()
    assert body['api']['alertsSent'] == 1
    assert len(FakeSMTP.sent) == 1
    assert FakeSMTP.sent[0]['Subject'] == "SD-WAN BFD Session DOWN Alert"
    assert FakeSMTP.sent[0]['To'] == 'noc@example.com'

    with app.app_context():
        assert AuditLog.query.filter_by(event_type=AuditLog.EVENT_SDWAN_ALERT).count() == 1


def test_tunnels_poll_failure(client, vmanage):
    vmanage.error = VManageServiceError("No cookies returned from vManage")
    resp = client.post('/api/sdwan/tunnels')
    assert resp.status_code == 500
    assert resp.get_json()['error'] == "No cookies returned from vManage"
