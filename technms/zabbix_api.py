"""
Zabbix blueprint: sessions, JSON-RPC proxy, hosts, items, history,
problems and maps. All routes are mounted under /api.
"""

from datetime import datetime
import logging

from flask import Blueprint, current_app, jsonify, request, session

from .auth import (
    SESSION_ZABBIX_TOKEN, bearer_token, get_client_ip, get_session_zabbix_token,
    get_user_agent, resolve_zabbix_auth, store_zabbix_token,
)
from .models import AuditLog
from .reports import (
    distinct, format_item_rows, group_items_by_key, group_problems, inventory_rows,
    interface_status_rows, last_hour, latest_interface_rows, local_epoch, map_host_ids,
    merge_problems_with_triggers, priority_counts, build_host_create_params,
)
from .security import limiter, json_body, sanitize_string, InputValidator
from .zabbix_service import ZabbixService, ZabbixServiceError, ZabbixHTTPError, ZabbixAPIError

logger = logging.getLogger('gunicorn.error')

zabbix_bp = Blueprint('zabbix', __name__)

UNREACHABLE = "Server error: Could not reach Zabbix API."
MISSING_TOKEN = "Missing Zabbix auth token"


def get_zabbix_service() -> ZabbixService:
    """The application's shared Zabbix client."""
    return current_app.extensions['technms.zabbix']


def _as_list(value) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


# ============================================================================
# Sessions and tokens
# ============================================================================

@zabbix_bp.route('/auth/login', methods=['POST'])
@limiter.limit("10 per minute")
def session_login():
    """Log in to Zabbix and keep the token in the console session."""
    data = json_body()
    username = sanitize_string(data.get('username', ''))
    password = data.get('password', '')

    valid, error = InputValidator.username(username)
    if valid:
        valid, error = InputValidator.password(password)
    if not valid:
        return jsonify({'success': False, 'message': error}), 400

    try:
        token = get_zabbix_service().login(username, password)
    except ZabbixAPIError as e:
        AuditLog.log(
            AuditLog.EVENT_LOGIN_FAILED,
            username=username,
            details=str(e),
            ip_address=get_client_ip(),
            user_agent=get_user_agent(),
            success=False
        )
        return jsonify({'success': False, 'message': str(e) or "Invalid credentials"}), 401
    except ZabbixHTTPError as e:
        return jsonify({'success': False, 'message': f"Zabbix server error: {e.status}"}), 502
    except ZabbixServiceError as e:
        return jsonify({'success': False, 'message': f"Unable to connect to Zabbix: {e}"}), 500

    if not token:
        return jsonify({'success': False, 'message': "Invalid response from Zabbix"}), 500

    store_zabbix_token(token, username)
    AuditLog.log(
        AuditLog.EVENT_LOGIN,
        username=username,
        details="Zabbix login",
        ip_address=get_client_ip(),
        user_agent=get_user_agent()
    )
    logger.info(f"[AUTH] Login successful for {username}")
    return jsonify({'success': True})


@zabbix_bp.route('/auth/logout', methods=['POST'])
def session_logout():
    """Log out of Zabbix (best effort) and drop the session token."""
    token = get_session_zabbix_token()
    if token:
        try:
            get_zabbix_service().logout(token)
        except ZabbixServiceError as e:
            logger.warning(f"[AUTH] Zabbix logout failed: {e}")

        AuditLog.log(
            AuditLog.EVENT_LOGOUT,
            username=session.get('username'),
            ip_address=get_client_ip(),
            user_agent=get_user_agent()
        )

    session.pop(SESSION_ZABBIX_TOKEN, None)
    session.pop('username', None)
    return jsonify({'success': True})


@zabbix_bp.route('/auth/test', methods=['GET', 'POST'])
def session_test():
    """Check that the configured Zabbix URL answers apiinfo.version."""
    config = {'ZABBIX_URL': current_app.config.get('ZABBIX_URL') or "NOT SET"}
    if not current_app.config.get('ZABBIX_URL'):
        return jsonify({'error': "ZABBIX_URL not configured", 'config': config}), 500

    try:
        version = get_zabbix_service().version()
    except ZabbixServiceError as e:
        return jsonify({
            'success': False,
            'config': config,
            'error': str(e),
            'connectionStatus': "FAILED",
        }), 500

    return jsonify({
        'success': True,
        'config': config,
        'zabbixVersion': version,
        'connectionStatus': "OK",
    })


@zabbix_bp.route('/test-zabbix', methods=['POST'])
def test_zabbix():
    """Diagnostics: version, current user, host groups, hosts, template groups."""
    token = resolve_zabbix_auth(json_body())
    if not token:
        return jsonify({'error': "Missing auth token. Please provide your Zabbix API token."}), 400

    service = get_zabbix_service()
    results = {
        'zabbix_url': service.url,
        'timestamp': datetime.utcnow().isoformat() + 'Z',
    }

    try:
        results['api_version'] = service.version() or "Unknown"
    except ZabbixServiceError as e:
        results['api_version_error'] = str(e)

    try:
        users = service.call('user.get', {
            'output': ['userid', 'username', 'name', 'surname', 'role_name'],
        }, token=token, request_id=2)
        results['current_user'] = users[0] if users else "No user data"
    except ZabbixAPIError as e:
        results['current_user'] = e.error
    except ZabbixServiceError as e:
        results['user_error'] = str(e)

    try:
        groups = service.call('hostgroup.get', {
            'output': ['groupid', 'name'],
            'sortfield': 'name',
        }, token=token, request_id=3)
        results['hostgroups'] = {
            'count': len(groups),
            'groups': groups[:10],
            'all_group_names': [g.get('name') for g in groups],
        }
    except ZabbixServiceError as e:
        results['hostgroups_error'] = str(e)

    try:
        hosts = service.call('host.get', {
            'output': ['hostid', 'host', 'name', 'status'],
            'sortfield': 'name',
            'limit': 20,
        }, token=token, request_id=4)
        results['hosts'] = {'count': len(hosts), 'sample_hosts': hosts[:5]}
    except ZabbixServiceError as e:
        results['hosts_error'] = str(e)

    try:
        tgroups = service.call('templategroup.get', {
            'output': ['groupid', 'name'],
            'sortfield': 'name',
        }, token=token, request_id=5)
        results['template_groups'] = {'count': len(tgroups), 'groups': tgroups[:10]}
    except ZabbixServiceError as e:
        results['template_groups_error'] = str(e)

    return jsonify(results)


@zabbix_bp.route('/zabbix-login', methods=['POST'])
@limiter.limit("10 per minute")
def zabbix_login():
    """Return a Zabbix session token without starting a console session."""
    data = json_body()
    try:
        token = get_zabbix_service().login(data.get('username', ''), data.get('password', ''))
        return jsonify({'result': token})
    except ZabbixAPIError as e:
        return jsonify({'error': e.error}), 403
    except ZabbixServiceError as e:
        logger.error(f"[AUTH] Zabbix login error: {e}")
        return jsonify({'error': UNREACHABLE}), 500


@zabbix_bp.route('/token', methods=['POST'])
def create_token():
    """Create a named API token for a Zabbix user."""
    data = json_body()
    userid = data.get('userid')
    token = resolve_zabbix_auth(data)
    if not userid or not token:
        return jsonify({'error': "userid and auth are required"}), 400

    name = data.get('tokenName') or f"user-{userid}-token"
    try:
        result = get_zabbix_service().call('token.create', {
            'name': name,
            'userid': userid,
        }, token=token, request_id=2)
    except ZabbixAPIError as e:
        return jsonify({'error': e.error}), 403
    except ZabbixServiceError as e:
        logger.error(f"[AUTH] token.create error: {e}")
        return jsonify({'error': UNREACHABLE}), 500

    AuditLog.log(
        AuditLog.EVENT_TOKEN_CREATED,
        username=session.get('username'),
        details=f"Token '{name}' for user {userid}",
        ip_address=get_client_ip(),
        user_agent=get_user_agent()
    )
    return jsonify({'token': (result or {}).get('value')})


# ============================================================================
# JSON-RPC proxy and raw history
# ============================================================================

def _proxy(payload: dict):
    token = bearer_token() or get_session_zabbix_token()
    if not token:
        return jsonify({'error': "Missing Bearer token"}), 401

    payload = dict(payload)
    payload.pop('auth', None)

    try:
        return jsonify(get_zabbix_service().request(payload, token=token))
    except ZabbixHTTPError as e:
        body = e.body if isinstance(e.body, (dict, list)) else {'error': "Zabbix proxy failed"}
        return jsonify(body), e.status
    except ZabbixServiceError as e:
        logger.error(f"[PROXY] {payload.get('method')}: {e}")
        return jsonify({'error': "Zabbix proxy failed"}), 500


@zabbix_bp.route('/zabbix-proxy', methods=['POST'])
def zabbix_proxy():
    """Forward a JSON-RPC body to Zabbix with the caller's token."""
    return _proxy(json_body())


@zabbix_bp.route('/history', methods=['POST'])
def history_proxy():
    return _proxy(json_body())


@zabbix_bp.route('/zabbix-history', methods=['POST'])
def zabbix_history():
    """Latest history values of one item (raw JSON-RPC body)."""
    data = json_body()
    token = resolve_zabbix_auth(data)
    if not token:
        return jsonify({'error': "Missing Bearer token"}), 401

    itemid = data.get('itemid')
    if not itemid:
        return jsonify({'error': "itemid is required"}), 400

    payload = {
        'jsonrpc': '2.0',
        'method': 'history.get',
        'params': {
            'output': 'extend',
            'history': data.get('history', 0),
            'itemids': [itemid],
            'sortfield': 'clock',
            'sortorder': 'DESC',
            'limit': data.get('limit', 100),
        },
        'id': 1,
    }
    try:
        return jsonify(get_zabbix_service().request(payload, token=token))
    except ZabbixServiceError as e:
        logger.error(f"[HISTORY] zabbix-history error: {e}")
        return jsonify({'error': "history.get failed"}), 500


@zabbix_bp.route('/zabbix/cpu', methods=['POST'])
def zabbix_cpu():
    """Last 100 values of the CPU utilization item."""
    data = json_body()
    token = resolve_zabbix_auth(data)
    if not token:
        return jsonify({'error': "Missing Bearer token"}), 401

    itemid = data.get('itemid') or current_app.config.get('ZABBIX_CPU_ITEMID')
    if not itemid:
        return jsonify({'error': "itemid is required"}), 400

    payload = {
        'jsonrpc': '2.0',
        'method': 'history.get',
        'params': {
            'output': 'extend',
            'history': 0,
            'itemids': [str(itemid)],
            'sortfield': 'clock',
            'sortorder': 'DESC',
            'limit': 100,
        },
        'id': 10,
    }
    try:
        body = get_zabbix_service().request(payload, token=token)
    except ZabbixServiceError as e:
        logger.error(f"[CPU] {e}")
        return jsonify({'error': "Failed to fetch CPU data"}), 500

    history = body.get('result') if isinstance(body, dict) else None
    if not history:
        return jsonify({'result': {'history': []}})

    return jsonify({
        'result': {
            'history': [{
                'itemid': str(itemid),
                'name': "CPU Utilization",
                'key': "system.cpu.util",
                'history': history,
            }],
        },
    })


# ============================================================================
# Problems
# ============================================================================

@zabbix_bp.route('/zabbix/problem_table', methods=['POST'])
def problem_table():
    """Current problems merged with their triggers."""
    data = json_body()
    token = resolve_zabbix_auth(data)
    if not token:
        return jsonify({'error': MISSING_TOKEN}), 401

    params = {
        'output': ['eventid', 'objectid', 'clock', 'r_clock', 'name', 'acknowledged', 'severity'],
        'selectTags': ['tag', 'value'],
        'recent': False,
        'sortfield': ['eventid'],
        'sortorder': 'DESC',
    }
    if data.get('groupids'):
        params['groupids'] = data['groupids']
    if data.get('hostids'):
        params['hostids'] = data['hostids']
    if data.get('triggerids'):
        params['objectids'] = data['triggerids']

    service = get_zabbix_service()
    try:
        problems = service.call('problem.get', params, token=token, request_id=1)
        if not isinstance(problems, list) or not problems:
            return jsonify({'result': []})

        triggers = service.call('trigger.get', {
            'output': ['triggerid', 'description', 'priority', 'status', 'comments'],
            'selectHosts': ['hostid', 'name'],
            'selectDependencies': ['triggerid', 'description'],
            'expandDescription': True,
            'triggerids': distinct(p.get('objectid') for p in problems),
        }, token=token, request_id=2)
    except ZabbixAPIError as e:
        return jsonify(e.body if e.body is not None else {'error': e.error}), 502
    except ZabbixServiceError as e:
        logger.error(f"[PROBLEMS] problem_table failed: {e}")
        return jsonify({'error': "Failed to fetch problem table data"}), 500

    return jsonify({'result': merge_problems_with_triggers(problems, triggers or [])})


@zabbix_bp.route('/zabbix/problems', methods=['POST'])
def problems_in_range():
    """Firing triggers that changed within a local date/time range."""
    data = json_body()
    token = resolve_zabbix_auth(data)
    if not token:
        return jsonify({'error': MISSING_TOKEN}), 401

    time_from = local_epoch(data.get('startDate'), data.get('startTime'))
    time_till = local_epoch(data.get('endDate'), data.get('endTime'))
    if time_from is None or time_till is None:
        return jsonify({'error': "Missing date/time range"}), 400

    try:
        triggers = get_zabbix_service().call('trigger.get', {
            'output': ['triggerid', 'description', 'priority', 'lastchange', 'value'],
            'filter': {'value': 1},
            'expandDescription': True,
            'selectHosts': ['hostid', 'host', 'name'],
            'selectGroups': ['groupid', 'name'],
            'recent': True,
            'time_from': time_from,
            'time_till': time_till,
            'sortorder': 'ASC',
        }, token=token)
    except ZabbixAPIError as e:
        return jsonify({'error': e.error}), 403
    except ZabbixServiceError as e:
        logger.error(f"[PROBLEMS] trigger.get error: {e}")
        return jsonify({'error': UNREACHABLE}), 500

    logger.info(f"[PROBLEMS] Priority counts {time_from}-{time_till}: {priority_counts(triggers)}")
    return jsonify({'result': triggers})


@zabbix_bp.route('/top-triggers', methods=['GET'])
def top_triggers():
    """
    Drill-down for the top triggers report.
    No filters: host groups. Group only: its hosts. Otherwise the most
    recent 100 problems grouped by host and trigger.
    """
    token = resolve_zabbix_auth()
    if not token:
        return jsonify({'error': "Missing Bearer token"}), 401

    groupid = request.args.get('groupid')
    hostid = request.args.get('hostid')
    severity = request.args.get('severity')
    service = get_zabbix_service()

    try:
        if not groupid and not hostid and not severity:
            groups = service.call('hostgroup.get', {'output': ['groupid', 'name']}, token=token)
            return jsonify({'groups': groups})

        if groupid and not hostid:
            hosts = service.call('host.get', {
                'output': ['hostid', 'name'],
                'groupids': [groupid],
            }, token=token)
            return jsonify({'hosts': hosts})

        params = {
            'output': 'extend',
            'sortfield': 'eventid',
            'sortorder': 'DESC',
            'limit': 100,
            'selectHosts': ['name'],
            'selectTriggers': ['description', 'priority'],
        }
        if severity:
            params['severities'] = [int(severity)] if severity.isdigit() else []
        if groupid:
            params['groupids'] = [groupid]
        if hostid:
            params['hostids'] = [hostid]

        problems = service.call('problem.get', params, token=token)
    except ZabbixAPIError as e:
        return jsonify({'error': str(e)}), 403
    except ZabbixServiceError as e:
        logger.error(f"[TOP] top-triggers failed: {e}")
        return jsonify({'error': UNREACHABLE}), 500

    return jsonify({'triggers': group_problems(problems, '-')})


@zabbix_bp.route('/zabbix-top-problems', methods=['GET'])
def top_problems():
    """Up to 1000 recent problems grouped by host and trigger."""
    token = resolve_zabbix_auth()
    if not token:
        return jsonify({'error': "No token"}), 401

    try:
        problems = get_zabbix_service().call('problem.get', {
            'output': ['eventid', 'name', 'severity'],
            'selectHosts': ['name'],
            'sortfield': 'eventid',
            'sortorder': 'DESC',
            'limit': 1000,
        }, token=token)
    except ZabbixAPIError as e:
        return jsonify({'error': str(e)}), 403
    except ZabbixServiceError as e:
        logger.error(f"[TOP] top-problems failed: {e}")
        return jsonify({'error': UNREACHABLE}), 500

    return jsonify(group_problems(problems, '||'))


# ============================================================================
# Hosts, host groups, templates and inventory
# ============================================================================

def _call_result(method: str, params, token: str, tag: str):
    """Run one call and wrap the result the way the host routes answer."""
    try:
        return jsonify({'result': get_zabbix_service().call(method, params, token=token)})
    except ZabbixAPIError as e:
        return jsonify({'error': e.error}), 403
    except ZabbixServiceError as e:
        logger.error(f"[{tag}] {method} error: {e}")
        return jsonify({'error': UNREACHABLE}), 500


@zabbix_bp.route('/api_host/api_get_host', methods=['POST'])
def api_get_host():
    data = json_body()
    token = resolve_zabbix_auth(data)
    if not token:
        return jsonify({'error': MISSING_TOKEN}), 400

    groupids = data.get('groupids')
    return _call_result('host.get', {
        'output': 'extend',
        'selectGroups': 'extend',
        'groupids': groupids if isinstance(groupids, list) else [],
    }, token, 'HOSTS')


@zabbix_bp.route('/api_host/api_getdata_host', methods=['POST'])
def api_getdata_host():
    """Hosts of a group with their most recent interface."""
    data = json_body()
    token = resolve_zabbix_auth(data)
    if not token:
        return jsonify({'error': MISSING_TOKEN}), 400

    try:
        hosts = get_zabbix_service().call('host.get', {
            'groupids': data.get('groupid'),
            'output': ['hostid', 'host', 'status', 'active_available', 'monitored_by'],
            'selectInterfaces': ['interfaceid', 'ip', 'dns', 'port', 'type', 'available'],
            'selectTags': ['tag', 'value'],
        }, token=token)
    except ZabbixAPIError as e:
        return jsonify({'error': e.error}), 403
    except ZabbixServiceError as e:
        logger.error(f"[HOSTS] host.get error: {e}")
        return jsonify({'error': UNREACHABLE}), 500

    return jsonify({'result': latest_interface_rows(hosts)})


@zabbix_bp.route('/api_host/api_create_host', methods=['POST'])
def api_create_host():
    """Create a host, filling in default group, tag, macros and inventory."""
    data = json_body()
    token = resolve_zabbix_auth(data)
    if not token:
        return jsonify({'error': MISSING_TOKEN}), 400
    if not data.get('host'):
        return jsonify({'error': "Host name is required"}), 400

    params = build_host_create_params(data)
    logger.info(f"[HOSTS] host.create {params['host']} in groups {params['groups']}")
    try:
        result = get_zabbix_service().call('host.create', params, token=token)
    except ZabbixAPIError as e:
        return jsonify({'error': e.error}), 403
    except ZabbixServiceError as e:
        logger.error(f"[HOSTS] host.create error: {e}")
        return jsonify({'error': UNREACHABLE}), 500

    AuditLog.log(
        AuditLog.EVENT_HOST_CREATED,
        username=session.get('username'),
        details=f"Created host {params['host']}",
        ip_address=get_client_ip(),
        user_agent=get_user_agent()
    )
    return jsonify({'result': result})


def _hostgroup_params(names) -> dict:
    params = {'output': 'extend'}
    if isinstance(names, list) and names:
        params['filter'] = {'name': names}
    return params


@zabbix_bp.route('/api_host/api_host_group', methods=['POST'])
def api_host_group():
    data = json_body()
    return _call_result('hostgroup.get', _hostgroup_params(data.get('names')),
                        resolve_zabbix_auth(data), 'HOSTGROUPS')


@zabbix_bp.route('/api_Latest_data/hostgroup', methods=['POST'])
def latest_data_hostgroup():
    data = json_body()
    token = resolve_zabbix_auth(data)
    if not token:
        return jsonify({'error': "Missing Zabbix auth token."}), 400
    return _call_result('hostgroup.get', _hostgroup_params(data.get('names')), token, 'HOSTGROUPS')


@zabbix_bp.route('/api_host/api_template', methods=['POST'])
def api_template():
    data = json_body()
    return _call_result('template.get', {
        'output': 'extend',
        'selectGroups': 'extend',
        'groupids': data.get('groupids'),
    }, resolve_zabbix_auth(data), 'TEMPLATES')


@zabbix_bp.route('/inventory/get_host', methods=['POST'])
def inventory_get_host():
    """Hosts with OS and serial number inventory fields."""
    data = json_body()
    token = resolve_zabbix_auth(data)
    if not token:
        return jsonify({'error': MISSING_TOKEN}), 400

    try:
        hosts = get_zabbix_service().call('host.get', {
            'groupids': data.get('groupid'),
            'output': ['hostid', 'host', 'name'],
            'selectHostGroups': ['name'],
            'selectInventory': ['os', 'serialno_a'],
            'sortfield': 'host',
            'sortorder': 'ASC',
        }, token=token)
    except ZabbixAPIError as e:
        return jsonify({'error': e.error}), 403
    except ZabbixServiceError as e:
        logger.error(f"[INVENTORY] host.get error: {e}")
        return jsonify({'error': UNREACHABLE}), 500

    return jsonify({'result': inventory_rows(hosts)})


@zabbix_bp.route('/tjsb/get_host', methods=['POST'])
def tjsb_get_host():
    data = json_body()
    params = {'output': ['hostid', 'host', 'name']}
    if data.get('groupids'):
        params['groupids'] = data['groupids']

    try:
        hosts = get_zabbix_service().call('host.get', params, token=resolve_zabbix_auth(data))
    except ZabbixServiceError as e:
        logger.error(f"[HOSTS] get_host error: {e}")
        return jsonify({'error': "Could not fetch hosts"}), 500

    return jsonify({'result': hosts or []})


@zabbix_bp.route('/tjsb/get_item', methods=['POST'])
def tjsb_get_item():
    """Items for the dashboard tiles, with traffic names fixed and values scaled."""
    data = json_body()
    token = resolve_zabbix_auth(data)
    if not token:
        return jsonify({'error': "Missing auth token"}), 400

    groupids = data.get('groupids')
    itemid = data.get('itemid')
    itemids = data.get('itemids')
    if not groupids and not itemid and not itemids:
        return jsonify({'error': "Missing required identifiers (groupids or itemid/itemids)"}), 400

    params = {
        'output': ['itemid', 'hostid', 'key_', 'lastvalue', 'lastclock', 'name', 'units'],
        'sortfield': 'name',
        'selectHosts': ['hostid', 'host', 'name'],
    }
    if groupids:
        params['groupids'] = groupids
    if itemid:
        params['itemids'] = [itemid]
    if itemids:
        params['itemids'] = itemids

    if data.get('name'):
        params['search'] = {'name': data['name']}
        params['searchByAny'] = True
        params['searchWildcardsEnabled'] = True
    elif data.get('key_'):
        params['filter'] = {'key_': data['key_']}

    try:
        items = get_zabbix_service().call('item.get', params, token=token, request_id=2)
    except ZabbixServiceError as e:
        logger.error(f"[ITEMS] item.get error: {e}")
        return jsonify({'error': "Server error fetching items"}), 500

    return jsonify({'result': format_item_rows(items or [])})


@zabbix_bp.route('/tjsb/if_status', methods=['GET'])
def tjsb_if_status():
    """Primary/secondary uplink status per host, hosts with a down link first."""
    token = resolve_zabbix_auth()
    service = get_zabbix_service()

    def oper_status(key, request_id):
        return service.call('item.get', {
            'output': ['itemid', 'hostid', 'lastvalue'],
            'filter': {'key_': key},
            'limit': 100000,
        }, token=token, request_id=request_id)

    try:
        hosts = service.call('host.get', {
            'output': ['hostid', 'host'],
            'selectGroups': ['groupid', 'name'],
        }, token=token)
        primary = oper_status('ifOperStatus[1]', 2)
        secondary = oper_status('ifOperStatus[2]', 3)
    except ZabbixServiceError as e:
        logger.error(f"[IFSTATUS] {e}")
        return jsonify({'error': "Server error"}), 500

    return jsonify(interface_status_rows(hosts or [], primary or [], secondary or []))


# ============================================================================
# Items, history and users (dashboard action log)
# ============================================================================

@zabbix_bp.route('/dashboard_action_log/get_item', methods=['POST'])
def dashboard_get_item():
    data = json_body()
    token = resolve_zabbix_auth(data)
    if not token:
        return jsonify({'error': MISSING_TOKEN}), 400
    if not data.get('hostids'):
        return jsonify({'error': "Missing hostids"}), 400

    return _call_result('item.get', {
        'output': 'extend',
        'hostids': _as_list(data['hostids']),
        'sortfield': 'name',
    }, token, 'ITEMS')


@zabbix_bp.route('/dashboard_action_log/get_item_pie_chart', methods=['POST'])
def dashboard_get_item_pie_chart():
    """Items of the given hosts grouped by key, in request key order."""
    data = json_body()
    token = resolve_zabbix_auth(data)
    if not token:
        return jsonify({'error': MISSING_TOKEN}), 400

    hostids = _as_list(data.get('hostids'))
    keys = _as_list(data.get('key_'))
    if not hostids or not hostids[0]:
        return jsonify({'error': "Missing hostids"}), 400
    if not keys or not keys[0]:
        return jsonify({'error': "Missing item key_"}), 400

    try:
        items = get_zabbix_service().call('item.get', {
            'output': 'extend',
            'hostids': hostids,
            'filter': {'key_': keys},
            'sortfield': 'name',
        }, token=token)
    except ZabbixAPIError as e:
        return jsonify({'error': e.error}), 403
    except ZabbixServiceError as e:
        logger.error(f"[ITEMS] item.get error: {e}")
        return jsonify({'error': "Server error: Unable to reach Zabbix API"}), 500

    return jsonify({'result': group_items_by_key(items, keys)})


@zabbix_bp.route('/dashboard_action_log/history_get', methods=['POST'])
def dashboard_history_get():
    """
    History of items in ascending time order.
    With startDate/startTime/endDate/endTime the range is taken from those
    (local time); without them the last hour is returned.
    """
    data = json_body()
    token = resolve_zabbix_auth(data)
    if not token:
        return jsonify({'error': MISSING_TOKEN}), 401

    itemids = data.get('itemids')
    if not itemids:
        return jsonify({'error': "Missing itemids"}), 400

    range_fields = [data.get(k) for k in ('startDate', 'startTime', 'endDate', 'endTime')]
    if all(range_fields):
        time_from = local_epoch(range_fields[0], range_fields[1])
        time_till = local_epoch(range_fields[2], range_fields[3])
        if time_from is None or time_till is None:
            return jsonify({'error': "Invalid date/time range"}), 400
    else:
        time_from, time_till = last_hour()

    if time_from >= time_till:
        return jsonify({'error': "Invalid time range"}), 400

    history = data.get('history', 0)
    try:
        result = get_zabbix_service().call('history.get', {
            'output': 'extend',
            'history': history,
            'itemids': _as_list(itemids),
            'time_from': time_from,
            'time_till': time_till,
            'sortfield': 'clock',
            'sortorder': 'ASC',
        }, token=token)
    except ZabbixAPIError as e:
        return jsonify({'error': e.error}), 403
    except ZabbixServiceError as e:
        logger.error(f"[HISTORY] history.get error: {e}")
        return jsonify({'error': UNREACHABLE}), 500

    return jsonify({
        'result': result,
        'meta': {
            'itemids': itemids,
            'history': history,
            'time_from': time_from,
            'time_till': time_till,
            'total_points': len(result),
        },
    })


@zabbix_bp.route('/dashboard_action_log/user_get', methods=['POST'])
def dashboard_user_get():
    data = json_body()
    token = resolve_zabbix_auth(data)
    if not token:
        return jsonify({'error': MISSING_TOKEN}), 400
    return _call_result('user.get', {'output': 'extend'}, token, 'USERS')


# ============================================================================
# Network maps
# ============================================================================

def _map_call(method: str, params):
    try:
        body = get_zabbix_service().request({
            'jsonrpc': '2.0',
            'method': method,
            'params': params,
            'id': 1,
        }, token=resolve_zabbix_auth())
        return jsonify(body)
    except ZabbixServiceError as e:
        logger.error(f"[MAPS] {method} error: {e}")
        return jsonify({'error': str(e) or "Internal error"}), 500


@zabbix_bp.route('/zabbix/maps', methods=['GET'])
def maps_get():
    params = {'output': 'extend', 'selectSelements': 'extend', 'selectLinks': 'extend'}
    if request.args.get('id'):
        params['sysmapids'] = [request.args['id']]
    return _map_call('map.get', params)


@zabbix_bp.route('/zabbix/maps', methods=['POST'])
def maps_create():
    AuditLog.log(AuditLog.EVENT_MAP_CHANGED, username=session.get('username'),
                 details="map.create", ip_address=get_client_ip(), user_agent=get_user_agent())
    return _map_call('map.create', json_body())


@zabbix_bp.route('/zabbix/maps', methods=['PUT'])
def maps_update():
    AuditLog.log(AuditLog.EVENT_MAP_CHANGED, username=session.get('username'),
                 details="map.update", ip_address=get_client_ip(), user_agent=get_user_agent())
    return _map_call('map.update', json_body())


@zabbix_bp.route('/zabbix/maps', methods=['DELETE'])
def maps_delete():
    map_id = request.args.get('id')
    if not map_id:
        return jsonify({'error': "Missing map ID"}), 400
    AuditLog.log(AuditLog.EVENT_MAP_CHANGED, username=session.get('username'),
                 details=f"map.delete {map_id}", ip_address=get_client_ip(), user_agent=get_user_agent())
    return _map_call('map.delete', [map_id])


@zabbix_bp.route('/zabbix/map-data', methods=['GET'])
def map_data():
    """A map with the hosts it shows and their current problems."""
    map_id = request.args.get('id')
    if not map_id:
        return jsonify({'error': "Missing map ID"}), 400

    token = resolve_zabbix_auth()
    service = get_zabbix_service()
    try:
        maps = service.call('map.get', {
            'sysmapids': [map_id],
            'output': 'extend',
            'selectSelements': 'extend',
            'selectLinks': 'extend',
        }, token=token)
        if not maps:
            return jsonify({'error': "Map not found"}), 404

        sysmap = maps[0]
        host_ids = map_host_ids(sysmap)
        hosts, problems = [], []
        if host_ids:
            hosts = service.call('host.get', {
                'hostids': host_ids,
                'output': ['hostid', 'name', 'status'],
                'selectInterfaces': ['ip'],
            }, token=token)
            problems = service.call('problem.get', {
                'hostids': host_ids,
                'output': 'extend',
            }, token=token)
    except ZabbixServiceError as e:
        logger.error(f"[MAPS] map-data error: {e}")
        return jsonify({'error': str(e) or "Internal error"}), 500

    return jsonify({'map': sysmap, 'hosts': hosts, 'problems': problems})
