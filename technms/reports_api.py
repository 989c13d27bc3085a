"""
Report routes: interface summary, system report exports, event report
and problem acknowledgement.
"""

from datetime import datetime, timezone
import json
import logging
import os
import time

from flask import Blueprint, current_app, jsonify, session

from .auth import get_client_ip, get_user_agent, resolve_zabbix_auth
from .csv_report import latest_file, read_csv_file, write_csv_rows
from .models import AuditLog
from .reports import (
    acknowledge_action, average_rows, build_event_rows, is_epoch, last_hour, numeric_values, speed_rows,
)
from .security import InputValidator, json_body
from .zabbix_api import UNREACHABLE, get_zabbix_service
from .zabbix_service import ZabbixAPIError, ZabbixServiceError

logger = logging.getLogger('gunicorn.error')

reports_bp = Blueprint('reports', __name__)

SPEED_ITEM_NAME = 'Interface ["GigabitEthernet0/0/0"]: Speed'
SYSTEM_REPORT_ITEMS = ["Memory utilization", "CPU utilization"]
SYSTEM_REPORT_DAYS = 15
SYSTEM_REPORT_HEADERS = ["hostid", "hostname", "name", "avg"]
STATUS_FILENAME = 'system_report_status.json'
EVENT_REPORT_LIMIT = 500


# ============================================================================
# System report generation (shared with the CLI)
# ============================================================================

def _write_status(data_dir: str, status: str, progress: int, **extra) -> None:
    os.makedirs(data_dir, exist_ok=True)
    data = {
        'status': status,
        'progress': progress,
        'updatedAt': datetime.now(timezone.utc).isoformat(),
    }
    data.update(extra)
    with open(os.path.join(data_dir, STATUS_FILENAME), 'w', encoding='utf-8') as f:
        json.dump(data, f)


def read_status(data_dir: str) -> dict:
    path = os.path.join(data_dir, STATUS_FILENAME)
    if not os.path.exists(path):
        return {'status': "IDLE", 'progress': 0}
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def generate_system_report(service, token: str, groupids, data_dir: str, now: float = None) -> dict:
    """
    Average memory and CPU utilization of every host in the groups over
    the last 15 days, written to history_<timestamp>.csv in data_dir.
    Progress goes to system_report_status.json while the report runs.
    """
    time_till = int(now if now is not None else time.time())
    time_from = time_till - SYSTEM_REPORT_DAYS * 24 * 60 * 60

    _write_status(data_dir, "RUNNING", 0)
    rows = []
    try:
        for index, item_name in enumerate(SYSTEM_REPORT_ITEMS):
            items = service.call('item.get', {
                'output': ['itemid', 'hostid', 'name'],
                'groupids': groupids,
                'search': {'name': item_name},
                'searchByAny': True,
                'selectHosts': ['name'],
            }, token=token)

            history = {}
            for item in items or []:
                try:
                    points = service.call('history.get', {
                        'output': ['value'],
                        'itemids': [item['itemid']],
                        'history': 0,
                        'time_from': time_from,
                        'time_till': time_till,
                        'sortfield': 'clock',
                        'sortorder': 'DESC',
                    }, token=token, request_id=2)
                except ZabbixAPIError as e:
                    logger.warning(f"[REPORT] history.get failed for item {item.get('itemid')}: {e}")
                    continue
                history[item['itemid']] = numeric_values(points or [])

            rows.extend(average_rows(items or [], history, item_name))
            _write_status(data_dir, "RUNNING", int((index + 1) * 100 / len(SYSTEM_REPORT_ITEMS)))
    except ZabbixServiceError as e:
        _write_status(data_dir, "FAILED", 0, error=str(e))
        raise

    stamp = datetime.fromtimestamp(time_till).strftime('%Y%m%d_%H%M%S')
    file_name = f'history_{stamp}.csv'
    write_csv_rows(os.path.join(data_dir, file_name), SYSTEM_REPORT_HEADERS, rows)
    _write_status(data_dir, "DONE", 100, fileName=file_name)
    logger.info(f"[REPORT] System report {file_name} written with {len(rows)} rows")

    return {
        'fromDate': datetime.fromtimestamp(time_from, tz=timezone.utc).isoformat(),
        'toDate': datetime.fromtimestamp(time_till, tz=timezone.utc).isoformat(),
        'fileName': file_name,
        'result': rows,
    }


# ============================================================================
# Summary report
# ============================================================================

@reports_bp.route('/api_summary_report/get_summary_report', methods=['POST'])
def get_summary_report():
    """Interface speed per host in whole Mbps."""
    data = json_body()
    token = resolve_zabbix_auth(data)
    if not token:
        return jsonify({'error': "Missing auth token"}), 400
    valid, groupids, error = InputValidator.id_list(data.get('groupids'), "groupids")
    if not valid:
        return jsonify({'error': error}), 400

    try:
        items = get_zabbix_service().call('item.get', {
            'output': ['itemid', 'hostid', 'lastvalue', 'name'],
            'groupids': groupids,
            'search': {'name': SPEED_ITEM_NAME},
            'searchByAny': True,
            'searchWildcardsEnabled': True,
            'selectHosts': ['hostid', 'name'],
        }, token=token)
    except ZabbixServiceError as e:
        logger.error(f"[REPORT] Speed items error: {e}")
        return jsonify({'error': "Server error fetching speed data"}), 500

    return jsonify({'result': speed_rows(items or [])})


@reports_bp.route('/api_summary_report/get_item_summary', methods=['POST'])
def get_item_summary():
    data = json_body()
    token = resolve_zabbix_auth(data)
    if not token or not data.get('hostid') or not data.get('items'):
        return jsonify({'error': "Missing required parameters"}), 400

    try:
        items = get_zabbix_service().call('item.get', {
            'output': ['itemid', 'name'],
            'hostids': data['hostid'],
            'search': {'name': data['items']},
            'searchByAny': True,
            'sortfield': 'name',
        }, token=token)
    except ZabbixServiceError as e:
        logger.error(f"[REPORT] item.get error: {e}")
        return jsonify({'error': "Failed to fetch interface items"}), 500

    return jsonify({'result': items or []})


@reports_bp.route('/api_summary_report/get_history_summary', methods=['POST'])
def get_history_summary():
    """History for items; the range defaults to the last hour."""
    data = json_body()
    token = resolve_zabbix_auth(data)
    if not token:
        return jsonify({'error': "Missing Zabbix auth token"}), 401

    valid, itemids, error = InputValidator.id_list(data.get('itemids'), "itemids")
    if not valid:
        return jsonify({'error': error}), 400

    default_from, default_till = last_hour()
    time_from = data.get('time_from')
    time_till = data.get('time_till')
    time_from = time_from if is_epoch(time_from) else default_from
    time_till = time_till if is_epoch(time_till) else default_till
    if time_from >= time_till:
        return jsonify({'error': "Invalid time range"}), 400

    history = data.get('history', 0)
    try:
        result = get_zabbix_service().call('history.get', {
            'output': 'extend',
            'itemids': itemids,
            'time_from': time_from,
            'time_till': time_till,
            'sortfield': 'clock',
            'sortorder': 'DESC',
        }, token=token)
    except ZabbixAPIError as e:
        return jsonify({'error': e.error}), 403
    except ZabbixServiceError as e:
        logger.error(f"[REPORT] history.get error: {e}")
        return jsonify({'error': UNREACHABLE}), 500

    return jsonify({
        'result': result,
        'meta': {
            'itemids': itemids,
            'time_from': time_from,
            'time_till': time_till,
            'history': history,
            'total_points': len(result),
        },
    })


# ============================================================================
# System report data
# ============================================================================

@reports_bp.route('/api_system_report_data/get_history_data', methods=['POST'])
def get_history_data():
    data = json_body()
    token = resolve_zabbix_auth(data)
    if not token:
        return jsonify({'error': "Missing auth token"}), 400
    valid, groupids, error = InputValidator.id_list(data.get('groupids'), "groupids")
    if not valid:
        return jsonify({'error': error}), 400

    try:
        report = generate_system_report(
            get_zabbix_service(), token, groupids, current_app.config['DATA_DIR']
        )
    except ZabbixServiceError as e:
        logger.error(f"[REPORT] System report error: {e}")
        return jsonify({'error': "Server error fetching system report"}), 500

    return jsonify(report)


@reports_bp.route('/api_system_report_data/readCsv', methods=['GET'])
def read_system_report_csv():
    """The newest history_*.csv export."""
    try:
        path = latest_file(current_app.config['DATA_DIR'], 'history_', '.csv')
        if not path:
            return jsonify({'headers': [], 'rows': []})

        headers, rows = read_csv_file(path, strip_values=True)
        return jsonify({
            'ok': True,
            'fileName': os.path.basename(path),
            'headers': headers if rows else [],
            'rows': rows,
        })
    except OSError as e:
        logger.error(f"[REPORT] readCsv failed: {e}")
        return jsonify({'ok': False, 'headers': [], 'rows': [], 'message': str(e)}), 500


@reports_bp.route('/api_system_report_data/readStatus', methods=['GET'])
def read_system_report_status():
    try:
        return jsonify(read_status(current_app.config['DATA_DIR']))
    except (OSError, ValueError) as e:
        logger.error(f"[REPORT] readStatus failed: {e}")
        return jsonify({'status': "ERROR", 'progress': 0, 'message': str(e)}), 500


# ============================================================================
# Event report and problem updates
# ============================================================================

@reports_bp.route('/reports/sysreport', methods=['GET'])
def event_report():
    """The last 500 events with the item behind each trigger."""
    token = resolve_zabbix_auth()
    service = get_zabbix_service()
    try:
        events = service.call('event.get', {
            'output': 'extend',
            'source': 0,
            'object': 0,
            'selectHosts': ['hostid', 'name'],
            'selectAcknowledges': ['message'],
            'sortfield': ['clock', 'eventid'],
            'sortorder': 'DESC',
            'limit': EVENT_REPORT_LIMIT,
        }, token=token)

        trigger_ids = list({e.get('objectid') for e in events or [] if e.get('objectid')})
        triggers = []
        if trigger_ids:
            triggers = service.call('trigger.get', {
                'output': ['triggerid'],
                'triggerids': trigger_ids,
                'selectFunctions': ['itemid'],
            }, token=token, request_id=2)
    except ZabbixAPIError as e:
        return jsonify({'error': e.error}), 403
    except ZabbixServiceError as e:
        logger.error(f"[REPORT] Event report error: {e}")
        return jsonify({'error': UNREACHABLE}), 500

    return jsonify(build_event_rows(events or [], triggers or []))


@reports_bp.route('/reports/sysreport', methods=['POST'])
def event_report_version():
    try:
        return jsonify({'result': get_zabbix_service().version()})
    except ZabbixServiceError as e:
        logger.error(f"[REPORT] apiinfo.version error: {e}")
        return jsonify({'error': UNREACHABLE}), 500


@reports_bp.route('/reports/update-problem', methods=['POST'])
def update_problem():
    """Acknowledge, comment on, close or re-rank a problem event."""
    data = json_body()
    eventid = data.get('eventid')
    if not eventid:
        return jsonify({'error': "eventid is required"}), 400

    message = data.get('message')
    severity = data.get('severity')
    action = acknowledge_action(message, data.get('closeProblem'), severity)
    if not action:
        return jsonify({'error': "Nothing to update"}), 400

    params = {'eventids': eventid, 'action': action}
    if isinstance(message, str) and message.strip():
        params['message'] = message.strip()
    if severity is not None and severity != "":
        valid, value, error = InputValidator.integer(severity, 0, 5, "severity")
        if not valid:
            return jsonify({'error': error}), 400
        params['severity'] = value

    try:
        result = get_zabbix_service().call('event.acknowledge', params, token=resolve_zabbix_auth(data))
    except ZabbixAPIError as e:
        return jsonify({'error': e.error}), 403
    except ZabbixServiceError as e:
        logger.error(f"[REPORT] event.acknowledge error: {e}")
        return jsonify({'error': UNREACHABLE}), 500

    AuditLog.log(
        AuditLog.EVENT_PROBLEM_UPDATED,
        username=session.get('username'),
        details=f"Event {eventid} action {action}",
        ip_address=get_client_ip(),
        user_agent=get_user_agent()
    )
    return jsonify({'result': result})
