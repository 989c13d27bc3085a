"""
SD-WAN routes: vManage BFD polling with alert mail, the tunnel CSV report
and site link records.
"""

import logging

from flask import Blueprint, current_app, jsonify

from .models import AuditLog, LinkRecord
from .security import json_body
from .tunnel_report import TunnelReportError, generate_tunnel_report, read_tunnel_report
from .vmanage_service import VManageServiceError, collect_down_sessions, send_bfd_alert

logger = logging.getLogger('gunicorn.error')

sdwan_bp = Blueprint('sdwan', __name__)

LINK_RECORD_FIELDS = ('hostname', 'reachability', 'siteState', 'generatedAtUTC', 'generatedAtIST')


def get_vmanage_service():
    return current_app.extensions['technms.vmanage']


# ============================================================================
# vManage tunnels
# ============================================================================

@sdwan_bp.route('/sdwan/tunnels', methods=['POST'])
def sdwan_tunnels():
    """Poll BFD sessions and mail one alert when any session is down."""
    try:
        result = get_vmanage_service().poll()
    except VManageServiceError as e:
        logger.error(f"[SDWAN] vManage poll failed: {e}")
        return jsonify({'success': False, 'error': str(e), 'detail': e.detail}), 500

    down = collect_down_sessions(result['bfdSessions'])
    alerts_sent = 0
    if down:
        config = current_app.config
        try:
            sent = send_bfd_alert(
                down,
                config.get('SMTP_HOST'),
                port=config.get('SMTP_PORT', 587),
                user=config.get('SMTP_USER'),
                password=config.get('SMTP_PASS'),
                mail_to=config.get('ALERT_MAIL_TO'),
            )
        except OSError as e:
            # smtplib errors are OSError subclasses
            logger.error(f"[SDWAN] Alert mail failed: {e}")
            sent = False

        if sent:
            alerts_sent = len(down)
            AuditLog.log(
                AuditLog.EVENT_SDWAN_ALERT,
                details=f"BFD alert mailed for {alerts_sent} down sessions"
            )

    result['alertsSent'] = alerts_sent
    return jsonify({'success': True, 'api': result})


# ============================================================================
# Tunnel CSV report
# ============================================================================

@sdwan_bp.route('/sdwan/linkRecordTunnel', methods=['GET'])
def link_record_tunnel():
    """Diff the tunnel snapshot against the last known states and extend the CSV."""
    config = current_app.config
    try:
        summary = generate_tunnel_report(
            config.get('SDWAN_TUNNELS_FILE'),
            config['DATA_DIR'],
            config.get('BRANCHES_FILE'),
        )
    except TunnelReportError as e:
        logger.error(f"[SDWAN] {e}")
        return jsonify({'success': False, 'error': str(e)}), 500
    except OSError as e:
        logger.error(f"[SDWAN] Tunnel report I/O error: {e}")
        return jsonify({'success': False, 'error': "Tunnel report could not be written"}), 500

    return jsonify(dict(success=True, **summary))


@sdwan_bp.route('/sdwan/readCsv', methods=['GET'])
def read_tunnel_csv():
    try:
        return jsonify(read_tunnel_report(current_app.config['DATA_DIR']))
    except OSError as e:
        logger.error(f"[SDWAN] readCsv failed: {e}")
        return jsonify({'success': False, 'rows': [], 'error': str(e)}), 500


# ============================================================================
# Link records
# ============================================================================

@sdwan_bp.route('/link-records', methods=['GET'])
def list_link_records():
    return jsonify({
        'success': True,
        'data': [r.to_dict() for r in LinkRecord.newest_first()],
    })


@sdwan_bp.route('/link-records', methods=['POST'])
def create_link_record():
    """Store a site state change; identical consecutive snapshots are skipped."""
    data = json_body()
    system_ip = str(data.get('systemIp') or "NA")

    values = {k: (data.get(k) or "NA") for k in LINK_RECORD_FIELDS}
    down_tunnels = data.get('downTunnels') if isinstance(data.get('downTunnels'), list) else []

    snapshot_key = data.get('snapshotKey') or LinkRecord.build_snapshot_key(
        values['siteState'], values['reachability'], down_tunnels
    )

    record = LinkRecord.record_if_changed(
        system_ip,
        snapshot_key,
        hostname=values['hostname'],
        reachability=values['reachability'],
        site_state=values['siteState'],
        generated_at_utc=values['generatedAtUTC'],
        generated_at_ist=values['generatedAtIST'],
        down_tunnels=down_tunnels,
        event_type=data.get('eventType') or "STATE_CHANGE",
    )
    if record is None:
        return jsonify({
            'success': True,
            'skipped': True,
            'message': "No change detected, skipped insert",
        })

    logger.info(f"[SDWAN] Link record {record.id} for {system_ip}: {record.site_state}")
    return jsonify({'success': True, 'data': record.to_dict()})
