"""
Synology DSM routes. The DSM session id obtained at login is kept
encrypted in the console session and sent as _sid on every call.
"""

import logging

from flask import Blueprint, current_app, jsonify, request, session

from .auth import (
    clear_synology_sid, get_client_ip, get_synology_sid, get_user_agent,
    store_synology_sid, synology_session_required,
)
from .models import AuditLog
from .security import limiter, json_body
from .synology_service import SynologyAuthError, SynologyService, SynologyServiceError

logger = logging.getLogger('gunicorn.error')

synology_bp = Blueprint('synology', __name__)


def get_synology_service() -> SynologyService:
    return current_app.extensions['technms.synology']


def _dsm_error(e: Exception, code: int = 500):
    return jsonify({'success': False, 'error': {'code': code, 'message': str(e)}}), code


def _entry(api: str, version: int, method: str, sid: str, **params):
    """Run a DSM call and return its body, or a 500 error body."""
    try:
        return jsonify(get_synology_service().entry(api, version, method, sid=sid, **params))
    except SynologyServiceError as e:
        logger.error(f"[SYNOLOGY] {api}.{method} failed: {e}")
        return _dsm_error(e)


# ============================================================================
# Session
# ============================================================================

@synology_bp.route('/synology/login', methods=['POST'])
@synology_bp.route('/synology-login', methods=['POST'])
@limiter.limit("10 per minute")
def synology_login():
    """Log in to DSM and keep the sid in the console session."""
    data = json_body()
    user = data.get('user')
    password = data.get('pass')
    if not user or not password:
        return jsonify({'success': False, 'error': "Missing username or password"}), 400

    try:
        sid = get_synology_service().login(user, password)
    except SynologyAuthError as e:
        AuditLog.log(
            AuditLog.EVENT_SYNOLOGY_LOGIN,
            username=user,
            details="DSM refused the login",
            ip_address=get_client_ip(),
            user_agent=get_user_agent(),
            success=False
        )
        return jsonify({'success': False, 'error': "DSM login failed", 'dsm': e.body}), 401
    except SynologyServiceError as e:
        logger.error(f"[SYNOLOGY] Login error: {e}")
        return jsonify({'success': False, 'error': "Network error reaching DSM"}), 502

    store_synology_sid(sid)
    AuditLog.log(
        AuditLog.EVENT_SYNOLOGY_LOGIN,
        username=user,
        ip_address=get_client_ip(),
        user_agent=get_user_agent()
    )
    return jsonify({'success': True})


@synology_bp.route('/synology/logout', methods=['POST'])
def synology_logout():
    sid = get_synology_sid()
    body = {'success': True}
    if sid:
        try:
            body = get_synology_service().logout(sid)
        except SynologyServiceError as e:
            clear_synology_sid()
            return jsonify({'success': False, 'error': str(e)}), 500

        AuditLog.log(
            AuditLog.EVENT_SYNOLOGY_LOGOUT,
            username=session.get('username'),
            ip_address=get_client_ip(),
            user_agent=get_user_agent()
        )

    clear_synology_sid()
    return jsonify(body)


@synology_bp.route('/synology/ping', methods=['GET'])
def synology_ping():
    """Reachability check; any HTTP answer from DSM counts."""
    try:
        status, body = get_synology_service().ping()
    except SynologyServiceError as e:
        return jsonify({'ok': False, 'error': str(e)}), 500
    return jsonify({'ok': True, 'status': status, 'data': body})


# ============================================================================
# Users, shares, files and packages
# ============================================================================

@synology_bp.route('/synology/users', methods=['GET'])
@synology_bp.route('/synology-users', methods=['GET'])
@synology_session_required
def synology_users(sid):
    return _entry('SYNO.Core.User', 1, 'list', sid)


@synology_bp.route('/synology/shares', methods=['GET'])
@synology_session_required
def synology_shares(sid):
    return _entry('SYNO.Core.Share', 1, 'list', sid)


@synology_bp.route('/synology/acl', methods=['GET'])
@synology_session_required
def synology_acl(sid):
    """ACL of a shared folder path."""
    return _entry('SYNO.Core.ACL', 1, 'get', sid, path=request.args.get('path'))


@synology_bp.route('/synology/files', methods=['POST'])
def synology_files():
    """List a folder; an explicit sid in the body wins over the session."""
    data = json_body()
    sid = data.get('sid') or get_synology_sid()
    if not sid:
        return jsonify({'success': False, 'error': "Not logged in to Synology DSM"}), 401
    return _entry('SYNO.FileStation.List', 2, 'list', sid, folder_path=data.get('path'))


@synology_bp.route('/synology-apps', methods=['GET'])
@synology_session_required
def synology_apps(sid):
    return _entry('SYNO.Core.Package', 2, 'list', sid)


@synology_bp.route('/synology-permissions/group', methods=['POST'])
@synology_session_required
def synology_group_permissions(sid):
    username = json_body().get('username')
    if not username:
        return jsonify({'success': False, 'error': {'code': 400, 'message': "Username is required"}}), 400
    return _entry('SYNO.Core.Permission.Group', 1, 'get', sid, user=username)
