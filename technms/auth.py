"""
Authentication helpers.
Console users authenticate against Zabbix; the resulting API token (and the
DSM session id, once connected) are kept encrypted in the Flask session.
"""

from functools import wraps
from typing import Optional

from flask import session, redirect, url_for, request, flash, current_app, jsonify

from .security import encrypt_value, decrypt_value

SESSION_ZABBIX_TOKEN = 'zabbix_token'
SESSION_SYNOLOGY_SID = 'synology_sid'


def get_client_ip() -> str:
    """
    Client address for audit entries and the allowlist.
    Forwarded headers are honoured only through ProxyFix (TRUST_PROXY).
    """
    return request.remote_addr or 'unknown'


def get_user_agent() -> str:
    """Get the client's user agent string (truncated)."""
    ua = request.headers.get('User-Agent', 'unknown')
    return ua[:256] if len(ua) > 256 else ua


def check_ip_allowed(ip: str) -> bool:
    """Check if the IP address is allowed (if allowlist is configured)."""
    allowed_ips = current_app.config.get('ALLOWED_IPS', '')
    if not allowed_ips:
        return True  # No allowlist configured, allow all

    allowed_list = [x.strip() for x in allowed_ips.split(',') if x.strip()]
    if not allowed_list:
        return True

    return ip in allowed_list


# ============================================================================
# Session-held upstream credentials
# ============================================================================

def _store_secret(name: str, value: str) -> None:
    session[name] = encrypt_value(value, current_app.config['SECRET_KEY'])


def _load_secret(name: str) -> Optional[str]:
    stored = session.get(name)
    if not stored:
        return None
    return decrypt_value(stored, current_app.config['SECRET_KEY']) or None


def store_zabbix_token(token: str, username: str = None) -> None:
    _store_secret(SESSION_ZABBIX_TOKEN, token)
    if username:
        session['username'] = username
    session.permanent = True


def get_session_zabbix_token() -> Optional[str]:
    return _load_secret(SESSION_ZABBIX_TOKEN)


def store_synology_sid(sid: str) -> None:
    _store_secret(SESSION_SYNOLOGY_SID, sid)


def get_synology_sid() -> Optional[str]:
    return _load_secret(SESSION_SYNOLOGY_SID)


def clear_synology_sid() -> None:
    session.pop(SESSION_SYNOLOGY_SID, None)


def bearer_token() -> Optional[str]:
    """Token from an 'Authorization: Bearer <token>' header, if present."""
    header = request.headers.get('Authorization', '')
    if header.startswith('Bearer '):
        token = header[len('Bearer '):].strip()
        return token or None
    return None


def resolve_zabbix_auth(data: dict = None) -> Optional[str]:
    """
    Zabbix token for the current request.
    Order: body 'auth', Authorization header, login session, ZABBIX_API_TOKEN.
    """
    if isinstance(data, dict) and data.get('auth'):
        return str(data['auth'])
    return (
        bearer_token()
        or get_session_zabbix_token()
        or current_app.config.get('ZABBIX_API_TOKEN')
        or None
    )


# ============================================================================
# Decorators
# ============================================================================

def login_required(f):
    """Decorator to require a logged-in console session (HTML pages)."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not get_session_zabbix_token():
            session.pop(SESSION_ZABBIX_TOKEN, None)
            flash('Please log in to access this page.', 'warning')
            return redirect(url_for('auth.login', next=request.url))
        return f(*args, **kwargs)
    return decorated_function


def synology_session_required(f):
    """Decorator for DSM routes; passes the decrypted sid as 'sid'."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        sid = get_synology_sid()
        if not sid:
            return jsonify({'success': False, 'error': 'Not logged in to Synology DSM'}), 401
        return f(*args, sid=sid, **kwargs)
    return decorated_function
