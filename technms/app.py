"""
TechNMS Console - Web Application
Application factory, page routes, error handlers and CLI commands.
"""

import json
import os
import secrets
from datetime import datetime, timedelta

import click
from flask import (
    Flask, Blueprint, current_app, flash, jsonify, redirect, render_template, request, session, url_for,
)
from flask_wtf.csrf import CSRFProtect
from werkzeug.middleware.proxy_fix import ProxyFix

from . import __version__
from .auth import (
    check_ip_allowed, get_client_ip, get_session_zabbix_token, get_user_agent, login_required, store_zabbix_token,
)
from .dashboard import dashboard_bp, socketio
from .models import db, AuditLog, AppSettings
from .reports_api import reports_bp, generate_system_report
from .sdwan_api import sdwan_bp
from .security import (
    limiter, add_security_headers, rate_limit_exceeded_handler, sanitize_string, validate_url, InputValidator,
)
from .synology_api import synology_bp
from .synology_service import SynologyService
from .vmanage_service import VManageService
from .zabbix_api import zabbix_bp
from .zabbix_service import ZabbixService, ZabbixServiceError, ZabbixAPIError


def _env_bool(name: str, default: str = 'false') -> bool:
    return os.environ.get(name, default).lower() == 'true'


def _upstream_url(value: str) -> str:
    """Normalize a configured base URL; unusable values are kept as given."""
    if not value:
        return ''
    valid, result = validate_url(value)
    return result if valid else value


def create_app(config=None):
    """Application factory."""
    base_dir = os.path.dirname(os.path.abspath(__file__))

    app = Flask(
        __name__,
        template_folder=os.path.join(base_dir, 'templates'),
    )

    # Configuration
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', secrets.token_hex(32))
    app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///data/technms.db')
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['DATA_DIR'] = os.environ.get('DATA_DIR', 'data')

    # Session configuration
    app.config['SESSION_COOKIE_SECURE'] = _env_bool('SESSION_COOKIE_SECURE')
    app.config['SESSION_COOKIE_HTTPONLY'] = True
    samesite = os.environ.get('SESSION_COOKIE_SAMESITE', 'Lax')
    app.config['SESSION_COOKIE_SAMESITE'] = samesite if samesite != 'None' else None
    app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(
        seconds=int(os.environ.get('SESSION_LIFETIME', 1800))
    )

    app.config['TRUST_PROXY'] = _env_bool('TRUST_PROXY', 'true')
    app.config['ALLOWED_IPS'] = os.environ.get('ALLOWED_IPS', '')

    # Upstream APIs
    app.config['ZABBIX_URL'] = os.environ.get('ZABBIX_URL', '')
    app.config['ZABBIX_VERIFY_SSL'] = _env_bool('ZABBIX_VERIFY_SSL')
    app.config['ZABBIX_TIMEOUT'] = int(os.environ.get('ZABBIX_TIMEOUT', 15))
    app.config['ZABBIX_API_TOKEN'] = os.environ.get('ZABBIX_API_TOKEN', '')
    app.config['ZABBIX_CPU_ITEMID'] = os.environ.get('ZABBIX_CPU_ITEMID', '')
    app.config['SYNOLOGY_URL'] = os.environ.get('SYNOLOGY_URL', '')
    app.config['SYNOLOGY_VERIFY_SSL'] = _env_bool('SYNOLOGY_VERIFY_SSL')
    app.config['VMANAGE_URL'] = os.environ.get('VMANAGE_URL', '')
    app.config['VMANAGE_USER'] = os.environ.get('VMANAGE_USER', '')
    app.config['VMANAGE_PASS'] = os.environ.get('VMANAGE_PASS', '')

    # Alert mail and SD-WAN files
    app.config['SMTP_HOST'] = os.environ.get('SMTP_HOST', '')
    app.config['SMTP_PORT'] = int(os.environ.get('SMTP_PORT', 587))
    app.config['SMTP_USER'] = os.environ.get('SMTP_USER', '')
    app.config['SMTP_PASS'] = os.environ.get('SMTP_PASS', '')
    app.config['ALERT_MAIL_TO'] = os.environ.get('ALERT_MAIL_TO', '')
    app.config['SDWAN_TUNNELS_FILE'] = os.environ.get('SDWAN_TUNNELS_FILE', 'data/sdwan_tunnels.json')
    app.config['BRANCHES_FILE'] = os.environ.get('BRANCHES_FILE', '')

    # Apply any passed config
    if config:
        app.config.update(config)

    # Proxy configuration - trust X-Forwarded-* headers
    if app.config['TRUST_PROXY']:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=2, x_proto=1, x_host=1, x_port=1, x_prefix=1)

    # Initialize extensions
    db.init_app(app)
    csrf = CSRFProtect(app)
    limiter.init_app(app)
    socketio.init_app(app)

    # Upstream clients, one per application
    app.extensions['technms.zabbix'] = ZabbixService(
        _upstream_url(app.config['ZABBIX_URL']),
        verify_ssl=app.config['ZABBIX_VERIFY_SSL'],
        timeout=app.config['ZABBIX_TIMEOUT'],
    )
    app.extensions['technms.synology'] = SynologyService(
        _upstream_url(app.config['SYNOLOGY_URL']),
        verify_ssl=app.config['SYNOLOGY_VERIFY_SSL'],
    )
    app.extensions['technms.vmanage'] = VManageService(
        _upstream_url(app.config['VMANAGE_URL']),
        app.config['VMANAGE_USER'],
        app.config['VMANAGE_PASS'],
    )

    # Create tables
    with app.app_context():
        db_path = app.config['SQLALCHEMY_DATABASE_URI']
        if db_path.startswith('sqlite:///'):
            db_dir = os.path.dirname(db_path.replace('sqlite:///', ''))
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
        db.create_all()

    # Security headers middleware
    @app.after_request
    def apply_security_headers(response):
        return add_security_headers(response)

    # IP allowlist check
    @app.before_request
    def check_ip():
        if not check_ip_allowed(get_client_ip()):
            if request.path.startswith('/api/'):
                return jsonify({'error': "Your IP address is not allowed."}), 403
            return render_template('error.html',
                error="Access Denied",
                message="Your IP address is not allowed."), 403

    @app.context_processor
    def inject_globals():
        return {
            'current_year': datetime.now().year,
            'app_version': __version__
        }

    # Register blueprints; the JSON API authenticates by token, not by form
    for bp in (zabbix_bp, reports_bp, sdwan_bp, synology_bp, dashboard_bp):
        csrf.exempt(bp)
        app.register_blueprint(bp, url_prefix='/api')
    app.register_blueprint(auth_bp, url_prefix='/auth')
    app.register_blueprint(main_bp)

    register_error_handlers(app)
    register_cli(app)

    return app


# ============================================================================
# Auth Blueprint - Login page, logout, activity log
# ============================================================================
auth_bp = Blueprint('auth', __name__)


@auth_bp.route('/login', methods=['GET', 'POST'])
@limiter.limit("10 per minute")
def login():
    """Console login with Zabbix credentials."""
    if get_session_zabbix_token():
        return redirect(url_for('main.index'))

    if request.method == 'POST':
        username = sanitize_string(request.form.get('username', ''))
        password = request.form.get('password', '')

        valid, error = InputValidator.username(username)
        if valid:
            valid, error = InputValidator.password(password)
        if not valid:
            flash(error, 'error')
            return render_template('login.html'), 400

        try:
            token = current_app.extensions['technms.zabbix'].login(username, password)
        except ZabbixAPIError:
            AuditLog.log(
                AuditLog.EVENT_LOGIN_FAILED,
                username=username,
                details="Zabbix rejected the credentials",
                ip_address=get_client_ip(),
                user_agent=get_user_agent(),
                success=False
            )
            flash('Invalid username or password.', 'error')
            return render_template('login.html'), 401
        except ZabbixServiceError as e:
            current_app.logger.error(f"[AUTH] Zabbix unreachable during login: {e}")
            flash('Could not reach Zabbix. Please try again later.', 'error')
            return render_template('login.html'), 502

        session.clear()
        store_zabbix_token(token, username)
        AuditLog.log(
            AuditLog.EVENT_LOGIN,
            username=username,
            ip_address=get_client_ip(),
            user_agent=get_user_agent()
        )

        next_url = request.args.get('next')
        if next_url and next_url.startswith('/'):
            return redirect(next_url)
        return redirect(url_for('main.index'))

    return render_template('login.html')


@auth_bp.route('/logout')
def logout():
    """Console logout."""
    token = get_session_zabbix_token()
    if token:
        try:
            current_app.extensions['technms.zabbix'].logout(token)
        except ZabbixServiceError as e:
            current_app.logger.warning(f"[AUTH] Zabbix logout failed: {e}")

        AuditLog.log(
            AuditLog.EVENT_LOGOUT,
            username=session.get('username'),
            ip_address=get_client_ip(),
            user_agent=get_user_agent()
        )
    session.clear()
    flash('You have been logged out.', 'info')
    return redirect(url_for('auth.login'))


@auth_bp.route('/activity/export')
@login_required
def export_activity_log():
    """Export activity logs as JSON."""
    event_type = request.args.get('type', '')
    days = request.args.get('days', '30')

    query = AuditLog.query
    if event_type:
        query = query.filter_by(event_type=event_type)

    try:
        days_int = int(days)
        if days_int > 0:
            cutoff = datetime.utcnow() - timedelta(days=days_int)
            query = query.filter(AuditLog.timestamp >= cutoff)
    except ValueError:
        pass

    logs = query.order_by(AuditLog.timestamp.desc()).limit(10000).all()

    export_data = {
        'exported_at': datetime.utcnow().isoformat() + 'Z',
        'total_entries': len(logs),
        'logs': [log.to_dict() for log in logs]
    }

    AuditLog.log(
        AuditLog.EVENT_ACTIVITY_LOG_EXPORTED,
        username=session.get('username'),
        details=f"Exported {len(logs)} log entries",
        ip_address=get_client_ip(),
        user_agent=get_user_agent()
    )

    response = current_app.response_class(
        response=json.dumps(export_data, indent=2),
        status=200,
        mimetype='application/json'
    )
    response.headers['Content-Disposition'] = (
        f'attachment; filename=activity-log-{datetime.utcnow().strftime("%Y%m%d-%H%M%S")}.json'
    )
    return response


# ============================================================================
# Main Blueprint - Dashboard shell and health check
# ============================================================================
main_bp = Blueprint('main', __name__)


@main_bp.route('/')
@login_required
def index():
    """Dashboard shell; the widgets load their data from /api."""
    return render_template('index.html', username=session.get('username'))


@main_bp.route('/health')
def health():
    return jsonify({'status': 'ok', 'version': __version__})


# ============================================================================
# Error handlers
# ============================================================================
def register_error_handlers(app):
    """Register error handlers; /api/ paths answer with JSON."""

    def render_error(code, error, message):
        if request.path.startswith('/api/'):
            return jsonify({'error': message}), code
        return render_template('error.html', error=error, message=message), code

    @app.errorhandler(404)
    def not_found(e):
        return render_error(404, "Page Not Found", "The page you're looking for doesn't exist.")

    @app.errorhandler(500)
    def server_error(e):
        return render_error(500, "Server Error", "Something went wrong. Please try again later.")

    @app.errorhandler(429)
    def rate_limited(e):
        if request.path.startswith('/api/'):
            return rate_limit_exceeded_handler(e)
        return render_error(429, "Too Many Requests", "Please slow down and try again in a moment.")


# ============================================================================
# CLI
# ============================================================================
def register_cli(app):

    @app.cli.command('system-report')
    @click.option('--groupid', 'groupids', multiple=True, required=True, help="Host group id (repeatable).")
    @click.option('--token', default=None, help="Zabbix API token (defaults to ZABBIX_API_TOKEN).")
    def system_report_command(groupids, token):
        """Write the 15-day CPU/memory average report CSV."""
        token = token or current_app.config.get('ZABBIX_API_TOKEN')
        if not token:
            raise click.UsageError("No Zabbix token: pass --token or set ZABBIX_API_TOKEN.")
        try:
            report = generate_system_report(
                current_app.extensions['technms.zabbix'],
                token,
                list(groupids),
                current_app.config['DATA_DIR'],
            )
        except ZabbixServiceError as e:
            raise click.ClickException(f"System report failed: {e}")
        click.echo(f"Wrote {report['fileName']} ({len(report['result'])} rows)")

    @app.cli.command('cleanup-activity-log')
    @click.option('--days', type=int, default=None, help="Retention in days (defaults to the stored setting).")
    def cleanup_activity_log_command(days):
        """Delete activity log entries older than the retention period."""
        retention_days = days if days is not None else AppSettings.get_int('log_retention_days', 90)
        if retention_days <= 0:
            click.echo("Log retention is set to unlimited. No cleanup needed.")
            return

        count = AuditLog.purge_older_than(retention_days)
        if count:
            AuditLog.log(
                AuditLog.EVENT_ACTIVITY_LOG_CLEANUP,
                details=f"Cleaned up {count} log entries older than {retention_days} days"
            )
        click.echo(f"Cleaned up {count} log entries older than {retention_days} days.")

    @app.cli.command('set-log-retention')
    @click.argument('days', type=int)
    def set_log_retention_command(days):
        """Store the activity log retention used by cleanup-activity-log (0 = unlimited)."""
        if days < 0:
            raise click.BadParameter("Retention must be 0 or more days.", param_hint='DAYS')
        AppSettings.set('log_retention_days', str(days))
        click.echo(f"Log retention set to {days} days." if days else "Log retention set to unlimited.")
