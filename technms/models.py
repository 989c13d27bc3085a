"""
Database models for local console state.
Uses SQLAlchemy with SQLite for activity logs, link records and dashboard layout.
Upstream data (hosts, items, problems) is never stored here.
"""

from datetime import datetime, timedelta
import json

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


class AuditLog(db.Model):
    """Audit log for security-relevant events."""

    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    username = db.Column(db.String(80), nullable=True)
    event_type = db.Column(db.String(50), nullable=False, index=True)
    event_details = db.Column(db.Text, nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)  # IPv6 compatible
    user_agent = db.Column(db.String(256), nullable=True)
    success = db.Column(db.Boolean, default=True)

    # Event types
    EVENT_LOGIN = 'login'
    EVENT_LOGIN_FAILED = 'login_failed'
    EVENT_LOGOUT = 'logout'
    EVENT_TOKEN_CREATED = 'token_created'
    EVENT_HOST_CREATED = 'host_created'
    EVENT_PROBLEM_UPDATED = 'problem_updated'
    EVENT_MAP_CHANGED = 'map_changed'
    EVENT_SYNOLOGY_LOGIN = 'synology_login'
    EVENT_SYNOLOGY_LOGOUT = 'synology_logout'
    EVENT_DASHBOARD_SAVED = 'dashboard_saved'
    EVENT_SDWAN_ALERT = 'sdwan_alert'
    EVENT_ACTIVITY_LOG_EXPORTED = 'activity_log_exported'
    EVENT_ACTIVITY_LOG_CLEANUP = 'activity_log_cleanup'

    @classmethod
    def log(cls, event_type: str, username: str = None, details: str = None,
            ip_address: str = None, user_agent: str = None,
            success: bool = True) -> 'AuditLog':
        """Create and save an audit log entry."""
        entry = cls(
            event_type=event_type,
            username=username,
            event_details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            success=success
        )
        db.session.add(entry)
        db.session.commit()
        return entry

    @classmethod
    def purge_older_than(cls, days: int) -> int:
        """Delete entries older than the given number of days; returns the count."""
        cutoff = datetime.utcnow() - timedelta(days=days)
        count = cls.query.filter(cls.timestamp < cutoff).delete()
        db.session.commit()
        return count

    def to_dict(self) -> dict:
        return {
            'timestamp': self.timestamp.isoformat() + 'Z' if self.timestamp else None,
            'event_type': self.event_type,
            'username': self.username,
            'details': self.event_details,
            'ip_address': self.ip_address,
            'success': self.success
        }

    def __repr__(self) -> str:
        return f'<AuditLog {self.event_type} at {self.timestamp}>'


class AppSettings(db.Model):
    """Application-wide settings stored in database."""

    __tablename__ = 'app_settings'

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(50), unique=True, nullable=False, index=True)
    value = db.Column(db.Text, nullable=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Default settings
    DEFAULTS = {
        'log_retention_days': '90',
    }

    @classmethod
    def get(cls, key: str, default: str = None) -> str:
        """Get a setting value by key."""
        setting = cls.query.filter_by(key=key).first()
        if setting:
            return setting.value
        return cls.DEFAULTS.get(key, default)

    @classmethod
    def set(cls, key: str, value: str) -> None:
        """Set a setting value."""
        setting = cls.query.filter_by(key=key).first()
        if setting:
            setting.value = value
        else:
            setting = cls(key=key, value=value)
            db.session.add(setting)
        db.session.commit()

    @classmethod
    def get_int(cls, key: str, default: int = 0) -> int:
        """Get a setting as an integer."""
        value = cls.get(key)
        try:
            return int(value) if value else default
        except ValueError:
            return default

    def __repr__(self) -> str:
        return f'<AppSettings {self.key}={self.value}>'


class LinkSnapshot(db.Model):
    """Last observed snapshot key per SD-WAN site, keyed by system IP."""

    __tablename__ = 'link_snapshots'

    system_ip = db.Column(db.String(64), primary_key=True)
    snapshot_key = db.Column(db.Text, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f'<LinkSnapshot {self.system_ip}>'


class LinkRecord(db.Model):
    """
    A site state change (reachability, site state, down tunnels).
    A new row is only written when the site's snapshot key differs from
    the last one seen, so DOWN -> UP -> DOWN yields three rows.
    """

    __tablename__ = 'link_records'

    id = db.Column(db.Integer, primary_key=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    generated_at_utc = db.Column(db.String(64), nullable=True)
    generated_at_ist = db.Column(db.String(64), nullable=True)
    system_ip = db.Column(db.String(64), nullable=False, index=True)
    hostname = db.Column(db.String(256), default='NA')
    reachability = db.Column(db.String(64), default='NA')
    site_state = db.Column(db.String(64), default='NA')
    down_tunnels_json = db.Column(db.Text, default='[]')
    event_type = db.Column(db.String(50), default='STATE_CHANGE')

    @property
    def down_tunnels(self) -> list:
        try:
            return json.loads(self.down_tunnels_json or '[]')
        except ValueError:
            return []

    @down_tunnels.setter
    def down_tunnels(self, value: list) -> None:
        self.down_tunnels_json = json.dumps(value or [])

    @staticmethod
    def build_snapshot_key(site_state, reachability, down_tunnels) -> str:
        """Compact JSON describing the observed site state."""
        names = []
        if isinstance(down_tunnels, list):
            names = sorted(
                str(t.get('tunnelName', '')) if isinstance(t, dict) else str(t)
                for t in down_tunnels
            )
        return json.dumps({
            'siteState': site_state or 'NA',
            'reachability': reachability or 'NA',
            'downTunnelNames': names,
        }, separators=(',', ':'))

    @classmethod
    def record_if_changed(cls, system_ip: str, snapshot_key: str, **fields):
        """
        Persist a record when the snapshot for system_ip changed.
        Returns the new record, or None when nothing changed.
        """
        snapshot = db.session.get(LinkSnapshot, system_ip)
        if snapshot is not None and snapshot.snapshot_key == snapshot_key:
            return None

        if snapshot is None:
            snapshot = LinkSnapshot(system_ip=system_ip, snapshot_key=snapshot_key)
            db.session.add(snapshot)
        else:
            snapshot.snapshot_key = snapshot_key

        record = cls(system_ip=system_ip, **fields)
        db.session.add(record)
        db.session.commit()
        return record

    @classmethod
    def newest_first(cls) -> list:
        return cls.query.order_by(cls.created_at.desc(), cls.id.desc()).all()

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'createdAt': self.created_at.isoformat() + 'Z' if self.created_at else None,
            'generatedAtUTC': self.generated_at_utc,
            'generatedAtIST': self.generated_at_ist,
            'systemIp': self.system_ip,
            'hostname': self.hostname,
            'reachability': self.reachability,
            'siteState': self.site_state,
            'downTunnels': self.down_tunnels,
            'eventType': self.event_type,
        }

    def __repr__(self) -> str:
        return f'<LinkRecord {self.system_ip} {self.site_state}>'


class TunnelState(db.Model):
    """Last seen state of a single tunnel, keyed by 'systemIp||tunnelName'."""

    __tablename__ = 'tunnel_states'

    key = db.Column(db.String(512), primary_key=True)
    state = db.Column(db.String(16), nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @staticmethod
    def make_key(system_ip: str, tunnel_name: str) -> str:
        return f'{system_ip}||{tunnel_name}'

    @classmethod
    def load_all(cls) -> dict:
        return {row.key: row.state for row in cls.query.all()}

    @classmethod
    def save_all(cls, states: dict) -> None:
        """Upsert every state in the mapping and commit once."""
        existing = {row.key: row for row in cls.query.all()}
        for key, state in states.items():
            row = existing.get(key)
            if row:
                row.state = state
            else:
                db.session.add(cls(key=key, state=state))
        db.session.commit()

    def __repr__(self) -> str:
        return f'<TunnelState {self.key}={self.state}>'


class DashboardLayout(db.Model):
    """The shared dashboard document (grid layout and widgets)."""

    __tablename__ = 'dashboard_layouts'

    id = db.Column(db.Integer, primary_key=True)
    document = db.Column(db.Text, nullable=False, default='{}')
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @staticmethod
    def empty() -> dict:
        return {'layout': [], 'dynamicWidgets': [], 'removedStatic': []}

    @classmethod
    def load(cls) -> dict:
        """Return the saved document, or the empty layout."""
        row = cls.query.order_by(cls.id).first()
        if not row:
            return cls.empty()
        try:
            data = json.loads(row.document)
        except ValueError:
            return cls.empty()
        return data if isinstance(data, dict) else cls.empty()

    @classmethod
    def save(cls, data: dict) -> dict:
        """Replace the saved document (last write wins)."""
        row = cls.query.order_by(cls.id).first()
        if not row:
            row = cls()
            db.session.add(row)
        row.document = json.dumps(data)
        db.session.commit()
        return data

    def __repr__(self) -> str:
        return f'<DashboardLayout {self.id}>'
