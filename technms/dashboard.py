"""
Dashboard layout persistence and real-time sync.

The layout document is stored in the database and shared by every viewer:
{"layout": [...grid items...], "dynamicWidgets": [...], "removedStatic": [...]}.
Changes made over Socket.IO are saved and pushed to all clients as
'dashboard:sync'.
"""

import logging

from flask import Blueprint, jsonify, session
from flask_socketio import SocketIO, emit

from .models import AuditLog, DashboardLayout
from .security import json_body

logger = logging.getLogger('gunicorn.error')

dashboard_bp = Blueprint('dashboard', __name__)

# Initialized in app.py
socketio = SocketIO(path='api/socket_io', async_mode='threading')

SYNC_EVENT = 'dashboard:sync'


def _widget_id(payload):
    if isinstance(payload, dict):
        return payload.get('id') or payload.get('i')
    return payload


def add_widget(document: dict, widget: dict) -> dict:
    """Add (or replace) a dynamic widget and its optional grid item."""
    widget_id = _widget_id(widget)
    if not widget_id:
        return document

    item = widget.get('layout') if isinstance(widget.get('layout'), dict) else None
    stored = {k: v for k, v in widget.items() if k != 'layout'}

    document['dynamicWidgets'] = [
        w for w in document.get('dynamicWidgets', []) if _widget_id(w) != widget_id
    ] + [stored]
    if item is not None:
        document['layout'] = [
            i for i in document.get('layout', []) if i.get('i') != widget_id
        ] + [dict(item, i=widget_id)]
    document['removedStatic'] = [s for s in document.get('removedStatic', []) if s != widget_id]
    return document


def remove_widget(document: dict, widget_id) -> dict:
    """Drop a widget from the widgets and the grid; static widgets are remembered as removed."""
    if not widget_id:
        return document

    dynamic = document.get('dynamicWidgets', [])
    was_dynamic = any(_widget_id(w) == widget_id for w in dynamic)
    document['dynamicWidgets'] = [w for w in dynamic if _widget_id(w) != widget_id]
    document['layout'] = [i for i in document.get('layout', []) if i.get('i') != widget_id]

    removed = document.get('removedStatic', [])
    if not was_dynamic and widget_id not in removed:
        removed = removed + [widget_id]
    document['removedStatic'] = removed
    return document


def _normalized(data) -> dict:
    document = DashboardLayout.empty()
    if isinstance(data, dict):
        for key in document:
            if isinstance(data.get(key), list):
                document[key] = data[key]
    return document


# ============================================================================
# HTTP persistence
# ============================================================================

@dashboard_bp.route('/dashboard_action_log/data_save', methods=['GET'])
def load_dashboard():
    return jsonify(DashboardLayout.load())


@dashboard_bp.route('/dashboard_action_log/data_save', methods=['POST'])
def save_dashboard():
    DashboardLayout.save(json_body())
    AuditLog.log(AuditLog.EVENT_DASHBOARD_SAVED, username=session.get('username'))
    return jsonify({'success': True})


# ============================================================================
# Socket.IO events
# ============================================================================

def _save_and_broadcast(document: dict) -> None:
    DashboardLayout.save(document)
    socketio.emit(SYNC_EVENT, document)


@socketio.on('connect')
def handle_connect():
    emit(SYNC_EVENT, DashboardLayout.load())


@socketio.on('dashboard:update')
def handle_dashboard_update(layout):
    """Relay a live edit to the other viewers without saving it."""
    emit(SYNC_EVENT, layout, broadcast=True, include_self=False)


@socketio.on('dashboard:save')
def handle_dashboard_save(data):
    _save_and_broadcast(_normalized(data))
    logger.info("[DASHBOARD] Layout saved over socket")


@socketio.on('widget:add')
def handle_widget_add(widget):
    if not isinstance(widget, dict):
        return
    _save_and_broadcast(add_widget(_normalized(DashboardLayout.load()), widget))


@socketio.on('widget:remove')
def handle_widget_remove(payload):
    _save_and_broadcast(remove_widget(_normalized(DashboardLayout.load()), _widget_id(payload)))


@socketio.on('layout:update')
def handle_layout_update(layout):
    if isinstance(layout, dict):
        layout = layout.get('layout')
    if not isinstance(layout, list):
        return
    document = _normalized(DashboardLayout.load())
    document['layout'] = layout
    _save_and_broadcast(document)
