"""
SD-WAN tunnel CSV report.

Compares each tunnel in the latest tunnel snapshot with its last known
state and appends INITIAL, RECOVERED or CHANGED rows to the report CSV.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple
import json
import logging
import os
import re
import time

from .csv_report import (
    append_csv_rows, ensure_csv_header, format_report_time, parse_report_time, read_csv_file
)
from .models import TunnelState

logger = logging.getLogger('gunicorn.error')

CSV_FILENAME = 'sdwan_tunnel_report.csv'
CSV_HEADERS = ["Last Updated", "Branch", "System IP", "Hostname", "Tunnel", "State", "Type"]
TUNNEL_STATES = ('up', 'down', 'partial')


class TunnelReportError(Exception):
    """The tunnel snapshot could not be read."""
    pass


def load_branch_maps(path: str) -> Tuple[List[dict], List[dict]]:
    """
    Read branch and ISP lookup tables.
    File format: {"branches": [{"code", "name"}], "isp": [{"type", "name"}]}.
    """
    if not path or not os.path.exists(path):
        return [], []
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    return data.get('branches') or [], data.get('isp') or []


def branch_name(hostname: str, branches: List[dict]) -> str:
    if not hostname:
        return "NA"
    lowered = hostname.lower()
    for b in branches:
        code = str(b.get('code') or '').lower()
        if code and code in lowered:
            return b.get('name') or "NA"
    return "NA"


def replace_isp_names(text: str, isp: List[dict]) -> str:
    if not text:
        return text
    for entry in isp:
        if entry.get('type'):
            text = re.sub(re.escape(entry['type']), entry.get('name', ''), text, flags=re.IGNORECASE)
    return text


def to_iso(value: Any) -> str:
    """ISO-8601 UTC timestamp with milliseconds; now when value is empty, zero or unusable."""
    now = datetime.now(timezone.utc)
    parsed = None
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value:
        parsed = _from_ms(value)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.isdigit():
            parsed = _from_ms(int(text))
        else:
            try:
                parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
            except ValueError:
                parsed = None
            if parsed is not None and parsed.tzinfo is None:
                parsed = parsed.astimezone()
    result = (parsed or now).astimezone(timezone.utc)
    return result.strftime('%Y-%m-%dT%H:%M:%S.') + f'{result.microsecond // 1000:03d}Z'


def _from_ms(ms):
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def build_tunnel_rows(sites: Dict[str, dict], prev_states: Dict[str, str], force_initial: bool,
                      branches: List[dict], isp: List[dict]) -> Tuple[List[dict], Dict[str, str]]:
    """
    Return (new CSV rows, updated state map).
    Every valid tunnel's state is recorded, whether or not it produced a row.
    """
    states = dict(prev_states)
    rows = []

    for system_ip, site in (sites or {}).items():
        if not site:
            continue
        hostname = site.get('hostname') or "NA"
        branch = branch_name(hostname, branches)
        tunnels = site.get('tunnels') if isinstance(site.get('tunnels'), list) else []

        for t in tunnels:
            tunnel_name = str((t or {}).get('tunnelName') or '')
            if not tunnel_name:
                continue
            new_state = str(t.get('state') or '').lower()
            if new_state not in TUNNEL_STATES:
                continue

            try:
                last_updated = float(t.get('lastUpdated'))
            except (TypeError, ValueError):
                last_updated = 0
            if last_updated <= 0:
                last_updated = time.time() * 1000

            key = TunnelState.make_key(system_ip, tunnel_name)
            prev_state = str(states.get(key) or '').lower()

            def row(state, kind):
                return {
                    "Last Updated": format_report_time(last_updated),
                    "Branch": branch,
                    "System IP": system_ip,
                    "Hostname": hostname,
                    "Tunnel": replace_isp_names(tunnel_name, isp),
                    "State": state,
                    "Type": kind,
                }

            if (not prev_state or force_initial) and new_state in ('down', 'partial'):
                rows.append(row(new_state.upper(), "INITIAL"))

            if prev_state and prev_state != new_state:
                if new_state == 'up':
                    rows.append(row("UP", "RECOVERED"))
                else:
                    rows.append(row(new_state.upper(), "CHANGED"))

            states[key] = new_state

    return rows, states


def _row_key(r: dict) -> str:
    return f"{r.get('System IP')}_{r.get('Tunnel')}_{r.get('State')}_{r.get('Last Updated')}_{r.get('Type')}"


def generate_tunnel_report(snapshot_path: str, data_dir: str, branches_path: str = None) -> dict:
    """Update the tunnel report CSV from the snapshot file and return a summary."""
    csv_path = os.path.join(data_dir, CSV_FILENAME)
    ensure_csv_header(csv_path, CSV_HEADERS)

    if not snapshot_path or not os.path.exists(snapshot_path):
        raise TunnelReportError(f"Tunnel snapshot not found: {snapshot_path}")
    try:
        with open(snapshot_path, 'r', encoding='utf-8') as f:
            snapshot = json.load(f)
    except ValueError as e:
        raise TunnelReportError(f"Tunnel snapshot is not valid JSON: {e}") from e

    branches, isp = load_branch_maps(branches_path)

    _, existing_rows = read_csv_file(csv_path)
    force_initial = len(existing_rows) == 0

    rows, states = build_tunnel_rows(
        snapshot.get('sites') or {},
        TunnelState.load_all(),
        force_initial,
        branches,
        isp,
    )
    TunnelState.save_all(states)

    existing_keys = {_row_key(r) for r in existing_rows}
    fresh = [r for r in rows if _row_key(r) not in existing_keys]
    if fresh:
        append_csv_rows(csv_path, CSV_HEADERS, fresh)
        logger.info(f"[SDWAN] Tunnel report: {len(fresh)} rows appended")

    return {
        'generatedAt': to_iso(snapshot.get('generatedAtIST')),
        'debug': {
            'csvFile': csv_path,
            'forcedInitialSave': force_initial,
            'appendedNow': len(fresh),
            'totalCsvRows': len(existing_rows) + len(fresh),
        },
    }


def read_tunnel_report(data_dir: str) -> dict:
    """Report rows sorted by 'Last Updated', newest first."""
    csv_path = os.path.join(data_dir, CSV_FILENAME)
    if not os.path.exists(csv_path):
        return {'success': True, 'rows': [], 'debug': {'exists': False, 'csvFile': csv_path}}

    _, rows = read_csv_file(csv_path)
    rows.sort(key=lambda r: parse_report_time(r.get('Last Updated')), reverse=True)
    return {
        'success': True,
        'rows': rows,
        'debug': {'exists': True, 'csvFile': csv_path, 'totalRows': len(rows)},
    }
