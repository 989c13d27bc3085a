"""
Reshaping helpers for Zabbix results.
These functions never talk to Zabbix; routes fetch the data and pass it in.
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Tuple
import math
import time

SEVERITY_TEXT = ["Not classified", "Information", "Warning", "Average", "High", "Disaster"]

PRIORITY_BUCKETS = {
    '5': 'disaster',
    '4': 'high',
    '3': 'average',
    '2': 'warning',
    '1': 'information',
}

DEFAULT_HOST_GROUP = "4"
DEFAULT_HOST_MACROS = [
    {"macro": "{$USER_ID}", "value": "123321"},
    {
        "macro": "{$USER_LOCATION}",
        "value": "0:0:0",
        "description": "latitude, longitude and altitude coordinates",
    },
]
DEFAULT_HOST_INVENTORY = {"macaddress_a": "01234", "macaddress_b": "56768"}

ACK_MESSAGE = 1
ACK_CLOSE = 2
ACK_SEVERITY = 4


def round_half_up(value: float, places: int = 2) -> float:
    """Round to the given decimals with halves going up (0.125 -> 0.13)."""
    if not math.isfinite(value):
        return value
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def _number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return number


def _first_host_name(entry: dict) -> str:
    hosts = entry.get('hosts') or []
    if hosts and isinstance(hosts[0], dict) and hosts[0].get('name'):
        return hosts[0]['name']
    return "Unknown"


def severity_text(value: Any) -> Optional[str]:
    try:
        index = int(value)
    except (TypeError, ValueError):
        return None
    if 0 <= index < len(SEVERITY_TEXT):
        return SEVERITY_TEXT[index]
    return None


# ============================================================================
# Item values
# ============================================================================

def normalize_bits(value: Any) -> Tuple[Any, str]:
    """Bits -> K or M (base 1024, two decimals). Non-numeric values pass through."""
    bits = _number(value)
    if bits is None:
        return value, ""
    kb = bits / 1024
    if kb >= 1024:
        return round_half_up(kb / 1024), "M"
    return round_half_up(kb), "K"


def normalize_percent(value: Any) -> Any:
    number = _number(value)
    if number is None:
        return value
    return round_half_up(number)


def normalize_traffic_name(name: str, key: str) -> str:
    """Fix reversed traffic item names using the item key."""
    if not name or not key:
        return name
    if 'net.if.in' in key:
        return _replace_ci(name, 'Bits sent', 'Bits received')
    if 'net.if.out' in key:
        return _replace_ci(name, 'Bits received', 'Bits sent')
    return name


def _replace_ci(text: str, old: str, new: str) -> str:
    index = text.lower().find(old.lower())
    if index < 0:
        return text
    return text[:index] + new + text[index + len(old):]


def normalize_speed_mbps(value: Any) -> Tuple[Any, str]:
    """Bits per second -> whole Mbps, rounding halves up; '-' when not numeric."""
    bits = _number(value)
    if bits is None:
        return "-", "Mbps"
    return int(math.floor(bits / 1_000_000 + 0.5)), "Mbps"


def format_item_rows(items: Iterable[dict]) -> List[dict]:
    """item.get rows for the dashboard tiles, with traffic and percent values scaled."""
    rows = []
    for item in items:
        name = normalize_traffic_name(item.get('name'), item.get('key_'))
        lastvalue = item.get('lastvalue')
        units = item.get('units')

        if isinstance(name, str):
            if 'Bits received' in name or 'Bits sent' in name or 'Speed' in name:
                lastvalue, units = normalize_bits(item.get('lastvalue'))
            if 'CPU utilization' in name or 'Memory utilization' in name:
                lastvalue = normalize_percent(item.get('lastvalue'))

        rows.append({
            'hostid': item.get('hostid'),
            'hostname': _first_host_name(item),
            'itemid': item.get('itemid'),
            'key_': item.get('key_'),
            'name': name,
            'lastvalue': lastvalue,
            'units': units,
        })
    return rows


def speed_rows(items: Iterable[dict]) -> List[dict]:
    rows = []
    for item in items:
        speed, unit = normalize_speed_mbps(item.get('lastvalue'))
        rows.append({
            'hostid': item.get('hostid'),
            'hostname': _first_host_name(item),
            'speed': speed,
            'unit': unit,
        })
    return rows


def group_items_by_key(items: Iterable[dict], keys: List[str]) -> Dict[str, List[dict]]:
    """Group items by key_ in request order; items with other keys are dropped."""
    grouped = {k: [] for k in keys}
    for item in items:
        bucket = grouped.get(item.get('key_'))
        if bucket is not None:
            bucket.append(item)
    return grouped


def average_rows(items: Iterable[dict], history: Dict[str, List[float]], item_name: str) -> List[dict]:
    """One row per item with the mean of its history values (None when empty)."""
    rows = []
    for item in items:
        values = history.get(item.get('itemid')) or []
        avg = round_half_up(sum(values) / len(values)) if values else None
        rows.append({
            'hostid': item.get('hostid'),
            'hostname': _first_host_name(item),
            'name': item_name,
            'avg': avg,
        })
    return rows


def numeric_values(history: Iterable[dict]) -> List[float]:
    values = []
    for point in history:
        number = _number(point.get('value'))
        if number is not None:
            values.append(number)
    return values


# ============================================================================
# Problems and events
# ============================================================================

def merge_problems_with_triggers(problems: List[dict], triggers: List[dict]) -> List[dict]:
    """Attach the matching trigger (or None) to each problem, keeping problem order."""
    by_id = {t['triggerid']: t for t in triggers if isinstance(t, dict) and t.get('triggerid')}
    merged = []
    for p in problems:
        merged.append({
            'eventid': p.get('eventid'),
            'triggerid': p.get('objectid'),
            'clock': p.get('clock'),
            'r_clock': p.get('r_clock'),
            'name': p.get('name'),
            'acknowledged': p.get('acknowledged'),
            'severity': p.get('severity'),
            'tags': p.get('tags') or [],
            'trigger': by_id.get(p.get('objectid')),
        })
    return merged


def distinct(values: Iterable) -> List:
    seen = []
    for v in values:
        if v not in seen:
            seen.append(v)
    return seen


def group_problems(problems: Iterable[dict], separator: str) -> List[dict]:
    """Count problems per host and trigger name, in first-seen order."""
    groups: Dict[str, dict] = {}
    for p in problems:
        host = _first_host_name(p)
        trigger = p.get('name')
        key = f"{host}{separator}{trigger}"
        if key not in groups:
            groups[key] = {
                'key': key,
                'host': host,
                'trigger': trigger,
                'severity': severity_text(p.get('severity')),
                'count': 0,
            }
        groups[key]['count'] += 1
    return list(groups.values())


def priority_counts(triggers: Iterable[dict]) -> Dict[str, int]:
    counts = {
        'disaster': 0,
        'high': 0,
        'average': 0,
        'warning': 0,
        'information': 0,
        'not_classified': 0,
    }
    for t in triggers:
        counts[PRIORITY_BUCKETS.get(str(t.get('priority')), 'not_classified')] += 1
    return counts


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return "1 min"
    minutes = int(seconds // 60)
    if minutes < 60:
        return f"{minutes} min"
    return f"{minutes // 60} hr {minutes % 60} min"


def trigger_item_map(triggers: Iterable[dict]) -> Dict[str, str]:
    """triggerid -> itemid of the trigger's first function."""
    mapping = {}
    for t in triggers:
        functions = t.get('functions') or []
        if functions:
            mapping[t.get('triggerid')] = functions[0].get('itemid')
    return mapping


def build_event_rows(events: List[dict], triggers: List[dict], now: float = None) -> List[dict]:
    """Rows for the event report, newest first."""
    now = int(now if now is not None else time.time())
    items = trigger_item_map(triggers)

    rows = []
    for e in events:
        clock = int(_number(e.get('clock')) or 0)
        r_eventid = e.get('r_eventid')
        acknowledges = e.get('acknowledges') or []
        rows.append({
            'eventid': e.get('eventid'),
            'clock': clock,
            'time': datetime.fromtimestamp(clock).strftime('%Y-%m-%d %H:%M:%S'),
            'status': "Resolved" if r_eventid and r_eventid != "0" else "Problem",
            'host': _first_host_name(e),
            'problems': e.get('name'),
            'severity': str(e.get('severity')),
            'duration': format_duration(now - clock),
            'ack': "Yes" if e.get('acknowledged') == "1" else "No",
            'message': (acknowledges[-1].get('message') or "-") if acknowledges else "-",
            'itemid': items.get(e.get('objectid')),
        })

    rows.sort(key=lambda r: r['clock'], reverse=True)
    for row in rows:
        del row['clock']
    return rows


def acknowledge_action(message: Any, close_problem: Any, severity: Any) -> int:
    """event.acknowledge action bitmask: 1 add message, 2 close, 4 change severity."""
    action = 0
    if isinstance(message, str) and message.strip():
        action |= ACK_MESSAGE
    if close_problem:
        action |= ACK_CLOSE
    if severity is not None and severity != "":
        action |= ACK_SEVERITY
    return action


# ============================================================================
# Hosts
# ============================================================================

def build_host_create_params(data: dict) -> dict:
    """host.create params with defaults for groups, tags, macros and inventory."""
    host = data.get('host')
    groups = data.get('groups') or []
    interfaces = data.get('interfaces') or []
    tags = data.get('tags') or []
    macros = data.get('macros') or []
    inventory = data.get('inventory') or {}

    if not isinstance(groups, list) or not groups:
        groups = [DEFAULT_HOST_GROUP]

    return {
        'host': host,
        'interfaces': [
            {
                'type': _int_field(i.get('type')),
                'main': _int_field(i.get('main')),
                'useip': _int_field(i.get('useip')),
                'ip': i.get('ip'),
                'dns': i.get('dns'),
                'port': i.get('port'),
            }
            for i in interfaces
        ],
        'groups': [{'groupid': g} for g in groups],
        'tags': tags if tags else [{'tag': 'host-name', 'value': host}],
        'macros': macros if macros else [dict(m) for m in DEFAULT_HOST_MACROS],
        'inventory_mode': 0,
        'inventory': inventory if inventory else dict(DEFAULT_HOST_INVENTORY),
    }


def _int_field(value: Any) -> Optional[int]:
    number = _number(value)
    return int(number) if number is not None else None


def latest_interface_rows(hosts: Iterable[dict]) -> List[dict]:
    """Per host, its last interface with the host's active_available copied in."""
    rows = []
    for host in hosts:
        interfaces = host.get('interfaces') or []
        latest = dict(interfaces[-1]) if interfaces else None
        if latest is not None:
            latest['active_available'] = host.get('active_available')
        rows.append({
            'hostid': host.get('hostid'),
            'host': host.get('host'),
            'status': host.get('status'),
            'latest_interface': latest,
            'latest_ip': (latest or {}).get('ip') or None,
        })
    return rows


def inventory_rows(hosts: Iterable[dict]) -> List[dict]:
    return [
        {
            'hostid': h.get('hostid'),
            'host': h.get('host'),
            'hostName': h.get('name'),
            'hostGroups': h.get('hostgroups') or [],
            'inventory': h.get('inventory') or {},
        }
        for h in hosts
    ]


def _link_state(value: Any) -> Tuple[int, str]:
    if value == "1":
        return 0, "up (0)"
    return 1, "down (1)"


def interface_status_rows(hosts: Iterable[dict], primary: Iterable[dict],
                          secondary: Iterable[dict]) -> List[dict]:
    """
    Primary/secondary link status per host from ifOperStatus[1] and [2].
    Hosts with a down link come first, then by hostname.
    """
    primary_by_host = {i.get('hostid'): i.get('lastvalue') for i in primary}
    secondary_by_host = {i.get('hostid'): i.get('lastvalue') for i in secondary}

    rows = []
    for h in hosts:
        p_value, p_text = _link_state(primary_by_host.get(h.get('hostid')))
        s_value, s_text = _link_state(secondary_by_host.get(h.get('hostid')))
        groups = h.get('groups')
        rows.append({
            'key': h.get('hostid'),
            'hostid': h.get('hostid'),
            'hostname': h.get('host') or '',
            'groups': [g.get('name') for g in groups] if isinstance(groups, list) else [],
            'primaryValue': p_value,
            'primaryText': p_text,
            'secondaryValue': s_value,
            'secondaryText': s_text,
        })

    rows.sort(key=lambda r: (-max(r['primaryValue'], r['secondaryValue']), r['hostname']))
    return rows


def map_host_ids(sysmap: dict) -> List[str]:
    """Host ids of map elements that reference at least one element."""
    ids = []
    for element in sysmap.get('selements') or []:
        elements = element.get('elements') or []
        if elements and elements[0].get('hostid'):
            ids.append(elements[0]['hostid'])
    return ids


# ============================================================================
# Time ranges
# ============================================================================

def local_epoch(date_text: str, time_text: str) -> Optional[int]:
    """'YYYY-MM-DD' + 'HH:MM[:SS]' in local time -> epoch seconds, None if unparsable."""
    if not date_text or not time_text:
        return None
    text = f"{str(date_text).strip()} {str(time_text).strip()}"
    for fmt in ('%Y-%m-%d %H:%M:%S', '%Y-%m-%d %H:%M'):
        try:
            return int(datetime.strptime(text, fmt).timestamp())
        except ValueError:
            continue
    return None


def last_hour(now: float = None) -> Tuple[int, int]:
    till = int(now if now is not None else time.time())
    return till - 3600, till


def is_epoch(value) -> bool:
    """True for int or float unix seconds (bools excluded)."""
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)
