"""
CSV helpers for the tunnel report and the system history exports.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Tuple
import csv
import io
import os

REPORT_TIME_FORMAT = '%d-%m-%Y %H:%M:%S'


def parse_csv_text(text: str, strip_values: bool = False) -> Tuple[List[str], List[dict]]:
    """
    Parse CSV text into (headers, rows).
    Header names are trimmed, blank lines are ignored, missing trailing
    values become empty strings and surplus values are dropped.
    """
    if not text:
        return [], []

    records = [r for r in csv.reader(io.StringIO(text)) if any(v.strip() for v in r)]
    if not records:
        return [], []

    headers = [h.strip() for h in records[0]]
    rows = []
    for record in records[1:]:
        if strip_values:
            record = [v.strip() for v in record]
        rows.append({h: (record[i] if i < len(record) else '') for i, h in enumerate(headers)})
    return headers, rows


def read_csv_file(path: str, strip_values: bool = False) -> Tuple[List[str], List[dict]]:
    """Parse a CSV file; a missing file yields no headers and no rows."""
    if not os.path.exists(path):
        return [], []
    with open(path, 'r', encoding='utf-8', newline='') as f:
        return parse_csv_text(f.read(), strip_values=strip_values)


def csv_line(values: Iterable) -> str:
    """Serialize one row; None becomes an empty field."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator='\n')
    writer.writerow(['' if v is None else v for v in values])
    return buffer.getvalue()


def write_csv_rows(path: str, headers: List[str], rows: List[dict]) -> None:
    """Write a complete CSV file (header plus rows)."""
    _ensure_parent(path)
    with open(path, 'w', encoding='utf-8', newline='') as f:
        f.write(csv_line(headers))
        for row in rows:
            f.write(csv_line(row.get(h) for h in headers))


def append_csv_rows(path: str, headers: List[str], rows: List[dict]) -> None:
    with open(path, 'a', encoding='utf-8', newline='') as f:
        for row in rows:
            f.write(csv_line(row.get(h) for h in headers))


def ensure_csv_header(path: str, headers: List[str]) -> None:
    """
    Make sure the file starts with the header row.
    Creates the file if missing, writes the header into an empty file,
    and prepends it when the first line is something else.
    """
    _ensure_parent(path)
    header_line = csv_line(headers)

    if not os.path.exists(path):
        with open(path, 'w', encoding='utf-8', newline='') as f:
            f.write(header_line)
        return

    with open(path, 'r', encoding='utf-8', newline='') as f:
        content = f.read()

    if not content.strip():
        with open(path, 'w', encoding='utf-8', newline='') as f:
            f.write(header_line)
        return

    first_line = content.split('\n', 1)[0].strip()
    if first_line != header_line.strip():
        with open(path, 'w', encoding='utf-8', newline='') as f:
            f.write(header_line + content.strip() + '\n')


def format_report_time(ms: float) -> str:
    """Epoch milliseconds -> 'dd-mm-yyyy HH:MM:SS' in local time."""
    return datetime.fromtimestamp(ms / 1000).strftime(REPORT_TIME_FORMAT)


def parse_report_time(text: str) -> int:
    """'dd-mm-yyyy HH:MM:SS' (local time) -> epoch milliseconds, 0 if unparsable."""
    if not text:
        return 0
    try:
        return int(datetime.strptime(text.strip(), REPORT_TIME_FORMAT).timestamp() * 1000)
    except (ValueError, OverflowError, OSError):
        return 0


def latest_file(directory: str, prefix: str, suffix: str) -> Optional[str]:
    """Newest file (by mtime) in directory whose name has the given prefix and suffix."""
    if not os.path.isdir(directory):
        return None
    candidates = [
        os.path.join(directory, name)
        for name in os.listdir(directory)
        if name.startswith(prefix) and name.endswith(suffix)
    ]
    if not candidates:
        return None
    return max(candidates, key=os.path.getmtime)


def _ensure_parent(path: str) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
