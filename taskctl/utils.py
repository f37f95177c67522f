from datetime import datetime, timezone, timedelta
from typing import Optional
import re
import socket
import os

# e.g., "20s", "5m", "1h30m", "2d3h", "90m", "  2h  "
DELAY_RE = re.compile(r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+)\s*s)?\s*$")

# Fixed width so stored timestamps compare correctly as strings.
ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def parse_delay_to_seconds(s: str) -> int:
    """
    Parse delay strings like '20s', '5m', '1h30m', '2d3h', '90m'.
    Returns total seconds (int). Raises ValueError on bad input or zero.
    """
    if not s:
        raise ValueError("delay string is empty")
    m = DELAY_RE.match(s)
    if not m:
        raise ValueError(f"Invalid delay format: {s!r}")
    d, h, m_, s_ = m.groups()
    total = 0
    if d:  total += int(d) * 86400
    if h:  total += int(h) * 3600
    if m_: total += int(m_) * 60
    if s_: total += int(s_)
    if total <= 0:
        raise ValueError("delay must be > 0 seconds")
    return total


def to_iso(dt: datetime) -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'. Naive values are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(ISO_FORMAT)


def from_iso(s: str) -> datetime:
    """Parse a stored timestamp (or any ISO string, 'Z' allowed) into an aware UTC datetime."""
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def iso_from_now(seconds: float, now: Optional[str] = None) -> str:
    """Return the UTC ISO time `seconds` after `now` (default: the current time)."""
    base = from_iso(now) if now else datetime.now(timezone.utc)
    return to_iso(base + timedelta(seconds=seconds))


def default_worker_name(index: int, prefix: Optional[str] = None) -> str:
    """
    Lock name for a worker thread. With a `prefix` the name is stable across
    restarts; without one it is unique per host and process.
    """
    if prefix:
        return f"{prefix}-worker-{index}"
    return f"{socket.gethostname()}-{os.getpid()}-worker-{index}"
