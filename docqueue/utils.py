from datetime import datetime, timezone
import re
from typing import Optional

# "90" (seconds), "20s", "5m", "1h30m", "2d3h"; units may be spaced out
DURATION_RE = re.compile(
    r"(?i)^\s*(?:(?P<d>\d+)\s*d)?\s*(?:(?P<h>\d+)\s*h)?\s*(?:(?P<m>\d+)\s*m)?\s*(?:(?P<s>\d+)\s*s?)?\s*$"
)
UNIT_SECONDS = {"d": 86400, "h": 3600, "m": 60, "s": 1}


def parse_duration(text: str) -> int:
    """
    Seconds in a duration such as '90', '20s', '5m' or '1h30m'.
    A trailing bare number counts as seconds. Zero is rejected, since a
    task delayed by nothing needs no delay.
    """
    match = DURATION_RE.match(text or "")
    if not text or not text.strip() or not match:
        raise ValueError(f"Invalid duration: {text!r} (expected e.g. 90, 20s, 5m, 1h30m)")
    total = sum(int(v) * UNIT_SECONDS[k] for k, v in match.groupdict().items() if v)
    if total <= 0:
        raise ValueError(f"Duration must be positive: {text!r}")
    return total


def epoch_to_iso(ts: Optional[float]) -> Optional[str]:
    """Epoch seconds as a UTC timestamp like '2025-11-06T09:12:34Z'."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
