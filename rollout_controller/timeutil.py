"""
Clock and duration helpers.

Everything in the controller reads the time through `now()` so tests can freeze it.
"""
import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def parse_duration(value: Union[int, str, None]) -> Optional[int]:
    """
    Convert a pause duration to whole seconds.

    Args:
        value: Integer seconds, a numeric string, or a duration such as "1m30s"

    Returns:
        Seconds, or None when no duration was given
    """
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.lstrip("-").isdigit():
        return int(text)
    total = 0.0
    pos = 0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration {value!r}")
        total += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ValueError(f"invalid duration {value!r}")
    return int(total)


def format_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(value: Union[str, datetime, None]) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def seconds(value: Union[int, float]) -> timedelta:
    return timedelta(seconds=value)
