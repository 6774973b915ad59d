"""
Send-window gate — is a given instant an acceptable moment to send?

The window is a daily "HH:MM-HH:MM" range in an IANA timezone. The instant
is converted with zoneinfo, so the comparison follows the local wall clock
across daylight-saving transitions. Windows whose start is after their end
wrap past midnight ("20:00-08:00").

Configuration problems fail open: a missing or malformed window, or an
unknown timezone, allows the send and says so in `reason`.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone as dt_timezone
from functools import lru_cache
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from models.schemas import SendWindowResult

_WINDOW_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)-([01]\d|2[0-3]):([0-5]\d)$")


@lru_cache(maxsize=32)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def _as_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=dt_timezone.utc)
    return instant


def parse_window(window_spec: str) -> Optional[tuple[int, int]]:
    """Return (start, end) as minute-of-day, or None when the window string is malformed."""
    match = _WINDOW_RE.match(window_spec.strip())
    if not match:
        return None
    sh, sm, eh, em = (int(g) for g in match.groups())
    start, end = sh * 60 + sm, eh * 60 + em
    if start == end:
        return None
    return start, end


def is_within_window(instant: datetime, timezone: str, window_spec: Optional[str]) -> SendWindowResult:
    if not window_spec or not window_spec.strip():
        return SendWindowResult(allowed=True, reason="no window configured")

    bounds = parse_window(window_spec)
    if bounds is None:
        return SendWindowResult(allowed=True, reason="invalid window format")
    start, end = bounds

    try:
        local = _as_utc(instant).astimezone(_zone(timezone))
    except (ZoneInfoNotFoundError, ValueError) as e:
        return SendWindowResult(allowed=True, reason=f"unknown timezone {timezone!r}: {e}")

    local_time = local.strftime("%H:%M")
    minutes = local.hour * 60 + local.minute

    if start < end:
        inside = start <= minutes < end
    else:
        inside = minutes >= start or minutes < end

    if inside:
        return SendWindowResult(allowed=True, local_time=local_time)

    start_label, end_label = window_spec.strip().split("-")
    if minutes < start:
        reason = f"outside send window: {local_time} is before window start {start_label}"
    else:
        reason = f"outside send window: {local_time} is after window end {end_label}"
    return SendWindowResult(allowed=False, local_time=local_time, reason=reason)


def parse_start(start_date: Union[datetime, str, None]) -> Optional[datetime]:
    """Campaign start as an aware datetime; naive values are taken as UTC."""
    if not start_date:
        return None
    if isinstance(start_date, datetime):
        return _as_utc(start_date)
    text = str(start_date).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return _as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def is_before_start(instant: datetime, start_date: Union[datetime, str, None]) -> bool:
    """True when a campaign start is configured and `instant` precedes it."""
    start = parse_start(start_date)
    if start is None:
        return False
    return _as_utc(instant) < start
