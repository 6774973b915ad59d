"""Source tags carried on one-tap links so responses can be traced to a touchpoint."""
from __future__ import annotations

import re
from typing import Optional

from models.schemas import CHECKIN_DAYS

_SOURCE_RE = re.compile(r"^checkin_d(\d+)$")


def source_tag(day: int) -> str:
    return f"checkin_d{int(day)}"


def parse_source_tag(source: Optional[str]) -> Optional[int]:
    """Day encoded in a `checkin_d{day}` tag, or None for anything else."""
    if not source:
        return None
    match = _SOURCE_RE.match(source.strip())
    if not match:
        return None
    day = int(match.group(1))
    return day if day in CHECKIN_DAYS else None
