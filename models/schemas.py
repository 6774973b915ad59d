"""
Core data models for the check-in outreach engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class CheckinDay(IntEnum):
    DAY_3 = 3
    DAY_7 = 7
    DAY_14 = 14


class ResponseValue(str, Enum):
    BETTER = "better"
    SAME = "same"
    WORSE = "worse"


class Branch(str, Enum):
    INITIAL = "initial"       # legacy label, resolves like "same"
    BETTER = "better"
    SAME = "same"
    WORSE = "worse"


class QueueStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class DispatchMode(str, Enum):
    LIVE = "live"
    DRY_RUN = "dry_run"       # resolve everything, record as skipped
    SANDBOX = "sandbox"       # resolve everything, leave queued


class DeliveryDecision(str, Enum):
    DELIVER = "deliver"
    MARK_SKIPPED = "mark_skipped"
    LEAVE_QUEUED = "leave_queued"


CHECKIN_DAYS: tuple[int, ...] = tuple(d.value for d in CheckinDay)
RESPONSE_VALUES: tuple[str, ...] = tuple(v.value for v in ResponseValue)


# ──────────────────────────────────────────────────────────────
#  Subject — the completed questionnaire a check-in belongs to
# ──────────────────────────────────────────────────────────────

class Subject(BaseModel):
    id: str
    created_at: datetime = Field(default_factory=_utcnow)
    email: str = ""
    phone_number: str = ""
    guide_type: Optional[str] = None          # raw classifier label
    sms_opt_in: bool = False
    sms_opted_out: bool = False

    def address_for(self, channel: ChannelType) -> Optional[str]:
        if channel == ChannelType.EMAIL:
            return self.email or None
        return self.phone_number or None


class Payment(BaseModel):
    subject_id: str
    status: str = "succeeded"
    amount_cents: int = 0
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Queue
# ──────────────────────────────────────────────────────────────

class QueueItem(BaseModel):
    """One scheduled touchpoint; (subject_id, day) is unique."""
    id: str = ""
    subject_id: str
    day: int
    due_at: datetime
    sent_at: Optional[datetime] = None
    template_key: str
    channel: ChannelType = ChannelType.EMAIL
    status: QueueStatus = QueueStatus.QUEUED
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Content
# ──────────────────────────────────────────────────────────────

class Template(BaseModel):
    key: str                                  # "day{N}.{branch}"
    subject: str = ""
    shell_text: str                           # contains {{insert}} and {{encouragement}}
    disclaimer_text: str = ""
    channel: ChannelType = ChannelType.EMAIL


class DiagnosisInsert(BaseModel):
    diagnosis_code: str
    day: int
    branch: Branch
    insert_text: str


class ResolvedContent(BaseModel):
    insert_text: str
    encouragement: str
    branch: Branch                            # branch that actually matched


class ActionLink(BaseModel):
    value: ResponseValue
    label: str
    url: str


class ComposedMessage(BaseModel):
    subject: str
    content: str = ""                         # shell with markers substituted
    body: str                                 # content followed by the link block
    disclaimer: str = ""
    links: list[ActionLink] = []


# ──────────────────────────────────────────────────────────────
#  Tokens, gates, results
# ──────────────────────────────────────────────────────────────

class ActionTokenPayload(BaseModel):
    subject_id: str
    day: int
    value: ResponseValue
    exp: int


class SendWindowResult(BaseModel):
    allowed: bool
    local_time: str = ""
    reason: Optional[str] = None


class EnqueueResult(BaseModel):
    created: int = 0
    skipped_reason: Optional[str] = None


class DispatchSummary(BaseModel):
    queued: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0
    errors: list[str] = []


# ──────────────────────────────────────────────────────────────
#  Responses & alerts
# ──────────────────────────────────────────────────────────────

class CheckinResponse(BaseModel):
    subject_id: str
    day: int
    value: ResponseValue
    note: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class Alert(BaseModel):
    subject_id: str
    type: str = "red_flag"
    payload: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=_utcnow)


class ResponseAck(BaseModel):
    subject_id: str
    day: int
    value: Optional[ResponseValue] = None
    red_flag: bool = False
    matched_terms: list[str] = []
    message: str = ""
