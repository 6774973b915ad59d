"""
Check-in Scheduler — turns a completed assessment into queued touchpoints.

enqueue(subject_id) applies the suppression rules in order, each one
short-circuiting with its own skip reason:

    disabled → subject_not_found → urgent_symptoms → purchased → no_contact

then writes one queue row per check-in day through an upsert keyed on
(subject_id, day). Running it again for the same subject rewrites the
same rows; it never adds rows and never resets an item's status.
"""
from __future__ import annotations

import structlog
from datetime import datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from checkins.diagnosis import is_urgent
from config.settings import Settings, get_settings
from database.store_base import BaseCheckinStore
from models.schemas import (
    CHECKIN_DAYS, ChannelType, EnqueueResult, QueueItem, QueueStatus, Subject,
)

logger = structlog.get_logger()


def compute_due_at(
    created_at: datetime,
    day: int,
    tz_name: str = "America/New_York",
    hour: int = 10,
    minute: int = 0,
) -> datetime:
    """
    UTC instant for `hour:minute` local time on the local calendar date that
    falls `day` days after `created_at` in `tz_name`.
    """
    tz = ZoneInfo(tz_name)
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    local_date = (created_at.astimezone(tz) + timedelta(days=day)).date()
    local_due = datetime.combine(local_date, time(hour, minute), tzinfo=tz)
    return local_due.astimezone(timezone.utc)


def select_channel(subject: Subject) -> Optional[ChannelType]:
    """Email when present, otherwise SMS for a phone number that has not opted out."""
    if subject.email:
        return ChannelType.EMAIL
    if subject.phone_number and not subject.sms_opted_out:
        return ChannelType.SMS
    return None


class CheckinScheduler:
    def __init__(self, store: BaseCheckinStore, settings: Settings = None):
        self.store = store
        self.settings = settings or get_settings()

    @property
    def days(self) -> list[int]:
        return [d for d in self.settings.checkins.days if d in CHECKIN_DAYS]

    def build_items(self, subject: Subject, channel: ChannelType) -> list[QueueItem]:
        cfg = self.settings.checkins
        return [
            QueueItem(
                subject_id=subject.id,
                day=day,
                due_at=compute_due_at(subject.created_at, day, cfg.campaign_timezone,
                                      cfg.schedule_hour, cfg.schedule_minute),
                template_key=cfg.template_key_format.format(day=day),
                channel=channel,
                status=QueueStatus.QUEUED,
            )
            for day in self.days
        ]

    async def enqueue(self, subject_id: str) -> EnqueueResult:
        if not self.settings.checkins.enabled:
            return EnqueueResult(skipped_reason="disabled")

        try:
            subject = await self.store.get_subject(subject_id)
            if subject is None:
                logger.warning("enqueue_skipped", subject_id=subject_id, reason="subject_not_found")
                return EnqueueResult(skipped_reason="subject_not_found")

            if is_urgent(subject):
                logger.info("enqueue_skipped", subject_id=subject_id, reason="urgent_symptoms")
                return EnqueueResult(skipped_reason="urgent_symptoms")

            if await self.store.has_successful_payment(subject_id):
                logger.info("enqueue_skipped", subject_id=subject_id, reason="purchased")
                return EnqueueResult(skipped_reason="purchased")

            channel = select_channel(subject)
            if channel is None:
                logger.warning("enqueue_skipped", subject_id=subject_id, reason="no_contact")
                return EnqueueResult(skipped_reason="no_contact")

            written = await self.store.upsert_queue_items(self.build_items(subject, channel))
        except Exception as e:
            logger.error("enqueue_failed", subject_id=subject_id, error=str(e), exc_info=True)
            return EnqueueResult(skipped_reason="database_error")

        logger.info("checkins_enqueued", subject_id=subject_id, created=len(written),
                    channel=channel.value)
        return EnqueueResult(created=len(written))
