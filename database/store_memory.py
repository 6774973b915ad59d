"""
InMemoryCheckinStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlCheckinStore
  - Safe under asyncio (single event loop, no awaits inside mutations)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import uuid
import structlog
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import BaseCheckinStore
from models.schemas import (
    Alert, CheckinResponse, DiagnosisInsert, Payment, QueueItem,
    QueueStatus, Subject, Template,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


class InMemoryCheckinStore(BaseCheckinStore):
    """
    Full-featured in-memory store with the same interface as SqlCheckinStore.
    Models are copied on the way in and out so callers never alias stored rows.
    """

    def __init__(self):
        self._subjects: dict[str, Subject] = {}
        self._payments: list[Payment] = []
        self._queue: dict[str, QueueItem] = {}                 # id → item
        self._templates: dict[str, Template] = {}              # key → template
        self._inserts: dict[tuple[str, int, str], DiagnosisInsert] = {}
        self._encouragements: list[str] = []
        self._responses: dict[tuple[str, int], CheckinResponse] = {}
        self._alerts: list[Alert] = []

        # Indexes
        self._queue_key_index: dict[tuple[str, int], str] = {}  # (subject_id, day) → id
        logger.info("inmemory_store_initialized")

    # ── Subjects & payments ───────────────────────────────

    async def get_subject(self, subject_id: str) -> Optional[Subject]:
        subject = self._subjects.get(subject_id)
        return subject.model_copy() if subject else None

    async def upsert_subject(self, subject: Subject) -> Subject:
        self._subjects[subject.id] = subject.model_copy()
        return subject

    async def add_payment(self, payment: Payment) -> None:
        self._payments.append(payment.model_copy())

    async def has_successful_payment(self, subject_id: str) -> bool:
        return any(
            p.subject_id == subject_id and p.status == "succeeded"
            for p in self._payments
        )

    # ── Queue ─────────────────────────────────────────────

    async def upsert_queue_items(self, items: list[QueueItem]) -> list[QueueItem]:
        now = _utcnow()
        written = []
        for item in items:
            key = (item.subject_id, item.day)
            existing_id = self._queue_key_index.get(key)
            if existing_id:
                row = self._queue[existing_id]
                row.due_at = item.due_at
                row.template_key = item.template_key
                row.channel = item.channel
                row.updated_at = now
            else:
                row = item.model_copy()
                row.id = row.id or _new_id()
                row.created_at = now
                row.updated_at = now
                self._queue[row.id] = row
                self._queue_key_index[key] = row.id
            written.append(row.model_copy())
        return written

    async def get_queue_item(self, item_id: str) -> Optional[QueueItem]:
        row = self._queue.get(item_id)
        return row.model_copy() if row else None

    async def list_due_items(self, now: datetime, limit: int = 100) -> list[QueueItem]:
        due = [
            row for row in self._queue.values()
            if row.status == QueueStatus.QUEUED and row.due_at <= now
        ]
        due.sort(key=lambda r: r.due_at)
        return [r.model_copy() for r in due[:limit]]

    async def update_queue_status(
        self, item_id: str, expected: QueueStatus, new: QueueStatus, **fields: Any,
    ) -> bool:
        row = self._queue.get(item_id)
        if row is None or row.status != expected:
            return False
        row.status = new
        for name, value in fields.items():
            setattr(row, name, value)
        row.updated_at = _utcnow()
        return True

    async def list_queue_items(
        self, subject_id: str = None, status: QueueStatus = None, limit: int = 100,
    ) -> list[QueueItem]:
        rows = [
            r for r in self._queue.values()
            if (subject_id is None or r.subject_id == subject_id)
            and (status is None or r.status == status)
        ]
        rows.sort(key=lambda r: (r.due_at, r.day))
        return [r.model_copy() for r in rows[:limit]]

    async def count_by_status(self) -> dict[str, int]:
        counts = Counter(r.status.value for r in self._queue.values())
        return {s.value: counts.get(s.value, 0) for s in QueueStatus}

    async def count_due(self, now: datetime) -> int:
        return sum(
            1 for r in self._queue.values()
            if r.status == QueueStatus.QUEUED and r.due_at <= now
        )

    # ── Content ───────────────────────────────────────────

    async def get_template(self, key: str) -> Optional[Template]:
        template = self._templates.get(key)
        return template.model_copy() if template else None

    async def upsert_template(self, template: Template) -> None:
        self._templates[template.key] = template.model_copy()

    async def get_diagnosis_insert(
        self, diagnosis_code: str, day: int, branch: str,
    ) -> Optional[DiagnosisInsert]:
        found = self._inserts.get((diagnosis_code, day, str(getattr(branch, "value", branch))))
        return found.model_copy() if found else None

    async def upsert_diagnosis_insert(self, insert: DiagnosisInsert) -> None:
        key = (insert.diagnosis_code, insert.day, insert.branch.value)
        self._inserts[key] = insert.model_copy()

    async def list_encouragements(self) -> list[str]:
        return list(self._encouragements)

    async def add_encouragement(self, text: str) -> None:
        if text not in self._encouragements:
            self._encouragements.append(text)

    # ── Responses & alerts ────────────────────────────────

    async def upsert_response(self, response: CheckinResponse) -> None:
        key = (response.subject_id, response.day)
        existing = self._responses.get(key)
        if existing:
            existing.value = response.value
            existing.created_at = response.created_at
        else:
            self._responses[key] = response.model_copy()

    async def get_response(self, subject_id: str, day: int) -> Optional[CheckinResponse]:
        found = self._responses.get((subject_id, day))
        return found.model_copy() if found else None

    async def set_response_note(self, subject_id: str, day: int, note: str) -> bool:
        existing = self._responses.get((subject_id, day))
        if existing is None or existing.note is not None:
            return False
        existing.note = note
        return True

    async def add_alert(self, alert: Alert) -> None:
        self._alerts.append(alert.model_copy())

    async def list_alerts(self, subject_id: str = None) -> list[Alert]:
        return [
            a.model_copy() for a in self._alerts
            if subject_id is None or a.subject_id == subject_id
        ]
