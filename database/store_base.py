"""
Abstract Check-in Store — Interface for all storage backends.

Implementations:
  - SqlCheckinStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryCheckinStore (dict-based, single-process, no persistence)

The dispatcher needs only three things from a backend: point lookups,
"due and queued" range queries, and a conditional status update
(update_queue_status) that acts as a compare-and-swap on status.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    Alert, CheckinResponse, DiagnosisInsert, Payment, QueueItem,
    QueueStatus, Subject, Template,
)


class BaseCheckinStore(ABC):
    """Interface that all check-in store backends must implement."""

    # ── Subjects & payments ───────────────────────────────────

    @abstractmethod
    async def get_subject(self, subject_id: str) -> Optional[Subject]:
        ...

    @abstractmethod
    async def upsert_subject(self, subject: Subject) -> Subject:
        ...

    @abstractmethod
    async def add_payment(self, payment: Payment) -> None:
        ...

    @abstractmethod
    async def has_successful_payment(self, subject_id: str) -> bool:
        ...

    # ── Queue ─────────────────────────────────────────────────

    @abstractmethod
    async def upsert_queue_items(self, items: list[QueueItem]) -> list[QueueItem]:
        """Insert or update on (subject_id, day); an existing row keeps its status."""
        ...

    @abstractmethod
    async def get_queue_item(self, item_id: str) -> Optional[QueueItem]:
        ...

    @abstractmethod
    async def list_due_items(self, now: datetime, limit: int = 100) -> list[QueueItem]:
        """Queued items with due_at <= now, oldest due first."""
        ...

    @abstractmethod
    async def update_queue_status(
        self, item_id: str, expected: QueueStatus, new: QueueStatus, **fields: Any,
    ) -> bool:
        """Set status (and fields) only if the row is still in `expected`."""
        ...

    @abstractmethod
    async def list_queue_items(
        self, subject_id: str = None, status: QueueStatus = None, limit: int = 100,
    ) -> list[QueueItem]:
        ...

    @abstractmethod
    async def count_by_status(self) -> dict[str, int]:
        ...

    @abstractmethod
    async def count_due(self, now: datetime) -> int:
        ...

    # ── Content ───────────────────────────────────────────────

    @abstractmethod
    async def get_template(self, key: str) -> Optional[Template]:
        ...

    @abstractmethod
    async def upsert_template(self, template: Template) -> None:
        ...

    @abstractmethod
    async def get_diagnosis_insert(
        self, diagnosis_code: str, day: int, branch: str,
    ) -> Optional[DiagnosisInsert]:
        """Exact match on (diagnosis_code, day, branch), no fallback of any kind."""
        ...

    @abstractmethod
    async def upsert_diagnosis_insert(self, insert: DiagnosisInsert) -> None:
        ...

    @abstractmethod
    async def list_encouragements(self) -> list[str]:
        ...

    @abstractmethod
    async def add_encouragement(self, text: str) -> None:
        ...

    # ── Responses & alerts ────────────────────────────────────

    @abstractmethod
    async def upsert_response(self, response: CheckinResponse) -> None:
        """Insert or overwrite the value on (subject_id, day)."""
        ...

    @abstractmethod
    async def get_response(self, subject_id: str, day: int) -> Optional[CheckinResponse]:
        ...

    @abstractmethod
    async def set_response_note(self, subject_id: str, day: int, note: str) -> bool:
        """Attach a note only if the response has none yet."""
        ...

    @abstractmethod
    async def add_alert(self, alert: Alert) -> None:
        ...

    @abstractmethod
    async def list_alerts(self, subject_id: str = None) -> list[Alert]:
        ...
