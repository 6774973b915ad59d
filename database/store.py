"""
SqlCheckinStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Queue items and responses are written with the dialect's native upsert
(ON CONFLICT DO UPDATE, or ON DUPLICATE KEY UPDATE on MySQL) against their
(subject_id, day) unique constraints, so overlapping writers for the same key
converge on one row. The remaining upserts are select-then-update inside one
session. Status write-back is a single conditional UPDATE
(... WHERE id = :id AND status = :expected) whose rowcount tells the
caller whether it won the race.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import Table, select, update, and_, func
from sqlalchemy.dialects import mysql, postgresql, sqlite

from database.models import (
    SubjectRow, PaymentRow, QueueItemRow, TemplateRow,
    DiagnosisInsertRow, EncouragementRow, CheckinResponseRow, AlertRow,
)
from database.session import get_session
from database.store_base import BaseCheckinStore
from models.schemas import (
    Alert, Branch, ChannelType, CheckinResponse, DiagnosisInsert, Payment,
    QueueItem, QueueStatus, ResponseValue, Subject, Template,
)

logger = structlog.get_logger()

_CONFLICT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _upsert(dialect: str, table: Table, values: dict[str, Any],
            keys: Iterable[str], refresh: Iterable[str]):
    """
    INSERT that, when `keys` collide with an existing row, overwrites only
    the `refresh` columns of that row.
    """
    if dialect == "mysql":
        stmt = mysql.insert(table).values(**values)
        return stmt.on_duplicate_key_update(**{c: stmt.inserted[c] for c in refresh})
    insert = _CONFLICT_INSERTS.get(dialect)
    if insert is None:
        raise ValueError(f"Unsupported database dialect: {dialect}")
    stmt = insert(table).values(**values)
    return stmt.on_conflict_do_update(
        index_elements=list(keys),
        set_={c: stmt.excluded[c] for c in refresh},
    )


class SqlCheckinStore(BaseCheckinStore):
    """
    Persistent check-in store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Subjects & payments ────────────────────────────────

    async def get_subject(self, subject_id: str) -> Optional[Subject]:
        async with get_session() as db:
            row = await db.get(SubjectRow, subject_id)
            return self._row_to_subject(row) if row else None

    async def upsert_subject(self, subject: Subject) -> Subject:
        async with get_session() as db:
            row = await db.get(SubjectRow, subject.id)
            if row is None:
                row = SubjectRow(id=subject.id)
                db.add(row)
            row.email = subject.email
            row.phone_number = subject.phone_number
            row.guide_type = subject.guide_type
            row.sms_opt_in = subject.sms_opt_in
            row.sms_opted_out = subject.sms_opted_out
            row.created_at = _as_utc(subject.created_at)
            return subject

    async def add_payment(self, payment: Payment) -> None:
        async with get_session() as db:
            db.add(PaymentRow(
                subject_id=payment.subject_id,
                status=payment.status,
                amount_cents=payment.amount_cents,
                created_at=_as_utc(payment.created_at),
            ))

    async def has_successful_payment(self, subject_id: str) -> bool:
        async with get_session() as db:
            stmt = (
                select(PaymentRow.id)
                .where(and_(
                    PaymentRow.subject_id == subject_id,
                    PaymentRow.status == "succeeded",
                ))
                .limit(1)
            )
            result = await db.execute(stmt)
            return result.scalar_one_or_none() is not None

    # ── Queue ──────────────────────────────────────────────

    async def upsert_queue_items(self, items: list[QueueItem]) -> list[QueueItem]:
        now = datetime.now(timezone.utc)
        async with get_session() as db:
            dialect = db.get_bind().dialect.name
            for item in items:
                await db.execute(_upsert(
                    dialect,
                    QueueItemRow.__table__,
                    {
                        "subject_id": item.subject_id,
                        "day": item.day,
                        "due_at": _as_utc(item.due_at),
                        "template_key": item.template_key,
                        "channel": _enum_value(item.channel),
                        "status": QueueStatus.QUEUED.value,
                        "created_at": now,
                        "updated_at": now,
                    },
                    keys=("subject_id", "day"),
                    refresh=("due_at", "template_key", "channel", "updated_at"),
                ))
            rows = []
            for item in items:
                stmt = select(QueueItemRow).where(and_(
                    QueueItemRow.subject_id == item.subject_id,
                    QueueItemRow.day == item.day,
                ))
                rows.append((await db.execute(stmt)).scalar_one())
            return [self._row_to_queue_item(r) for r in rows]

    async def get_queue_item(self, item_id: str) -> Optional[QueueItem]:
        async with get_session() as db:
            row = await db.get(QueueItemRow, item_id)
            return self._row_to_queue_item(row) if row else None

    async def list_due_items(self, now: datetime, limit: int = 100) -> list[QueueItem]:
        async with get_session() as db:
            stmt = (
                select(QueueItemRow)
                .where(and_(
                    QueueItemRow.status == QueueStatus.QUEUED.value,
                    QueueItemRow.due_at <= _as_utc(now),
                ))
                .order_by(QueueItemRow.due_at)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_queue_item(r) for r in result.scalars().all()]

    async def update_queue_status(
        self, item_id: str, expected: QueueStatus, new: QueueStatus, **fields: Any,
    ) -> bool:
        async with get_session() as db:
            stmt = (
                update(QueueItemRow)
                .where(and_(
                    QueueItemRow.id == item_id,
                    QueueItemRow.status == _enum_value(expected),
                ))
                .values(
                    status=_enum_value(new),
                    updated_at=datetime.now(timezone.utc),
                    **{k: _as_utc(v) if isinstance(v, datetime) else _enum_value(v)
                       for k, v in fields.items()},
                )
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def list_queue_items(
        self, subject_id: str = None, status: QueueStatus = None, limit: int = 100,
    ) -> list[QueueItem]:
        async with get_session() as db:
            stmt = select(QueueItemRow)
            if subject_id is not None:
                stmt = stmt.where(QueueItemRow.subject_id == subject_id)
            if status is not None:
                stmt = stmt.where(QueueItemRow.status == _enum_value(status))
            stmt = stmt.order_by(QueueItemRow.due_at, QueueItemRow.day).limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_queue_item(r) for r in result.scalars().all()]

    async def count_by_status(self) -> dict[str, int]:
        async with get_session() as db:
            stmt = select(QueueItemRow.status, func.count()).group_by(QueueItemRow.status)
            counts = {status: n for status, n in (await db.execute(stmt)).all()}
            return {s.value: counts.get(s.value, 0) for s in QueueStatus}

    async def count_due(self, now: datetime) -> int:
        async with get_session() as db:
            stmt = select(func.count()).select_from(QueueItemRow).where(and_(
                QueueItemRow.status == QueueStatus.QUEUED.value,
                QueueItemRow.due_at <= _as_utc(now),
            ))
            return (await db.execute(stmt)).scalar_one()

    # ── Content ────────────────────────────────────────────

    async def get_template(self, key: str) -> Optional[Template]:
        async with get_session() as db:
            row = await db.get(TemplateRow, key)
            if not row:
                return None
            return Template(
                key=row.key, subject=row.subject, shell_text=row.shell_text,
                disclaimer_text=row.disclaimer_text, channel=ChannelType(row.channel),
            )

    async def upsert_template(self, template: Template) -> None:
        async with get_session() as db:
            row = await db.get(TemplateRow, template.key)
            if row is None:
                row = TemplateRow(key=template.key)
                db.add(row)
            row.subject = template.subject
            row.shell_text = template.shell_text
            row.disclaimer_text = template.disclaimer_text
            row.channel = _enum_value(template.channel)

    async def get_diagnosis_insert(
        self, diagnosis_code: str, day: int, branch: str,
    ) -> Optional[DiagnosisInsert]:
        async with get_session() as db:
            stmt = select(DiagnosisInsertRow).where(and_(
                DiagnosisInsertRow.diagnosis_code == diagnosis_code,
                DiagnosisInsertRow.day == day,
                DiagnosisInsertRow.branch == _enum_value(branch),
            ))
            row = (await db.execute(stmt)).scalar_one_or_none()
            if not row:
                return None
            return DiagnosisInsert(
                diagnosis_code=row.diagnosis_code, day=row.day,
                branch=Branch(row.branch), insert_text=row.insert_text,
            )

    async def upsert_diagnosis_insert(self, insert: DiagnosisInsert) -> None:
        async with get_session() as db:
            stmt = select(DiagnosisInsertRow).where(and_(
                DiagnosisInsertRow.diagnosis_code == insert.diagnosis_code,
                DiagnosisInsertRow.day == insert.day,
                DiagnosisInsertRow.branch == insert.branch.value,
            ))
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row:
                row.insert_text = insert.insert_text
            else:
                db.add(DiagnosisInsertRow(
                    diagnosis_code=insert.diagnosis_code,
                    day=insert.day,
                    branch=insert.branch.value,
                    insert_text=insert.insert_text,
                ))

    async def list_encouragements(self) -> list[str]:
        async with get_session() as db:
            result = await db.execute(select(EncouragementRow.text))
            return list(result.scalars().all())

    async def add_encouragement(self, text: str) -> None:
        async with get_session() as db:
            stmt = select(EncouragementRow.id).where(EncouragementRow.text == text)
            if (await db.execute(stmt)).scalar_one_or_none() is None:
                db.add(EncouragementRow(text=text))

    # ── Responses & alerts ─────────────────────────────────

    async def upsert_response(self, response: CheckinResponse) -> None:
        async with get_session() as db:
            await db.execute(_upsert(
                db.get_bind().dialect.name,
                CheckinResponseRow.__table__,
                {
                    "subject_id": response.subject_id,
                    "day": response.day,
                    "value": response.value.value,
                    "note": response.note,
                    "created_at": _as_utc(response.created_at),
                },
                keys=("subject_id", "day"),
                refresh=("value", "created_at"),
            ))

    async def get_response(self, subject_id: str, day: int) -> Optional[CheckinResponse]:
        async with get_session() as db:
            row = await self._find_response(db, subject_id, day)
            if not row:
                return None
            return CheckinResponse(
                subject_id=row.subject_id, day=row.day,
                value=ResponseValue(row.value), note=row.note,
                created_at=_as_utc(row.created_at),
            )

    async def set_response_note(self, subject_id: str, day: int, note: str) -> bool:
        async with get_session() as db:
            stmt = (
                update(CheckinResponseRow)
                .where(and_(
                    CheckinResponseRow.subject_id == subject_id,
                    CheckinResponseRow.day == day,
                    CheckinResponseRow.note.is_(None),
                ))
                .values(note=note)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def add_alert(self, alert: Alert) -> None:
        async with get_session() as db:
            db.add(AlertRow(
                subject_id=alert.subject_id,
                type=alert.type,
                payload=alert.payload,
                created_at=_as_utc(alert.created_at),
            ))

    async def list_alerts(self, subject_id: str = None) -> list[Alert]:
        async with get_session() as db:
            stmt = select(AlertRow).order_by(AlertRow.created_at)
            if subject_id is not None:
                stmt = stmt.where(AlertRow.subject_id == subject_id)
            result = await db.execute(stmt)
            return [
                Alert(subject_id=r.subject_id, type=r.type,
                      payload=r.payload or {}, created_at=_as_utc(r.created_at))
                for r in result.scalars().all()
            ]

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    async def _find_response(db, subject_id: str, day: int) -> Optional[CheckinResponseRow]:
        stmt = select(CheckinResponseRow).where(and_(
            CheckinResponseRow.subject_id == subject_id,
            CheckinResponseRow.day == day,
        ))
        return (await db.execute(stmt)).scalar_one_or_none()

    @staticmethod
    def _row_to_subject(row: SubjectRow) -> Subject:
        return Subject(
            id=row.id,
            created_at=_as_utc(row.created_at),
            email=row.email or "",
            phone_number=row.phone_number or "",
            guide_type=row.guide_type,
            sms_opt_in=bool(row.sms_opt_in),
            sms_opted_out=bool(row.sms_opted_out),
        )

    @staticmethod
    def _row_to_queue_item(row: QueueItemRow) -> QueueItem:
        return QueueItem(
            id=row.id,
            subject_id=row.subject_id,
            day=row.day,
            due_at=_as_utc(row.due_at),
            sent_at=_as_utc(row.sent_at),
            template_key=row.template_key,
            channel=ChannelType(row.channel),
            status=QueueStatus(row.status),
            last_error=row.last_error,
            created_at=_as_utc(row.created_at) or datetime.now(timezone.utc),
            updated_at=_as_utc(row.updated_at) or datetime.now(timezone.utc),
        )
