"""Shared test fixtures for the check-in engine."""
import asyncio
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

from channels.base import ChannelAdapter, ChannelError, ChannelRegistry
from checkins.tokens import TokenCodec
from config.settings import (
    AlertConfig, CheckinConfig, DatabaseConfig, DispatchConfig, Settings,
)
from database.store_memory import InMemoryCheckinStore
from models.schemas import (
    Branch, ChannelType, DiagnosisInsert, QueueItem, Subject, Template,
)

NOW = datetime(2025, 3, 20, 15, 0, tzinfo=timezone.utc)
TOKEN_SECRET = "test-token-secret"
DISPATCH_TOKEN = "dispatch-secret"


class FakeAdapter(ChannelAdapter):
    """In-process transport that records every send."""

    def __init__(self, channel: ChannelType = ChannelType.EMAIL):
        self.channel_type = channel
        super().__init__()
        self.sent: list[dict[str, Any]] = []
        self.error: str = ""
        self.delay: float = 0.0

    async def initialize(self, config: dict[str, Any]) -> None:
        self._initialized = True

    async def _do_send(self, address, subject, body, metadata):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise ChannelError(self.error, self.channel_type.value)
        self.sent.append({"address": address, "subject": subject, "body": body,
                          "metadata": metadata})
        return {"status": "sent", "channel_message_id": f"fake-{len(self.sent)}"}


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database=DatabaseConfig(store_backend="memory"),
        checkins=CheckinConfig(
            enabled=True,
            token_secret=TOKEN_SECRET,
            send_window="",
            app_url="https://app.example.com",
        ),
        dispatch=DispatchConfig(
            concurrency=4,
            send_timeout_seconds=0.5,
            store_timeout_seconds=1.0,
            dispatch_token=DISPATCH_TOKEN,
        ),
        alerts=AlertConfig(),
    )


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec(TOKEN_SECRET, clock=lambda: NOW.timestamp())


@pytest.fixture
def store() -> InMemoryCheckinStore:
    return InMemoryCheckinStore()


@pytest.fixture
def email_adapter() -> FakeAdapter:
    return FakeAdapter(ChannelType.EMAIL)


@pytest.fixture
def sms_adapter() -> FakeAdapter:
    return FakeAdapter(ChannelType.SMS)


@pytest.fixture
def registry(email_adapter, sms_adapter) -> ChannelRegistry:
    reg = ChannelRegistry()
    reg.register(email_adapter)
    reg.register(sms_adapter)
    return reg


@pytest.fixture
def sciatica_subject() -> Subject:
    return Subject(
        id="subj-001",
        created_at=NOW - timedelta(days=3, hours=2),
        email="pat@example.com",
        guide_type="sciatica",
    )


async def seed_content(store, diagnosis_code: str = "sciatica") -> None:
    for day in (3, 7, 14):
        await store.upsert_template(Template(
            key=f"day{day}.same",
            subject=f"Quick check-in (Day {day})",
            shell_text="Hi there.\n\n{{insert}}\n\n{{ Encouragement }}\n\nNext step options below.",
            disclaimer_text="Educational use only.",
        ))
        await store.upsert_diagnosis_insert(DiagnosisInsert(
            diagnosis_code=diagnosis_code, day=day, branch=Branch.SAME,
            insert_text=f"Day {day}: gentle nerve glides can help.",
        ))
    await store.add_encouragement("Consistency beats intensity. You have got this.")


@pytest_asyncio.fixture
async def seeded_store(store, sciatica_subject):
    await store.upsert_subject(sciatica_subject)
    await seed_content(store)
    return store


def make_item(subject_id: str = "subj-001", day: int = 3, due_at: datetime = None,
              channel: ChannelType = ChannelType.EMAIL, key: str = None) -> QueueItem:
    return QueueItem(
        subject_id=subject_id,
        day=day,
        due_at=due_at or NOW - timedelta(minutes=5),
        template_key=key or f"day{day}.same",
        channel=channel,
    )
