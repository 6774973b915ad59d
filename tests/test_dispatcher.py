"""
Tests — Check-in dispatcher.

Covers the per-item state machine, dispatch modes, the start and window
gates, bounded concurrency, timeouts and compare-and-swap write-back.
"""
import asyncio
import dataclasses
import pytest
from datetime import timedelta

from channels.base import ChannelRegistry
from checkins.dispatcher import (
    LOST_RACE, MISSING_CONTACT, MISSING_DIAGNOSIS_INSERT, MISSING_DIAGNOSIS_MAPPING,
    MISSING_TEMPLATE, CheckinDispatcher, decide_delivery,
)
from conftest import NOW, FakeAdapter, make_item, seed_content
from models.schemas import (
    Branch, ChannelType, DeliveryDecision, DiagnosisInsert, DispatchMode, QueueStatus,
    Subject, Template,
)


def with_checkins(settings, **changes):
    return dataclasses.replace(settings, checkins=dataclasses.replace(settings.checkins, **changes))


def with_dispatch(settings, **changes):
    return dataclasses.replace(settings, dispatch=dataclasses.replace(settings.dispatch, **changes))


def make_dispatcher(store, registry, settings, codec):
    return CheckinDispatcher(store, registry, settings=settings, codec=codec, clock=lambda: NOW)


async def enqueue(store, *items):
    return await store.upsert_queue_items(list(items))


# ══════════════════════════════════════════════════════════════
#  Delivery
# ══════════════════════════════════════════════════════════════

class TestDelivery:
    @pytest.mark.asyncio
    async def test_sends_due_item(self, seeded_store, registry, email_adapter, settings, codec):
        [item] = await enqueue(seeded_store, make_item(day=3))
        summary = await make_dispatcher(seeded_store, registry, settings, codec).dispatch_due()

        assert summary.queued == 1
        assert summary.sent == 1
        assert summary.failed == 0
        assert summary.errors == []

        [sent] = email_adapter.sent
        assert sent["address"] == "pat@example.com"
        assert sent["subject"] == "Quick check-in (Day 3)"
        assert "Day 3: gentle nerve glides can help." in sent["body"]
        assert "Consistency beats intensity." in sent["body"]
        assert "https://app.example.com/c/i?token=" in sent["body"]
        assert sent["body"].endswith("Educational use only.")
        assert "<!doctype html>" in sent["metadata"]["html"]
        assert sent["metadata"]["message_id"] == item.id

        row = await seeded_store.get_queue_item(item.id)
        assert row.status == QueueStatus.SENT
        assert row.sent_at == NOW
        assert row.last_error is None

    @pytest.mark.asyncio
    async def test_future_items_not_touched(self, seeded_store, registry, email_adapter, settings, codec):
        [item] = await enqueue(seeded_store, make_item(day=7, due_at=NOW + timedelta(days=4)))
        summary = await make_dispatcher(seeded_store, registry, settings, codec).dispatch_due()
        assert summary.queued == 0
        assert email_adapter.sent == []
        assert (await seeded_store.get_queue_item(item.id)).status == QueueStatus.QUEUED

    @pytest.mark.asyncio
    async def test_limit_takes_oldest_first(self, seeded_store, registry, email_adapter, settings, codec):
        items = await enqueue(
            seeded_store,
            make_item(day=14, due_at=NOW - timedelta(minutes=1)),
            make_item(day=3, due_at=NOW - timedelta(days=2)),
            make_item(day=7, due_at=NOW - timedelta(hours=3)),
        )
        summary = await make_dispatcher(seeded_store, registry, settings, codec).dispatch_due(limit=2)

        assert summary.queued == 2
        assert summary.sent == 2
        statuses = {i.day: (await seeded_store.get_queue_item(i.id)).status for i in items}
        assert statuses == {3: QueueStatus.SENT, 7: QueueStatus.SENT, 14: QueueStatus.QUEUED}

    @pytest.mark.asyncio
    async def test_sms_item_uses_sms_renderer(self, store, registry, sms_adapter, settings, codec):
        await store.upsert_subject(Subject(id="p", phone_number="+15550100", guide_type="sciatica",
                                           created_at=NOW - timedelta(days=3)))
        await seed_content(store)
        await enqueue(store, make_item(subject_id="p", channel=ChannelType.SMS))

        summary = await make_dispatcher(store, registry, settings, codec).dispatch_due()
        assert summary.sent == 1
        [sent] = sms_adapter.sent
        assert sent["address"] == "+15550100"
        assert sent["body"].endswith("Reply STOP to opt out.")
        assert "html" not in sent["metadata"]

    @pytest.mark.asyncio
    async def test_initial_branch_borrows_same_insert(self, seeded_store, registry, email_adapter,
                                                     settings, codec):
        await seeded_store.upsert_template(Template(key="day3.initial", shell_text="{{insert}}"))
        [item] = await enqueue(seeded_store, make_item(day=3, key="day3.initial"))
        summary = await make_dispatcher(seeded_store, registry, settings, codec).dispatch_due()
        assert summary.sent == 1
        assert email_adapter.sent[0]["body"].startswith("Day 3: gentle nerve glides can help.")


# ══════════════════════════════════════════════════════════════
#  Modes
# ══════════════════════════════════════════════════════════════

class TestModes:
    def test_decide_delivery(self):
        assert decide_delivery(DispatchMode.LIVE) == DeliveryDecision.DELIVER
        assert decide_delivery(DispatchMode.DRY_RUN) == DeliveryDecision.MARK_SKIPPED
        assert decide_delivery("sandbox") == DeliveryDecision.LEAVE_QUEUED

    @pytest.mark.asyncio
    async def test_dry_run_never_sends(self, seeded_store, registry, email_adapter, settings, codec):
        [item] = await enqueue(seeded_store, make_item())
        summary = await make_dispatcher(seeded_store, registry, settings, codec).dispatch_due(dry_run=True)

        assert email_adapter.sent == []
        assert summary.skipped == 1
        assert summary.sent == 0
        row = await seeded_store.get_queue_item(item.id)
        assert row.status == QueueStatus.SKIPPED
        assert row.last_error == "dry_run"

    @pytest.mark.asyncio
    async def test_sandbox_leaves_item_queued(self, seeded_store, registry, email_adapter, settings, codec):
        settings = with_checkins(settings, sandbox=True)
        [item] = await enqueue(seeded_store, make_item())
        summary = await make_dispatcher(seeded_store, registry, settings, codec).dispatch_due()

        assert email_adapter.sent == []
        assert summary.queued == 1
        assert (summary.sent, summary.failed, summary.skipped) == (0, 0, 0)
        assert (await seeded_store.get_queue_item(item.id)).status == QueueStatus.QUEUED

    @pytest.mark.asyncio
    async def test_dry_run_wins_over_sandbox(self, seeded_store, registry, settings, codec):
        settings = with_checkins(settings, sandbox=True)
        [item] = await enqueue(seeded_store, make_item())
        dispatcher = make_dispatcher(seeded_store, registry, settings, codec)
        assert dispatcher.resolve_mode(dry_run=True) == DispatchMode.DRY_RUN
        await dispatcher.dispatch_due(dry_run=True)
        assert (await seeded_store.get_queue_item(item.id)).status == QueueStatus.SKIPPED


# ══════════════════════════════════════════════════════════════
#  Failures
# ══════════════════════════════════════════════════════════════

class TestFailures:
    async def _dispatch_one(self, store, registry, settings, codec, item):
        [written] = await enqueue(store, item)
        summary = await make_dispatcher(store, registry, settings, codec).dispatch_due()
        return summary, await store.get_queue_item(written.id)

    @pytest.mark.asyncio
    async def test_missing_contact(self, store, registry, settings, codec):
        await store.upsert_subject(Subject(id="x", guide_type="sciatica"))
        await seed_content(store)
        summary, row = await self._dispatch_one(store, registry, settings, codec, make_item(subject_id="x"))
        assert summary.failed == 1
        assert row.status == QueueStatus.FAILED
        assert row.last_error == MISSING_CONTACT

    @pytest.mark.asyncio
    async def test_unknown_subject_is_missing_contact(self, store, registry, settings, codec):
        await seed_content(store)
        _, row = await self._dispatch_one(store, registry, settings, codec, make_item(subject_id="ghost"))
        assert row.last_error == MISSING_CONTACT

    @pytest.mark.asyncio
    async def test_missing_template(self, seeded_store, registry, settings, codec):
        _, row = await self._dispatch_one(seeded_store, registry, settings, codec,
                                          make_item(key="day3.worse"))
        assert row.status == QueueStatus.FAILED
        assert row.last_error == MISSING_TEMPLATE

    @pytest.mark.asyncio
    async def test_missing_diagnosis_mapping(self, store, registry, email_adapter, settings, codec):
        await store.upsert_subject(Subject(id="g", email="g@example.com", guide_type="generic"))
        await seed_content(store)
        _, row = await self._dispatch_one(store, registry, settings, codec, make_item(subject_id="g"))
        assert row.last_error == MISSING_DIAGNOSIS_MAPPING
        assert email_adapter.sent == []

    @pytest.mark.asyncio
    async def test_missing_insert_has_no_cross_diagnosis_fallback(self, store, registry, email_adapter,
                                                                 settings, codec):
        await store.upsert_subject(Subject(id="c", email="c@example.com", guide_type="canal_stenosis"))
        await seed_content(store, "sciatica")
        _, row = await self._dispatch_one(store, registry, settings, codec, make_item(subject_id="c"))
        assert row.last_error == MISSING_DIAGNOSIS_INSERT
        assert email_adapter.sent == []

    @pytest.mark.asyncio
    async def test_missing_insert_for_branch(self, seeded_store, registry, settings, codec):
        await seeded_store.upsert_template(Template(key="day3.worse", shell_text="{{insert}}"))
        _, row = await self._dispatch_one(seeded_store, registry, settings, codec,
                                          make_item(key="day3.worse"))
        assert row.last_error == MISSING_DIAGNOSIS_INSERT

    @pytest.mark.asyncio
    async def test_transport_error_recorded_verbatim(self, seeded_store, registry, email_adapter,
                                                     settings, codec):
        email_adapter.error = "SendGrid error 503: service unavailable"
        summary, row = await self._dispatch_one(seeded_store, registry, settings, codec, make_item())
        assert summary.failed == 1
        assert summary.errors == []
        assert row.status == QueueStatus.FAILED
        assert row.last_error == "SendGrid error 503: service unavailable"
        assert row.sent_at is None

    @pytest.mark.asyncio
    async def test_send_timeout(self, seeded_store, registry, email_adapter, settings, codec):
        settings = with_dispatch(settings, send_timeout_seconds=0.05)
        email_adapter.delay = 1.0
        summary, row = await self._dispatch_one(seeded_store, registry, settings, codec, make_item())
        assert summary.failed == 1
        assert row.last_error == "delivery timed out after 0.05s"

    @pytest.mark.asyncio
    async def test_no_adapter_for_channel(self, store, email_adapter, settings, codec):
        registry = ChannelRegistry()
        registry.register(email_adapter)
        await store.upsert_subject(Subject(id="p", phone_number="+15550100", guide_type="sciatica"))
        await seed_content(store)
        _, row = await self._dispatch_one(store, registry, settings, codec,
                                          make_item(subject_id="p", channel=ChannelType.SMS))
        assert row.last_error == "no adapter registered for channel sms"

    @pytest.mark.asyncio
    async def test_one_bad_item_does_not_abort_batch(self, seeded_store, registry, email_adapter,
                                                     settings, codec, monkeypatch):
        original = seeded_store.get_template

        async def flaky(key):
            if key == "day3.same":
                raise RuntimeError("template table locked")
            return await original(key)

        monkeypatch.setattr(seeded_store, "get_template", flaky)
        bad, good = await enqueue(seeded_store, make_item(day=3), make_item(day=7))
        summary = await make_dispatcher(seeded_store, registry, settings, codec).dispatch_due()

        assert summary.sent == 1
        assert summary.failed == 1
        assert summary.errors == [f"{bad.id}: template table locked"]
        assert (await seeded_store.get_queue_item(bad.id)).last_error == "template table locked"
        assert (await seeded_store.get_queue_item(good.id)).status == QueueStatus.SENT

    @pytest.mark.asyncio
    async def test_store_timeout_fails_item(self, seeded_store, registry, settings, codec, monkeypatch):
        settings = with_dispatch(settings, store_timeout_seconds=0.05)

        async def slow(subject_id):
            await asyncio.sleep(1)

        monkeypatch.setattr(seeded_store, "get_subject", slow)
        [item] = await enqueue(seeded_store, make_item())
        summary = await make_dispatcher(seeded_store, registry, settings, codec).dispatch_due()

        assert summary.failed == 1
        assert summary.errors == [f"{item.id}: store get_subject timed out after 0.05s"]

    @pytest.mark.asyncio
    async def test_list_failure_is_reported(self, seeded_store, registry, settings, codec, monkeypatch):
        async def broken(now, limit):
            raise RuntimeError("connection refused")

        monkeypatch.setattr(seeded_store, "list_due_items", broken)
        summary = await make_dispatcher(seeded_store, registry, settings, codec).dispatch_due()
        assert summary.queued == 0
        assert summary.errors == ["list_due_items: connection refused"]


# ══════════════════════════════════════════════════════════════
#  Gates
# ══════════════════════════════════════════════════════════════

class TestGates:
    @pytest.mark.asyncio
    async def test_outside_window_defers(self, seeded_store, registry, email_adapter, settings, codec):
        # NOW is 11:00 in New York
        settings = with_checkins(settings, send_window="20:00-21:00")
        [item] = await enqueue(seeded_store, make_item())
        summary = await make_dispatcher(seeded_store, registry, settings, codec).dispatch_due()

        assert summary.deferred == 1
        assert summary.sent == 0
        assert email_adapter.sent == []
        row = await seeded_store.get_queue_item(item.id)
        assert row.status == QueueStatus.QUEUED
        assert row.last_error is None

    @pytest.mark.asyncio
    async def test_inside_window_sends(self, seeded_store, registry, settings, codec):
        settings = with_checkins(settings, send_window="08:00-20:00")
        await enqueue(seeded_store, make_item())
        summary = await make_dispatcher(seeded_store, registry, settings, codec).dispatch_due()
        assert summary.sent == 1

    @pytest.mark.asyncio
    async def test_before_campaign_start_defers(self, seeded_store, registry, email_adapter, settings, codec):
        settings = with_checkins(settings, start_at="2025-04-01T00:00:00Z")
        dispatcher = make_dispatcher(seeded_store, registry, settings, codec)
        assert dispatcher.gate(NOW) == "before campaign start 2025-04-01T00:00:00Z"
        [item] = await enqueue(seeded_store, make_item())
        summary = await dispatcher.dispatch_due()
        assert summary.deferred == 1
        assert (await seeded_store.get_queue_item(item.id)).status == QueueStatus.QUEUED

    @pytest.mark.asyncio
    async def test_malformed_window_fails_open(self, seeded_store, registry, settings, codec):
        settings = with_checkins(settings, send_window="whenever")
        await enqueue(seeded_store, make_item())
        summary = await make_dispatcher(seeded_store, registry, settings, codec).dispatch_due()
        assert summary.sent == 1


# ══════════════════════════════════════════════════════════════
#  Concurrency
# ══════════════════════════════════════════════════════════════

class TestConcurrency:
    def test_clamp_limit(self, store, registry, settings, codec):
        dispatcher = make_dispatcher(store, registry, settings, codec)
        assert dispatcher.clamp_limit(None) == settings.dispatch.default_limit
        assert dispatcher.clamp_limit(0) == 1
        assert dispatcher.clamp_limit(10_000) == settings.dispatch.max_limit

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, store, registry, settings, codec):
        settings = with_dispatch(settings, concurrency=2)
        in_flight = 0
        peak = 0

        class CountingAdapter(FakeAdapter):
            async def _do_send(self, address, subject, body, metadata):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.02)
                in_flight -= 1
                return {"status": "sent"}

        registry.register(CountingAdapter(ChannelType.EMAIL))
        await seed_content(store)
        for n in range(6):
            await store.upsert_subject(Subject(id=f"s{n}", email=f"s{n}@example.com",
                                               guide_type="sciatica"))
            await enqueue(store, make_item(subject_id=f"s{n}"))

        summary = await make_dispatcher(store, registry, settings, codec).dispatch_due()
        assert summary.sent == 6
        assert peak == 2

    @pytest.mark.asyncio
    async def test_overlapping_runs_send_once(self, seeded_store, registry, email_adapter, settings, codec):
        email_adapter.delay = 0.05
        [item] = await enqueue(seeded_store, make_item())
        first = make_dispatcher(seeded_store, registry, settings, codec)
        second = make_dispatcher(seeded_store, registry, settings, codec)

        a, b = await asyncio.gather(first.dispatch_due(), second.dispatch_due())

        assert len(email_adapter.sent) == 1
        assert a.sent + b.sent == 1
        assert (await seeded_store.get_queue_item(item.id)).status == QueueStatus.SENT

    @pytest.mark.asyncio
    async def test_settled_item_is_not_sent(self, seeded_store, registry, email_adapter, settings, codec):
        [item] = await enqueue(seeded_store, make_item())
        await seeded_store.update_queue_status(item.id, QueueStatus.QUEUED, QueueStatus.SENT)

        outcome = await make_dispatcher(seeded_store, registry, settings, codec).process_item(
            item, DispatchMode.LIVE, NOW)
        assert outcome == LOST_RACE
        assert email_adapter.sent == []

    @pytest.mark.asyncio
    async def test_write_back_only_from_queued(self, seeded_store, registry, settings, codec):
        [item] = await enqueue(seeded_store, make_item())
        await seeded_store.update_queue_status(item.id, QueueStatus.QUEUED, QueueStatus.SENT)

        dispatcher = make_dispatcher(seeded_store, registry, settings, codec)
        assert await dispatcher._fail(item, "late failure") == LOST_RACE
        row = await seeded_store.get_queue_item(item.id)
        assert row.status == QueueStatus.SENT
        assert row.last_error is None

    @pytest.mark.asyncio
    async def test_deadline_leaves_rest_queued(self, store, registry, email_adapter, settings, codec):
        settings = with_dispatch(settings, concurrency=1, deadline_seconds=0.03)
        email_adapter.delay = 0.06
        await seed_content(store)
        for n in range(3):
            await store.upsert_subject(Subject(id=f"s{n}", email=f"s{n}@example.com",
                                               guide_type="sciatica"))
            await enqueue(store, make_item(subject_id=f"s{n}", due_at=NOW - timedelta(minutes=10 - n)))

        summary = await make_dispatcher(store, registry, settings, codec).dispatch_due()

        assert summary.queued == 3
        assert summary.sent == 1
        assert summary.failed == 0
        queued = await store.list_queue_items(status=QueueStatus.QUEUED)
        assert {i.subject_id for i in queued} == {"s1", "s2"}
