"""
Check-in Dispatcher — sends due queue items and records the outcome.

State machine per item:

    queued ──▶ sent      delivered; sent_at set, last_error cleared
           ──▶ failed    content or transport problem; last_error holds the tag
                         or the transport's message verbatim
           ──▶ skipped   explicit dry run ("would have sent")
           ──▶ queued    deferred by the start-date or send-window gate,
                         or resolved in sandbox mode; the row is not touched

Every write-back is a compare-and-swap from `queued`. Before delivery the
item is claimed in-process and its status re-read, so an overlapping run
that finds it in flight or already settled drops it instead of sending it
a second time. A failure inside one item never aborts the batch.

Usage:
    dispatcher = CheckinDispatcher(store, registry)
    summary = await dispatcher.dispatch_due(limit=100)
"""
from __future__ import annotations

import asyncio
import time
import structlog
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from channels.base import ChannelError, ChannelRegistry, hash_address
from checkins.content import (
    ContentResolver, build_action_links, compose_message, parse_template_key,
)
from checkins.diagnosis import resolve_diagnosis_code
from checkins.errors import StoreTimeoutError
from checkins.rendering import render_for_channel
from checkins.send_window import is_before_start, is_within_window
from checkins.tokens import TokenCodec, get_token_codec
from config.settings import Settings, get_settings
from database.store_base import BaseCheckinStore
from models.schemas import (
    Branch, DeliveryDecision, DispatchMode, DispatchSummary, QueueItem, QueueStatus,
)

logger = structlog.get_logger()

T = TypeVar("T")

# last_error tags
MISSING_CONTACT = "missing_contact"
MISSING_TEMPLATE = "missing_template"
MISSING_DIAGNOSIS_MAPPING = "missing_diagnosis_mapping"
MISSING_DIAGNOSIS_INSERT = "missing_diagnosis_insert"
DRY_RUN = "dry_run"

# per-item outcomes
SENT = "sent"
FAILED = "failed"
SKIPPED = "skipped"
LEFT_QUEUED = "left_queued"
LOST_RACE = "lost_race"
NOT_REACHED = "not_reached"

# item ids claimed by any dispatcher in this process
_in_flight: set[str] = set()


def decide_delivery(mode: DispatchMode) -> DeliveryDecision:
    """dry_run records the item as skipped, sandbox leaves it queued, live delivers."""
    mode = DispatchMode(mode)
    if mode == DispatchMode.DRY_RUN:
        return DeliveryDecision.MARK_SKIPPED
    if mode == DispatchMode.SANDBOX:
        return DeliveryDecision.LEAVE_QUEUED
    return DeliveryDecision.DELIVER


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CheckinDispatcher:
    """
    Processes due queue items with bounded concurrency.

    Args:
        store: check-in store backend
        channels: registry holding one adapter per ChannelType
        settings: defaults to the process settings
        codec: token codec for action links (built from settings if omitted)
        resolver: content resolver (built on `store` if omitted)
        clock: returns the batch's "now" as an aware datetime
    """

    def __init__(
        self,
        store: BaseCheckinStore,
        channels: ChannelRegistry,
        settings: Settings = None,
        codec: TokenCodec = None,
        resolver: ContentResolver = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.channels = channels
        self.settings = settings or get_settings()
        self.codec = codec or get_token_codec()
        self.resolver = resolver or ContentResolver(store)
        self.clock = clock

    # ── Helpers ───────────────────────────────────────────────

    def resolve_mode(self, dry_run: bool = False) -> DispatchMode:
        """An explicit dry run wins over the configured sandbox flag."""
        if dry_run:
            return DispatchMode.DRY_RUN
        if self.settings.checkins.sandbox:
            return DispatchMode.SANDBOX
        return DispatchMode.LIVE

    def clamp_limit(self, limit: Optional[int]) -> int:
        cfg = self.settings.dispatch
        if limit is None:
            limit = cfg.default_limit
        return max(1, min(int(limit), cfg.max_limit))

    async def _store(self, operation: str, call: Awaitable[T]) -> T:
        timeout = self.settings.dispatch.store_timeout_seconds
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError:
            raise StoreTimeoutError(operation, timeout) from None

    async def _transition(self, item: QueueItem, new: QueueStatus, **fields: Any) -> bool:
        ok = await self._store(
            "update_queue_status",
            self.store.update_queue_status(item.id, QueueStatus.QUEUED, new, **fields),
        )
        if not ok:
            logger.info("dispatch_lost_race", item_id=item.id, subject_id=item.subject_id,
                        day=item.day, wanted=new.value)
        return ok

    async def _fail(self, item: QueueItem, error: str) -> str:
        logger.warning("dispatch_item_failed", item_id=item.id, subject_id=item.subject_id,
                       day=item.day, error=error)
        ok = await self._transition(item, QueueStatus.FAILED, last_error=error)
        return FAILED if ok else LOST_RACE

    def gate(self, now: datetime) -> Optional[str]:
        """Reason the whole batch must wait, or None when sending is allowed."""
        cfg = self.settings.checkins
        if is_before_start(now, cfg.start_at):
            return f"before campaign start {cfg.start_at}"
        window = is_within_window(now, cfg.send_timezone, cfg.send_window)
        if not window.allowed:
            return window.reason
        if window.reason:
            logger.debug("send_window_fail_open", reason=window.reason)
        return None

    # ── Batch ─────────────────────────────────────────────────

    async def dispatch_due(self, limit: int = None, dry_run: bool = False) -> DispatchSummary:
        """
        Process up to `limit` due items and return the aggregate summary.

        Safe to call repeatedly on a fixed interval; the persisted queue is
        the only state carried between runs.
        """
        summary = DispatchSummary()
        now = self.clock()
        mode = self.resolve_mode(dry_run)
        limit = self.clamp_limit(limit)

        try:
            items = await self._store("list_due_items", self.store.list_due_items(now, limit))
        except Exception as e:
            logger.error("dispatch_query_failed", error=str(e))
            summary.errors.append(f"list_due_items: {e}")
            return summary

        summary.queued = len(items)
        if not items:
            logger.debug("dispatch_no_due_items")
            return summary

        blocked = self.gate(now)
        if blocked:
            summary.deferred = len(items)
            logger.info("dispatch_deferred", count=len(items), reason=blocked)
            return summary

        logger.info("dispatch_started", count=len(items), mode=mode.value, limit=limit)

        cfg = self.settings.dispatch
        semaphore = asyncio.Semaphore(max(1, cfg.concurrency))
        deadline = time.monotonic() + cfg.deadline_seconds if cfg.deadline_seconds > 0 else None

        async def run(item: QueueItem) -> str:
            async with semaphore:
                if deadline is not None and time.monotonic() >= deadline:
                    return NOT_REACHED
                if item.id in _in_flight:
                    logger.info("dispatch_lost_race", item_id=item.id, reason="in_flight")
                    return LOST_RACE
                _in_flight.add(item.id)
                try:
                    return await self._run_item(item, mode, now, summary.errors)
                finally:
                    _in_flight.discard(item.id)

        outcomes = await asyncio.gather(*(run(item) for item in items))

        for outcome in outcomes:
            if outcome == SENT:
                summary.sent += 1
            elif outcome == FAILED:
                summary.failed += 1
            elif outcome == SKIPPED:
                summary.skipped += 1

        not_reached = outcomes.count(NOT_REACHED)
        if not_reached:
            logger.warning("dispatch_deadline_reached", not_reached=not_reached)

        logger.info("dispatch_finished", queued=summary.queued, sent=summary.sent,
                    failed=summary.failed, skipped=summary.skipped,
                    errors=len(summary.errors), mode=mode.value)
        return summary

    async def _run_item(
        self, item: QueueItem, mode: DispatchMode, now: datetime, errors: list[str],
    ) -> str:
        try:
            return await self.process_item(item, mode, now)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error("dispatch_item_error", item_id=item.id, subject_id=item.subject_id,
                         day=item.day, error=message, exc_info=True)
            errors.append(f"{item.id}: {message}")
            try:
                ok = await self._transition(item, QueueStatus.FAILED, last_error=message)
            except Exception as write_error:
                logger.error("dispatch_item_writeback_failed", item_id=item.id,
                             error=str(write_error))
                return NOT_REACHED
            return FAILED if ok else LOST_RACE

    # ── Single item ───────────────────────────────────────────

    async def process_item(self, item: QueueItem, mode: DispatchMode, now: datetime) -> str:
        subject = await self._store("get_subject", self.store.get_subject(item.subject_id))
        address = subject.address_for(item.channel) if subject else None
        if not address:
            return await self._fail(item, MISSING_CONTACT)

        template = await self._store("get_template", self.store.get_template(item.template_key))
        if template is None:
            return await self._fail(item, MISSING_TEMPLATE)

        diagnosis_code = resolve_diagnosis_code(subject)
        if diagnosis_code is None:
            return await self._fail(item, MISSING_DIAGNOSIS_MAPPING)

        parsed = parse_template_key(item.template_key)
        branch = parsed[1] if parsed else Branch.SAME
        content = await self._store(
            "resolve_content", self.resolver.resolve_content(diagnosis_code, item.day, branch),
        )
        if content is None:
            return await self._fail(item, MISSING_DIAGNOSIS_INSERT)

        cfg = self.settings.checkins
        links = build_action_links(self.codec, cfg.app_url, subject.id, item.day,
                                   cfg.link_ttl_seconds)
        message = compose_message(template, content.insert_text, content.encouragement,
                                  links, day=item.day)

        decision = decide_delivery(mode)
        if decision == DeliveryDecision.MARK_SKIPPED:
            logger.info("dispatch_dry_run", item_id=item.id, subject_id=subject.id, day=item.day,
                        channel=item.channel.value, to_hash=hash_address(address),
                        subject=message.subject, diagnosis_code=diagnosis_code)
            ok = await self._transition(item, QueueStatus.SKIPPED, last_error=DRY_RUN)
            return SKIPPED if ok else LOST_RACE

        if decision == DeliveryDecision.LEAVE_QUEUED:
            logger.info("dispatch_sandbox", item_id=item.id, subject_id=subject.id, day=item.day,
                        channel=item.channel.value, to_hash=hash_address(address),
                        subject=message.subject)
            return LEFT_QUEUED

        adapter = self.channels.get(item.channel)
        if adapter is None:
            return await self._fail(item, f"no adapter registered for channel {item.channel.value}")

        current = await self._store("get_queue_item", self.store.get_queue_item(item.id))
        if current is None or current.status != QueueStatus.QUEUED:
            logger.info("dispatch_lost_race", item_id=item.id, subject_id=item.subject_id,
                        day=item.day, reason="settled")
            return LOST_RACE

        body, metadata = render_for_channel(message, item.channel)
        metadata["message_id"] = item.id
        timeout = self.settings.dispatch.send_timeout_seconds
        try:
            await asyncio.wait_for(adapter.send(address, message.subject, body, metadata),
                                   timeout=timeout)
        except asyncio.TimeoutError:
            return await self._fail(item, f"delivery timed out after {timeout:g}s")
        except ChannelError as e:
            return await self._fail(item, str(e))

        ok = await self._transition(item, QueueStatus.SENT, sent_at=self.clock(), last_error=None)
        if ok:
            logger.info("dispatch_sent", item_id=item.id, subject_id=subject.id, day=item.day,
                        channel=item.channel.value, branch=content.branch.value)
        return SENT if ok else LOST_RACE
