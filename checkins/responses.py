"""
Response recording — the other end of the one-tap links.

verify_and_record(token, note=None)
    Verifies an action token and upserts the response for (subject, day).
    Tapping a different button for the same day overwrites the value.

record_note(subject_id, day, note)
    Attaches a short free-text note (first one wins), screens it for red
    flags, and on a match stores an alert and notifies the alert webhook.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from checkins.red_flags import RedFlagScanner
from checkins.tokens import TokenCodec, get_token_codec
from config.settings import Settings, get_settings
from database.store_base import BaseCheckinStore
from models.schemas import Alert, CheckinResponse, ResponseAck, ResponseValue

logger = structlog.get_logger()

NOTE_LIMIT = 280
NOTE_EXCERPT_LIMIT = 100

EMPTY_NOTE_MESSAGE = "No note provided."
NOTE_LOGGED_MESSAGE = "Thanks for your note; it has been logged successfully."
SAFETY_MESSAGE = (
    "Thanks for your note. Some symptoms can signal serious conditions. "
    "Please seek in-person care if you have any concerns. "
    "This information is educational and not a diagnosis."
)
RESPONSE_MESSAGES: dict[ResponseValue, str] = {
    ResponseValue.BETTER: "Great to hear you are feeling better. Your response has been recorded.",
    ResponseValue.SAME: "Thanks for checking in. Your response has been recorded.",
    ResponseValue.WORSE: (
        "Thanks for letting us know. Your response has been recorded. "
        "If symptoms worsen or new symptoms develop, seek medical care."
    ),
}


def clean_note(note: Optional[str]) -> str:
    return (note or "").strip()[:NOTE_LIMIT]


class ResponseRecorder:
    def __init__(
        self,
        store: BaseCheckinStore,
        codec: TokenCodec = None,
        scanner: RedFlagScanner = None,
        settings: Settings = None,
        http_client: httpx.AsyncClient = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.codec = codec or get_token_codec()
        self.scanner = scanner or RedFlagScanner(self.settings.alerts.red_flags_path or None)
        self._http = http_client

    async def verify_and_record(self, token: Any, note: Optional[str] = None) -> Optional[ResponseAck]:
        """None for any invalid token; otherwise the recorded response."""
        payload = self.codec.verify(token)
        if payload is None:
            return None

        await self.store.upsert_response(CheckinResponse(
            subject_id=payload.subject_id,
            day=payload.day,
            value=payload.value,
            created_at=datetime.now(timezone.utc),
        ))
        logger.info("checkin_response_recorded", subject_id=payload.subject_id,
                    day=payload.day, value=payload.value.value)

        ack = ResponseAck(
            subject_id=payload.subject_id,
            day=payload.day,
            value=payload.value,
            message=RESPONSE_MESSAGES[payload.value],
        )
        if clean_note(note):
            note_ack = await self.record_note(payload.subject_id, payload.day, note)
            ack.red_flag = note_ack.red_flag
            ack.matched_terms = note_ack.matched_terms
            ack.message = note_ack.message
        return ack

    async def record_note(self, subject_id: str, day: int, note: Optional[str]) -> ResponseAck:
        text = clean_note(note)
        existing = await self.store.get_response(subject_id, day)
        ack = ResponseAck(subject_id=subject_id, day=day,
                          value=existing.value if existing else None)

        if not text:
            logger.info("checkin_note_empty", subject_id=subject_id, day=day)
            ack.message = EMPTY_NOTE_MESSAGE
            return ack

        stored = await self.store.set_response_note(subject_id, day, text)
        if not stored:
            logger.info("checkin_note_not_stored", subject_id=subject_id, day=day,
                        has_response=existing is not None)

        matched = self.scanner.scan(text)
        ack.red_flag = bool(matched)
        ack.matched_terms = matched
        ack.message = SAFETY_MESSAGE if matched else NOTE_LOGGED_MESSAGE

        if matched:
            await self.store.add_alert(Alert(
                subject_id=subject_id,
                type="red_flag",
                payload={"day": day, "matched": matched, "note_excerpt": text[:NOTE_EXCERPT_LIMIT]},
            ))
            logger.warning("red_flag_detected", subject_id=subject_id, day=day, matched=matched)
            await self.notify_webhook(subject_id, matched)

        logger.info("checkin_note_recorded", subject_id=subject_id, day=day,
                    red_flag=ack.red_flag, length=len(text))
        return ack

    # ── Alert webhook ─────────────────────────────────────────

    async def notify_webhook(self, subject_id: str, matched: list[str]) -> bool:
        """POST the alert to the configured webhook. Failures are logged, never raised."""
        cfg = self.settings.alerts
        if not cfg.webhook_url:
            return False

        body = {
            "subject_id": subject_id,
            "matched_terms": matched,
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            resp = await self._post_webhook(cfg.webhook_url, body, cfg.webhook_timeout_seconds)
        except httpx.HTTPError as e:
            logger.warning("red_flag_webhook_failed", subject_id=subject_id, error=str(e))
            return False

        if resp.status_code >= 400:
            logger.warning("red_flag_webhook_rejected", subject_id=subject_id,
                           status=resp.status_code)
            return False
        logger.info("red_flag_webhook_posted", subject_id=subject_id, matched=matched)
        return True

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, max=2),
        reraise=True,
    )
    async def _post_webhook(self, url: str, body: dict[str, Any], timeout: float) -> httpx.Response:
        if self._http is not None:
            return await self._http.post(url, json=body, timeout=timeout)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(url, json=body)
