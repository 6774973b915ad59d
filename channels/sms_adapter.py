"""
SMS Channel Adapter — Twilio Messages API over httpx.

Provides:
- GSM-7 vs Unicode detection for accurate segment counting
- Automatic message truncation to max segment limit
- Log-only fallback when no Twilio credentials are configured
"""
from __future__ import annotations

import re
import uuid
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from models.schemas import ChannelType
from channels.base import ChannelAdapter, ChannelError, hash_address

logger = structlog.get_logger()

# ══════════════════════════════════════════════════════════════
#  GSM-7 CHARACTER SET & SEGMENT COUNTING
# ══════════════════════════════════════════════════════════════

_GSM7_CHARS = set(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)

# Extended GSM-7 (takes 2 bytes each)
_GSM7_EXTENDED = set("^{}[]~|\\€")

def _is_gsm7(text: str) -> bool:
    return all(c in _GSM7_CHARS or c in _GSM7_EXTENDED for c in text)

def segment_count(text: str) -> int:
    """
    Calculate SMS segment count based on encoding.

    GSM-7: 160 chars single / 153 chars per segment
    Unicode: 70 chars single / 67 chars per segment
    """
    if not text:
        return 0

    if _is_gsm7(text):
        char_count = sum(2 if c in _GSM7_EXTENDED else 1 for c in text)
        if char_count <= 160:
            return 1
        return (char_count + 152) // 153
    if len(text) <= 70:
        return 1
    return (len(text) + 66) // 67

def truncate_to_segments(content: str, max_segments: int) -> str:
    if segment_count(content) <= max_segments:
        return content
    per_segment = 153 if _is_gsm7(content) else 67
    return content[: per_segment * max_segments - 3] + "..."

# ══════════════════════════════════════════════════════════════
#  SMS ADAPTER
# ══════════════════════════════════════════════════════════════

class SMSAdapter(ChannelAdapter):
    """SMS adapter with segment awareness."""

    channel_type = ChannelType.SMS
    BASE_URL = "https://api.twilio.com/2010-04-01/Accounts"

    def __init__(self):
        super().__init__()
        self._account_sid: str = ""
        self._auth_token: str = ""
        self._from_number: str = ""
        self._max_segments: int = 3
        self._client: Optional[httpx.AsyncClient] = None

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._account_sid = config.get("account_sid", "") or ""
        self._auth_token = config.get("auth_token", "") or ""
        self._from_number = config.get("from_number", "") or ""
        self._max_segments = int(config.get("max_segments", 3) or 3)
        self._initialized = True
        logger.info("sms_adapter_initialized", live=self._is_live)

    @property
    def _is_live(self) -> bool:
        return bool(self._account_sid and self._auth_token and self._from_number)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                auth=(self._account_sid, self._auth_token),
                timeout=httpx.Timeout(10.0, connect=5.0),
            )
        return self._client

    # ── Send ──────────────────────────────────────────────────

    async def _do_send(
        self, address: str, subject: str, body: str, metadata: dict[str, Any],
    ) -> dict[str, Any]:
        if not address:
            raise ChannelError("No SMS number", self.channel_type.value)

        normalized = re.sub(r"[^\d]", "", address)
        content = truncate_to_segments(body, self._max_segments)
        segments = segment_count(content)

        if not self._is_live:
            logger.info("sms_logged", to_hash=hash_address(normalized), segments=segments)
            return {"status": "logged", "channel_message_id": f"log-{uuid.uuid4().hex[:12]}",
                    "segments": segments}

        resp = await self._post({"From": self._from_number, "To": address, "Body": content})
        if resp.status_code >= 400:
            logger.error("twilio_api_error", status=resp.status_code, body=resp.text[:500])
            raise ChannelError(
                f"Twilio error {resp.status_code}: {resp.text[:200]}",
                self.channel_type.value,
                retryable=resp.status_code >= 500,
            )

        msg_sid = resp.json().get("sid", "")
        logger.info("sms_sent", to_hash=hash_address(normalized), segments=segments, msg_sid=msg_sid)
        return {"status": "sent", "channel_message_id": msg_sid, "segments": segments}

    @retry(
        retry=retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout)),
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def _post(self, data: dict[str, str]) -> httpx.Response:
        client = await self._get_client()
        url = f"{self.BASE_URL}/{self._account_sid}/Messages.json"
        return await client.post(url, data=data)

    async def shutdown(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
