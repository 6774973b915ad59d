"""
Email Channel Adapter — SendGrid v3 mail send over httpx.

Provides:
- Plain text + HTML delivery through the SendGrid HTTP API
- Log-only fallback when no API key is configured (development)
- Provider errors surfaced as ChannelError with the provider's message
"""
from __future__ import annotations

import uuid
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from models.schemas import ChannelType
from channels.base import ChannelAdapter, ChannelError, hash_address

logger = structlog.get_logger()

class EmailAdapter(ChannelAdapter):
    """
    Email adapter backed by SendGrid.

    Without an `api_key` credential every send is logged instead of
    delivered and reported with status "logged", so local runs never
    reach a real inbox.
    """

    channel_type = ChannelType.EMAIL
    API_URL = "https://api.sendgrid.com/v3/mail/send"

    def __init__(self):
        super().__init__()
        self._api_key: str = ""
        self._from_email: str = ""
        self._from_name: str = ""
        self._client: Optional[httpx.AsyncClient] = None

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._api_key = config.get("api_key", "") or ""
        self._from_email = config.get("from_email", "") or "checkins@example.com"
        self._from_name = config.get("from_name", "") or "Check-ins"
        self._initialized = True
        logger.info("email_adapter_initialized", live=bool(self._api_key))

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=httpx.Timeout(10.0, connect=5.0),
            )
        return self._client

    # ── Send ──────────────────────────────────────────────────

    async def _do_send(
        self, address: str, subject: str, body: str, metadata: dict[str, Any],
    ) -> dict[str, Any]:
        if not address:
            raise ChannelError("No email address", self.channel_type.value)

        if not self._api_key:
            logger.info("email_logged", to_hash=hash_address(address), subject=subject,
                        length=len(body))
            return {"status": "logged", "channel_message_id": f"log-{uuid.uuid4().hex[:12]}"}

        content = [{"type": "text/plain", "value": body}]
        if metadata.get("html"):
            content.append({"type": "text/html", "value": metadata["html"]})

        payload = {
            "personalizations": [{"to": [{"email": address}]}],
            "from": {"email": self._from_email, "name": self._from_name},
            "subject": subject,
            "content": content,
        }
        resp = await self._post(payload)
        if resp.status_code >= 400:
            logger.error("sendgrid_api_error", status=resp.status_code, body=resp.text[:500])
            raise ChannelError(
                f"SendGrid error {resp.status_code}: {resp.text[:200]}",
                self.channel_type.value,
                retryable=resp.status_code >= 500,
            )

        message_id = resp.headers.get("X-Message-Id", "")
        logger.info("email_sent", to_hash=hash_address(address), subject=subject,
                    message_id=message_id)
        return {"status": "sent", "channel_message_id": message_id}

    @retry(
        retry=retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout)),
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(self.API_URL, json=payload)

    async def shutdown(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
