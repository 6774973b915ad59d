"""
Channel renderers — turn a ComposedMessage into what a transport sends.

Email gets a plain-text body plus an HTML alternative with one button per
response value. SMS gets the text content, the links and an opt-out line.
"""
from __future__ import annotations

import html
import re
from typing import Any

from models.schemas import ChannelType, ComposedMessage, ResponseValue

SMS_OPT_OUT = "Reply STOP to opt out."

_BUTTON_STYLES: dict[ResponseValue, str] = {
    ResponseValue.BETTER: "background:#0B5394;color:#FFFFFF;border:1px solid #0B5394;",
    ResponseValue.SAME: "background:#F3F4F6;color:#111827;border:1px solid #CBD5E1;",
    ResponseValue.WORSE: "background:#FEE2E2;color:#991B1B;border:1px solid #FCA5A5;",
}


def _paragraphs(text: str, style: str) -> str:
    blocks = [b.strip() for b in re.split(r"\r?\n\s*\r?\n", text.strip()) if b.strip()]
    return "".join(
        f'<p style="{style}">{html.escape(b).replace(chr(10), "<br>")}</p>' for b in blocks
    )


def render_text(message: ComposedMessage) -> str:
    parts = [message.body.strip()]
    if message.disclaimer:
        parts.append(message.disclaimer.strip())
    return "\n\n".join(p for p in parts if p)


def render_html(message: ComposedMessage) -> str:
    body = _paragraphs(message.content or message.body,
                       "margin:0 0 18px;font-size:16px;line-height:1.65;color:#1F2937;")
    buttons = "".join(
        f'<a href="{html.escape(link.url, quote=True)}" style="display:inline-block;'
        f'margin:0 12px 12px 0;padding:12px 20px;border-radius:999px;font-weight:600;'
        f'text-decoration:none;{_BUTTON_STYLES[link.value]}">{html.escape(link.label)}</a>'
        for link in message.links
    )
    disclaimer = _paragraphs(message.disclaimer,
                             "margin:0;font-size:12px;line-height:1.6;color:#6B7280;")
    return (
        "<!doctype html>\n"
        '<html lang="en"><head><meta charset="utf-8">'
        f"<title>{html.escape(message.subject)}</title></head>"
        '<body style="margin:0;padding:24px;background:#F6F8FB;font-family:Arial,sans-serif;">'
        '<div style="max-width:640px;margin:0 auto;background:#FFFFFF;border-radius:16px;padding:32px;">'
        f'<h1 style="margin:0 0 16px;font-size:24px;color:#0B5394;">{html.escape(message.subject)}</h1>'
        f"{body}"
        f'<div style="margin:12px 0 24px;">{buttons}</div>'
        f'<div style="border-top:1px solid #E2E8F5;padding-top:16px;">{disclaimer}</div>'
        "</div></body></html>"
    )


def render_sms(message: ComposedMessage) -> str:
    lines = [message.content.strip() or message.subject]
    lines.extend(f"{link.label}: {link.url}" for link in message.links)
    lines.append(SMS_OPT_OUT)
    return "\n".join(lines)


def render_for_channel(message: ComposedMessage, channel: ChannelType) -> tuple[str, dict[str, Any]]:
    """Return (body, metadata) for ChannelAdapter.send."""
    if ChannelType(channel) == ChannelType.SMS:
        return render_sms(message), {}
    return render_text(message), {"html": render_html(message)}
