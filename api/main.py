"""
FastAPI Application — check-in trigger, response and admin endpoints.

Provides:
- Manual / cron dispatch trigger (shared-secret bearer token)
- Enqueue endpoint called when an assessment completes
- One-tap response landing (/c/i?token=...) and free-text notes
- Queue stats, content preview and health
- Optional in-process dispatch poller
"""
from __future__ import annotations

import hmac
import html
import math
import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

from config.settings import Settings, get_settings, is_enabled
from channels import build_registry
from channels.base import ChannelRegistry
from checkins.attribution import parse_source_tag
from checkins.content import (
    ContentResolver, build_action_links, compose_message, template_key,
)
from checkins.diagnosis import resolve_diagnosis_code
from checkins.dispatcher import CheckinDispatcher
from checkins.poller import DispatchPoller
from checkins.rendering import render_html, render_text
from checkins.responses import ResponseRecorder
from checkins.scheduler import CheckinScheduler
from checkins.tokens import TokenCodec
from database.store_base import BaseCheckinStore
from database.store_factory import create_store
from models.schemas import Branch, CHECKIN_DAYS, ResponseValue

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class EnqueueRequest(BaseModel):
    subject_id: str


class NoteRequest(BaseModel):
    token: Optional[str] = None
    subject_id: Optional[str] = None
    day: Optional[int] = None
    note: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Helpers
# ──────────────────────────────────────────────────────────────

def _provided_token(request: Request) -> str:
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return request.headers.get("x-dispatch-token", "").strip()


def _authorized(request: Request, settings: Settings) -> bool:
    configured = (settings.dispatch.dispatch_token or "").strip()
    provided = _provided_token(request)
    return bool(configured) and hmac.compare_digest(configured.encode(), provided.encode())


def parse_limit(raw: Any, default: int = 100, maximum: int = 1000) -> int:
    """Floor a numeric limit into 1..maximum; anything else gives the default."""
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or not math.isfinite(raw):
        return default
    value = math.floor(raw)
    if value <= 0:
        return default
    return min(value, maximum)


_CONFIRMATIONS: dict[ResponseValue, str] = {
    ResponseValue.BETTER: "Glad you're feeling better",
    ResponseValue.SAME: "Thanks for checking in",
    ResponseValue.WORSE: "Thanks for letting us know",
}


def _page(title: str, message: str) -> str:
    return (
        '<!doctype html><html lang="en"><head><meta charset="utf-8">'
        f"<title>{html.escape(title)}</title></head>"
        '<body style="font-family:Arial,sans-serif;max-width:600px;margin:40px auto;padding:0 20px;">'
        f"<h1>{html.escape(title)}</h1><p>{html.escape(message)}</p></body></html>"
    )


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(
    settings: Settings = None,
    store: BaseCheckinStore = None,
    channels: ChannelRegistry = None,
    codec: TokenCodec = None,
) -> FastAPI:
    """
    Build the API. Components not passed in are created at startup from
    settings: the configured store backend, the email/SMS channel registry
    and the token codec.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or get_settings()
        app.state.settings = cfg

        app.state.store = store
        if app.state.store is None:
            if cfg.database.store_backend == "sql":
                from database.session import init_db
                await init_db(cfg.database.url)
            app.state.store = create_store({"store_backend": cfg.database.store_backend})

        app.state.channels = channels or await build_registry(cfg.channels)

        app.state.codec = codec
        if app.state.codec is None:
            if cfg.checkins.token_secret:
                app.state.codec = TokenCodec(cfg.checkins.token_secret)
            elif cfg.checkins.enabled:
                from checkins.errors import ConfigurationError
                raise ConfigurationError("CHECKINS_TOKEN_SECRET is required when check-ins are enabled")
            else:
                logger.warning("checkins_token_secret_missing")

        app.state.scheduler = CheckinScheduler(app.state.store, cfg)
        app.state.dispatcher = None
        app.state.recorder = None
        if app.state.codec is not None:
            app.state.dispatcher = CheckinDispatcher(
                app.state.store, app.state.channels, cfg, codec=app.state.codec,
            )
            app.state.recorder = ResponseRecorder(app.state.store, codec=app.state.codec,
                                                  settings=cfg)

        app.state.poller = None
        if app.state.dispatcher and cfg.dispatch.poll_interval_seconds > 0:
            app.state.poller = DispatchPoller(
                app.state.dispatcher, poll_interval_s=cfg.dispatch.poll_interval_seconds,
                batch_size=cfg.dispatch.default_limit,
            )
            await app.state.poller.start()

        logger.info("checkin_engine_started", app=cfg.app_name,
                    store=type(app.state.store).__name__,
                    enabled=cfg.checkins.enabled, sandbox=cfg.checkins.sandbox)
        yield

        if app.state.poller:
            await app.state.poller.stop()
        await app.state.channels.shutdown_all()
        if cfg.database.store_backend == "sql" and store is None:
            from database.session import close_db
            await close_db()
        logger.info("checkin_engine_stopped")

    app = FastAPI(
        title="Check-in Engine API",
        description="Scheduled check-in outreach with one-tap responses",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _require(component: Any, name: str) -> Any:
        if component is None:
            raise HTTPException(503, f"{name} unavailable: check-in token secret not configured")
        return component

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        state = request.app.state
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checkins_enabled": state.settings.checkins.enabled,
            "sandbox": state.settings.checkins.sandbox,
            "channels": [c.value for c in state.channels.get_available()],
            "poller_running": bool(state.poller and state.poller.running),
        }

    # ══════════════════════════════════════════════════════════
    #  DISPATCH & ENQUEUE
    # ══════════════════════════════════════════════════════════

    @app.api_route("/api/v1/checkins/dispatch", methods=["GET", "POST"])
    async def dispatch_checkins(request: Request, dryRun: str = Query("")):
        state = request.app.state
        cfg = state.settings
        if not _authorized(request, cfg):
            logger.warning("dispatch_unauthorized")
            return {"ok": True, "skipped": True, "reason": "missing-or-invalid-token"}

        limit = cfg.dispatch.default_limit
        if request.method == "POST":
            try:
                body = await request.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                limit = parse_limit(body.get("limit"), cfg.dispatch.default_limit,
                                    cfg.dispatch.max_limit)

        dispatcher = _require(state.dispatcher, "dispatcher")
        try:
            summary = await dispatcher.dispatch_due(limit=limit, dry_run=is_enabled(dryRun))
        except Exception as e:
            logger.error("dispatch_endpoint_failed", error=str(e), exc_info=True)
            return JSONResponse(status_code=500,
                                content={"ok": False, "skipped": False, "reason": "dispatch-failed"})
        return {"ok": True, "skipped": False, "result": summary.model_dump()}

    @app.post("/api/v1/checkins/enqueue")
    async def enqueue_checkins(req: EnqueueRequest, request: Request):
        state = request.app.state
        if not _authorized(request, state.settings):
            raise HTTPException(401, "Unauthorized")
        result = await state.scheduler.enqueue(req.subject_id)
        return result.model_dump()

    # ══════════════════════════════════════════════════════════
    #  RESPONSES
    # ══════════════════════════════════════════════════════════

    @app.get("/c/i", response_class=HTMLResponse)
    async def one_tap_response(request: Request, token: str = Query(""), source: str = Query("")):
        if not token:
            return HTMLResponse(_page("Link problem", "Missing token"), status_code=400)
        recorder = _require(request.app.state.recorder, "response recorder")
        ack = await recorder.verify_and_record(token)
        if ack is None:
            return HTMLResponse(_page("Link problem", "Invalid or expired link"), status_code=400)
        logger.info("one_tap_response", subject_id=ack.subject_id, day=ack.day,
                    value=ack.value.value, source_day=parse_source_tag(source))
        return HTMLResponse(_page(_CONFIRMATIONS[ack.value], ack.message))

    @app.post("/api/v1/checkins/note")
    async def record_note(req: NoteRequest, request: Request):
        recorder = _require(request.app.state.recorder, "response recorder")
        payload = recorder.codec.verify(req.token) if req.token else None
        subject_id = req.subject_id or (payload.subject_id if payload else None)
        day = req.day if req.day is not None else (payload.day if payload else None)
        if not subject_id or day not in CHECKIN_DAYS:
            return JSONResponse(status_code=400,
                                content={"ok": False, "error": "missing_required_fields"})

        ack = await recorder.record_note(subject_id, day, req.note)
        return {"ok": True, "red_flag": ack.red_flag, "message": ack.message}

    # ══════════════════════════════════════════════════════════
    #  ADMIN
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/checkins/queue/stats")
    async def queue_stats(request: Request):
        state = request.app.state
        if not _authorized(request, state.settings):
            raise HTTPException(401, "Unauthorized")
        counts = await state.store.count_by_status()
        due_now = await state.store.count_due(datetime.now(timezone.utc))
        return {"counts": counts, "due_now": due_now}

    @app.get("/api/v1/checkins/preview")
    async def preview(
        request: Request,
        subject_id: str = Query(...),
        day: int = Query(...),
        branch: Branch = Query(Branch.SAME),
    ):
        state = request.app.state
        cfg = state.settings
        if not _authorized(request, cfg):
            raise HTTPException(401, "Unauthorized")
        if day not in CHECKIN_DAYS:
            raise HTTPException(400, f"day must be one of {list(CHECKIN_DAYS)}")
        codec = _require(state.codec, "token codec")

        subject = await state.store.get_subject(subject_id)
        if subject is None:
            raise HTTPException(404, "Subject not found")

        key = template_key(day, branch)
        template = await state.store.get_template(key)
        if template is None:
            raise HTTPException(422, "missing_template")
        diagnosis_code = resolve_diagnosis_code(subject)
        if diagnosis_code is None:
            raise HTTPException(422, "missing_diagnosis_mapping")
        content = await ContentResolver(state.store).resolve_content(diagnosis_code, day, branch)
        if content is None:
            raise HTTPException(422, "missing_diagnosis_insert")

        links = build_action_links(codec, cfg.checkins.app_url, subject.id, day,
                                   cfg.checkins.preview_ttl_seconds)
        message = compose_message(template, content.insert_text, content.encouragement,
                                  links, day=day)
        return {
            "template_key": key,
            "diagnosis_code": diagnosis_code,
            "branch": content.branch.value,
            "subject": message.subject,
            "text": render_text(message),
            "html": render_html(message),
        }

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
