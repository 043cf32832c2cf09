"""
FastAPI server for callbridge.

This module wires the call-session engine to the outside world:
- ``POST /incoming`` answers Twilio with TwiML that opens a media stream
- ``WS /connection`` carries the media stream of one call
- ``POST /outbound-call`` places a call and provisions its configuration
- ``GET /call-config/{call_sid}`` shows a provisioned configuration
- ``POST /webhook/call-status`` receives Twilio status callbacks
- ``GET /api/calls`` and ``GET /api/calls/{call_sid}`` read call history
- ``GET /health`` reports service status

The process-wide SessionRegistry is created here; its eviction task runs for
the lifetime of the application.

Both Twilio webhooks require a valid ``X-Twilio-Signature``.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request, WebSocket
from fastapi.responses import PlainTextResponse, Response

from callbridge import __version__
from callbridge.agent import create_adapter, create_synthesis_client
from callbridge.agent.fallback import ApologySpeaker
from callbridge.config.constants import EVICTION_INTERVAL_SECONDS
from callbridge.config.logging_config import configure_logging
from callbridge.config.settings import settings
from callbridge.errors import ProvisioningError
from callbridge.models.call_session import CallConfig
from callbridge.models.message_schemas import OutboundCallRequest, OutboundCallResponse
from callbridge.models.registry import SessionRegistry
from callbridge.services.call_store import CallStore
from callbridge.services.capabilities import build_capability
from callbridge.services.lifecycle import LifecycleSink
from callbridge.services.notifications import TelegramNotifier
from callbridge.services.telephony import TwilioCallPlacer, TwilioWebhookVerifier
from callbridge.websocket_manager import MediaStreamManager

# Configure logging
logger = configure_logging()

registry = SessionRegistry()
call_store = CallStore(settings.database_path)
notifier = TelegramNotifier(settings.bot_token, settings.admin_chat_id)
call_placer = TwilioCallPlacer(
    settings.twilio_account_sid,
    settings.twilio_auth_token,
    settings.from_number,
    settings.server,
)
webhook_verifier = TwilioWebhookVerifier(settings.twilio_auth_token, settings.server)
stream_manager = MediaStreamManager(
    registry=registry,
    adapter_factory=lambda: create_adapter(settings),
    sink=LifecycleSink(call_store, notifier),
    apology_speaker=ApologySpeaker(create_synthesis_client(settings)),
    reply_timeout=settings.reply_timeout_seconds,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await call_store.initialize()
    eviction = asyncio.create_task(
        registry.run_eviction(EVICTION_INTERVAL_SECONDS, settings.config_ttl_seconds)
    )
    logger.info(f"callbridge started (voice backend: {settings.voice_backend})")
    try:
        yield
    finally:
        eviction.cancel()
        try:
            await eviction
        except asyncio.CancelledError:
            pass
        await stream_manager.sink.drain()
        await notifier.close()
        logger.info("callbridge stopped")


# Create FastAPI application
app = FastAPI(
    title="callbridge",
    description="Real-time call orchestration between Twilio media streams and conversational voice backends",
    version=__version__,
    lifespan=lifespan,
)


async def verify_twilio_signature(request: Request) -> None:
    """Reject webhook requests that do not carry a valid Twilio signature."""
    form = await request.form()
    signature = request.headers.get("X-Twilio-Signature")
    if not webhook_verifier.verify(request.url.path, request.url.query, form, signature):
        logger.warning(f"Rejected unsigned or forged Twilio request to {request.url.path}")
        raise HTTPException(status_code=403, detail="Invalid Twilio signature")


@app.post("/incoming", dependencies=[Depends(verify_twilio_signature)])
async def incoming_call():
    """Answer a Twilio voice webhook with TwiML connecting the call to ``/connection``."""
    twiml = (
        '<?xml version="1.0" encoding="UTF-8"?>'
        "<Response><Connect>"
        f'<Stream url="{settings.stream_url}" />'
        "</Connect></Response>"
    )
    return Response(content=twiml, media_type="text/xml")


@app.websocket("/connection")
async def media_stream(websocket: WebSocket):
    """WebSocket endpoint for Twilio media streams.

    One connection carries one call: the start event binds it to a call id,
    media frames are relayed to the voice backend, marks acknowledge played
    audio and stop ends the session.
    """
    await stream_manager.handle_websocket(websocket)


@app.post("/outbound-call", response_model=OutboundCallResponse)
async def outbound_call(request: OutboundCallRequest, background_tasks: BackgroundTasks):
    """Place an outbound call and provision the configuration its stream will use."""
    try:
        call = await call_placer.place_call(request.number)
    except ProvisioningError as e:
        logger.error(f"Error initiating outbound call: {e}")
        raise HTTPException(status_code=502, detail=f"Failed to initiate call: {e}")

    call_sid = call["sid"]
    config = CallConfig(
        prompt=request.prompt,
        first_message=request.first_message,
        capabilities=tuple(build_capability(spec) for spec in request.capabilities),
        personalities=request.personalities,
        user_chat_id=request.user_chat_id,
        phone_number=request.number,
    )
    registry.provision(call_sid, config)

    try:
        await call_store.create_call(
            call_sid, request.number, request.prompt, request.first_message, request.user_chat_id
        )
    except Exception as e:
        logger.error(f"[{call_sid}] Failed to record outbound call: {e}", exc_info=True)

    background_tasks.add_task(
        _notify_status, notifier.recipient(request.user_chat_id), "initiated", request.number
    )
    logger.info(f"[{call_sid}] Outbound call to {request.number} initiated")
    return OutboundCallResponse(call_sid=call_sid, to=request.number, status=call.get("status"))


@app.get("/call-config/{call_sid}")
async def call_config(call_sid: str):
    """Show the configuration provisioned for a call, with the prompt truncated."""
    entry = registry.get(call_sid)
    if entry is None or entry.config is None:
        raise HTTPException(status_code=404, detail="Call configuration not found")
    config = entry.config
    return {
        "call_sid": call_sid,
        "streaming": entry.manager is not None,
        "config": {
            "prompt_preview": config.prompt[:100] + ("..." if len(config.prompt) > 100 else ""),
            "first_message": config.first_message,
            "capabilities": [capability.name for capability in config.capabilities],
            "personalities": sorted(config.personalities),
            "user_chat_id": config.user_chat_id,
            "created_at": config.created_at.isoformat(),
        },
    }


@app.post("/webhook/call-status", dependencies=[Depends(verify_twilio_signature)])
async def call_status_webhook(request: Request, background_tasks: BackgroundTasks):
    """Twilio status callback (form-encoded): record the status and notify the operator."""
    form = await request.form()
    call_sid = form.get("CallSid")
    status = (form.get("CallStatus") or "").lower()
    duration = form.get("CallDuration") or form.get("Duration")
    logger.info(f"Webhook: call {call_sid} status: {status}")
    if not call_sid or not status:
        return PlainTextResponse("OK")

    try:
        call = await call_store.get_call(call_sid)
        if call:
            fields = {"duration": int(duration)} if duration and duration.isdigit() else {}
            await call_store.update_call_status(call_sid, status, **fields)
    except Exception as e:
        logger.error(f"[{call_sid}] Failed to record status {status}: {e}", exc_info=True)
        return PlainTextResponse("Error", status_code=500)

    if call:
        background_tasks.add_task(
            _notify_status,
            notifier.recipient(call.get("user_chat_id")),
            status,
            call.get("phone_number"),
        )
    return PlainTextResponse("OK")


async def _notify_status(chat_id, status, number) -> None:
    try:
        await notifier.notify_status(chat_id, status, number)
    except Exception as e:
        logger.error(f"Failed to send {status} notification: {e}")


@app.get("/api/calls")
async def list_calls(limit: int = 50):
    calls = await call_store.list_calls(limit)
    return {"calls": calls, "count": len(calls)}


@app.get("/api/calls/{call_sid}")
async def get_call(call_sid: str):
    call = await call_store.get_call(call_sid)
    if call is None:
        raise HTTPException(status_code=404, detail="Call not found")
    if call.get("ai_analysis"):
        call["ai_analysis"] = json.loads(call["ai_analysis"])
    transcripts = await call_store.get_call_transcripts(call_sid)
    return {"call": call, "transcripts": transcripts, "transcript_count": len(transcripts)}


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring system status.

    Returns:
        dict: Status information including active sessions and provisioned
        configurations awaiting their media stream.
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "voice_backend": settings.voice_backend,
        "active_sessions": registry.active_count,
        "provisioned_configs": registry.provisioned_count,
        "database_connected": call_store.initialized,
    }


@app.get("/")
async def root():
    """Root endpoint to display basic information about the API."""
    return {
        "name": "callbridge",
        "version": __version__,
        "endpoints": {
            "/incoming": "Twilio voice webhook (TwiML)",
            "/connection": "Twilio media stream WebSocket",
            "/outbound-call": "Place an outbound call",
            "/call-config/{call_sid}": "Provisioned call configuration",
            "/webhook/call-status": "Twilio status callback",
            "/api/calls": "Call history",
            "/health": "Health check endpoint",
        },
    }
