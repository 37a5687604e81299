"""
FastAPI application for the utility voice agent.

Provides:
- Incoming-call webhook that opens the OpenAI session and answers with TwiML
- Call status callback that ends sessions
- WebSocket endpoint for Twilio Media Streams
- Health check and monitoring endpoints
"""

# IMPORTANT: Configure logging FIRST, before any other imports
# This ensures verbose libraries don't spam debug logs
import logging

# Reduce noise from verbose libraries - set this BEFORE they're imported
logging.getLogger("websockets").setLevel(logging.WARNING)
logging.getLogger("websockets.client").setLevel(logging.WARNING)
logging.getLogger("websockets.server").setLevel(logging.WARNING)
logging.getLogger("python_multipart").setLevel(logging.WARNING)
logging.getLogger("python_multipart.multipart").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)

import uuid
from contextlib import asynccontextmanager
from xml.sax.saxutils import quoteattr

from fastapi import FastAPI, Request, WebSocket, status
from fastapi.responses import JSONResponse, Response

from ..functions import default_registry
from ..utils.config import settings
from .errors import ChannelConnectionError, DuplicateConnectionError, NotConnectedError
from .registry import SessionRegistry
from .twilio_stream import TwilioMediaChannel

# Now configure logging properly
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# One session per live call
sessions = SessionRegistry(tools=default_registry())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting utility voice agent server...")
    logger.info(f"Media stream host: {settings.hostname}")
    yield
    logger.info("Shutting down utility voice agent server...")
    await sessions.shutdown()


app = FastAPI(
    title="Smalltown Gas and Electric Voice Agent",
    description="Real-time voice relay between Twilio and the OpenAI Realtime API",
    version="1.0.0",
    lifespan=lifespan,
)


# =============================================================================
# Health Check Endpoints
# =============================================================================


@app.get("/")
async def root():
    """Root endpoint - basic health check."""
    return {
        "service": "Smalltown Gas and Electric Voice Agent",
        "status": "running",
        "active_calls": len(sessions),
    }


@app.get("/health")
async def health_check():
    """Detailed health check endpoint."""
    return {
        "status": "healthy",
        "active_calls": len(sessions),
        "config": {
            "realtime_model": settings.openai_realtime_model,
            "voice": settings.openai_realtime_voice,
            "hostname": settings.hostname,
            "tools": sessions.tools.names(),
        },
    }


# =============================================================================
# Twilio Webhook Endpoints
# =============================================================================


def _twiml_connect_stream(stream_url: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        "<Response>"
        "<Connect>"
        f"<Stream url={quoteattr(stream_url)} />"
        "</Connect>"
        "</Response>"
    )


@app.post("/incoming-call")
async def incoming_call(request: Request):
    """
    Twilio voice webhook - opens the OpenAI session, then returns TwiML.

    The response is held until the OpenAI session is ready so Twilio's Media
    Stream never sends audio before OpenAI can take it.
    """
    form_data = await request.form()
    call_sid = form_data.get("CallSid") or f"local-{uuid.uuid4().hex[:8]}"
    logger.info(f"incoming-call {call_sid} from {form_data.get('From')} to {form_data.get('To')}")

    try:
        controller = sessions.create(call_sid)
    except DuplicateConnectionError as e:
        logger.error(f"incoming-call webhook failed: {e}")
        return Response(status_code=status.HTTP_409_CONFLICT)

    try:
        await controller.start()
    except ChannelConnectionError as e:
        logger.error(
            f"incoming call webhook failed, probably because OpenAI websocket could not connect: {e}"
        )
        controller.end("openai connection failed")
        return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    twiml = _twiml_connect_stream(settings.media_stream_url(call_sid))
    return Response(content=twiml, media_type="application/xml")


@app.post("/call-status-update")
async def call_status_update(request: Request):
    """Twilio status callback - ends the session when the call is over."""
    form_data = await request.form()
    call_sid = form_data.get("CallSid")
    call_status = form_data.get("CallStatus", "")

    controller = sessions.get(call_sid) if call_sid else None
    if controller is None:
        logger.info(f"call-status-update for unknown call {call_sid}: {call_status}")
    else:
        controller.handle_call_status(call_status)

    return Response(status_code=status.HTTP_200_OK)


# =============================================================================
# WebSocket Endpoint for Media Streams
# =============================================================================


@app.websocket("/media-stream/{call_sid}")
async def media_stream(websocket: WebSocket, call_sid: str):
    """
    WebSocket endpoint for Twilio Media Streams.

    Binds the stream to the call's session and stays open until the session ends.
    """
    controller = sessions.get(call_sid)
    if controller is None:
        logger.warning(f"Media stream for unknown call {call_sid}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    channel = TwilioMediaChannel(websocket)
    try:
        await controller.bind_telephony(channel)
    except (DuplicateConnectionError, NotConnectedError) as e:
        logger.warning(f"Rejecting media stream for call {call_sid}: {e}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await channel.wait_closed()
    logger.info(f"Media stream for call {call_sid} finished")


# =============================================================================
# API Endpoints for Monitoring
# =============================================================================


@app.get("/calls")
async def list_calls():
    """List all active calls."""
    return {
        "active_calls": [controller.session.to_dict() for controller in sessions]
    }


@app.get("/calls/{call_sid}")
async def get_call(call_sid: str):
    """Get details for a specific call."""
    controller = sessions.get(call_sid)
    if controller is None:
        return JSONResponse(
            status_code=404,
            content={"error": "Call not found"},
        )

    return {
        **controller.session.to_dict(),
        "transcript": controller.session.transcript,
    }


# =============================================================================
# Main Entry Point
# =============================================================================


def main():
    """Run the FastAPI server."""
    import uvicorn

    uvicorn.run(
        "gridvoice.voice.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    main()
