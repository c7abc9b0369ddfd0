"""
FastAPI server for the Twilio voice bridge.

Endpoints:
- GET /: Liveness text
- POST /ping: Trivial health responder
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /twiml: Connection-instruction TwiML for Twilio webhooks
- POST /outbound: Place an outbound call
- WS /streams: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict
import logging

from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse
import structlog
import uvicorn

from src.bridge.config import ConfigError, get_config, init_config
from src.bridge.llm import validate_openai_model
from src.bridge.outbound import OutboundCallError, place_outbound_call, render_stream_document
from src.bridge.registry import CallRegistry

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
STREAMS_TEMPLATE = TEMPLATES_DIR / "streams.xml"


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    outbound_calls: int = 0
    errors: int = 0

    def to_dict(self, registry: CallRegistry) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": registry.total_sessions,
            "active_calls": registry.active_count,
            "outbound_calls": self.outbound_calls,
            "errors": self.errors,
        }


metrics = ServerMetrics()
registry = CallRegistry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting Twilio voice bridge...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        await validate_openai_model(config.openai_api_key, config.openai_model)

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    await registry.close_all()


app = FastAPI(
    title="Twilio Voice Bridge",
    description="Full-duplex voice conversation bridge for Twilio phone calls",
    version="1.0.0",
    lifespan=lifespan,
)

# Collaborator overrides for new sessions (stt/llm/tts/transcoder).
app.state.session_components = {}


@app.get("/")
async def root() -> PlainTextResponse:
    """Liveness check."""
    return PlainTextResponse("Hello, your server is running.")


@app.post("/ping")
async def ping() -> JSONResponse:
    return JSONResponse(content={"message": "pong"})


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": registry.active_count,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict(registry))


@app.post("/twiml")
@app.get("/twiml")
async def generate_twiml(request: Request) -> Response:
    """
    Generate TwiML for Twilio webhook.

    Returns the streams template pointed at our WebSocket endpoint.
    """
    config = get_config()

    try:
        twiml = render_stream_document(STREAMS_TEMPLATE, config.public_host or "localhost")
    except OSError as e:
        logger.error("Error reading streams template", error=str(e))
        metrics.errors += 1
        return PlainTextResponse("Internal Server Error (twiml)", status_code=500)

    logger.info("Generated TwiML", ws_url=config.ws_url)

    return Response(
        content=twiml,
        media_type="application/xml",
    )


@app.post("/outbound")
async def outbound_call(request: Request) -> JSONResponse:
    """Place an outbound call: body {"to": "+33..."}."""
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})

    to = body.get("to") if isinstance(body, dict) else None

    try:
        call_sid = await place_outbound_call(get_config(), to or "")
    except OutboundCallError as e:
        logger.error("Outbound error", error=str(e), status=e.status)
        metrics.errors += 1
        return JSONResponse(status_code=e.status, content={"error": str(e)})

    metrics.outbound_calls += 1
    return JSONResponse(content={"success": True, "callSid": call_sid})


@app.websocket("/streams")
@app.websocket("/streams/{path:path}")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Handles incoming audio and sends outgoing audio for a call.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1

    call_id = registry.new_call_id()

    logger.info(
        "WebSocket connected",
        call_id=call_id,
        active_calls=registry.active_count,
    )

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", call_id=call_id, error=str(e))

    reason = "channel_closed"
    try:
        session = await registry.open(
            call_id,
            send_message,
            get_config(),
            **websocket.app.state.session_components,
        )

        while session.active:
            try:
                message = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", call_id=call_id)
                break

            try:
                await session.handle_message(message)
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    call_id=call_id,
                    error=str(e),
                )
                metrics.errors += 1
                continue
        else:
            # Session ended on its own (stop event or recognition failure).
            reason = "session_ended"
            try:
                await websocket.close()
            except Exception as e:
                logger.debug("WebSocket already closed", call_id=call_id, error=str(e))

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            call_id=call_id,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        try:
            await registry.close(call_id, reason=reason)
        except Exception as e:
            logger.error("Error closing session", call_id=call_id, error=str(e))

        metrics.active_connections -= 1

        logger.info(
            "Call ended",
            call_id=call_id,
            active_calls=registry.active_count,
        )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
