"""
FastAPI server for the phone call agent.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- GET|POST /incoming-call, /twiml: TwiML for the Twilio voice webhook
- POST /status: Twilio status callback
- POST /fail: Twilio voice fallback
- WS /ws: Twilio Media Streams WebSocket
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
from typing import Dict, Any
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.callagent.config import get_config, init_config, ConfigError
from src.callagent.errors import OutboundChannelError


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
    total_calls: int = 0
    active_calls: int = 0
    status_callbacks: int = 0
    failures: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "status_callbacks": self.status_callbacks,
            "failures": self.failures,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting phone call agent server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        from src.callagent.llm import validate_model
        await validate_model(config)

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


app = FastAPI(
    title="Phone Call Agent",
    description="Streaming voice agent for Twilio phone calls",
    version="1.0.0",
    lifespan=lifespan,
)


async def _form_fields(request: Request) -> Dict[str, Any]:
    try:
        form = await request.form()
    except Exception as e:
        logger.warning("Unreadable Twilio form body", path=request.url.path, error=str(e))
        return {}
    return dict(form)


def _ok_twiml() -> Response:
    return Response(content="<Response></Response>", media_type="application/xml")


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.post("/twiml")
@app.get("/twiml")
@app.post("/incoming-call")
@app.get("/incoming-call")
async def generate_twiml(request: Request) -> Response:
    """
    Generate TwiML for Twilio webhook.

    Returns TwiML that connects the call to our WebSocket endpoint.
    """
    config = get_config()

    twiml = f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url="{config.ws_url}" />
    </Connect>
</Response>"""

    fields = await _form_fields(request) if request.method == "POST" else {}
    logger.info("Generated TwiML", ws_url=config.ws_url, call_sid=fields.get("CallSid"))

    return Response(
        content=twiml,
        media_type="application/xml",
    )


@app.post("/status")
async def status_callback(request: Request) -> Response:
    """Twilio call status callback."""
    fields = await _form_fields(request)
    metrics.status_callbacks += 1
    logger.info(
        "Twilio status callback",
        call_sid=fields.get("CallSid"),
        call_status=fields.get("CallStatus"),
        duration=fields.get("CallDuration"),
    )
    return _ok_twiml()


@app.post("/fail")
async def fail_callback(request: Request) -> Response:
    """Twilio voice fallback: the primary webhook failed."""
    fields = await _form_fields(request)
    metrics.failures += 1
    logger.error(
        "Twilio primary handler failed",
        call_sid=fields.get("CallSid"),
        error_code=fields.get("ErrorCode"),
        error_url=fields.get("ErrorUrl"),
    )
    return _ok_twiml()


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Handles incoming audio and sends outgoing audio for a call.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1
    metrics.active_calls += 1

    call_id = f"call_{int(time.time() * 1000)}"

    logger.info(
        "WebSocket connected",
        call_id=call_id,
        active_calls=metrics.active_calls,
    )

    # Import here to avoid circular imports and speed up startup
    from src.callagent.pipeline import create_pipeline

    pipeline = None

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", call_id=call_id, error=str(e))
            raise OutboundChannelError(str(e)) from e

    try:
        pipeline = await create_pipeline(send_message)

        while pipeline.is_running:
            try:
                message = await websocket.receive_text()
                await pipeline.handle_message(message)

            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", call_id=call_id)
                break
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    call_id=call_id,
                    error=str(e),
                )
                metrics.errors += 1
                # Continue processing - don't crash on single message error
                continue

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            call_id=call_id,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        if pipeline:
            try:
                await pipeline.stop()
            except Exception as e:
                logger.error("Error stopping pipeline", error=str(e))

        metrics.active_connections -= 1
        metrics.active_calls -= 1

        logger.info(
            "Call ended",
            call_id=call_id,
            active_calls=metrics.active_calls,
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
