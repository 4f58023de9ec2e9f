"""FastAPI REST and WebSocket interface for a flow-controlled serial port.

Single-process, single-port lifecycle with thread-safe access to:
- SerialPort (transport, buffer flow, writer/reader threads)
- Hub (fan-out of device events to WebSocket clients)

Error mapping:
- SerialIOError → 503
- UnknownBufferAlgorithm → 400
- PortStateError → 409
- Other exceptions → 500
"""

import asyncio
import logging
import os
import queue
import subprocess
from pathlib import Path
from threading import RLock
from typing import List, Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from bufferflow_lib import __version__
from bufferflow_lib.errors import PortStateError, SerialIOError, UnknownBufferAlgorithm
from bufferflow_lib.events import Hub
from bufferflow_lib.registry import AVAILABLE_BUFFER_ALGORITHMS
from bufferflow_lib.serial_port import SerialPort

# =============================================================================
# Environment Configuration
# =============================================================================

API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8989"))
DEFAULT_SERIAL_PORT = os.getenv("SERIAL_PORT", "/dev/ttyUSB0")
DEFAULT_SERIAL_BAUD = int(os.getenv("SERIAL_BAUD", "115200"))
DEFAULT_BUFFER_ALGORITHM = os.getenv("BUFFER_ALGORITHM", "repetier")
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://127.0.0.1:3000"
).split(",")

# Version tracking
API_VERSION = __version__
try:
    GIT_COMMIT = subprocess.check_output(["git", "rev-parse", "--short", "HEAD"], cwd=Path(__file__).parent.parent, stderr=subprocess.DEVNULL).decode().strip()
except Exception:
    GIT_COMMIT = "unknown"

# Configure logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# =============================================================================
# Global Singletons
# =============================================================================

_port: Optional[SerialPort] = None
_hub = Hub()
_lock = RLock()  # Protects open/close

# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Bufferflow Serial API",
    description="REST and WebSocket interface for flow-controlled G-code streaming",
    version=API_VERSION
)

# CORS for local development (configurable via CORS_ORIGINS env var)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_404_requests(request: Request, call_next):
    """Log all 404 responses to help debug missing routes."""
    response = await call_next(request)
    if response.status_code == 404:
        logger.warning(f"404 NOT FOUND: {request.method} {request.url.path} query={dict(request.query_params)}")
    return response

# =============================================================================
# Request/Response Models
# =============================================================================

class SendRequest(BaseModel):
    """Request body for POST /send."""
    data: str
    id: str = ""


class OpenResponse(BaseModel):
    """Response for POST /open."""
    status: str
    port: str
    baud: int
    buffer_algorithm: str


class SendResponse(BaseModel):
    """Response for POST /send."""
    status: str
    staged: int


class StatusResponse(BaseModel):
    """Response for GET /status."""
    open: bool
    port: Optional[str]
    buffer_algorithm: Optional[str]
    paused: bool
    manual_paused: bool
    queued_commands: int
    queued_bytes: int
    items_in_buffer: int
    firmware_version: str
    last_status: str
    subscribers: int


class AlgorithmsResponse(BaseModel):
    """Response for GET /algorithms."""
    algorithms: List[str]
    default: str


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(SerialIOError)
async def serial_io_error_handler(request, exc: SerialIOError):
    """Map SerialIOError to 503 Service Unavailable."""
    logger.error(f"SerialIOError: {exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(UnknownBufferAlgorithm)
async def unknown_algorithm_handler(request, exc: UnknownBufferAlgorithm):
    """Map UnknownBufferAlgorithm to 400 Bad Request."""
    logger.error(f"UnknownBufferAlgorithm: {exc}")
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(PortStateError)
async def port_state_error_handler(request, exc: PortStateError):
    """Map PortStateError to 409 Conflict."""
    logger.error(f"PortStateError: {exc}")
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def _require_port() -> SerialPort:
    if _port is None or not _port.is_open():
        raise PortStateError("Port not open")
    return _port


# =============================================================================
# Lifecycle Endpoints
# =============================================================================

@app.post("/open", response_model=OpenResponse)
async def open_port(
    port: str = Query(DEFAULT_SERIAL_PORT, description="Serial port (e.g., /dev/ttyUSB0)"),
    baud: int = Query(DEFAULT_SERIAL_BAUD, description="Baud rate"),
    buffer_algorithm: str = Query(DEFAULT_BUFFER_ALGORITHM, description="Firmware buffer flow")
):
    """Open the serial port with a buffer flow and start streaming events.

    Raises:
        400: If buffer_algorithm is unknown (UnknownBufferAlgorithm)
        409: If a port is already open (PortStateError)
        503: If the port cannot be opened (SerialIOError)
    """
    global _port, _lock

    with _lock:
        if _port is not None and _port.is_open():
            raise PortStateError(f"Port {_port.name} already open. Close first.")

        logger.info(f"Opening {port} at {baud} baud with {buffer_algorithm} buffer...")
        candidate = SerialPort(port, _hub, buffer_algorithm=buffer_algorithm, baud=baud)
        candidate.open()
        _port = candidate

        return OpenResponse(
            status="open",
            port=port,
            baud=baud,
            buffer_algorithm=candidate.bufferflow.name
        )


@app.post("/close")
async def close_port():
    """Close the port, wiping anything still queued.

    Returns:
        {"status": "closed"}
    """
    global _port, _lock

    with _lock:
        if _port is not None:
            logger.info(f"Closing {_port.name}...")
            _port.close()
            _port = None

        return {"status": "closed"}


# =============================================================================
# Command Endpoints
# =============================================================================

@app.post("/send", response_model=SendResponse)
async def send(req: SendRequest):
    """Submit command text to the port.

    Multi-line submissions are split into individual commands that share
    req.id in their completion events. Realtime characters (!, ~, Ctrl-X)
    are written immediately.

    Raises:
        409: If the port is not open
        503: If a realtime write fails
    """
    port = _require_port()
    staged = port.send(req.data, id=req.id)
    return SendResponse(status="queued", staged=staged)


@app.post("/pause")
async def pause():
    """Hold back further commands until /unpause or /wipe (device is not told).

    Acknowledgements for commands already on the device do not end the hold.
    """
    port = _require_port()
    port.bufferflow.set_manual_paused(True)
    port.bufferflow.pause()
    return {"status": "paused"}


@app.post("/unpause")
async def unpause():
    """Release a /pause and let the writer continue."""
    port = _require_port()
    port.bufferflow.unpause()
    return {"status": "unpaused"}


@app.post("/wipe")
async def wipe():
    """Drop every queued and staged command without telling the device."""
    port = _require_port()
    port.bufferflow.local_buffer_wipe()
    return {"status": "wiped", "items_in_buffer": port.items_in_buffer}


# =============================================================================
# Read-Only Endpoints
# =============================================================================

@app.get("/status", response_model=StatusResponse)
async def get_status():
    """Get port state and buffer accounting."""
    port = _port
    bufferflow = port.bufferflow if port is not None else None

    if port is None or bufferflow is None or not port.is_open():
        return StatusResponse(
            open=False,
            port=None,
            buffer_algorithm=None,
            paused=False,
            manual_paused=False,
            queued_commands=0,
            queued_bytes=0,
            items_in_buffer=0,
            firmware_version="",
            last_status="",
            subscribers=_hub.subscriber_count()
        )

    return StatusResponse(
        open=True,
        port=port.name,
        buffer_algorithm=bufferflow.name,
        paused=bufferflow.get_paused(),
        manual_paused=bufferflow.get_manual_paused(),
        queued_commands=bufferflow.queue.count_of_items(),
        queued_bytes=bufferflow.queue.total_bytes(),
        items_in_buffer=port.items_in_buffer,
        firmware_version=bufferflow.snapshot.firmware_version,
        last_status=bufferflow.snapshot.last_status,
        subscribers=_hub.subscriber_count()
    )


@app.get("/algorithms", response_model=AlgorithmsResponse)
async def get_algorithms():
    """List buffer flows that /open accepts."""
    return AlgorithmsResponse(
        algorithms=list(AVAILABLE_BUFFER_ALGORITHMS),
        default=DEFAULT_BUFFER_ALGORITHM
    )


# =============================================================================
# WebSocket Streaming
# =============================================================================

@app.websocket("/ws")
async def websocket_events(websocket: WebSocket):
    """WebSocket endpoint streaming device events as they are published.

    Each message is one event: JSON for completions, wipes and device lines
    ({"Cmd": "Complete", "Id": ..., "P": ...}, {"P": ..., "D": ...}), plain
    text for port errors.

    Usage:
        ws = new WebSocket("ws://localhost:8989/ws");
        ws.onmessage = (event) => console.log(event.data);
    """
    # Subscribe before accepting so nothing published after the handshake is missed
    events = _hub.subscribe()
    await websocket.accept()
    logger.info(f"WebSocket client connected: {websocket.client}")

    try:
        while True:
            while True:
                try:
                    message = events.get_nowait()
                except queue.Empty:
                    break
                await websocket.send_text(message)

            # Doubles as the poll interval and as disconnect detection
            try:
                text = await asyncio.wait_for(websocket.receive_text(), timeout=0.05)
                logger.debug(f"Ignoring WebSocket message from {websocket.client}: {text!r}")
            except asyncio.TimeoutError:
                pass

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: {websocket.client}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}", exc_info=True)
        try:
            await websocket.close()
        except Exception:
            pass
    finally:
        _hub.unsubscribe(events)


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "service": "Bufferflow Serial API",
        "version": API_VERSION,
        "status": "online"
    }


@app.get("/version")
async def version():
    """Version tracking endpoint for debugging and compatibility checks."""
    return {
        "api": API_VERSION,
        "git": GIT_COMMIT,
        "status": "online"
    }


# =============================================================================
# Startup/Shutdown Events
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Log startup and configuration."""
    logger.info("=" * 60)
    logger.info("Bufferflow Serial API started")
    logger.info(f"Version: {API_VERSION}")
    logger.info(f"Git Commit: {GIT_COMMIT}")
    logger.info(f"Host: {API_HOST}")
    logger.info(f"Port: {API_PORT}")
    logger.info(f"Default Serial Port: {DEFAULT_SERIAL_PORT}")
    logger.info(f"Default Serial Baud: {DEFAULT_SERIAL_BAUD}")
    logger.info(f"Default Buffer Algorithm: {DEFAULT_BUFFER_ALGORITHM}")
    logger.info(f"Available Buffer Algorithms: {', '.join(AVAILABLE_BUFFER_ALGORITHMS)}")
    logger.info(f"CORS Origins: {CORS_ORIGINS}")
    logger.info(f"Log Level: {LOG_LEVEL}")
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    """Close the port on shutdown."""
    global _port

    logger.info("Shutting down Bufferflow Serial API...")

    if _port is not None:
        logger.info(f"Closing {_port.name}...")
        try:
            _port.close()
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")
        _port = None

    logger.info("Shutdown complete")
