# dripfeed/main.py
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import serial
import yaml
from fastapi import FastAPI, File, Form, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from . import __version__
from .errors import InputError
from .models import ErrorEvent, to_frame
from .services import serial_channel, storage
from .services.lines import DEFAULT_CHUNK_SIZE
from .services.prober import probe
from .services.serial_channel import SerialSettings
from .services.sink import EventSink
from .services.transmitter import Transmitter, check_address, check_speed, validate_request

# -----------------------------------------------------------------------------
# App metadata / logging
# -----------------------------------------------------------------------------
APP_NAME = "dripfeed"
APP_VERSION = __version__

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
log = logging.getLogger(APP_NAME)

# -----------------------------------------------------------------------------
# Config models
# -----------------------------------------------------------------------------
class StreamingConfig(BaseModel):
    chunk_size: int = DEFAULT_CHUNK_SIZE
    event_queue_size: int = 256

class UploadsConfig(BaseModel):
    dir: str = "uploads"
    allowed_extensions: List[str] = [".gcode", ".nc"]
    max_age_days: float = 30
    cleanup_interval_s: float = 24 * 3600

class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000

class LoggingConfig(BaseModel):
    level: str = "INFO"

class AppConfig(BaseSettings):
    serial: SerialSettings = Field(default_factory=SerialSettings)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    uploads: UploadsConfig = Field(default_factory=UploadsConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="DRIPFEED_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="allow",
    )

# -----------------------------------------------------------------------------
# Load config.yaml
# -----------------------------------------------------------------------------
def load_config(path: Optional[str] = None) -> AppConfig:
    # DRIPFEED_CONFIG, else config.yaml one level up from the package
    cfg_path = Path(path or os.environ.get("DRIPFEED_CONFIG") or Path(__file__).resolve().parent.parent / "config.yaml")
    if not cfg_path.exists():
        log.warning("config.yaml not found at %s; using defaults", cfg_path)
        return AppConfig()
    with cfg_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    try:
        return AppConfig(**raw)
    except Exception as e:
        raise RuntimeError(f"Invalid config.yaml: {e}") from e

CONFIG: AppConfig = load_config()
logging.getLogger().setLevel(CONFIG.logging.level.upper())

# -----------------------------------------------------------------------------
# Globals & framework
# -----------------------------------------------------------------------------
app = FastAPI(title=APP_NAME, version=APP_VERSION)
templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent / "templates"))

# Swapped out in tests
SERIAL_FACTORY = serial.serial_for_url

SESSIONS: Dict[str, Transmitter] = {}      # session id -> live transmitter
_CLEANUP_TASK: Optional[asyncio.Task] = None
PUMP_DRAIN_TIMEOUT_S = 5.0

def uploads_dir() -> Path:
    return Path(CONFIG.uploads.dir).resolve()

# -----------------------------------------------------------------------------
# Startup / Shutdown
# -----------------------------------------------------------------------------
async def _cleanup_loop() -> None:
    while True:
        log.info("Running scheduled task to delete old files...")
        try:
            await asyncio.to_thread(storage.cleanup_uploads, str(uploads_dir()), CONFIG.uploads.max_age_days)
        except Exception as e:
            log.error("Upload cleanup failed: %s", e, exc_info=True)
        await asyncio.sleep(CONFIG.uploads.cleanup_interval_s)

@app.on_event("startup")
async def on_startup() -> None:
    global _CLEANUP_TASK
    log.info("Starting %s v%s", APP_NAME, APP_VERSION)
    uploads_dir().mkdir(parents=True, exist_ok=True)
    if CONFIG.uploads.cleanup_interval_s > 0:
        _CLEANUP_TASK = asyncio.create_task(_cleanup_loop(), name="upload-cleanup")
    log.info("Startup complete.")

@app.on_event("shutdown")
async def on_shutdown() -> None:
    global _CLEANUP_TASK
    if _CLEANUP_TASK is not None:
        _CLEANUP_TASK.cancel()
        _CLEANUP_TASK = None
    log.info("Shutdown complete.")

# -----------------------------------------------------------------------------
# UI & Templating
# -----------------------------------------------------------------------------
@app.get("/", response_class=HTMLResponse)
def index(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(
        request, "index.html", {"app_name": APP_NAME, "version": APP_VERSION}
    )

# -----------------------------------------------------------------------------
# Ports / uploads
# -----------------------------------------------------------------------------
@app.get("/com-ports")
def com_ports():
    try:
        return {"ports": serial_channel.list_ports(prefix="/dev/tty")}
    except Exception as e:
        log.error("Error listing ports: %s", e)
        return JSONResponse(status_code=500, content={"ports": [], "error": str(e)})

@app.post("/upload")
def upload(
    gcode: Optional[UploadFile] = File(None),
    baudRate: Optional[str] = Form(None),
    comPort: Optional[str] = Form(None),
):
    if gcode is None or not gcode.filename:
        return JSONResponse(status_code=400, content={"message": "No file uploaded."})
    if not storage.allowed(gcode.filename, CONFIG.uploads.allowed_extensions):
        exts = " and ".join(CONFIG.uploads.allowed_extensions)
        return JSONResponse(status_code=400, content={"message": f"Only {exts} files are allowed."})
    try:
        baud = check_speed(baudRate)
        port = check_address(comPort, "COM port is undefined. Please select a valid COM port.")
    except InputError as e:
        return JSONResponse(status_code=400, content={"message": e.message})

    path = storage.save_upload(gcode.file, gcode.filename, str(uploads_dir()))
    return {"filepath": str(path), "baudRate": baud, "comPort": port}

@app.get("/sessions")
def list_sessions():
    return {"sessions": [tx.session.to_dict() for tx in SESSIONS.values()]}

# -----------------------------------------------------------------------------
# Observer socket
# -----------------------------------------------------------------------------
async def _pump(ws: WebSocket, sink: EventSink) -> None:
    """Forward sink events to the socket until the terminal one."""
    try:
        async for event in sink.events():
            await ws.send_json(to_frame(event))
    except Exception as e:
        # observer went away; the session keeps running on its own
        log.info("Observer stopped receiving: %s", e)

async def _run_probe(ws: WebSocket, data: Dict[str, Any]) -> None:
    sink = EventSink(maxsize=1)
    await probe(
        data.get("comPort"),
        data.get("baudRate"),
        sink,
        settings=CONFIG.serial,
        serial_factory=SERIAL_FACTORY,
    )
    await _pump(ws, sink)

async def _run_session(ws: WebSocket, tx: Transmitter, sink: EventSink) -> None:
    SESSIONS[tx.session.id] = tx
    pump = asyncio.create_task(_pump(ws, sink))
    try:
        await tx.run()
    except asyncio.CancelledError:
        pump.cancel()
        raise
    except Exception as e:
        # already reported to the observer as an error event
        log.error("Session %s ended with %s: %s", tx.session.id, type(e).__name__, e)
    finally:
        SESSIONS.pop(tx.session.id, None)
    # let the observer receive the terminal event before the pump goes away
    try:
        await asyncio.wait_for(pump, timeout=PUMP_DRAIN_TIMEOUT_S)
    except asyncio.TimeoutError:
        log.warning("Observer did not drain events of session %s", tx.session.id)

@app.websocket("/ws")
async def observer_socket(ws: WebSocket) -> None:
    await ws.accept()
    log.info("Client connected.")
    tasks: Set[asyncio.Task] = set()
    try:
        while True:
            try:
                msg = await ws.receive_json()
            except ValueError:
                await ws.send_json(to_frame(ErrorEvent("Malformed message: expected JSON.")))
                continue
            if not isinstance(msg, dict):
                await ws.send_json(to_frame(ErrorEvent("Malformed message: expected an object.")))
                continue
            event = msg.get("event")
            data = msg.get("data")
            if data is None:
                data = {}
            if not isinstance(data, dict):
                await ws.send_json(to_frame(ErrorEvent(f"Malformed data for event: {event}")))
                continue

            if event == "test-baud-rate":
                task = asyncio.create_task(_run_probe(ws, data))
            elif event == "drip-feed":
                log.info("Received COM Port: %s", data.get("comPort"))
                try:
                    path, port, baud = validate_request(data.get("filepath"), data.get("comPort"), data.get("baudRate"))
                except InputError as e:
                    await ws.send_json(to_frame(ErrorEvent(e.message)))
                    continue
                sink = EventSink(maxsize=CONFIG.streaming.event_queue_size)
                tx = Transmitter(
                    path, port, baud, sink,
                    settings=CONFIG.serial,
                    serial_factory=SERIAL_FACTORY,
                    chunk_size=CONFIG.streaming.chunk_size,
                )
                task = asyncio.create_task(_run_session(ws, tx, sink))
            else:
                await ws.send_json(to_frame(ErrorEvent(f"Unknown event: {event}")))
                continue
            tasks.add(task)
            task.add_done_callback(tasks.discard)
    except WebSocketDisconnect:
        log.info("Client disconnected.")
    finally:
        for task in list(tasks):
            task.cancel()

# -----------------------------------------------------------------------------
# Entrypoint
# -----------------------------------------------------------------------------
def run() -> None:
    import uvicorn
    uvicorn.run(app, host=CONFIG.server.host, port=int(os.environ.get("PORT", CONFIG.server.port)))

if __name__ == "__main__":
    run()
