import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .config import get_settings
from .services.cast import CastSessionManager
from .services.devices import ReceiverRegistry
from .services.llm import OllamaClient
from .services.playback import PlaybackOrchestrator
from .services.queue import Track
from .services.youtube import YouTubeClient


LOG_BUFFER_SIZE = 500


class LogCapture(logging.Handler):
    """Ring buffer of recent records, served by /api/logs."""

    def __init__(self, maxlen: int = LOG_BUFFER_SIZE):
        super().__init__()
        self.records: deque[dict] = deque(maxlen=maxlen)

    def emit(self, record):
        entry = {
            "time": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": self.format(record),
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = repr(record.exc_info[1])
        self.records.append(entry)

    def recent(
        self, level: str | None = None, source: str | None = None, limit: int = 100
    ) -> list[dict]:
        """Newest first, optionally narrowed by level and logger prefix."""
        entries = list(self.records)
        if level:
            entries = [e for e in entries if e["level"] == level.upper()]
        if source:
            entries = [e for e in entries if e["logger"].startswith(source)]
        return entries[::-1][:limit]


log_capture = LogCapture()
log_capture.setFormatter(logging.Formatter("%(message)s"))

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)
logging.getLogger().addHandler(log_capture)

# mDNS and cast socket chatter
logging.getLogger("zeroconf").setLevel(logging.WARNING)
logging.getLogger("pychromecast").setLevel(logging.WARNING)

# Global service instances
orchestrator: PlaybackOrchestrator | None = None
ollama_client: OllamaClient | None = None
_discovery_task: asyncio.Task | None = None


def build_orchestrator() -> tuple[PlaybackOrchestrator, OllamaClient | None]:
    """Wire up the playback services from settings."""
    settings = get_settings()
    registry = ReceiverRegistry(timeout=settings.discovery_timeout)
    session = CastSessionManager(
        connect_timeout=settings.cast_connect_timeout,
        load_timeout=settings.cast_load_timeout,
    )
    youtube = YouTubeClient(
        ytdlp_path=settings.ytdlp_path,
        timeout=settings.stream_resolve_timeout,
        search_limit=settings.search_limit,
    )
    describer = None
    if settings.describe_enabled:
        describer = OllamaClient(
            host=settings.ollama.host,
            model=settings.ollama.model,
            timeout=settings.ollama.timeout,
        )
    return (
        PlaybackOrchestrator(
            registry=registry,
            session=session,
            resolver=youtube,
            describer=describer,
            finder=youtube,
        ),
        describer,
    )


async def _initial_discovery():
    devices = await orchestrator.list_devices()
    if devices:
        names = ", ".join(d.name for d in devices)
        logger.info(f"Found {len(devices)} device(s): {names}")
    else:
        logger.info("No devices found yet, they will be discovered on first use")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    global orchestrator, ollama_client, _discovery_task
    settings = get_settings()

    orchestrator, ollama_client = build_orchestrator()

    # Pre-discover devices in the background so startup is not delayed
    if settings.discover_on_startup:
        _discovery_task = asyncio.create_task(_initial_discovery())
        logger.info("Started background device discovery")

    yield

    # Cleanup
    if _discovery_task:
        _discovery_task.cancel()
        try:
            await _discovery_task
        except asyncio.CancelledError:
            pass

    await orchestrator.session.close()
    if ollama_client:
        await ollama_client.close()


app = FastAPI(
    title="Boba DJ API",
    description="Chat-driven DJ that casts tracks to Google Cast receivers",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware - allow all origins for self-hosted deployment
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_orchestrator() -> PlaybackOrchestrator:
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Playback service not initialized")
    return orchestrator


class TrackModel(BaseModel):
    id: str
    title: str = ""
    author: str = ""
    thumbnail_url: str = ""
    duration: float | None = None

    def to_track(self) -> Track:
        return Track(
            id=self.id,
            title=self.title,
            author=self.author,
            thumbnail_url=self.thumbnail_url,
            duration=self.duration,
        )


class PlayRequest(BaseModel):
    track: TrackModel
    device_id: str | None = None


class QueueSongsRequest(BaseModel):
    queries: list[str]


class EnqueueRequest(BaseModel):
    track: TrackModel


class SelectDeviceRequest(BaseModel):
    id: str  # Receiver id (cast UUID) or host


class HealthResponse(BaseModel):
    status: str
    devices_known: int
    selected_device: str | None = None
    cast_connected: bool = False
    session_state: str = "idle"


@app.get("/health", response_model=HealthResponse)
async def health():
    """Health check endpoint."""
    service = get_orchestrator()
    selected = service.selected_device
    return HealthResponse(
        status="ok",
        devices_known=len(service.registry.get_cached()),
        selected_device=selected.id if selected else None,
        cast_connected=service.session.connected,
        session_state=service.session.state.value,
    )


@app.get("/api/logs")
async def get_server_logs(
    level: str | None = None,
    source: str | None = None,
    limit: int = Query(100, ge=1, le=LOG_BUFFER_SIZE),
):
    """Recent server logs, newest first.

    Args:
        level: Only this level (DEBUG, INFO, WARNING, ERROR)
        source: Logger name prefix, e.g. ``bobadj.services.cast``
        limit: Maximum number of entries returned
    """
    matching = log_capture.recent(level=level, source=source, limit=LOG_BUFFER_SIZE)
    return {
        "logs": matching[:limit],
        "total": len(log_capture.records),
        "filtered": len(matching),
    }


def _devices_response(service: PlaybackOrchestrator, devices: list) -> dict:
    selected = service.selected_device
    return {
        "devices": [d.to_dict() for d in devices],
        "selected": selected.id if selected else None,
    }


@app.get("/api/devices")
async def list_devices():
    """List known cast receivers (discovers on first use)."""
    service = get_orchestrator()
    return _devices_response(service, await service.list_devices())


@app.post("/api/devices/refresh")
async def refresh_devices():
    """Forget known receivers and scan again."""
    service = get_orchestrator()
    return _devices_response(service, await service.refresh_devices())


@app.post("/api/devices/select")
async def select_device(request: SelectDeviceRequest):
    """Pin the receiver used for playback."""
    service = get_orchestrator()
    receiver = await service.select_device(request.id)
    if receiver is None:
        raise HTTPException(status_code=404, detail=f"Device not found: {request.id}")
    return {"success": True, "device": receiver.to_dict()}


@app.get("/api/devices/selected")
async def get_selected_device():
    service = get_orchestrator()
    selected = service.selected_device
    return {"device": selected.to_dict() if selected else None}


def _play_response(service: PlaybackOrchestrator, success: bool) -> dict:
    error = service.last_error
    return {
        "success": success,
        "error": None if success or error is None else error.category,
        "message": None if success or error is None else str(error),
        "nowPlaying": service.now_playing(),
        "status": service.status(),
    }


@app.post("/api/play")
async def play(request: PlayRequest):
    """Play a single track now, on the given or pinned device."""
    service = get_orchestrator()
    success = await service.play_track(request.track.to_track(), request.device_id)
    return _play_response(service, success)


@app.post("/api/queue/songs")
async def queue_songs(request: QueueSongsRequest):
    """Search for several songs; play the first if idle and queue the rest."""
    service = get_orchestrator()
    result = await service.queue_songs(request.queries)
    return {**result.to_dict(), "status": service.status()}


@app.post("/api/queue")
async def enqueue(request: EnqueueRequest):
    service = get_orchestrator()
    return service.enqueue(request.track.to_track())


@app.get("/api/queue")
async def queue_status():
    return get_orchestrator().status()


@app.delete("/api/queue")
async def clear_queue():
    service = get_orchestrator()
    service.clear_queue()
    return {"success": True, "status": service.status()}


@app.delete("/api/queue/{index}")
async def remove_from_queue(index: int):
    service = get_orchestrator()
    removed = service.remove_at(index)
    return {
        "success": removed is not None,
        "removed": removed.to_dict() if removed else None,
        "status": service.status(),
    }


@app.post("/api/skip")
async def skip():
    service = get_orchestrator()
    result = await service.skip()
    return {**result, "status": service.status()}


@app.post("/api/stop")
async def stop():
    service = get_orchestrator()
    await service.stop()
    return {"success": True}


@app.get("/api/now-playing")
async def now_playing():
    return get_orchestrator().now_playing()
