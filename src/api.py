from fastapi import FastAPI, HTTPException, File, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import asyncio
import logging
from urllib.parse import urlparse
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, field_validator
from datetime import datetime, timezone

from config import settings, VERSION
from errors import (
    EncoderUnavailableError,
    MediaNotFoundError,
    SessionNotActiveError,
    SessionNotFoundError,
    SessionValidationError,
)
from file_sources import LocalFileCatalog, RemoteFileFetcher
from media_tools import get_ffmpeg_version
from models import STATE_DESCRIPTIONS
from session_manager import PersistentSessionManager

# Set up logging
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/gif"}
STARTED_AT = datetime.now(timezone.utc)


def validate_rtmp_url(url: str) -> str:
    """Only RTMP/RTMPS destinations with a host are accepted."""
    if not url or not url.strip():
        raise ValueError("URL cannot be empty")
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme.lower() not in ("rtmp", "rtmps"):
        raise ValueError("URL must use the rtmp:// or rtmps:// scheme")
    if not parsed.netloc:
        raise ValueError("URL must include a host")
    return url


def http_error(action: str, e: Exception) -> HTTPException:
    """Map a manager exception to the HTTP response for it."""
    if isinstance(e, SessionValidationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, (SessionNotFoundError, MediaNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, SessionNotActiveError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, EncoderUnavailableError):
        return HTTPException(status_code=503, detail=str(e))
    logger.error(f"Error {action}: {e}")
    return HTTPException(status_code=500, detail=str(e))


# Request models
class DestinationRequest(BaseModel):
    url: str
    stream_key: Optional[str] = None
    enabled: bool = True
    name: Optional[str] = None
    video_settings: Optional[Dict[str, Any]] = None
    audio_settings: Optional[Dict[str, Any]] = None

    @field_validator('url')
    @classmethod
    def validate_url(cls, v):
        return validate_rtmp_url(v)


class SessionCreateRequest(BaseModel):
    name: str = "Default Session"
    destinations: List[DestinationRequest]
    standby_input: Optional[str] = None
    video_settings: Optional[Dict[str, Any]] = None
    audio_settings: Optional[Dict[str, Any]] = None

    @field_validator('destinations')
    @classmethod
    def validate_destinations(cls, v):
        if not any(d.enabled for d in v):
            raise ValueError("At least one destination must be enabled")
        return v


class SwitchRequest(BaseModel):
    file_id: str
    is_remote: bool = False

    @field_validator('file_id')
    @classmethod
    def validate_file_id(cls, v):
        if not v or not v.strip():
            raise ValueError("file_id cannot be empty")
        return v.strip()


file_catalog = LocalFileCatalog()
remote_fetcher = RemoteFileFetcher(file_catalog)
session_manager = PersistentSessionManager(
    local_files=file_catalog, remote_files=remote_fetcher)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    # Startup
    logger.info("RTMP relay starting up...")
    if settings.MARK_STALE_SESSIONS_ON_STARTUP:
        session_manager.reconcile_on_startup()
    try:
        version = await session_manager.ensure_encoder_available()
        logger.info(f"Encoder available: {version}")
    except EncoderUnavailableError as e:
        # Sessions cannot start until the binary is installed
        logger.error(str(e))

    yield

    # Shutdown
    logger.info("RTMP relay shutting down...")
    await session_manager.shutdown()
    await remote_fetcher.close()


app = FastAPI(
    title="RTMP relay",
    version=VERSION,
    description="Persistent RTMP relay with hitless content switching and standby fallback",
    lifespan=lifespan,
    root_path=settings.ROOT_PATH,
    docs_url=settings.DOCS_URL,
    redoc_url=settings.REDOC_URL,
    openapi_url=settings.OPENAPI_URL,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {
        "status": "running",
        "message": "RTMP relay is running",
        "version": VERSION,
        "uptime": int((datetime.now(timezone.utc) - STARTED_AT).total_seconds()),
        "active_sessions": len(session_manager.get_active_sessions()),
    }


@app.get("/health")
async def health_check():
    """Health check with encoder availability"""
    version = session_manager.encoder_version or await asyncio.to_thread(get_ffmpeg_version)
    return {
        "status": "healthy" if version else "degraded",
        "version": VERSION,
        "encoder_available": version is not None,
        "encoder_version": version,
        "active_sessions": len(session_manager.get_active_sessions()),
    }


@app.post("/sessions")
async def create_session(request: SessionCreateRequest):
    """
    Create a persistent session.

    The encoder starts on the standby input and pushes to every enabled
    destination. The response is returned once the encoder is confirmed live.
    """
    try:
        record = await session_manager.create_session(
            destinations=[d.model_dump() for d in request.destinations],
            standby_input=request.standby_input,
            video_settings=request.video_settings,
            audio_settings=request.audio_settings,
            name=request.name,
        )
        return {
            "message": "Session started",
            "session_id": record.id,
            "status": record.status,
            "session": record.to_dict(),
        }
    except Exception as e:
        raise http_error("creating session", e)


# Registered before /sessions/{session_id} so the literal paths win
@app.get("/sessions/active")
async def get_active_sessions():
    sessions = session_manager.get_active_sessions()
    return {"sessions": sessions, "count": len(sessions)}


@app.get("/sessions/states")
async def get_session_states():
    return {
        "states": [
            {"state": state.value, "description": description}
            for state, description in STATE_DESCRIPTIONS.items()
        ]
    }


@app.get("/sessions")
async def list_sessions():
    sessions = session_manager.list_sessions()
    return {"sessions": sessions, "count": len(sessions)}


@app.get("/sessions/{session_id}")
async def get_session(session_id: str):
    try:
        status = await session_manager.get_session_status(session_id)
        if status is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return status
    except HTTPException:
        raise
    except Exception as e:
        raise http_error(f"getting session {session_id}", e)


@app.post("/sessions/{session_id}/stop")
async def stop_session(session_id: str):
    try:
        await session_manager.stop_session(session_id)
        return {"message": "Session stopped", "session_id": session_id}
    except Exception as e:
        raise http_error(f"stopping session {session_id}", e)


@app.post("/sessions/{session_id}/switch")
async def switch_to_file(session_id: str, request: SwitchRequest):
    """Switch the live output to a file without interrupting the push."""
    try:
        return await session_manager.switch_to_file(
            session_id, request.file_id, is_remote=request.is_remote)
    except Exception as e:
        raise http_error(f"switching session {session_id}", e)


@app.post("/sessions/{session_id}/standby")
async def switch_to_standby(session_id: str):
    try:
        return await session_manager.switch_to_standby(session_id)
    except Exception as e:
        raise http_error(f"switching session {session_id} to standby", e)


@app.post("/sessions/{session_id}/standby-image")
async def upload_standby_image(session_id: str, file: UploadFile = File(...)):
    """Upload a JPEG, PNG or GIF to use as the session's standby input."""
    if file.content_type not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(
            status_code=400, detail="Only JPEG, PNG and GIF images are allowed")

    data = await file.read()
    if len(data) > settings.STANDBY_UPLOAD_MAX_BYTES:
        raise HTTPException(
            status_code=400,
            detail=f"File too large (max {settings.STANDBY_UPLOAD_MAX_BYTES} bytes)")

    try:
        return await session_manager.upload_standby_image(session_id, data, file.filename)
    except Exception as e:
        raise http_error(f"uploading standby image for {session_id}", e)


@app.get("/remote-files/{file_id}")
async def get_remote_file_status(file_id: str):
    status = remote_fetcher.get_status(file_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Remote file not found")
    return status
