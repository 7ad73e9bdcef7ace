"""Domain models for persistent streaming sessions."""

import os
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"      # live, playing standby
    STREAMING = "streaming"      # live, playing a file
    RECONNECTING = "reconnecting"
    ERROR = "error"


STATE_DESCRIPTIONS = {
    SessionState.DISCONNECTED: "Not connected",
    SessionState.CONNECTING: "Connecting to destinations",
    SessionState.CONNECTED: "Connected, playing standby",
    SessionState.STREAMING: "Connected, playing a file",
    SessionState.RECONNECTING: "Waiting to restart the encoder",
    SessionState.ERROR: "Error, operator action may be required",
}

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp")


def is_image_path(path: str) -> bool:
    return path.lower().endswith(IMAGE_EXTENSIONS)


def input_type_for(path: Optional[str]) -> str:
    """Classify a session input as 'standby' or 'file' from its path."""
    if not path:
        return "standby"
    name = os.path.basename(path).lower()
    if is_image_path(name) or "standby" in name:
        return "standby"
    return "file"


@dataclass
class Destination:
    """One RTMP target. The stream key, when set, is appended to the URL."""
    url: str
    stream_key: Optional[str] = None
    enabled: bool = True
    name: Optional[str] = None
    video_settings: Optional[Dict[str, Any]] = None
    audio_settings: Optional[Dict[str, Any]] = None

    @property
    def output_url(self) -> str:
        if self.stream_key:
            return f"{self.url.rstrip('/')}/{self.stream_key}"
        return self.url

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Destination":
        return cls(
            url=data.get("url", ""),
            stream_key=data.get("stream_key"),
            enabled=bool(data.get("enabled", True)),
            name=data.get("name"),
            video_settings=data.get("video_settings"),
            audio_settings=data.get("audio_settings"),
        )


@dataclass
class SessionRecord:
    """Durable session metadata. Never holds process handles."""
    id: str
    name: str
    destinations: List[Destination]
    status: str = SessionState.CONNECTING.value
    standby_input: Optional[str] = None
    video_settings: Dict[str, Any] = field(default_factory=dict)
    audio_settings: Dict[str, Any] = field(default_factory=dict)
    current_input: Optional[str] = None
    # Whether current_input plays as the standby loop; None on records from older runs
    on_standby: Optional[bool] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    started_at: Optional[str] = None
    last_switch_at: Optional[str] = None
    ended_at: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            destinations=[Destination.from_dict(d) for d in data.get("destinations", [])],
            status=data.get("status", SessionState.DISCONNECTED.value),
            standby_input=data.get("standby_input"),
            video_settings=data.get("video_settings") or {},
            audio_settings=data.get("audio_settings") or {},
            current_input=data.get("current_input"),
            on_standby=data.get("on_standby"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            started_at=data.get("started_at"),
            last_switch_at=data.get("last_switch_at"),
            ended_at=data.get("ended_at"),
            error_message=data.get("error_message"),
        )


@dataclass
class ActiveHandle:
    """In-memory state of a live encoder. Never persisted."""
    session_id: str
    process: Any  # EncoderProcess
    playlist: Any  # PlaylistStore
    destinations: List[Destination]
    video_settings: Dict[str, Any]
    audio_settings: Dict[str, Any]
    current_input: str
    start_time: datetime
    # Path of the media actually placed in the playlist (loop clip for images)
    playable_input: Optional[str] = None
    on_standby: bool = True

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.session_id,
            "start_time": self.start_time.isoformat(),
            "current_input": self.current_input,
            "destinations": [asdict(d) for d in self.destinations],
        }


class EventType(str, Enum):
    START_CONFIRMED = "start_confirmed"
    PROGRESS_TICK = "progress_tick"
    END_OF_STREAM = "end_of_stream"
    PROCESS_ERROR = "process_error"


@dataclass
class EncoderEvent:
    type: EventType
    session_id: str
    # The EncoderProcess that produced the event; stale sources are ignored
    source: Any = None
    progress: Dict[str, str] = field(default_factory=dict)
    # Output position in seconds, parsed from the progress report
    position: Optional[float] = None
    message: Optional[str] = None
    returncode: Optional[int] = None
    process_alive: bool = True
