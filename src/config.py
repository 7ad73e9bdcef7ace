from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
import os

# Application version
VERSION = "0.2.0"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8090
    LOG_LEVEL: str = "info"
    RELOAD: bool = False
    ROOT_PATH: str = ""
    DOCS_URL: str = "/docs"
    REDOC_URL: str = "/redoc"
    OPENAPI_URL: str = "/openapi.json"

    # External tools
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"

    # Cache root - session records, playlists, logs, standby images and
    # converted loop clips all live underneath it.
    CACHE_DIR: str = "/tmp/rtmp-relay"

    # Encoder supervision
    # Seconds to wait for the first progress report before the start is
    # considered failed.
    ENCODER_START_TIMEOUT: float = 3.0
    # Seconds to wait for the encoder to exit after SIGTERM
    ENCODER_STOP_TIMEOUT: float = 5.0
    MAX_RECONNECT_ATTEMPTS: int = 10
    # Fixed delay between reconnection attempts (no backoff growth, no jitter)
    RECONNECT_DELAY: float = 10.0

    # Playlist management
    # Top up the standby loop when this many entries (or fewer) remain
    PLAYLIST_TOPUP_THRESHOLD: int = 5
    PLAYLIST_TOPUP_COUNT: int = 10
    # Length of the clip generated from a still standby image
    STANDBY_LOOP_SECONDS: int = 5
    # Fall back to standby this many seconds before a file runs out
    END_OF_STREAM_LEAD: float = 2.0

    # Standby configuration
    STANDBY_IMAGE_SIZE: str = "1920x1080"
    STANDBY_UPLOAD_MAX_BYTES: int = 10 * 1024 * 1024  # 10 MB

    # Remote file acquisition
    REMOTE_FILE_URL_TEMPLATE: str = "https://drive.google.com/uc?export=download&id={file_id}"
    REMOTE_DOWNLOAD_TIMEOUT: float = 30.0

    # Mark sessions left over from a previous run as disconnected
    MARK_STALE_SESSIONS_ON_STARTUP: bool = True

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",  # No prefix, read directly from .env
        extra="ignore"  # Ignore extra environment variables from container
    )

    def cache_path(self, subdirectory: Optional[str] = None) -> str:
        """Return a directory under CACHE_DIR, creating it when missing."""
        target = os.path.join(self.CACHE_DIR, subdirectory) if subdirectory else self.CACHE_DIR
        os.makedirs(target, exist_ok=True)
        return target


# Global settings instance
settings = Settings()
