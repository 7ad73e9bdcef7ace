"""
Effective encoding parameters per destination.

Precedence for every field is: destination override, then session global,
then the hard-coded default. Missing or empty values fall through silently.
"""

from dataclasses import dataclass, asdict, fields
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class EncoderSettings:
    video_codec: str = "libx264"
    video_bitrate: str = "2500k"
    video_width: int = 1920
    video_height: int = 1080
    fps: int = 30
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    audio_sample_rate: int = 44100
    audio_channels: int = 2

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_SETTINGS = EncoderSettings()
SETTING_NAMES = tuple(f.name for f in fields(EncoderSettings))

# Short names accepted inside a video_settings / audio_settings section
_VIDEO_ALIASES = {
    "codec": "video_codec",
    "bitrate": "video_bitrate",
    "width": "video_width",
    "height": "video_height",
    "framerate": "fps",
}
_AUDIO_ALIASES = {
    "codec": "audio_codec",
    "bitrate": "audio_bitrate",
    "sample_rate": "audio_sample_rate",
    "channels": "audio_channels",
}


def flatten_settings(video: Optional[Dict[str, Any]] = None,
                     audio: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Combine a video section and an audio section into flat setting names."""
    flat: Dict[str, Any] = {}
    for section, aliases in ((video, _VIDEO_ALIASES), (audio, _AUDIO_ALIASES)):
        for key, value in (section or {}).items():
            name = aliases.get(key, key)
            if name in SETTING_NAMES:
                flat[name] = value
    return flat


def merge_endpoint_settings(global_settings: Optional[Dict[str, Any]],
                            endpoint_settings: Optional[Dict[str, Any]]) -> EncoderSettings:
    """Resolve one destination's settings from flat global and override dicts."""
    values = DEFAULT_SETTINGS.to_dict()
    for layer in (global_settings or {}, endpoint_settings or {}):
        for name, value in layer.items():
            if name in values and value not in (None, ""):
                values[name] = value
    return EncoderSettings(**values)


def resolve_destination_settings(destination,
                                 video_settings: Optional[Dict[str, Any]],
                                 audio_settings: Optional[Dict[str, Any]]) -> EncoderSettings:
    """Effective settings for a Destination given the session's global sections."""
    return merge_endpoint_settings(
        flatten_settings(video_settings, audio_settings),
        flatten_settings(destination.video_settings, destination.audio_settings),
    )
