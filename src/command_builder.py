"""
Encoder command construction.

One concat playlist input, read in real time, and one FLV output per
enabled destination. Each output carries its own resolved codec, bitrate,
resolution and audio parameters.
"""

from typing import Any, Dict, List, Optional

from config import settings
from encoder_settings import EncoderSettings, resolve_destination_settings
from errors import SessionValidationError
from models import Destination


def destination_url(destination: Destination) -> str:
    return destination.output_url


def _bufsize(bitrate: str) -> str:
    """Twice the bitrate, keeping the unit suffix (e.g. 2500k -> 5000k)."""
    value = str(bitrate).strip()
    digits = value.rstrip("kKmM")
    suffix = value[len(digits):]
    try:
        return f"{int(float(digits) * 2)}{suffix}"
    except ValueError:
        return value


def _encoding_args(resolved: EncoderSettings) -> List[str]:
    return [
        "-c:v", resolved.video_codec,
        "-b:v", str(resolved.video_bitrate),
        "-maxrate", str(resolved.video_bitrate),
        "-bufsize", _bufsize(resolved.video_bitrate),
        "-s", f"{resolved.video_width}x{resolved.video_height}",
        "-r", str(resolved.fps),
        "-g", str(int(resolved.fps) * 2),
        "-pix_fmt", "yuv420p",
        "-c:a", resolved.audio_codec,
        "-b:a", str(resolved.audio_bitrate),
        "-ar", str(resolved.audio_sample_rate),
        "-ac", str(resolved.audio_channels),
    ]


def _output_args(url: str) -> List[str]:
    return [
        "-f", "flv",
        "-flvflags", "no_duration_filesize",
        "-rtmp_live", "live",
        "-rtmp_buffer", "1000",
        url,
    ]


def build_encoder_command(playlist_path: str,
                          destinations: List[Destination],
                          video_settings: Optional[Dict[str, Any]] = None,
                          audio_settings: Optional[Dict[str, Any]] = None,
                          ffmpeg_path: Optional[str] = None) -> List[str]:
    """Build the encoder argv for a session playlist."""
    active = [d for d in destinations if d.enabled]
    if not active:
        raise SessionValidationError("At least one enabled destination is required")
    for destination in active:
        if not destination.url:
            raise SessionValidationError("Destination URL is required")

    cmd = [
        ffmpeg_path or settings.FFMPEG_PATH,
        "-hide_banner",
        "-nostdin",
        "-loglevel", "warning",
        # Machine-readable progress on stdout, errors stay on stderr
        "-progress", "pipe:1",
        "-nostats",
    ]

    # Real-time pacing over the concat list. Entries are local files, so the
    # http reconnect options do not apply here; the RTMP transport options
    # are set per output instead.
    cmd.extend(["-re", "-f", "concat", "-safe", "0", "-i", playlist_path])

    if len(active) == 1:
        resolved = resolve_destination_settings(active[0], video_settings, audio_settings)
        cmd.extend(_encoding_args(resolved))
        cmd.extend(_output_args(destination_url(active[0])))
        return cmd

    for destination in active:
        resolved = resolve_destination_settings(destination, video_settings, audio_settings)
        # Audio is optional so video-only entries do not break the output
        cmd.extend(["-map", "0:v:0", "-map", "0:a:0?"])
        cmd.extend(_encoding_args(resolved))
        cmd.extend(_output_args(destination_url(destination)))

    return cmd
