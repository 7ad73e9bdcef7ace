"""
Small one-shot encoder/prober invocations.

These run to completion (unlike the long-lived session encoder) and are
used for the startup precheck, duration probing, the generated default
standby image and the still-image loop clips.
"""

import asyncio
import hashlib
import logging
import os
import subprocess
from typing import List, Optional, Tuple

from config import settings
from errors import EncoderUnavailableError, MediaConversionError, MediaNotFoundError

logger = logging.getLogger(__name__)


def get_ffmpeg_version(ffmpeg_path: Optional[str] = None) -> Optional[str]:
    """Get the ffmpeg version string"""
    try:
        result = subprocess.run(
            [ffmpeg_path or settings.FFMPEG_PATH, '-version'],
            capture_output=True,
            text=True,
            timeout=5
        )
        if result.returncode == 0:
            # Extract the version from first line (e.g., "ffmpeg version 6.1.1")
            first_line = result.stdout.split('\n')[0]
            return first_line.strip()
        return None
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.warning(f"Failed to get ffmpeg version: {e}")
        return None


def check_encoder_available(ffmpeg_path: Optional[str] = None) -> str:
    """Fail fast when the encoder cannot be executed. Returns the version line."""
    version = get_ffmpeg_version(ffmpeg_path)
    if not version:
        raise EncoderUnavailableError(
            f"Encoder not available: {ffmpeg_path or settings.FFMPEG_PATH}")
    logger.info(f"Encoder available: {version}")
    return version


async def _run(cmd: List[str], timeout: float = 60.0) -> Tuple[int, str, str]:
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise
    return (
        process.returncode,
        stdout.decode('utf-8', errors='ignore'),
        stderr.decode('utf-8', errors='ignore'),
    )


async def probe_duration(path: str, ffprobe_path: Optional[str] = None) -> Optional[float]:
    """Media duration in seconds, or None when it cannot be determined."""
    cmd = [
        ffprobe_path or settings.FFPROBE_PATH,
        "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        path,
    ]
    try:
        returncode, stdout, stderr = await _run(cmd, timeout=15.0)
    except (OSError, asyncio.TimeoutError) as e:
        logger.warning(f"Duration probe failed for {path}: {e}")
        return None

    if returncode != 0:
        logger.warning(f"Duration probe failed for {path}: {stderr.strip()}")
        return None
    try:
        return float(stdout.strip())
    except ValueError:
        return None


async def create_default_standby_image(output_path: str,
                                       size: Optional[str] = None,
                                       ffmpeg_path: Optional[str] = None) -> str:
    """Render a single black frame to use when a session has no standby input."""
    os.makedirs(os.path.dirname(output_path), exist_ok=True)
    cmd = [
        ffmpeg_path or settings.FFMPEG_PATH, "-y",
        "-f", "lavfi",
        "-i", f"color=black:size={size or settings.STANDBY_IMAGE_SIZE}:duration=1",
        "-frames:v", "1",
        output_path,
    ]
    returncode, _, stderr = await _run(cmd)
    if returncode != 0:
        raise MediaConversionError(
            f"Failed to create default standby image: {stderr.strip()[-300:]}")
    logger.info(f"Default standby image created: {output_path}")
    return output_path


def loop_clip_path(image_path: str, loops_dir: str) -> str:
    """Cache location for an image's loop clip, keyed by path and mtime."""
    absolute = os.path.abspath(image_path)
    mtime = os.path.getmtime(absolute)
    key = hashlib.sha256(f"{absolute}|{mtime}".encode()).hexdigest()[:16]
    return os.path.join(loops_dir, f"loop_{key}.mp4")


async def convert_image_to_loop_clip(image_path: str,
                                     loops_dir: str,
                                     seconds: Optional[int] = None,
                                     ffmpeg_path: Optional[str] = None) -> str:
    """
    Convert a still image into a short clip with a silent stereo track.

    The concat reader cannot loop an image by itself, so standby images are
    played as repeated entries of this clip. Clips are cached, so converting
    the same unchanged image twice is a no-op.
    """
    if not os.path.isfile(image_path):
        raise MediaNotFoundError(image_path, f"Standby image not found: {image_path}")

    os.makedirs(loops_dir, exist_ok=True)
    output_path = loop_clip_path(image_path, loops_dir)
    if os.path.exists(output_path):
        return output_path

    duration = str(seconds or settings.STANDBY_LOOP_SECONDS)
    tmp_path = output_path + ".part.mp4"
    cmd = [
        ffmpeg_path or settings.FFMPEG_PATH, "-y",
        "-loop", "1", "-framerate", "1", "-t", duration, "-i", image_path,
        "-f", "lavfi", "-t", duration,
        "-i", "anullsrc=channel_layout=stereo:sample_rate=44100",
        "-c:v", "libx264", "-c:a", "aac",
        "-pix_fmt", "yuv420p",
        "-r", "30",
        "-preset", "ultrafast",
        "-crf", "23",
        "-shortest",
        tmp_path,
    ]
    logger.info(f"Converting standby image to loop clip: {image_path}")
    returncode, _, stderr = await _run(cmd)
    if returncode != 0:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise MediaConversionError(
            f"Failed to convert image {image_path}: {stderr.strip()[-300:]}")

    os.replace(tmp_path, output_path)
    logger.info(f"Converted standby image to loop clip: {output_path}")
    return output_path
