"""
Concat playlist management for persistent sessions.

Each session owns one list file in the concat demuxer format
(``file '/abs/path'`` per line) that the running encoder reads as a single
continuous input. Content switches rewrite the file in place; the encoder
process is never restarted for a switch.
"""

import logging
import os
from typing import Dict, List, Optional, Set

from config import settings
from errors import MediaNotFoundError

logger = logging.getLogger(__name__)


def format_entry(path: str) -> str:
    """Render one concat entry with a forward-slash absolute path."""
    absolute = os.path.abspath(path).replace("\\", "/")
    # Single quotes inside a quoted concat path are written as '\''
    escaped = absolute.replace("'", "'\\''")
    return f"file '{escaped}'"


class PlaylistStore:
    """
    Owns the on-disk media list of one session.

    Besides the file itself the store tracks which entries the encoder has
    already consumed. Entry durations are registered by the caller (loop clip
    length, probed file duration); the encoder's output position is fed in
    from progress reports and compared against the position at which the
    current list was written.
    """

    def __init__(self, session_id: str, playlist_dir: Optional[str] = None):
        self.session_id = session_id
        base_dir = playlist_dir or settings.cache_path("playlists")
        self.playlist_path = os.path.join(base_dir, f"{session_id}.txt")
        self.entries: List[str] = []
        self.durations: Dict[str, float] = {}
        # Durations registered as a stand-in because the real one is unknown
        self.assumed: Set[str] = set()
        self.last_position = 0.0
        # Encoder position when the current list was written
        self._anchor_position = 0.0

    def _ensure_dir(self):
        os.makedirs(os.path.dirname(self.playlist_path), exist_ok=True)

    @staticmethod
    def _require(path: str, what: str = "Playlist file"):
        if not os.path.isfile(path):
            raise MediaNotFoundError(path, f"{what} not found: {path}")

    def set_duration(self, path: str, seconds: Optional[float], assumed: bool = False):
        """Register an entry's length. Unknown lengths clear any previous value."""
        absolute = os.path.abspath(path)
        self.assumed.discard(absolute)
        if seconds and seconds > 0:
            self.durations[absolute] = float(seconds)
            if assumed:
                self.assumed.add(absolute)
        else:
            self.durations.pop(absolute, None)

    def observe(self, position: Optional[float]):
        """Record the encoder's latest output position (seconds)."""
        if position is not None and position >= 0:
            self.last_position = position

    def anchor(self, position: Optional[float] = None):
        """Mark the position from which the current list starts playing."""
        self._anchor_position = self.last_position if position is None else position

    def _write(self, paths: List[str]):
        self._ensure_dir()
        content = "".join(format_entry(p) + "\n" for p in paths)
        tmp_path = f"{self.playlist_path}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_path, self.playlist_path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def create_playlist(self, paths: List[str]) -> str:
        """Write a new list with one entry per path, replacing any previous one."""
        for path in paths:
            self._require(path)

        self._write(paths)
        self.entries = [os.path.abspath(p) for p in paths]
        self.anchor()
        logger.info(
            f"Playlist written for session {self.session_id}: {len(paths)} entries")
        return self.playlist_path

    def create_loop_playlist(self, path: str, count: int = 1) -> str:
        """Standby list: the same loopable clip repeated ``count`` times."""
        self._require(path, "Standby input")
        return self.create_playlist([path] * max(1, count))

    def replace_with_single(self, path: str) -> str:
        return self.create_playlist([path])

    def append_entry(self, path: str) -> str:
        """Append one entry without rewriting the file."""
        self._require(path)
        if not os.path.exists(self.playlist_path):
            return self.create_playlist([path])

        with open(self.playlist_path, "a", encoding="utf-8") as f:
            f.write(format_entry(path) + "\n")
        self.entries.append(os.path.abspath(path))
        return self.playlist_path

    def top_up(self, path: str, count: int) -> int:
        for _ in range(count):
            self.append_entry(path)
        logger.debug(
            f"Playlist for session {self.session_id} topped up with {count} entries")
        return len(self.entries)

    def _consumed(self, position: Optional[float]):
        """Return (entries fully played, seconds into the current entry)."""
        pos = self.last_position if position is None else position
        elapsed = max(0.0, pos - self._anchor_position)
        consumed = 0
        for entry in self.entries:
            duration = self.durations.get(entry)
            if duration is None or elapsed < duration:
                break
            elapsed -= duration
            consumed += 1
        return consumed, elapsed

    def remaining_entries(self, position: Optional[float] = None) -> int:
        consumed, _ = self._consumed(position)
        return len(self.entries) - consumed

    def remaining_seconds(self, position: Optional[float] = None) -> Optional[float]:
        """Playback time left in the list, or None if a duration is unknown."""
        consumed, into_current = self._consumed(position)
        total = 0.0
        for entry in self.entries[consumed:]:
            duration = self.durations.get(entry)
            if duration is None:
                return None
            total += duration
        return max(0.0, total - into_current)

    def current_entries(self) -> List[str]:
        return list(self.entries)

    def get_playlist_path(self) -> str:
        return self.playlist_path

    def exists(self) -> bool:
        return os.path.exists(self.playlist_path)

    def cleanup(self):
        """Delete the list file and reset in-memory state. Safe to repeat."""
        try:
            if self.exists():
                os.remove(self.playlist_path)
                logger.info(f"Playlist cleaned up: {self.playlist_path}")
        except OSError as e:
            logger.warning(f"Failed to cleanup playlist {self.playlist_path}: {e}")
        self.entries = []
        self._anchor_position = 0.0
        self.last_position = 0.0
