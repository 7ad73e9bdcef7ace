"""
Durable session records.

One JSON file per session under ``<cache>/sessions``. Every write goes to a
temporary file that is renamed over the record, so a crash never leaves a
half-written record and writes to different sessions never touch the same
file. A record that cannot be parsed is removed and treated as absent.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, List, Optional

from config import settings
from errors import SessionStoreError
from models import SessionRecord

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionStore:
    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = base_dir or settings.cache_path("sessions")
        os.makedirs(self.base_dir, exist_ok=True)

    def _path(self, session_id: str) -> str:
        # Ids are generated by the manager; basename guards against traversal
        return os.path.join(self.base_dir, f"{os.path.basename(session_id)}.json")

    def _write(self, record: SessionRecord):
        path = self._path(record.id)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{record.id}.", suffix=".tmp", dir=self.base_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record.to_dict(), f, indent=2)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            try:
                os.remove(tmp_path)
            except OSError:
                pass
            logger.error(f"Error saving session {record.id}: {e}")
            raise SessionStoreError(f"Failed to save session {record.id}: {e}") from e

    def get(self, session_id: str) -> Optional[SessionRecord]:
        path = self._path(session_id)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return SessionRecord.from_dict(json.load(f))
        except FileNotFoundError:
            # Deleted between the existence check and the read
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Session record {path} is corrupted, discarding it: {e}")
            try:
                os.remove(path)
            except OSError:
                pass
            return None

    def exists(self, session_id: str) -> bool:
        return self.get(session_id) is not None

    def save(self, record: SessionRecord) -> SessionRecord:
        now = utc_now()
        if not record.created_at:
            record.created_at = now
        record.updated_at = now
        self._write(record)
        return record

    def update(self, session_id: str, **changes: Any) -> Optional[SessionRecord]:
        """Apply field changes to an existing record. Returns None if it is gone."""
        record = self.get(session_id)
        if record is None:
            return None
        for key, value in changes.items():
            if not hasattr(record, key):
                raise AttributeError(f"SessionRecord has no field {key!r}")
            setattr(record, key, value)
        return self.save(record)

    def delete(self, session_id: str) -> bool:
        try:
            os.remove(self._path(session_id))
            return True
        except FileNotFoundError:
            return False

    def list(self) -> List[SessionRecord]:
        records = []
        for filename in sorted(os.listdir(self.base_dir)):
            if not filename.endswith(".json") or filename.startswith("."):
                continue
            record = self.get(filename[:-len(".json")])
            if record is not None:
                records.append(record)
        return records
