"""
File lookups used by content switches.

LocalFileCatalog resolves uploaded/registered files by id. RemoteFileFetcher
downloads a remote file on demand into the cache and registers it in the
local catalog once complete.
"""

import asyncio
import json
import logging
import os
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from config import settings
from errors import MediaNotFoundError

logger = logging.getLogger(__name__)


class LocalFileCatalog:
    """JSON index of media files: id -> {path, display_name, ...}."""

    def __init__(self, index_path: Optional[str] = None):
        self.index_path = index_path or os.path.join(settings.cache_path(), "files.json")
        self._lock = asyncio.Lock()

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.index_path):
            return {"files": []}
        try:
            with open(self.index_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data.get("files"), list):
                raise ValueError("missing files list")
            return data
        except (OSError, ValueError, AttributeError) as e:
            logger.warning(f"File catalog {self.index_path} unreadable, starting empty: {e}")
            return {"files": []}

    def _save(self, data: Dict[str, Any]):
        os.makedirs(os.path.dirname(self.index_path), exist_ok=True)
        tmp_path = f"{self.index_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.index_path)

    def get_file(self, file_id: str) -> Optional[Dict[str, str]]:
        for entry in self._load()["files"]:
            if entry.get("id") == file_id:
                return {"path": entry["path"], "display_name": entry.get("display_name", "")}
        return None

    def find_by_source(self, source: str, source_id: str) -> Optional[Dict[str, Any]]:
        for entry in self._load()["files"]:
            if entry.get("source") == source and entry.get("source_id") == source_id:
                return entry
        return None

    async def register_file(self, path: str, display_name: Optional[str] = None,
                            source: str = "local", source_id: Optional[str] = None) -> Dict[str, Any]:
        async with self._lock:
            data = self._load()
            entry = {
                "id": uuid.uuid4().hex,
                "display_name": display_name or os.path.basename(path),
                "path": os.path.abspath(path),
                "size": os.path.getsize(path) if os.path.exists(path) else 0,
                "source": source,
                "source_id": source_id,
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
            data["files"].append(entry)
            self._save(data)
            logger.info(f"Registered file {entry['id']}: {entry['path']}")
            return entry


@dataclass
class DownloadStatus:
    file_id: str
    status: str = "downloading"  # downloading, completed, failed
    progress: int = 0
    received_bytes: int = 0
    total_bytes: int = 0
    local_path: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RemoteFileFetcher:
    """Download-on-demand for remotely shared files."""

    def __init__(self,
                 catalog: LocalFileCatalog,
                 download_dir: Optional[str] = None,
                 url_template: Optional[str] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.catalog = catalog
        self.download_dir = download_dir or settings.cache_path("remote")
        os.makedirs(self.download_dir, exist_ok=True)
        self.url_template = url_template or settings.REMOTE_FILE_URL_TEMPLATE
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.REMOTE_DOWNLOAD_TIMEOUT),
            follow_redirects=True,
        )
        self.downloads: Dict[str, DownloadStatus] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def get_status(self, file_id: str) -> Optional[Dict[str, Any]]:
        status = self.downloads.get(file_id)
        if status:
            return status.to_dict()
        existing = self.catalog.find_by_source("remote", file_id)
        if existing and os.path.exists(existing["path"]):
            return DownloadStatus(
                file_id=file_id, status="completed", progress=100,
                received_bytes=existing.get("size", 0), total_bytes=existing.get("size", 0),
                local_path=existing["path"],
            ).to_dict()
        return None

    async def fetch(self, file_id: str) -> str:
        """Return a local path for the remote file, downloading it if needed."""
        lock = self._locks.setdefault(file_id, asyncio.Lock())
        async with lock:
            existing = self.catalog.find_by_source("remote", file_id)
            if existing and os.path.exists(existing["path"]):
                return existing["path"]
            return await self._download(file_id)

    async def _download(self, file_id: str) -> str:
        safe_id = "".join(c for c in file_id if c.isalnum() or c in "-_")
        local_path = os.path.join(self.download_dir, f"{safe_id}.mp4")
        tmp_path = f"{local_path}.part"
        status = DownloadStatus(file_id=file_id, started_at=datetime.now(timezone.utc).isoformat())
        self.downloads[file_id] = status
        url = self.url_template.format(file_id=file_id)

        logger.info(f"Downloading remote file {file_id} from {url}")
        try:
            async with self.http_client.stream("GET", url) as response:
                if response.status_code == 404:
                    raise MediaNotFoundError(file_id, f"Remote file not found: {file_id}")
                response.raise_for_status()
                status.total_bytes = int(response.headers.get("content-length", 0) or 0)

                with open(tmp_path, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
                        status.received_bytes += len(chunk)
                        if status.total_bytes:
                            status.progress = min(
                                99, int(status.received_bytes * 100 / status.total_bytes))

            os.replace(tmp_path, local_path)
        except MediaNotFoundError as e:
            # Checked first: MediaNotFoundError is also an OSError
            status.status = "failed"
            status.error = str(e)
            raise
        except (httpx.HTTPError, OSError) as e:
            status.status = "failed"
            status.error = str(e)
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            logger.error(f"Download of remote file {file_id} failed: {e}")
            raise MediaNotFoundError(file_id, f"Remote file unavailable: {file_id} ({e})") from e

        status.status = "completed"
        status.progress = 100
        status.local_path = local_path
        status.completed_at = datetime.now(timezone.utc).isoformat()
        await self.catalog.register_file(
            local_path, display_name=f"{file_id}.mp4", source="remote", source_id=file_id)
        logger.info(f"Remote file {file_id} downloaded to {local_path}")
        return local_path

    async def close(self):
        await self.http_client.aclose()
