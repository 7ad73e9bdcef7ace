"""
Persistent Session Manager.

Owns the lifetime of live RTMP pushes:
- Creating a session starts one encoder reading the session's concat playlist
- Content switches rewrite the playlist; the encoder is never restarted
- The standby loop is topped up from progress reports so it never runs dry
- Encoder failures fall back to standby first, then reconnect with a fixed
  delay up to a bounded number of attempts
- The durable record is the authoritative "session exists" signal
"""

import asyncio
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from command_builder import build_encoder_command
from config import settings
from encoder_process import EncoderProcess
from errors import (
    EncoderStartError,
    MediaNotFoundError,
    RelayError,
    SessionNotActiveError,
    SessionNotFoundError,
    SessionValidationError,
)
from file_sources import LocalFileCatalog, RemoteFileFetcher
from media_tools import (
    check_encoder_available,
    convert_image_to_loop_clip,
    create_default_standby_image,
    probe_duration,
)
from models import (
    ActiveHandle,
    Destination,
    EncoderEvent,
    EventType,
    SessionRecord,
    SessionState,
    input_type_for,
    is_image_path,
)
from playlist_store import PlaylistStore
from session_store import SessionStore, utc_now

logger = logging.getLogger(__name__)


class PersistentSessionManager:
    """
    Session orchestrator used by the HTTP layer.

    All operations on one session are serialized by a per-session lock.
    Progress ticks skip their work while the lock is held; the next tick
    picks it up.
    """

    def __init__(self,
                 store: Optional[SessionStore] = None,
                 local_files: Optional[LocalFileCatalog] = None,
                 remote_files: Optional[RemoteFileFetcher] = None,
                 encoder_factory: Optional[Callable[..., Any]] = None,
                 max_reconnect_attempts: Optional[int] = None,
                 reconnect_delay: Optional[float] = None,
                 start_timeout: Optional[float] = None,
                 topup_threshold: Optional[int] = None,
                 topup_count: Optional[int] = None,
                 loop_seconds: Optional[int] = None,
                 end_of_stream_lead: Optional[float] = None,
                 cache_dir: Optional[str] = None):
        self.store = store or SessionStore(
            os.path.join(cache_dir, "sessions") if cache_dir else None)
        self.local_files = local_files
        self.remote_files = remote_files
        self.encoder_factory = encoder_factory or EncoderProcess

        self.max_reconnect_attempts = (
            settings.MAX_RECONNECT_ATTEMPTS if max_reconnect_attempts is None else max_reconnect_attempts)
        self.reconnect_delay = settings.RECONNECT_DELAY if reconnect_delay is None else reconnect_delay
        self.start_timeout = settings.ENCODER_START_TIMEOUT if start_timeout is None else start_timeout
        self.topup_threshold = settings.PLAYLIST_TOPUP_THRESHOLD if topup_threshold is None else topup_threshold
        self.topup_count = settings.PLAYLIST_TOPUP_COUNT if topup_count is None else topup_count
        self.loop_seconds = settings.STANDBY_LOOP_SECONDS if loop_seconds is None else loop_seconds
        self.end_of_stream_lead = (
            settings.END_OF_STREAM_LEAD if end_of_stream_lead is None else end_of_stream_lead)

        def _dir(name: str) -> str:
            path = os.path.join(cache_dir, name) if cache_dir else settings.cache_path(name)
            os.makedirs(path, exist_ok=True)
            return path

        self.playlist_dir = _dir("playlists")
        self.log_dir = _dir("logs")
        self.standby_dir = _dir("standby")
        self.loops_dir = _dir("loops")

        self.active_sessions: Dict[str, ActiveHandle] = {}
        self.reconnect_attempts: Dict[str, int] = {}
        self._reconnect_tasks: Dict[str, asyncio.Task] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._default_standby_lock = asyncio.Lock()
        self.encoder_version: Optional[str] = None

        self._event_handlers = {
            EventType.START_CONFIRMED: self._on_start_confirmed,
            EventType.PROGRESS_TICK: self._on_progress_tick,
            EventType.END_OF_STREAM: self._on_end_of_stream,
            EventType.PROCESS_ERROR: self._on_process_error,
        }

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    # ---------- setup helpers ----------

    async def ensure_encoder_available(self) -> str:
        """One-time check that the encoder binary runs."""
        if self.encoder_version is None:
            self.encoder_version = await asyncio.to_thread(check_encoder_available)
        return self.encoder_version

    async def get_default_standby_path(self) -> str:
        path = os.path.join(self.standby_dir, "default.jpg")
        async with self._default_standby_lock:
            if not os.path.exists(path):
                await create_default_standby_image(path)
        return path

    async def _prepare_playable(self, input_path: str, playlist: PlaylistStore,
                                on_standby: bool = False) -> str:
        """Return the media to place in the playlist (loop clip for images)."""
        if not os.path.isfile(input_path):
            raise MediaNotFoundError(input_path, f"Input file not found: {input_path}")

        if is_image_path(input_path):
            clip = await convert_image_to_loop_clip(input_path, self.loops_dir, self.loop_seconds)
            playlist.set_duration(clip, self.loop_seconds)
            return clip

        absolute = os.path.abspath(input_path)
        if absolute not in playlist.durations or absolute in playlist.assumed:
            playlist.set_duration(input_path, await probe_duration(input_path))
        if on_standby and absolute not in playlist.durations:
            # Top-up accounting needs a length for every loop entry
            logger.warning(
                f"Duration of standby input {input_path} is unknown, "
                f"assuming {self.loop_seconds}s per loop")
            playlist.set_duration(input_path, self.loop_seconds, assumed=True)
        return input_path

    def _write_playlist(self, playlist: PlaylistStore, playable: str, on_standby: bool):
        if on_standby:
            playlist.create_loop_playlist(playable, self.topup_count)
        else:
            playlist.replace_with_single(playable)

    # ---------- process supervision ----------

    async def _start_streaming_process(self,
                                       session_id: str,
                                       input_path: str,
                                       destinations: List[Destination],
                                       video_settings: Dict[str, Any],
                                       audio_settings: Dict[str, Any],
                                       on_standby: Optional[bool] = None) -> ActiveHandle:
        """Build the playlist and command, launch the encoder, wait for its start."""
        if on_standby is None:
            on_standby = input_type_for(input_path) == "standby"

        playlist = PlaylistStore(session_id, self.playlist_dir)
        playable = await self._prepare_playable(input_path, playlist, on_standby)
        self._write_playlist(playlist, playable, on_standby)
        playlist.anchor(0.0)

        cmd = build_encoder_command(
            playlist.get_playlist_path(), destinations, video_settings, audio_settings)
        process = self.encoder_factory(
            session_id, cmd, self._dispatch_event,
            log_dir=self.log_dir, start_timeout=self.start_timeout)

        handle = ActiveHandle(
            session_id=session_id,
            process=process,
            playlist=playlist,
            destinations=list(destinations),
            video_settings=dict(video_settings or {}),
            audio_settings=dict(audio_settings or {}),
            current_input=input_path,
            start_time=datetime.now(timezone.utc),
            playable_input=playable,
            on_standby=on_standby,
        )
        # Registered before start so events emitted during start are routed
        self.active_sessions[session_id] = handle
        try:
            await process.start()
        except asyncio.CancelledError:
            if self.active_sessions.get(session_id) is handle:
                del self.active_sessions[session_id]
            await process.stop()
            raise
        except BaseException:
            if self.active_sessions.get(session_id) is handle:
                del self.active_sessions[session_id]
            raise

        logger.info(f"Streaming process started for session {session_id} on {input_path}")
        return handle

    async def _dispatch_event(self, event: EncoderEvent):
        """Route an encoder event to its transition, ignoring stale processes."""
        handle = self.active_sessions.get(event.session_id)
        if handle is None or handle.process is not event.source:
            logger.debug(f"Ignoring {event.type.value} from stale encoder of {event.session_id}")
            return
        await self._event_handlers[event.type](handle, event)

    def _is_current(self, handle: ActiveHandle) -> bool:
        return self.active_sessions.get(handle.session_id) is handle

    async def _on_start_confirmed(self, handle: ActiveHandle, event: EncoderEvent):
        logger.info(f"Session {handle.session_id} is live (PID {handle.process.pid})")

    async def _on_progress_tick(self, handle: ActiveHandle, event: EncoderEvent):
        handle.playlist.observe(event.position)
        lock = self._lock_for(handle.session_id)
        if lock.locked():
            return

        async with lock:
            if not self._is_current(handle):
                return

            if handle.on_standby:
                remaining = handle.playlist.remaining_entries()
                if remaining <= self.topup_threshold:
                    handle.playlist.top_up(handle.playable_input, self.topup_count)
                    logger.debug(
                        f"Standby playlist for {handle.session_id} topped up "
                        f"({remaining} -> {remaining + self.topup_count} remaining)")
                return

            left = handle.playlist.remaining_seconds()
            if left is not None and left <= self.end_of_stream_lead:
                await self._end_of_stream_locked(handle)

    async def _on_end_of_stream(self, handle: ActiveHandle, event: EncoderEvent):
        async with self._lock_for(handle.session_id):
            if self._is_current(handle):
                await self._end_of_stream_locked(handle)

    async def _end_of_stream_locked(self, handle: ActiveHandle):
        if handle.on_standby:
            return
        logger.info(f"File finished for session {handle.session_id}, returning to standby")
        if await self._fallback_to_standby_locked(handle):
            self.store.update(handle.session_id, status=SessionState.CONNECTED.value)

    async def _fallback_to_standby_locked(self, handle: ActiveHandle) -> bool:
        """Rewrite the playlist to standby. Caller holds the session lock."""
        record = self.store.get(handle.session_id)
        if record is None:
            return False

        try:
            standby = record.standby_input or await self.get_default_standby_path()
            playable = await self._prepare_playable(standby, handle.playlist, on_standby=True)
            handle.playlist.create_loop_playlist(playable, self.topup_count)
        except (RelayError, OSError) as e:
            logger.error(f"Standby fallback failed for session {handle.session_id}: {e}")
            return False

        handle.current_input = standby
        handle.playable_input = playable
        handle.on_standby = True
        self.store.update(handle.session_id, current_input=standby, on_standby=True,
                          last_switch_at=utc_now())
        return True

    async def _on_process_error(self, handle: ActiveHandle, event: EncoderEvent):
        session_id = handle.session_id
        async with self._lock_for(session_id):
            if not self._is_current(handle):
                return
            record = self.store.get(session_id)
            if record is None:
                return

            message = event.message or "Encoder failure"
            if not event.process_alive:
                # The handle dies with its process
                del self.active_sessions[session_id]
                await handle.process.stop()

            if not handle.on_standby:
                logger.warning(f"Encoder failure while streaming {session_id}, falling back to standby: {message}")
                fell_back = await self._fallback_to_standby_locked(handle)
                if fell_back and event.process_alive:
                    self.store.update(session_id, status=SessionState.CONNECTED.value,
                                      error_message=message)
                    return

            logger.error(f"Session {session_id} error: {message}")
            self.store.update(session_id, status=SessionState.ERROR.value, error_message=message)

            if not event.process_alive:
                self._schedule_reconnect(session_id, message)

    # ---------- reconnection ----------

    def _schedule_reconnect(self, session_id: str, reason: str):
        existing = self._reconnect_tasks.get(session_id)
        if existing and not existing.done():
            return
        self._reconnect_tasks[session_id] = asyncio.create_task(
            self._reconnect_loop(session_id, reason))

    async def _reconnect_loop(self, session_id: str, reason: str):
        """Restart the encoder from the durable record with a fixed delay."""
        try:
            while True:
                attempts = self.reconnect_attempts.get(session_id, 0)
                if attempts >= self.max_reconnect_attempts:
                    logger.error(f"Max reconnection attempts reached for session {session_id}")
                    self.store.update(
                        session_id,
                        status=SessionState.ERROR.value,
                        error_message=f"Max reconnection attempts reached: {reason}")
                    self.reconnect_attempts.pop(session_id, None)
                    return

                if self.store.update(session_id, status=SessionState.RECONNECTING.value) is None:
                    logger.info(f"Session {session_id} was removed, abandoning reconnection")
                    self.reconnect_attempts.pop(session_id, None)
                    return
                self.reconnect_attempts[session_id] = attempts + 1
                logger.info(
                    f"Attempting reconnection {attempts + 1}/{self.max_reconnect_attempts} "
                    f"for session {session_id}")

                await asyncio.sleep(self.reconnect_delay)

                async with self._lock_for(session_id):
                    record = self.store.get(session_id)
                    if record is None:
                        logger.info(f"Session {session_id} was removed, abandoning reconnection")
                        self.reconnect_attempts.pop(session_id, None)
                        return
                    if session_id in self.active_sessions:
                        # Already running again; this failure episode is over
                        self.reconnect_attempts.pop(session_id, None)
                        return

                    try:
                        current_input = record.current_input
                        on_standby = record.on_standby
                        if not current_input:
                            current_input = record.standby_input or await self.get_default_standby_path()
                            on_standby = True
                        handle = await self._start_streaming_process(
                            session_id, current_input, record.destinations,
                            record.video_settings, record.audio_settings,
                            on_standby=on_standby)
                    except (RelayError, OSError) as e:
                        reason = str(e)
                        logger.warning(f"Reconnection failed for session {session_id}: {e}")
                        continue

                    status = SessionState.CONNECTED if handle.on_standby else SessionState.STREAMING
                    self.store.update(session_id, status=status.value, error_message=None)
                    self.reconnect_attempts.pop(session_id, None)
                    logger.info(f"Session {session_id} reconnected")
                    return
        finally:
            if self._reconnect_tasks.get(session_id) is asyncio.current_task():
                del self._reconnect_tasks[session_id]

    # ---------- public API ----------

    async def create_session(self,
                             destinations: List[Any],
                             standby_input: Optional[str] = None,
                             video_settings: Optional[Dict[str, Any]] = None,
                             audio_settings: Optional[Dict[str, Any]] = None,
                             name: str = "Default Session") -> SessionRecord:
        """Start a session on standby. Returns once the encoder is confirmed live."""
        dests = [d if isinstance(d, Destination) else Destination.from_dict(d) for d in destinations]
        enabled = [d for d in dests if d.enabled]
        if not enabled:
            raise SessionValidationError("At least one destination must be enabled")
        for destination in enabled:
            if not destination.url:
                raise SessionValidationError("Every enabled destination needs a URL")

        await self.ensure_encoder_available()

        standby_path = standby_input or await self.get_default_standby_path()
        if not os.path.isfile(standby_path):
            raise MediaNotFoundError(standby_path, f"Standby input not found: {standby_path}")

        session_id = uuid.uuid4().hex
        record = SessionRecord(
            id=session_id,
            name=name,
            destinations=dests,
            status=SessionState.CONNECTING.value,
            standby_input=standby_path,
            video_settings=dict(video_settings or {}),
            audio_settings=dict(audio_settings or {}),
            current_input=standby_path,
            on_standby=True,
            started_at=utc_now(),
        )
        self.store.save(record)
        logger.info(f"Creating session {session_id} ({name}) with {len(enabled)} destination(s)")

        async with self._lock_for(session_id):
            try:
                await self._start_streaming_process(
                    session_id, standby_path, dests, record.video_settings,
                    record.audio_settings, on_standby=True)
            except (RelayError, OSError) as e:
                logger.error(f"Failed to start session {session_id}: {e}")
                self.store.update(session_id, status=SessionState.ERROR.value, error_message=str(e))
                if isinstance(e, RelayError):
                    raise
                raise EncoderStartError(str(e)) from e

            return self.store.update(
                session_id, status=SessionState.CONNECTED.value, error_message=None)

    async def stop_session(self, session_id: str) -> bool:
        """Tear everything down. Idempotent; unknown ids are not an error."""
        task = self._reconnect_tasks.pop(session_id, None)
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        async with self._lock_for(session_id):
            # Deleting the record first makes any in-flight reconnection abort
            self.store.delete(session_id)
            self.reconnect_attempts.pop(session_id, None)
            handle = self.active_sessions.pop(session_id, None)

            if handle:
                try:
                    await handle.process.stop()
                except Exception as e:
                    logger.error(f"Error stopping encoder for session {session_id}: {e}")
                handle.playlist.cleanup()
            else:
                PlaylistStore(session_id, self.playlist_dir).cleanup()

        self._locks.pop(session_id, None)
        logger.info(f"Session {session_id} stopped")
        return True

    async def get_session_status(self, session_id: str) -> Optional[Dict[str, Any]]:
        record = self.store.get(session_id)
        if record is None:
            return None

        handle = self.active_sessions.get(session_id)
        uptime = 0
        if record.started_at:
            started = datetime.fromisoformat(record.started_at)
            uptime = max(0, int((datetime.now(timezone.utc) - started).total_seconds()))

        status = record.to_dict()
        status.update({
            "is_active": handle is not None,
            "reconnect_attempts": self.reconnect_attempts.get(session_id, 0),
            "uptime": uptime,
            "current_input_type": input_type_for(record.current_input),
            "encoder_pid": handle.process.pid if handle else None,
        })
        return status

    def get_active_sessions(self) -> List[Dict[str, Any]]:
        return [handle.summary() for handle in self.active_sessions.values()]

    def list_sessions(self) -> List[Dict[str, Any]]:
        """Every durable record, live or not."""
        return [record.to_dict() for record in self.store.list()]

    async def switch_content(self, session_id: str, new_input: str,
                             on_standby: Optional[bool] = None) -> Dict[str, Any]:
        """Hitless switch: rewrite the playlist of the running encoder."""
        if on_standby is None:
            on_standby = input_type_for(new_input) == "standby"

        async with self._lock_for(session_id):
            handle = self.active_sessions.get(session_id)
            if handle is None:
                if self.store.get(session_id) is None:
                    raise SessionNotFoundError(session_id)
                raise SessionNotActiveError(session_id)

            logger.info(f"Switching content for session {session_id} to: {new_input}")
            try:
                playable = await self._prepare_playable(new_input, handle.playlist, on_standby)
                self._write_playlist(handle.playlist, playable, on_standby)
            except (RelayError, OSError) as e:
                logger.error(f"Error switching content for session {session_id}: {e}")
                self.store.update(session_id, status=SessionState.ERROR.value, error_message=str(e))
                raise

            handle.current_input = new_input
            handle.playable_input = playable
            handle.on_standby = on_standby
            status = SessionState.CONNECTED if on_standby else SessionState.STREAMING
            self.store.update(
                session_id,
                current_input=new_input,
                on_standby=on_standby,
                status=status.value,
                last_switch_at=utc_now(),
                error_message=None,
            )

        return {
            "success": True,
            "session_id": session_id,
            "new_input": new_input,
            "status": status.value,
        }

    async def switch_to_file(self, session_id: str, file_id: str,
                             is_remote: bool = False) -> Dict[str, Any]:
        if is_remote:
            if self.remote_files is None:
                raise SessionValidationError("Remote file acquisition is not configured")
            path = await self.remote_files.fetch(file_id)
        else:
            info = self.local_files.get_file(file_id) if self.local_files else None
            if not info:
                raise MediaNotFoundError(file_id, f"File not found: {file_id}")
            path = info["path"]
        return await self.switch_content(session_id, path, on_standby=False)

    async def switch_to_standby(self, session_id: str) -> Dict[str, Any]:
        record = self.store.get(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        standby = record.standby_input or await self.get_default_standby_path()
        return await self.switch_content(session_id, standby, on_standby=True)

    async def upload_standby_image(self, session_id: str, data: bytes, filename: str) -> Dict[str, Any]:
        """Store a standby image for the session. Does not switch to it."""
        safe_name = os.path.basename(filename or "")
        if not safe_name or not is_image_path(safe_name):
            raise SessionValidationError("Standby image must be a JPEG, PNG or GIF file")

        async with self._lock_for(session_id):
            if self.store.get(session_id) is None:
                raise SessionNotFoundError(session_id)

            path = os.path.join(self.standby_dir, f"{session_id}-{safe_name}")
            tmp_path = f"{path}.tmp"
            with open(tmp_path, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)
            self.store.update(session_id, standby_input=path)

        logger.info(f"Standby image uploaded for session {session_id}: {path}")
        return {"success": True, "path": path, "filename": safe_name}

    # ---------- lifecycle ----------

    def reconcile_on_startup(self) -> int:
        """Mark records left by a previous run as disconnected; nothing is resumed."""
        count = 0
        for record in self.store.list():
            if record.id in self.active_sessions or record.status == SessionState.DISCONNECTED.value:
                continue
            self.store.update(
                record.id,
                status=SessionState.DISCONNECTED.value,
                ended_at=utc_now(),
                error_message="Encoder process lost on restart",
            )
            count += 1
        if count:
            logger.warning(f"Marked {count} stale session(s) as disconnected")
        return count

    async def shutdown(self):
        """Stop every encoder; records are kept and marked disconnected."""
        logger.info("Shutting down PersistentSessionManager...")
        for task in list(self._reconnect_tasks.values()):
            task.cancel()
        for task in list(self._reconnect_tasks.values()):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._reconnect_tasks.clear()

        for session_id, handle in list(self.active_sessions.items()):
            try:
                await handle.process.stop()
            except Exception as e:
                logger.error(f"Error stopping session {session_id}: {e}")
            handle.playlist.cleanup()
            self.store.update(session_id, status=SessionState.DISCONNECTED.value, ended_at=utc_now())

        self.active_sessions.clear()
        self.reconnect_attempts.clear()
        logger.info("PersistentSessionManager shutdown complete")
