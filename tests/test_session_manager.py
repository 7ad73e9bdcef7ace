"""
Tests for PersistentSessionManager.

Cover:
- Session creation on standby and start failures
- Hitless switching (same encoder process across switches)
- End of file detection and return to standby
- Standby loop top-up
- Crash handling: standby fallback, reconnection, attempt limit
- Stop idempotency and teardown
- Startup reconciliation and shutdown
"""
from session_manager import PersistentSessionManager
from file_sources import LocalFileCatalog
from playlist_store import format_entry
from models import EncoderEvent, EventType, SessionRecord, Destination, SessionState
from errors import (
    EncoderStartError,
    EncoderUnavailableError,
    MediaNotFoundError,
    SessionNotActiveError,
    SessionNotFoundError,
    SessionValidationError,
)
import pytest
import asyncio
import threading
from unittest.mock import AsyncMock, Mock, patch

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))


DESTINATIONS = [{"url": "rtmp://live.example.com/app", "stream_key": "key1"}]


class FakeEncoder:
    """Stands in for EncoderProcess; events are injected with emit()"""

    def __init__(self, factory, session_id, cmd, on_event, log_dir=None, start_timeout=None):
        self.factory = factory
        self.session_id = session_id
        self.cmd = cmd
        self.on_event = on_event
        self.pid = 1000 + len(factory.created)
        self.started = False
        self.stopped = False

    async def start(self):
        if self.factory.hold is not None:
            await self.factory.hold.wait()
        if self.factory.fail:
            raise EncoderStartError("Encoder exited before confirming start (code 1)")
        self.started = True

    async def stop(self):
        self.stopped = True

    @property
    def is_alive(self):
        return self.started and not self.stopped

    async def emit(self, event_type, **kwargs):
        await self.on_event(EncoderEvent(
            type=event_type, session_id=self.session_id, source=self, **kwargs))


class FakeEncoderFactory:
    def __init__(self):
        self.created = []
        self.fail = False
        # When set, start() blocks until the event fires
        self.hold = None

    def __call__(self, session_id, cmd, on_event, **kwargs):
        encoder = FakeEncoder(self, session_id, cmd, on_event, **kwargs)
        self.created.append(encoder)
        return encoder


@pytest.fixture
def media(tmp_path):
    media_dir = tmp_path / "media"
    media_dir.mkdir()
    paths = {}
    for key, name in (("standby", "standby.png"), ("loop", "loop_clip.mp4"), ("video", "video.mp4")):
        path = media_dir / name
        path.write_bytes(b"\x00")
        paths[key] = str(path)
    return paths


@pytest.fixture(autouse=True)
def media_tools(media):
    """Replace encoder one-shot jobs with instant fakes"""
    def make_default(path, *args, **kwargs):
        with open(path, "wb") as f:
            f.write(b"\x00")
        return path

    with patch('session_manager.convert_image_to_loop_clip',
               AsyncMock(return_value=media["loop"])) as convert, \
            patch('session_manager.probe_duration', AsyncMock(return_value=60.0)) as duration, \
            patch('session_manager.create_default_standby_image',
                  AsyncMock(side_effect=make_default)) as default_image:
        yield {"convert": convert, "duration": duration, "default_image": default_image}


@pytest.fixture
def factory():
    return FakeEncoderFactory()


@pytest.fixture
def catalog(tmp_path):
    return LocalFileCatalog(str(tmp_path / "files.json"))


def build_manager(tmp_path, factory, catalog, **kwargs):
    kwargs.setdefault("reconnect_delay", 0)
    manager = PersistentSessionManager(
        local_files=catalog,
        encoder_factory=factory,
        cache_dir=str(tmp_path / "cache"),
        loop_seconds=5,
        topup_threshold=5,
        topup_count=10,
        end_of_stream_lead=2.0,
        **kwargs,
    )
    # Skip the binary precheck
    manager.encoder_version = "ffmpeg version test"
    return manager


@pytest.fixture
def manager(tmp_path, factory, catalog):
    return build_manager(tmp_path, factory, catalog)


def playlist_lines(manager, session_id):
    path = os.path.join(manager.playlist_dir, f"{session_id}.txt")
    with open(path, encoding="utf-8") as f:
        return f.read().splitlines()


class TestCreateSession:

    @pytest.mark.asyncio
    async def test_create_with_default_standby(self, manager, factory, media, media_tools):
        record = await manager.create_session(DESTINATIONS)

        status = await manager.get_session_status(record.id)
        assert status["status"] == SessionState.CONNECTED.value
        assert status["current_input_type"] == "standby"
        assert status["is_active"] is True
        assert status["current_input"].endswith(os.path.join("standby", "default.jpg"))

        assert len(factory.created) == 1
        assert factory.created[0].started
        assert "rtmp://live.example.com/app/key1" in factory.created[0].cmd
        media_tools["default_image"].assert_awaited_once()

        lines = playlist_lines(manager, record.id)
        assert lines == [format_entry(media["loop"])] * 10

    @pytest.mark.asyncio
    async def test_create_with_explicit_standby(self, manager, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"], name="Main")
        assert record.name == "Main"
        assert record.standby_input == media["standby"]
        assert record.status == "connected"
        assert record.started_at is not None

    @pytest.mark.asyncio
    async def test_requires_enabled_destination(self, manager, factory):
        with pytest.raises(SessionValidationError):
            await manager.create_session([{"url": "rtmp://a.example/live", "enabled": False}])
        assert factory.created == []
        assert manager.list_sessions() == []

    @pytest.mark.asyncio
    async def test_missing_standby_input(self, manager, tmp_path):
        with pytest.raises(MediaNotFoundError):
            await manager.create_session(DESTINATIONS, standby_input=str(tmp_path / "none.png"))

    @pytest.mark.asyncio
    async def test_encoder_unavailable(self, manager, factory):
        manager.encoder_version = None
        with patch('session_manager.check_encoder_available',
                   Mock(side_effect=EncoderUnavailableError("Encoder not available: ffmpeg"))):
            with pytest.raises(EncoderUnavailableError):
                await manager.create_session(DESTINATIONS)
        assert factory.created == []

    @pytest.mark.asyncio
    async def test_encoder_check_runs_once_off_the_event_loop(self, manager, media):
        manager.encoder_version = None
        threads = []

        def check():
            threads.append(threading.current_thread())
            return "ffmpeg version 6.1"

        with patch('session_manager.check_encoder_available', Mock(side_effect=check)) as check_mock:
            await manager.create_session(DESTINATIONS, standby_input=media["standby"])
            await manager.create_session(DESTINATIONS, standby_input=media["standby"])

        check_mock.assert_called_once()
        assert threads[0] is not threading.main_thread()
        assert manager.encoder_version == "ffmpeg version 6.1"

    @pytest.mark.asyncio
    async def test_start_failure_leaves_no_live_process(self, manager, factory, media):
        factory.fail = True
        with pytest.raises(EncoderStartError):
            await manager.create_session(DESTINATIONS, standby_input=media["standby"])

        assert manager.active_sessions == {}
        sessions = manager.list_sessions()
        assert len(sessions) == 1
        assert sessions[0]["status"] == SessionState.ERROR.value
        assert "confirming start" in sessions[0]["error_message"]


class TestSwitching:

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, manager, factory, catalog, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        process = manager.active_sessions[record.id].process

        entry = await catalog.register_file(media["video"])
        result = await manager.switch_to_file(record.id, entry["id"])
        assert result["success"] is True
        assert result["status"] == SessionState.STREAMING.value

        status = await manager.get_session_status(record.id)
        assert status["status"] == "streaming"
        assert status["current_input_type"] == "file"
        assert status["last_switch_at"] is not None
        assert playlist_lines(manager, record.id) == [format_entry(media["video"])]
        assert manager.active_sessions[record.id].process is process

        # 60s file, 2s lead: a report at 58.5s finishes it
        await process.emit(EventType.PROGRESS_TICK, position=58.5)
        status = await manager.get_session_status(record.id)
        assert status["status"] == "connected"
        assert status["current_input"] == media["standby"]
        assert manager.active_sessions[record.id].process is process
        assert playlist_lines(manager, record.id)[0] == format_entry(media["loop"])
        assert len(factory.created) == 1

        playlist_path = manager.active_sessions[record.id].playlist.get_playlist_path()
        assert await manager.stop_session(record.id) is True
        assert await manager.get_session_status(record.id) is None
        assert not os.path.exists(playlist_path)
        assert process.stopped

    @pytest.mark.asyncio
    async def test_progress_before_end_keeps_streaming(self, manager, catalog, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        process = manager.active_sessions[record.id].process
        entry = await catalog.register_file(media["video"])
        await manager.switch_to_file(record.id, entry["id"])

        await process.emit(EventType.PROGRESS_TICK, position=30.0)
        assert (await manager.get_session_status(record.id))["status"] == "streaming"

    @pytest.mark.asyncio
    async def test_end_of_stream_event(self, manager, catalog, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        process = manager.active_sessions[record.id].process
        entry = await catalog.register_file(media["video"])
        await manager.switch_to_file(record.id, entry["id"])

        await process.emit(EventType.END_OF_STREAM)
        assert (await manager.get_session_status(record.id))["status"] == "connected"

    @pytest.mark.asyncio
    async def test_switch_to_standby(self, manager, catalog, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        entry = await catalog.register_file(media["video"])
        await manager.switch_to_file(record.id, entry["id"])

        result = await manager.switch_to_standby(record.id)
        assert result["status"] == "connected"
        assert result["new_input"] == media["standby"]

    @pytest.mark.asyncio
    async def test_switch_to_remote_file(self, manager, media):
        manager.remote_files = Mock()
        manager.remote_files.fetch = AsyncMock(return_value=media["video"])
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])

        result = await manager.switch_to_file(record.id, "drive-file-1", is_remote=True)
        manager.remote_files.fetch.assert_awaited_once_with("drive-file-1")
        assert result["new_input"] == media["video"]

    @pytest.mark.asyncio
    async def test_unknown_file_id(self, manager, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        with pytest.raises(MediaNotFoundError):
            await manager.switch_to_file(record.id, "no-such-id")
        assert (await manager.get_session_status(record.id))["status"] == "connected"

    @pytest.mark.asyncio
    async def test_missing_file_keeps_prior_input(self, manager, catalog, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        before = playlist_lines(manager, record.id)
        process = manager.active_sessions[record.id].process

        entry = await catalog.register_file(media["video"])
        os.remove(media["video"])
        with pytest.raises(MediaNotFoundError):
            await manager.switch_to_file(record.id, entry["id"])

        status = await manager.get_session_status(record.id)
        assert status["status"] == SessionState.ERROR.value
        assert "not found" in status["error_message"]
        assert playlist_lines(manager, record.id) == before
        assert not process.stopped

    @pytest.mark.asyncio
    async def test_switch_unknown_session(self, manager, media):
        with pytest.raises(SessionNotFoundError):
            await manager.switch_content("missing", media["video"])

    @pytest.mark.asyncio
    async def test_switch_inactive_session(self, manager, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        manager.active_sessions.pop(record.id)
        with pytest.raises(SessionNotActiveError):
            await manager.switch_content(record.id, media["video"])


class TestStandbyLoop:

    @pytest.mark.asyncio
    async def test_topped_up_before_running_out(self, manager, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        handle = manager.active_sessions[record.id]

        # 10 entries of 5s; at 26s five have been played
        await handle.process.emit(EventType.PROGRESS_TICK, position=10.0)
        assert len(playlist_lines(manager, record.id)) == 10
        await handle.process.emit(EventType.PROGRESS_TICK, position=26.0)
        assert len(playlist_lines(manager, record.id)) == 20

    @pytest.mark.asyncio
    async def test_never_runs_dry(self, manager, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        handle = manager.active_sessions[record.id]

        for second in range(0, 3600, 3):
            await handle.process.emit(EventType.PROGRESS_TICK, position=float(second))
            assert handle.playlist.remaining_entries() > 0

    @pytest.mark.asyncio
    async def test_tick_skipped_while_locked(self, manager, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        handle = manager.active_sessions[record.id]

        async with manager._lock_for(record.id):
            await handle.process.emit(EventType.PROGRESS_TICK, position=40.0)
        assert len(playlist_lines(manager, record.id)) == 10
        assert handle.playlist.last_position == 40.0

    @pytest.mark.asyncio
    async def test_standby_video_of_unknown_length_is_topped_up(self, manager, media_tools, tmp_path):
        standby = tmp_path / "media" / "standby_loop.mp4"
        standby.write_bytes(b"\x00")
        media_tools["duration"].return_value = None

        record = await manager.create_session(DESTINATIONS, standby_input=str(standby))
        handle = manager.active_sessions[record.id]
        assert len(playlist_lines(manager, record.id)) == 10

        for second in range(0, 600, 3):
            await handle.process.emit(EventType.PROGRESS_TICK, position=float(second))
            assert handle.playlist.remaining_entries() > 0
        assert len(playlist_lines(manager, record.id)) > 10

    @pytest.mark.asyncio
    async def test_assumed_length_is_not_reused_for_file_playback(self, manager, media_tools, tmp_path):
        clip = tmp_path / "media" / "standby_loop.mp4"
        clip.write_bytes(b"\x00")
        media_tools["duration"].return_value = None
        record = await manager.create_session(DESTINATIONS, standby_input=str(clip))
        handle = manager.active_sessions[record.id]

        # The same clip played as a file must not end after the assumed loop length
        await manager.switch_content(record.id, str(clip), on_standby=False)
        await handle.process.emit(EventType.PROGRESS_TICK, position=4.0)
        assert (await manager.get_session_status(record.id))["status"] == "streaming"
        assert handle.playlist.remaining_seconds() is None


class RecordingStore:
    """Wraps a SessionStore and records every update call"""

    def __init__(self, store):
        self.store = store
        self.updates = []

    def __getattr__(self, name):
        return getattr(self.store, name)

    def update(self, session_id, **changes):
        self.updates.append(changes)
        return self.store.update(session_id, **changes)


class TestFailureHandling:

    @pytest.mark.asyncio
    async def test_crash_while_streaming_falls_back_first(self, tmp_path, factory, catalog, media):
        manager = build_manager(tmp_path, factory, catalog, reconnect_delay=3600)
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        process = manager.active_sessions[record.id].process
        entry = await catalog.register_file(media["video"])
        await manager.switch_to_file(record.id, entry["id"])

        manager.store = RecordingStore(manager.store)
        await process.emit(EventType.PROCESS_ERROR, message="Connection reset by peer",
                           returncode=1, process_alive=False)
        await asyncio.sleep(0)

        updates = manager.store.updates
        fallback = next(i for i, u in enumerate(updates) if u.get("current_input") == media["standby"])
        error = next(i for i, u in enumerate(updates) if u.get("status") == "error")
        assert fallback < error

        status = await manager.get_session_status(record.id)
        assert status["status"] == SessionState.RECONNECTING.value
        assert status["current_input"] == media["standby"]
        assert status["reconnect_attempts"] == 1
        assert status["is_active"] is False
        assert process.stopped

        await manager.stop_session(record.id)
        assert manager._reconnect_tasks == {}

    @pytest.mark.asyncio
    async def test_input_error_while_streaming_keeps_process(self, manager, catalog, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        process = manager.active_sessions[record.id].process
        entry = await catalog.register_file(media["video"])
        await manager.switch_to_file(record.id, entry["id"])

        await process.emit(EventType.PROCESS_ERROR, message="Invalid data found", process_alive=True)

        status = await manager.get_session_status(record.id)
        assert status["status"] == "connected"
        assert status["current_input"] == media["standby"]
        assert manager.active_sessions[record.id].process is process
        assert not process.stopped

    @pytest.mark.asyncio
    async def test_reconnects_after_crash(self, manager, factory, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        old = manager.active_sessions[record.id].process

        await old.emit(EventType.PROCESS_ERROR, message="Broken pipe", returncode=1, process_alive=False)
        await manager._reconnect_tasks[record.id]

        status = await manager.get_session_status(record.id)
        assert status["status"] == "connected"
        assert status["reconnect_attempts"] == 0
        assert status["error_message"] is None
        assert len(factory.created) == 2
        assert manager.active_sessions[record.id].process is factory.created[1]

        # Events from the replaced encoder are ignored
        await old.emit(EventType.PROCESS_ERROR, message="late", process_alive=False)
        assert (await manager.get_session_status(record.id))["status"] == "connected"

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, manager, factory, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        process = manager.active_sessions[record.id].process
        factory.fail = True

        await process.emit(EventType.PROCESS_ERROR, message="Broken pipe", returncode=1, process_alive=False)
        await manager._reconnect_tasks[record.id]

        # One initial start plus ten reconnection attempts
        assert len(factory.created) == 11
        status = await manager.get_session_status(record.id)
        assert status["status"] == SessionState.ERROR.value
        assert status["error_message"].startswith("Max reconnection attempts reached")
        assert record.id not in manager.reconnect_attempts
        assert record.id not in manager._reconnect_tasks

        await asyncio.sleep(0.05)
        assert len(factory.created) == 11

    @pytest.mark.asyncio
    async def test_deleted_record_aborts_reconnection(self, tmp_path, factory, catalog, media):
        manager = build_manager(tmp_path, factory, catalog, reconnect_delay=0.2)
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        process = manager.active_sessions[record.id].process

        await process.emit(EventType.PROCESS_ERROR, message="Broken pipe", returncode=1, process_alive=False)
        task = manager._reconnect_tasks[record.id]
        # Let the first attempt enter its backoff sleep
        await asyncio.sleep(0.05)
        assert manager.reconnect_attempts[record.id] == 1
        manager.store.delete(record.id)
        await task

        assert len(factory.created) == 1
        assert record.id not in manager.active_sessions

    @pytest.mark.asyncio
    async def test_stop_during_backoff(self, tmp_path, factory, catalog, media):
        manager = build_manager(tmp_path, factory, catalog, reconnect_delay=3600)
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        process = manager.active_sessions[record.id].process

        await process.emit(EventType.PROCESS_ERROR, message="Broken pipe", returncode=1, process_alive=False)
        task = manager._reconnect_tasks[record.id]

        await manager.stop_session(record.id)
        assert task.cancelled()
        assert await manager.get_session_status(record.id) is None
        assert len(factory.created) == 1

    @pytest.mark.asyncio
    async def test_process_error_after_stop_is_ignored(self, manager, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        process = manager.active_sessions[record.id].process
        await manager.stop_session(record.id)

        await process.emit(EventType.PROCESS_ERROR, message="exit", process_alive=False)
        assert manager._reconnect_tasks == {}
        assert await manager.get_session_status(record.id) is None

    @pytest.mark.asyncio
    async def test_reconnect_keeps_standby_video_looping(self, manager, factory, tmp_path):
        standby = tmp_path / "media" / "holding_screen.mp4"
        standby.write_bytes(b"\x00")
        record = await manager.create_session(DESTINATIONS, standby_input=str(standby))
        old = manager.active_sessions[record.id].process

        await old.emit(EventType.PROCESS_ERROR, message="Broken pipe", returncode=1, process_alive=False)
        await manager._reconnect_tasks[record.id]

        handle = manager.active_sessions[record.id]
        assert handle.process is factory.created[1]
        assert handle.on_standby is True
        assert (await manager.get_session_status(record.id))["status"] == "connected"
        assert playlist_lines(manager, record.id) == [format_entry(str(standby))] * 10

    @pytest.mark.asyncio
    async def test_live_handle_clears_reconnect_counter(self, tmp_path, factory, catalog, media):
        manager = build_manager(tmp_path, factory, catalog, reconnect_delay=0.2)
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        process = manager.active_sessions[record.id].process

        await process.emit(EventType.PROCESS_ERROR, message="Broken pipe", returncode=1, process_alive=False)
        task = manager._reconnect_tasks[record.id]
        await asyncio.sleep(0.05)
        assert manager.reconnect_attempts[record.id] == 1

        # An encoder is running again before the backoff ends
        await manager._start_streaming_process(
            record.id, media["standby"], record.destinations, {}, {}, on_standby=True)
        await task

        assert record.id not in manager.reconnect_attempts
        assert (await manager.get_session_status(record.id))["reconnect_attempts"] == 0
        assert len(factory.created) == 2

    @pytest.mark.asyncio
    async def test_stop_while_reconnect_start_is_pending(self, manager, factory, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        process = manager.active_sessions[record.id].process
        factory.hold = asyncio.Event()

        await process.emit(EventType.PROCESS_ERROR, message="Broken pipe", returncode=1, process_alive=False)
        for _ in range(100):
            if len(factory.created) == 2:
                break
            await asyncio.sleep(0.01)
        assert len(factory.created) == 2
        pending = factory.created[1]
        assert not pending.started

        assert await manager.stop_session(record.id) is True

        assert pending.stopped
        assert record.id not in manager.active_sessions
        assert manager._reconnect_tasks == {}
        assert await manager.get_session_status(record.id) is None


class TestStopAndLifecycle:

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, manager, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        assert await manager.stop_session(record.id) is True
        assert await manager.stop_session(record.id) is True
        assert await manager.stop_session("never-existed") is True
        assert await manager.get_session_status(record.id) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stop_first", [False, True])
    async def test_concurrent_switch_and_stop(self, manager, factory, media, stop_first):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        handle = manager.active_sessions[record.id]

        switch = manager.switch_content(record.id, media["video"], on_standby=False)
        stop = manager.stop_session(record.id)
        calls = [stop, switch] if stop_first else [switch, stop]
        results = await asyncio.gather(*calls, return_exceptions=True)
        switch_result = results[1] if stop_first else results[0]

        if isinstance(switch_result, Exception):
            assert isinstance(switch_result, SessionNotFoundError)
        else:
            assert switch_result["success"] is True

        assert manager.store.get(record.id) is None
        assert record.id not in manager.active_sessions
        assert handle.process.stopped
        assert not os.path.exists(handle.playlist.get_playlist_path())
        assert len(factory.created) == 1

    @pytest.mark.asyncio
    async def test_get_active_sessions(self, manager, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        active = manager.get_active_sessions()
        assert len(active) == 1
        assert active[0]["id"] == record.id
        assert active[0]["current_input"] == media["standby"]
        assert active[0]["destinations"][0]["stream_key"] == "key1"

    @pytest.mark.asyncio
    async def test_upload_standby_image(self, manager, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        result = await manager.upload_standby_image(record.id, b"\x89PNG", "../brand.png")

        assert result["filename"] == "brand.png"
        assert os.path.dirname(result["path"]) == manager.standby_dir
        with open(result["path"], "rb") as f:
            assert f.read() == b"\x89PNG"
        assert (await manager.get_session_status(record.id))["standby_input"] == result["path"]

    @pytest.mark.asyncio
    async def test_upload_rejects_non_image(self, manager, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        with pytest.raises(SessionValidationError):
            await manager.upload_standby_image(record.id, b"data", "notes.txt")

    @pytest.mark.asyncio
    async def test_upload_unknown_session(self, manager):
        with pytest.raises(SessionNotFoundError):
            await manager.upload_standby_image("missing", b"data", "a.png")

    def test_reconcile_marks_stale_records(self, manager):
        manager.store.save(SessionRecord(
            id="stale",
            name="Old",
            destinations=[Destination(url="rtmp://a.example/live")],
            status=SessionState.STREAMING.value,
        ))
        assert manager.reconcile_on_startup() == 1

        record = manager.store.get("stale")
        assert record.status == SessionState.DISCONNECTED.value
        assert record.error_message == "Encoder process lost on restart"
        assert record.ended_at is not None
        assert manager.reconcile_on_startup() == 0

    @pytest.mark.asyncio
    async def test_shutdown_keeps_records(self, manager, media):
        record = await manager.create_session(DESTINATIONS, standby_input=media["standby"])
        process = manager.active_sessions[record.id].process

        await manager.shutdown()
        assert process.stopped
        assert manager.active_sessions == {}
        assert manager.store.get(record.id).status == SessionState.DISCONNECTED.value
