"""
Encoder process supervision for persistent sessions.

Manages a single long-lived FFmpeg process with:
- Start confirmation from the first progress report, bounded by a timeout
- Progress ticks parsed from ``-progress pipe:1`` output
- Error detection on stderr
- Exit monitoring that reports unexpected termination
- A per-session append log for postmortem diagnosis
"""

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from config import settings
from errors import EncoderStartError
from models import EncoderEvent, EventType

logger = logging.getLogger(__name__)

EventCallback = Callable[[EncoderEvent], Awaitable[None]]


def parse_position(progress: Dict[str, str]) -> Optional[float]:
    """Output position in seconds from a progress block."""
    # out_time_ms is reported in microseconds as well
    for key in ("out_time_us", "out_time_ms"):
        value = progress.get(key)
        if value and value != "N/A":
            try:
                return int(value) / 1_000_000
            except ValueError:
                continue

    out_time = progress.get("out_time")
    if out_time and out_time != "N/A":
        try:
            hours, minutes, seconds = out_time.split(":")
            return int(hours) * 3600 + int(minutes) * 60 + float(seconds)
        except ValueError:
            return None
    return None


class EncoderProcess:
    """
    One encoder process for one session.

    Events are delivered to ``on_event`` as EncoderEvent objects. A failure
    before the start is confirmed is raised from start() instead of being
    reported as an event.
    """

    # Input errors that leave the process running on a broken entry
    INPUT_ERROR_PATTERNS = [
        'no such file or directory',
        'impossible to open',
        'invalid data found',
        'error opening input',
        'line 1: unknown keyword',
    ]

    # Output / transport errors; the process normally exits right after
    OUTPUT_ERROR_PATTERNS = [
        'connection refused',
        'connection reset',
        'connection timed out',
        'broken pipe',
        'failed to resolve hostname',
        'error writing trailer',
        'error muxing',
        'server error',
    ]

    def __init__(self,
                 session_id: str,
                 cmd: List[str],
                 on_event: EventCallback,
                 log_dir: Optional[str] = None,
                 start_timeout: Optional[float] = None,
                 stop_timeout: Optional[float] = None):
        self.session_id = session_id
        self.cmd = cmd
        self.on_event = on_event
        self.log_path = os.path.join(
            log_dir or settings.cache_path("logs"), f"session-{session_id}.log")
        self.start_timeout = settings.ENCODER_START_TIMEOUT if start_timeout is None else start_timeout
        self.stop_timeout = settings.ENCODER_STOP_TIMEOUT if stop_timeout is None else stop_timeout

        self.process: Optional[asyncio.subprocess.Process] = None
        self.status = "starting"
        self.started_at: Optional[datetime] = None
        self.confirmed = False
        self.last_error: Optional[str] = None
        self.last_progress: Dict[str, str] = {}
        self.session_log: Optional[logging.Logger] = None
        self._log_handler: Optional[logging.Handler] = None
        self._start_future: Optional[asyncio.Future] = None
        self._stdout_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def is_alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def _open_log_sink(self):
        os.makedirs(os.path.dirname(self.log_path), exist_ok=True)
        session_logger = logging.getLogger(f"encoder.session.{self.session_id}")
        session_logger.setLevel(logging.DEBUG)
        session_logger.propagate = False
        handler = logging.FileHandler(self.log_path, mode="a", encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
        session_logger.addHandler(handler)
        self.session_log = session_logger
        self._log_handler = handler

    def _close_log_sink(self):
        if self.session_log and self._log_handler:
            self.session_log.removeHandler(self._log_handler)
            self._log_handler.close()
        self._log_handler = None

    def _sink(self, message: str):
        if self.session_log and self._log_handler:
            self.session_log.info(message)

    async def _emit(self, event_type: EventType, **kwargs):
        event = EncoderEvent(type=event_type, session_id=self.session_id, source=self, **kwargs)
        try:
            await self.on_event(event)
        except Exception as e:
            logger.error(
                f"Error handling {event_type.value} for session {self.session_id}: {e}")

    async def start(self):
        """Launch the encoder and wait until it confirms the start."""
        self._open_log_sink()
        self._sink(f"Started: {datetime.now(timezone.utc).isoformat()}")
        self._sink(f"Command: {' '.join(self.cmd)}")
        logger.info(f"Starting encoder for session {self.session_id}: {' '.join(self.cmd)}")

        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            self.status = "failed"
            self.last_error = str(e)
            self._sink(f"Error: {e}")
            self._close_log_sink()
            raise EncoderStartError(f"Failed to launch encoder: {e}") from e

        self.started_at = datetime.now(timezone.utc)
        self._start_future = asyncio.get_running_loop().create_future()

        self._stdout_task = asyncio.create_task(self._read_progress())
        self._stderr_task = asyncio.create_task(self._log_stderr())
        self._monitor_task = asyncio.create_task(self._monitor_process())

        try:
            await asyncio.wait_for(asyncio.shield(self._start_future), timeout=self.start_timeout)
        except asyncio.TimeoutError:
            message = f"Encoder did not confirm start within {self.start_timeout}s"
            self.last_error = self.last_error or message
            logger.error(f"Session {self.session_id}: {message}")
            await self.stop()
            self.status = "failed"
            raise EncoderStartError(message)
        except EncoderStartError:
            await self.stop()
            self.status = "failed"
            raise
        except asyncio.CancelledError:
            # The caller gave up waiting; the spawned process must not outlive it
            await self.stop()
            self.status = "failed"
            raise

        self.status = "running"
        logger.info(
            f"Encoder for session {self.session_id} confirmed with PID {self.process.pid}")

    async def stop(self):
        """
        Send SIGTERM and wait for the exit.

        There is no SIGKILL escalation: if the process outlives the stop
        timeout it is left to finish on its own and a warning is logged.
        """
        self._stopping = True
        self.status = "stopping"

        if self.process and self.process.returncode is None:
            try:
                self.process.terminate()
                try:
                    await asyncio.wait_for(self.process.wait(), timeout=self.stop_timeout)
                except asyncio.TimeoutError:
                    logger.warning(
                        f"Encoder for session {self.session_id} still running "
                        f"{self.stop_timeout}s after SIGTERM")
            except ProcessLookupError:
                pass  # Process already dead

        current = asyncio.current_task()
        for task in [self._stdout_task, self._stderr_task, self._monitor_task]:
            if task and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if self._start_future and not self._start_future.done():
            self._start_future.cancel()

        self._sink(f"Stopped: {datetime.now(timezone.utc).isoformat()}")
        self._close_log_sink()
        self.status = "stopped"
        logger.info(f"Encoder for session {self.session_id} stopped")

    async def _read_progress(self):
        """Parse key=value progress blocks from stdout."""
        if not self.process or not self.process.stdout:
            return

        block: Dict[str, str] = {}
        try:
            while True:
                line = await self.process.stdout.readline()
                if not line:
                    break
                text = line.decode('utf-8', errors='ignore').strip()
                if "=" not in text:
                    continue
                key, value = text.split("=", 1)
                block[key.strip()] = value.strip()
                if key.strip() != "progress":
                    continue

                self.last_progress = block
                block = {}
                self._sink(f"Progress: {self.last_progress}")

                if not self.confirmed:
                    self.confirmed = True
                    if self._start_future and not self._start_future.done():
                        self._start_future.set_result(True)
                    await self._emit(EventType.START_CONFIRMED, progress=self.last_progress)

                await self._emit(
                    EventType.PROGRESS_TICK,
                    progress=self.last_progress,
                    position=parse_position(self.last_progress),
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error reading encoder progress for {self.session_id}: {e}")

    async def _log_stderr(self):
        """Write stderr to the session log and watch for error lines."""
        if not self.process or not self.process.stderr:
            return

        buf = b""
        try:
            while True:
                chunk = await self.process.stderr.read(4096)
                if not chunk:
                    break

                buf += chunk
                while b"\n" in buf:
                    line, buf = buf.split(b"\n", 1)
                    line_str = line.decode('utf-8', errors='ignore').strip()
                    if not line_str:
                        continue

                    self._sink(line_str)
                    logger.debug(f"Encoder [{self.session_id}]: {line_str}")
                    line_lower = line_str.lower()

                    if any(p in line_lower for p in self.OUTPUT_ERROR_PATTERNS):
                        self.last_error = line_str
                        logger.warning(f"Encoder output error for {self.session_id}: {line_str}")
                        continue

                    if any(p in line_lower for p in self.INPUT_ERROR_PATTERNS):
                        self.last_error = line_str
                        logger.error(f"Encoder input error for {self.session_id}: {line_str}")
                        if self.confirmed and not self._stopping and self.is_alive:
                            await self._emit(
                                EventType.PROCESS_ERROR,
                                message=line_str,
                                process_alive=True,
                            )

                if len(buf) > 1024 * 1024:
                    buf = b""
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error reading encoder stderr for {self.session_id}: {e}")

    async def _monitor_process(self):
        """Wait for the exit and report it unless we initiated the stop."""
        if not self.process:
            return

        try:
            returncode = await self.process.wait()
            # Let the readers drain so last_error reflects the final output
            for task in [self._stdout_task, self._stderr_task]:
                if task and not task.done():
                    try:
                        await asyncio.wait_for(asyncio.shield(task), timeout=1.0)
                    except (asyncio.TimeoutError, asyncio.CancelledError):
                        pass

            self._sink(f"Ended: {datetime.now(timezone.utc).isoformat()} (exit code {returncode})")

            if self._stopping:
                return

            message = self.last_error or f"Encoder exited with code {returncode}"
            if not self.confirmed:
                if self._start_future and not self._start_future.done():
                    self._start_future.set_exception(EncoderStartError(
                        f"Encoder exited before confirming start (code {returncode}): {message}"))
                return

            self.status = "exited" if returncode == 0 else "failed"
            logger.warning(f"Encoder for session {self.session_id} exited: {message}")
            self._close_log_sink()
            await self._emit(
                EventType.PROCESS_ERROR,
                message=message,
                returncode=returncode,
                process_alive=False,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error monitoring encoder for {self.session_id}: {e}")
