"""Capture session lifecycle and the periodic frame scheduler."""
from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Mapping

from .assembler import AssemblyJob, VideoAssembler, frame_filename, session_stamp
from .config import CaptureConfig, StoragePaths
from .engine import EngineUnavailable, GrabFailed, MediaEngine
from .events import CaptureEventLog

logger = logging.getLogger(__name__)

SCHEDULER_THREAD_NAME = "lapse-cam-capture"
ASSEMBLY_THREAD_NAME = "lapse-cam-assembly"


class SessionError(RuntimeError):
    """Base class for session state errors."""


class AlreadyRunning(SessionError):
    """Raised when a capture is started while another is running."""


class NoActiveSession(SessionError):
    """Raised when stopping without a running capture."""


def format_duration(seconds: float) -> str:
    """Render a duration as ``45s``, ``1m5s`` or ``2h0m3s``."""

    total = max(0, int(round(seconds)))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


class CancellationToken:
    """One-shot stop signal shared between a session and its workers."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """Raise the signal; return ``True`` only for the first caller."""

        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            return True

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


class ReadWriteLock:
    """Read-preferring reader/writer lock built on a condition variable."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(slots=True)
class CaptureSession:
    """State of one time-lapse capture from start until superseded."""

    session_id: str
    config: CaptureConfig
    started_at: datetime
    frames_dir: Path
    token: CancellationToken = field(default_factory=CancellationToken)
    running: bool = True
    frame_count: int = 0
    _started_monotonic: float = field(default_factory=time.monotonic, repr=False)
    _lock: ReadWriteLock = field(default_factory=ReadWriteLock, repr=False)

    def is_running(self) -> bool:
        with self._lock.read_locked():
            return self.running

    def frames(self) -> int:
        with self._lock.read_locked():
            return self.frame_count

    def next_frame_path(self) -> Path:
        """Return the path for the next frame without reserving it."""

        with self._lock.read_locked():
            index = self.frame_count
        return self.frames_dir / frame_filename(index)

    def record_frame(self) -> int:
        with self._lock.write_locked():
            self.frame_count += 1
            return self.frame_count

    def mark_stopped(self) -> bool:
        """Flip ``running`` off; return ``False`` if it already was."""

        with self._lock.write_locked():
            if not self.running:
                return False
            self.running = False
        self.token.cancel()
        return True

    def elapsed(self) -> float:
        return time.monotonic() - self._started_monotonic

    def summary(self) -> dict[str, object]:
        with self._lock.read_locked():
            running = self.running
            count = self.frame_count
        if not running:
            return idle_summary()
        return {
            "running": True,
            "frameCount": count,
            "duration": format_duration(self.elapsed()),
        }


def idle_summary() -> dict[str, object]:
    return {"running": False, "frameCount": 0, "duration": "0s"}


class CaptureScheduler:
    """Grab a frame immediately and then once per interval until cancelled."""

    def __init__(self, session: CaptureSession, engine: MediaEngine) -> None:
        self._session = session
        self._engine = engine
        self._thread: threading.Thread | None = None
        self.failures = 0

    @property
    def thread(self) -> threading.Thread | None:
        return self._thread

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Scheduler already started")
        self._thread = threading.Thread(target=self._run, name=SCHEDULER_THREAD_NAME, daemon=True)
        self._thread.start()

    def join(self, timeout: float | None = None) -> bool:
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def _run(self) -> None:
        session = self._session
        token = session.token
        interval = float(session.config.interval_s)
        logger.info(
            "Capturing %s every %ds into %s",
            session.config.source_url,
            session.config.interval_s,
            session.frames_dir,
        )
        try:
            while not token.cancelled:
                self.capture_once()
                if token.wait(interval):
                    break
        except Exception:
            logger.exception("Capture loop for session %s crashed", session.session_id)
        logger.info(
            "Capture loop for session %s finished with %d frames (%d failed grabs)",
            session.session_id,
            session.frames(),
            self.failures,
        )

    def capture_once(self) -> bool:
        """Grab one frame into the next sequence slot."""

        session = self._session
        if session.token.cancelled:
            return False
        target = session.next_frame_path()
        try:
            self._engine.grab_one_frame(session.config.source_url, target)
        except GrabFailed as exc:
            self.failures += 1
            logger.warning("Error capturing frame %s: %s", target.name, exc)
            return False
        count = session.record_frame()
        logger.info("Captured frame %d", count)
        return True


class SessionManager:
    """Own the current capture session and its background workers."""

    def __init__(
        self,
        engine: MediaEngine,
        paths: StoragePaths,
        *,
        event_log: CaptureEventLog | None = None,
        assembler: VideoAssembler | None = None,
        probe_timeout: float | None = None,
    ) -> None:
        self._engine = engine
        self._paths = paths
        self._event_log = event_log
        self._assembler = assembler or VideoAssembler(engine, paths.output_dir, event_log=event_log)
        self._probe_timeout = probe_timeout
        self._lock = threading.Lock()
        self._session: CaptureSession | None = None
        self._scheduler: CaptureScheduler | None = None
        self._assembly_thread: threading.Thread | None = None

    @property
    def assembler(self) -> VideoAssembler:
        return self._assembler

    def current_session(self) -> CaptureSession | None:
        return self._session

    # ------------------------------ lifecycle ------------------------------
    def start(self, config: CaptureConfig | Mapping[str, Any]) -> CaptureSession:
        """Validate, probe the source and begin capturing in the background."""

        with self._lock:
            current = self._session
            if current is not None and current.is_running():
                raise AlreadyRunning("Capture already running")
            if not isinstance(config, CaptureConfig):
                config = CaptureConfig.from_dict(config)
            if not self._engine.available():
                raise EngineUnavailable(
                    "ffmpeg is not installed or not in PATH. Please install ffmpeg to use LapseCam."
                )
            self._engine.probe_connectivity(config.source_url, self._probe_timeout)

            started_at = datetime.now()
            frames_dir = self._allocate_frames_dir(started_at)
            session = CaptureSession(
                session_id=frames_dir.name,
                config=config,
                started_at=started_at,
                frames_dir=frames_dir,
            )
            scheduler = CaptureScheduler(session, self._engine)
            self._session = session
            self._scheduler = scheduler
            scheduler.start()

        logger.info(
            "Started timelapse capture %s: interval=%ds fps=%d quality=%s",
            session.session_id,
            config.interval_s,
            config.fps,
            config.quality.value,
        )
        self._record(
            "started",
            f"Capture started from {config.source_url}",
            session,
            config.to_dict(),
        )
        return session

    def stop(self) -> CaptureSession:
        """Stop capturing and assemble the video on a background thread."""

        with self._lock:
            session = self._session
            if session is None or not session.mark_stopped():
                raise NoActiveSession("No capture running")
            scheduler = self._scheduler
            thread = threading.Thread(
                target=self._assemble,
                args=(session, scheduler),
                name=ASSEMBLY_THREAD_NAME,
                daemon=True,
            )
            self._assembly_thread = thread
            thread.start()

        frames = session.frames()
        logger.info("Stopped timelapse capture %s after %d frames", session.session_id, frames)
        self._record(
            "stopped",
            "Capture stopped",
            session,
            {"frame_count": frames, "duration": format_duration(session.elapsed())},
        )
        return session

    def status(self) -> dict[str, object]:
        session = self._session
        if session is None:
            return idle_summary()
        return session.summary()

    def wait_for_assembly(self, timeout: float | None = None) -> bool:
        """Block until the latest assembly finished; ``False`` on timeout."""

        thread = self._assembly_thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def kill_all(self) -> int:
        """Force-terminate every engine process currently registered."""

        killed = self._engine.registry.kill_all()
        logger.warning("Killed %d media engine processes", killed)
        if self._event_log is not None:
            session = self._session
            self._event_log.record(
                "engine",
                "killed",
                f"Killed {killed} media engine processes",
                session=session.session_id if session is not None else None,
                metadata={"killed": killed},
            )
        return killed

    def shutdown(self, timeout: float | None = 30.0) -> None:
        session = self._session
        if session is not None and session.is_running():
            try:
                self.stop()
            except NoActiveSession:
                pass
        if not self.wait_for_assembly(timeout):
            logger.warning("Timelapse assembly still running at shutdown")
        if len(self._engine.registry):
            self.kill_all()

    # ----------------------------- implementation --------------------------
    def _allocate_frames_dir(self, started_at: datetime) -> Path:
        stamp = session_stamp(started_at)
        root = self._paths.frames_dir
        candidate = root / stamp
        counter = 1
        while candidate.exists():
            candidate = root / f"{stamp}_{counter}"
            counter += 1
        candidate.mkdir(parents=True)
        return candidate

    def _assemble(self, session: CaptureSession, scheduler: CaptureScheduler | None) -> None:
        if scheduler is not None:
            scheduler.join()
        job = AssemblyJob(
            session_id=session.session_id,
            config=session.config,
            started_at=session.started_at,
            frame_count=session.frames(),
            frames_dir=session.frames_dir,
        )
        self._assembler.assemble(job)

    def _record(
        self,
        event: str,
        message: str,
        session: CaptureSession,
        metadata: dict[str, object | None] | None = None,
    ) -> None:
        if self._event_log is None:
            return
        self._event_log.record("session", event, message, session=session.session_id, metadata=metadata)


__all__ = [
    "AlreadyRunning",
    "CancellationToken",
    "CaptureScheduler",
    "CaptureSession",
    "NoActiveSession",
    "ReadWriteLock",
    "SessionError",
    "SessionManager",
    "format_duration",
    "idle_summary",
]
