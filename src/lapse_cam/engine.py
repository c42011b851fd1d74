"""ffmpeg-backed media engine used for frame grabs, assembly and previews."""
from __future__ import annotations

import logging
import shutil
import subprocess
import threading
from pathlib import Path
from typing import IO, Sequence

import simplejpeg

from .config import PreviewSettings, QualityTier

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT_S = 10.0
DEFAULT_GRAB_TIMEOUT_S = 30.0
GRAB_JPEG_QUALITY = 2
_OUTPUT_TAIL_CHARS = 2000


class EngineError(RuntimeError):
    """Base class for media engine failures."""


class EngineUnavailable(EngineError):
    """Raised when the ffmpeg binary cannot be located or executed."""


class SourceUnreachable(EngineError):
    """Raised when the video source does not deliver a frame in time."""


class GrabFailed(EngineError):
    """Raised when a single frame grab does not produce an image."""


class AssemblyFailed(EngineError):
    """Raised when the frame sequence could not be encoded into a video."""


def _tail(text: str) -> str:
    text = text.strip()
    if len(text) > _OUTPUT_TAIL_CHARS:
        return text[-_OUTPUT_TAIL_CHARS:]
    return text


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Unable to remove partial frame %s: %s", path, exc)


def _input_args(source_url: str) -> list[str]:
    args: list[str] = []
    if source_url.lower().startswith(("rtsp://", "rtsps://")):
        args += ["-rtsp_transport", "tcp"]
    args += ["-i", source_url]
    return args


class ProcessRegistry:
    """Track running engine processes so they can be force-terminated together."""

    def __init__(self) -> None:
        self._processes: set["EngineProcess"] = set()
        self._lock = threading.Lock()

    def add(self, process: "EngineProcess") -> None:
        with self._lock:
            self._processes.add(process)

    def discard(self, process: "EngineProcess") -> None:
        with self._lock:
            self._processes.discard(process)

    def snapshot(self) -> list["EngineProcess"]:
        with self._lock:
            return list(self._processes)

    def __len__(self) -> int:
        with self._lock:
            return len(self._processes)

    def kill_all(self) -> int:
        """Kill every tracked process and return how many were signalled.

        Owners still reap their own processes when their scope exits.
        """

        killed = 0
        for process in self.snapshot():
            if process.kill():
                killed += 1
        if killed:
            logger.warning("Force-killed %d engine process(es)", killed)
        return killed


class EngineProcess:
    """Scoped owner of a single engine child process.

    ``close()`` kills the process if it is still running, waits for it, closes
    its pipes and unregisters it. It is safe to call more than once and is
    invoked automatically when used as a context manager.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        registry: ProcessRegistry | None = None,
        drain_stderr: bool = False,
        label: str = "ffmpeg",
    ) -> None:
        self.command = list(command)
        self.label = label
        self._registry = registry
        self._lock = threading.Lock()
        self._closed = False
        self._stderr_thread: threading.Thread | None = None
        logger.debug("Launching %s: %s", label, " ".join(self.command))
        try:
            self._process = subprocess.Popen(
                self.command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise EngineUnavailable(f"failed to launch {label}: {exc}") from exc
        if registry is not None:
            registry.add(self)
        if drain_stderr and self._process.stderr is not None:
            self._stderr_thread = threading.Thread(
                target=self._drain_stderr,
                name=f"lapse-cam-{label}-stderr",
                daemon=True,
            )
            self._stderr_thread.start()

    # ------------------------------ properties -----------------------------
    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def stdout(self) -> IO[bytes] | None:
        return self._process.stdout

    def running(self) -> bool:
        return self._process.poll() is None

    # ------------------------------ operations -----------------------------
    def read(self, size: int) -> bytes:
        """Return up to ``size`` bytes from stdout; ``b""`` signals end of stream."""

        stream = self._process.stdout
        if stream is None:
            return b""
        try:
            return stream.read1(size)
        except (OSError, ValueError):
            # The pipe was closed underneath us by close() or kill_all().
            return b""

    def communicate(self, timeout: float | None = None) -> tuple[int, str]:
        """Wait for completion and return ``(returncode, stderr_text)``.

        Raises :class:`subprocess.TimeoutExpired` when ``timeout`` elapses; the
        caller's scope is responsible for killing the process.
        """

        _, stderr = self._process.communicate(timeout=timeout)
        text = stderr.decode("utf-8", errors="replace") if stderr else ""
        return self._process.returncode, text

    def kill(self) -> bool:
        if self._process.poll() is not None:
            return False
        try:
            self._process.kill()
        except OSError:  # pragma: no cover - process exited between poll and kill
            return False
        return True

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            if self._process.poll() is None:
                self._process.kill()
            try:
                self._process.wait(timeout=5.0)
            except subprocess.TimeoutExpired:  # pragma: no cover - kill ignored by the OS
                logger.error("%s (pid %s) did not exit after kill", self.label, self.pid)
            if self._stderr_thread is not None:
                self._stderr_thread.join(timeout=1.0)
            for stream in (self._process.stdout, self._process.stderr):
                if stream is None:
                    continue
                try:
                    stream.close()
                except OSError:  # pragma: no cover - best effort cleanup
                    pass
        finally:
            if self._registry is not None:
                self._registry.discard(self)

    def __enter__(self) -> "EngineProcess":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ----------------------------- implementation --------------------------
    def _drain_stderr(self) -> None:
        stream = self._process.stderr
        if stream is None:
            return
        try:
            for raw_line in iter(stream.readline, b""):
                line = raw_line.decode("utf-8", errors="replace").rstrip()
                if line:
                    logger.debug("%s[%s]: %s", self.label, self.pid, line)
        except (OSError, ValueError):
            return


class MediaEngine:
    """Invoke ffmpeg for every decode, encode and transcode operation."""

    def __init__(
        self,
        binary: str = "ffmpeg",
        *,
        registry: ProcessRegistry | None = None,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT_S,
        grab_timeout: float | None = DEFAULT_GRAB_TIMEOUT_S,
        assembly_timeout: float | None = None,
    ) -> None:
        self.binary = binary
        self.registry = registry if registry is not None else ProcessRegistry()
        self.probe_timeout = float(probe_timeout)
        self.grab_timeout = grab_timeout
        self.assembly_timeout = assembly_timeout

    # ------------------------------ helpers -----------------------------
    def _resolve_binary(self) -> str:
        resolved = shutil.which(self.binary)
        if not resolved:
            raise EngineUnavailable(
                f"{self.binary} is not installed or not in PATH. Install ffmpeg to capture frames."
            )
        return resolved

    def _spawn(self, args: Sequence[str], *, label: str, drain_stderr: bool = False) -> EngineProcess:
        command = [self._resolve_binary(), "-hide_banner", "-nostdin", *args]
        return EngineProcess(
            command,
            registry=self.registry,
            drain_stderr=drain_stderr,
            label=label,
        )

    # ------------------------------ operations ---------------------------
    def available(self) -> bool:
        """Return whether the engine binary exists and runs."""

        try:
            with self._spawn(["-version"], label="ffmpeg-version") as process:
                returncode, _ = process.communicate(timeout=self.probe_timeout)
        except EngineUnavailable as exc:
            logger.warning("Media engine unavailable: %s", exc)
            return False
        except subprocess.TimeoutExpired:
            logger.warning("%s -version did not respond", self.binary)
            return False
        return returncode == 0

    def probe_connectivity(self, source_url: str, timeout: float | None = None) -> None:
        """Request a single frame from *source_url* and discard it."""

        limit = self.probe_timeout if timeout is None else float(timeout)
        args = [*_input_args(source_url), "-frames:v", "1", "-f", "null", "-"]
        with self._spawn(args, label="ffmpeg-probe") as process:
            try:
                returncode, output = process.communicate(timeout=limit)
            except subprocess.TimeoutExpired:
                raise SourceUnreachable(
                    f"No frame received from {source_url} within {limit:g}s; "
                    "check the camera URL and network"
                ) from None
        if returncode != 0:
            raise SourceUnreachable(
                f"Cannot connect to {source_url} (ffmpeg exit {returncode}): {_tail(output)}"
            )

    def grab_one_frame(
        self,
        source_url: str,
        output_path: Path | str,
        quality_hint: int = GRAB_JPEG_QUALITY,
    ) -> None:
        """Capture exactly one still frame from *source_url* into *output_path*."""

        target = Path(output_path)
        args = [
            *_input_args(source_url),
            "-frames:v",
            "1",
            "-q:v",
            str(int(quality_hint)),
            "-y",
            str(target),
        ]
        try:
            self._run_grab(args, target)
        except GrabFailed:
            _discard(target)
            raise

    def _run_grab(self, args: Sequence[str], target: Path) -> None:
        try:
            with self._spawn(args, label="ffmpeg-grab") as process:
                try:
                    returncode, output = process.communicate(timeout=self.grab_timeout)
                except subprocess.TimeoutExpired:
                    raise GrabFailed(f"frame grab timed out after {self.grab_timeout:g}s") from None
        except EngineUnavailable as exc:
            raise GrabFailed(str(exc)) from exc
        if returncode != 0:
            raise GrabFailed(f"ffmpeg exit {returncode}: {_tail(output)}")
        self._verify_jpeg(target)

    def assemble_video(
        self,
        frame_pattern: Path | str,
        output_path: Path | str,
        fps: int,
        quality: QualityTier | str,
        frame_count: int | None = None,
    ) -> None:
        """Encode a numbered image sequence into an H.264 MP4.

        When *frame_count* is given only the first *frame_count* images of the
        sequence are encoded.
        """

        tier = QualityTier.parse(quality)
        target = Path(output_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        args = [
            "-framerate",
            str(int(fps)),
            "-start_number",
            "0",
            "-i",
            str(frame_pattern),
            "-c:v",
            "libx264",
            "-pix_fmt",
            "yuv420p",
            "-crf",
            str(tier.crf),
        ]
        if frame_count is not None:
            args += ["-frames:v", str(int(frame_count))]
        args += [
            "-y",
            str(target),
        ]
        try:
            with self._spawn(args, label="ffmpeg-assemble") as process:
                try:
                    returncode, output = process.communicate(timeout=self.assembly_timeout)
                except subprocess.TimeoutExpired:
                    raise AssemblyFailed(
                        f"video assembly timed out after {self.assembly_timeout:g}s"
                    ) from None
        except EngineUnavailable as exc:
            raise AssemblyFailed(str(exc)) from exc
        if returncode != 0:
            raise AssemblyFailed(f"ffmpeg exit {returncode}: {_tail(output)}")

    def open_live_stream(
        self,
        source_url: str,
        settings: PreviewSettings | None = None,
    ) -> EngineProcess:
        """Start a long-running MJPEG transcode of *source_url* to stdout."""

        preview = settings or PreviewSettings()
        args = [
            *_input_args(source_url),
            "-f",
            "mjpeg",
            "-q:v",
            str(preview.jpeg_quality),
            "-r",
            str(preview.fps),
            "-vf",
            f"scale={preview.width}:-1",
            "-",
        ]
        return self._spawn(args, label="ffmpeg-preview", drain_stderr=True)

    # ----------------------------- implementation --------------------------
    @staticmethod
    def _verify_jpeg(path: Path) -> None:
        try:
            payload = path.read_bytes()
        except OSError as exc:
            raise GrabFailed(f"frame file {path} was not written: {exc}") from exc
        if not payload:
            raise GrabFailed(f"frame file {path} is empty")
        try:
            height, width, _, _ = simplejpeg.decode_jpeg_header(payload)
        except (ValueError, RuntimeError) as exc:
            raise GrabFailed(f"frame file {path} is not a valid JPEG: {exc}") from exc
        logger.debug("Grabbed %dx%d frame -> %s", width, height, path)


__all__ = [
    "AssemblyFailed",
    "DEFAULT_GRAB_TIMEOUT_S",
    "DEFAULT_PROBE_TIMEOUT_S",
    "EngineError",
    "EngineProcess",
    "EngineUnavailable",
    "GrabFailed",
    "MediaEngine",
    "ProcessRegistry",
    "SourceUnreachable",
]
