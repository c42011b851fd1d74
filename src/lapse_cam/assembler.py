"""Assemble captured frame sequences into time-lapse videos."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import av

from .config import CaptureConfig
from .engine import AssemblyFailed, EngineError, MediaEngine
from .events import CaptureEventLog

logger = logging.getLogger(__name__)

SESSION_STAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
FRAME_PREFIX = "frame_"
FRAME_SUFFIX = ".jpg"
FRAME_PATTERN = f"{FRAME_PREFIX}%05d{FRAME_SUFFIX}"
FRAME_GLOB = f"{FRAME_PREFIX}*{FRAME_SUFFIX}"
VIDEO_PREFIX = "timelapse_"
VIDEO_SUFFIX = ".mp4"


def session_stamp(started_at: datetime) -> str:
    return started_at.strftime(SESSION_STAMP_FORMAT)


def frame_filename(index: int) -> str:
    """Return the zero-padded file name for frame *index*."""

    if index < 0:
        raise ValueError("Frame index must not be negative")
    return FRAME_PATTERN % index


def remove_frames(frames_dir: Path) -> int:
    """Delete captured frames in *frames_dir* and the directory once empty."""

    removed = 0
    for path in sorted(frames_dir.glob(FRAME_GLOB)):
        try:
            path.unlink()
        except OSError as exc:
            logger.warning("Error removing frame %s: %s", path, exc)
            continue
        removed += 1
    try:
        frames_dir.rmdir()
    except OSError:
        # Directory still holds unrelated files or is already gone.
        pass
    logger.info("Cleaned up %d frame files", removed)
    return removed


def inspect_video(path: Path) -> dict[str, float | int | None]:
    """Return the frame count and duration of an encoded video."""

    with av.open(str(path), mode="r") as container:
        if not container.streams.video:
            raise ValueError(f"{path} has no video stream")
        stream = container.streams.video[0]
        frames = int(stream.frames) if stream.frames else None
        duration: float | None = None
        if stream.duration is not None and stream.time_base is not None:
            duration = float(stream.duration * stream.time_base)
        elif container.duration is not None:
            duration = float(container.duration) / float(av.time_base)
    return {"frames": frames, "duration_seconds": round(duration, 3) if duration is not None else None}


@dataclass(frozen=True, slots=True)
class AssemblyJob:
    """Everything the assembler needs from a finished session."""

    session_id: str
    config: CaptureConfig
    started_at: datetime
    frame_count: int
    frames_dir: Path


@dataclass(slots=True)
class AssemblyResult:
    output_path: Path
    frame_count: int
    frames_removed: int = 0
    video_frames: int | None = None
    duration_seconds: float | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "output": self.output_path.name,
            "frame_count": self.frame_count,
            "frames_removed": self.frames_removed,
            "video_frames": self.video_frames,
            "duration_seconds": self.duration_seconds,
        }


class VideoAssembler:
    """Build one output video per stopped session."""

    def __init__(
        self,
        engine: MediaEngine,
        output_dir: Path | str,
        *,
        event_log: CaptureEventLog | None = None,
    ) -> None:
        self._engine = engine
        self._output_dir = Path(output_dir)
        self._event_log = event_log

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    def output_path_for(self, started_at: datetime) -> Path:
        """Return a free output path derived from the session start time."""

        stem = f"{VIDEO_PREFIX}{session_stamp(started_at)}"
        candidate = self._output_dir / f"{stem}{VIDEO_SUFFIX}"
        counter = 1
        while candidate.exists():
            candidate = self._output_dir / f"{stem}_{counter}{VIDEO_SUFFIX}"
            counter += 1
        return candidate

    def assemble(self, job: AssemblyJob) -> AssemblyResult | None:
        """Run :meth:`run` and log failures instead of raising them."""

        try:
            result = self.run(job)
        except EngineError as exc:
            logger.error("Error generating timelapse for session %s: %s", job.session_id, exc)
            self._record(
                "failed",
                f"Timelapse generation failed: {exc}",
                job,
                {"frame_count": job.frame_count},
            )
            return None
        except Exception:
            logger.exception("Unexpected error generating timelapse for session %s", job.session_id)
            self._record("failed", "Timelapse generation crashed", job, {"frame_count": job.frame_count})
            return None
        self._record(
            "completed",
            f"Timelapse video created: {result.output_path.name}",
            job,
            result.to_dict(),
        )
        return result

    def run(self, job: AssemblyJob) -> AssemblyResult:
        if job.frame_count <= 0:
            raise AssemblyFailed("No frames were captured; nothing to assemble")
        first_frame = job.frames_dir / frame_filename(0)
        if not first_frame.exists():
            raise AssemblyFailed(f"Missing frame sequence in {job.frames_dir}")

        self._output_dir.mkdir(parents=True, exist_ok=True)
        output_path = self.output_path_for(job.started_at)
        logger.info(
            "Generating timelapse video from %d frames at %d fps (%s quality)...",
            job.frame_count,
            job.config.fps,
            job.config.quality.value,
        )
        self._engine.assemble_video(
            job.frames_dir / FRAME_PATTERN,
            output_path,
            job.config.fps,
            job.config.quality,
            frame_count=job.frame_count,
        )
        if not output_path.exists():
            raise AssemblyFailed(f"ffmpeg reported success but {output_path} is missing")

        result = AssemblyResult(output_path=output_path, frame_count=job.frame_count)
        try:
            details = inspect_video(output_path)
        except Exception as exc:
            logger.warning("Unable to inspect %s: %s", output_path, exc)
        else:
            result.video_frames = details["frames"]
            result.duration_seconds = details["duration_seconds"]
        logger.info("Timelapse video created: %s (%d frames)", output_path, job.frame_count)

        if job.config.cleanup_frames:
            result.frames_removed = remove_frames(job.frames_dir)
        return result

    def _record(self, event: str, message: str, job: AssemblyJob, metadata: dict[str, object | None]) -> None:
        if self._event_log is None:
            return
        self._event_log.record("assembly", event, message, session=job.session_id, metadata=metadata)


__all__ = [
    "AssemblyJob",
    "AssemblyResult",
    "FRAME_GLOB",
    "FRAME_PATTERN",
    "SESSION_STAMP_FORMAT",
    "VideoAssembler",
    "frame_filename",
    "inspect_video",
    "remove_frames",
    "session_stamp",
]
