"""Live MJPEG preview helpers for LapseCam."""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from functools import partial
from typing import Awaitable, Callable, Deque

from .config import PreviewSettings
from .engine import EngineProcess, MediaEngine

logger = logging.getLogger(__name__)

SOI_MARKER = b"\xff\xd8"
EOI_MARKER = b"\xff\xd9"
READ_CHUNK_SIZE = 4096


class MJPEGDemuxer:
    """Split a raw concatenated JPEG byte stream into individual frames."""

    MAX_BUFFER = 1024 * 1024
    RESYNC_WINDOW = 4096

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> list[bytes]:
        """Append *data* and return every frame it completes, in order."""

        buffer = self._buffer
        buffer.extend(data)
        frames: list[bytes] = []
        while True:
            start = buffer.find(SOI_MARKER)
            if start < 0:
                # Keep the last byte in case it is the first half of a marker.
                del buffer[:-1]
                break
            end = buffer.find(EOI_MARKER, start + 2)
            if end < 0:
                del buffer[:start]
                break
            frames.append(bytes(buffer[start : end + 2]))
            del buffer[: end + 2]

        if len(buffer) > self.MAX_BUFFER:
            logger.warning(
                "MJPEG buffer exceeded %d bytes without a complete frame; resynchronising",
                self.MAX_BUFFER,
            )
            del buffer[: -self.RESYNC_WINDOW]
        return frames

    def reset(self) -> None:
        self._buffer.clear()


def render_chunk(frame: bytes, boundary: str = "frame") -> bytes:
    """Wrap a JPEG frame as one ``multipart/x-mixed-replace`` part."""

    header = (
        f"--{boundary}\r\n"
        "Content-Type: image/jpeg\r\n"
        f"Content-Length: {len(frame)}\r\n"
        "\r\n"
    ).encode("ascii")
    return header + frame + b"\r\n"


def _close_abandoned(opening: "asyncio.Future[EngineProcess]") -> None:
    if opening.cancelled() or opening.exception() is not None:
        return
    opening.get_loop().run_in_executor(None, opening.result().close)


class PreviewStream:
    """Async iterator of rendered MJPEG parts that owns its engine process.

    :meth:`aclose` releases the process whether or not iteration ever
    started, so callers can close the stream from any exit path. Blocking
    process shutdown runs on a worker thread.
    """

    def __init__(
        self,
        source_url: str,
        open_process: Callable[[], EngineProcess],
        *,
        process: EngineProcess | None = None,
        boundary: str = "frame",
        read_size: int = READ_CHUNK_SIZE,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> None:
        self.source_url = source_url
        self._open_process = open_process
        self._process = process
        self._boundary = boundary
        self._read_size = read_size
        self._is_disconnected = is_disconnected
        self._demuxer = MJPEGDemuxer()
        self._pending: Deque[bytes] = deque()
        self._closed = False
        self._closing: "asyncio.Future[None] | None" = None
        self.frames = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "PreviewStream":
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration
        try:
            if self._process is None:
                self._process = await self._open()
                logger.info("Preview stream opened for %s", self.source_url)
            while not self._pending:
                if self._is_disconnected is not None and await self._is_disconnected():
                    logger.info("Preview client disconnected")
                    raise StopAsyncIteration
                data = await asyncio.to_thread(self._process.read, self._read_size)
                if not data:
                    raise StopAsyncIteration
                self._pending.extend(self._demuxer.feed(data))
        except BaseException:
            await self.aclose()
            raise
        self.frames += 1
        return render_chunk(self._pending.popleft(), self._boundary)

    async def _open(self) -> EngineProcess:
        opening = asyncio.ensure_future(asyncio.to_thread(self._open_process))
        try:
            return await asyncio.shield(opening)
        except asyncio.CancelledError:
            opening.add_done_callback(_close_abandoned)
            raise

    async def aclose(self) -> None:
        """Terminate and reap the engine process; safe to call repeatedly."""

        self._closed = True
        self._pending.clear()
        if self._closing is None:
            process = self._process
            if process is None:
                return
            logger.info("Closing preview stream for %s after %d frames", self.source_url, self.frames)
            # The worker thread finishes the close even if this task is cancelled.
            self._closing = asyncio.ensure_future(asyncio.to_thread(process.close))
        await asyncio.shield(self._closing)


@dataclass
class PreviewStreamer:
    """Transcode a camera stream to MJPEG for one HTTP client at a time."""

    engine: MediaEngine
    settings: PreviewSettings = field(default_factory=PreviewSettings)
    boundary: str = "frame"
    read_size: int = READ_CHUNK_SIZE

    def __post_init__(self) -> None:
        if not self.boundary:
            raise ValueError("boundary must not be empty")
        if self.read_size <= 0:
            raise ValueError("read_size must be positive")

    @property
    def media_type(self) -> str:
        """Return the MIME type for the preview response."""

        return f"multipart/x-mixed-replace; boundary={self.boundary}"

    def open(self, source_url: str) -> EngineProcess:
        return self.engine.open_live_stream(source_url, self.settings)

    def stream(
        self,
        source_url: str,
        *,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
        process: EngineProcess | None = None,
    ) -> PreviewStream:
        """Return rendered MJPEG parts until the client leaves or the source ends.

        A pre-opened *process* is owned by the returned stream from this
        point on; otherwise the process is spawned on first iteration.
        """

        return PreviewStream(
            source_url,
            partial(self.open, source_url),
            process=process,
            boundary=self.boundary,
            read_size=self.read_size,
            is_disconnected=is_disconnected,
        )


__all__ = [
    "EOI_MARKER",
    "MJPEGDemuxer",
    "PreviewStream",
    "PreviewStreamer",
    "READ_CHUNK_SIZE",
    "SOI_MARKER",
    "render_chunk",
]
