"""Shared stubs for LapseCam tests."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from lapse_cam.config import StoragePaths
from lapse_cam.engine import (
    EngineUnavailable,
    GrabFailed,
    ProcessRegistry,
    SourceUnreachable,
)

FAKE_JPEG = b"\xff\xd8\xff\xe0fake-jpeg-body\xff\xd9"


class FakeLiveProcess:
    """Stand-in for an engine process producing a fixed stdout payload."""

    def __init__(self, chunks: list[bytes]) -> None:
        self._chunks = list(chunks)
        self.closed = False
        self.reads = 0

    def read(self, size: int) -> bytes:
        self.reads += 1
        if self.closed or not self._chunks:
            return b""
        return self._chunks.pop(0)[:size]

    def close(self) -> None:
        self.closed = True


class StubEngine:
    def __init__(self, *, available: bool = True, reachable: bool = True) -> None:
        self.registry = ProcessRegistry()
        self._available = available
        self.reachable = reachable
        self.fail_next_grabs = 0
        self.grabs: list[Path] = []
        self.probes: list[str] = []
        self.assembled: list[dict[str, object]] = []
        self.live_processes: list[FakeLiveProcess] = []
        self.live_chunks: list[bytes] = [FAKE_JPEG]
        self._lock = threading.Lock()

    def available(self) -> bool:
        return self._available

    def probe_connectivity(self, source_url: str, timeout: float | None = None) -> None:
        self.probes.append(source_url)
        if not self.reachable:
            raise SourceUnreachable(f"Cannot connect to {source_url}")

    def grab_one_frame(self, source_url: str, output_path, quality_hint: int = 2) -> None:
        path = Path(output_path)
        with self._lock:
            self.grabs.append(path)
            if self.fail_next_grabs > 0:
                self.fail_next_grabs -= 1
                raise GrabFailed("simulated network hiccup")
        path.write_bytes(FAKE_JPEG)

    def assemble_video(self, frame_pattern, output_path, fps, quality, frame_count=None) -> None:
        self.assembled.append(
            {
                "frame_count": frame_count,
                "pattern": Path(frame_pattern),
                "output": Path(output_path),
                "fps": fps,
                "quality": quality,
            }
        )
        Path(output_path).write_bytes(b"not-really-an-mp4")

    def open_live_stream(self, source_url: str, settings=None) -> FakeLiveProcess:
        if not self._available:
            raise EngineUnavailable("ffmpeg is not installed")
        process = FakeLiveProcess(self.live_chunks)
        self.live_processes.append(process)
        return process


@pytest.fixture
def stub_engine() -> StubEngine:
    return StubEngine()


@pytest.fixture
def storage(tmp_path: Path) -> StoragePaths:
    return StoragePaths(
        data_dir=tmp_path / "data",
        frames_dir=tmp_path / "data" / "frames",
        output_dir=tmp_path / "data" / "output",
    )
