from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import pytest

from lapse_cam import engine
from lapse_cam.config import PreviewSettings, QualityTier
from lapse_cam.engine import (
    AssemblyFailed,
    EngineError,
    EngineProcess,
    EngineUnavailable,
    GrabFailed,
    MediaEngine,
    ProcessRegistry,
    SourceUnreachable,
)


class _FakePopen:
    """Minimal ``subprocess.Popen`` replacement driven by class attributes."""

    instances: list["_FakePopen"] = []
    returncode_on_exit = 0
    stderr_text = b""
    hang = False
    write_output = True
    partial_output = False

    def __init__(self, command, stdin=None, stdout=None, stderr=None) -> None:
        self.command = list(command)
        self.pid = 4242
        self.returncode: int | None = None
        self.killed = False
        self.stdout = None
        self.stderr = None
        _FakePopen.instances.append(self)

    def poll(self) -> int | None:
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    def wait(self, timeout: float | None = None) -> int:
        if self.returncode is None:
            self.returncode = 0
        return self.returncode

    def communicate(self, timeout: float | None = None):
        if self.partial_output:
            Path(self.command[-1]).write_bytes(b"garbage")
        if self.hang:
            raise subprocess.TimeoutExpired(self.command, timeout)
        self.returncode = self.returncode_on_exit
        if self.write_output and self.returncode == 0 and self.command[-1] not in {"-", "-version"}:
            Path(self.command[-1]).write_bytes(b"\xff\xd8jpeg\xff\xd9")
        return b"", self.stderr_text


class _StubSimplejpeg:
    def __init__(self, *, valid: bool = True) -> None:
        self.valid = valid

    def decode_jpeg_header(self, data: bytes):
        if not self.valid:
            raise ValueError("not a jpeg")
        return 480, 640, "YCbCr", "420"


@pytest.fixture
def fake_popen(monkeypatch: pytest.MonkeyPatch) -> type[_FakePopen]:
    _FakePopen.instances = []
    _FakePopen.returncode_on_exit = 0
    _FakePopen.stderr_text = b""
    _FakePopen.hang = False
    _FakePopen.write_output = True
    _FakePopen.partial_output = False
    monkeypatch.setattr(engine.subprocess, "Popen", _FakePopen)
    monkeypatch.setattr(engine.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(engine, "simplejpeg", _StubSimplejpeg())
    return _FakePopen


def test_input_args_use_tcp_only_for_rtsp() -> None:
    assert engine._input_args("rtsp://cam/live") == ["-rtsp_transport", "tcp", "-i", "rtsp://cam/live"]
    assert engine._input_args("RTSPS://cam/live")[:2] == ["-rtsp_transport", "tcp"]
    assert engine._input_args("http://cam/stream.mjpg") == ["-i", "http://cam/stream.mjpg"]


def test_grab_one_frame_builds_command_and_unregisters(fake_popen, tmp_path: Path) -> None:
    media = MediaEngine()
    target = tmp_path / "frame_00000.jpg"

    media.grab_one_frame("rtsp://cam/live", target)

    command = fake_popen.instances[-1].command
    assert command[0] == "/usr/bin/ffmpeg"
    assert command[command.index("-i") + 1] == "rtsp://cam/live"
    assert command[command.index("-frames:v") + 1] == "1"
    assert command[command.index("-q:v") + 1] == "2"
    assert command[-2:] == ["-y", str(target)]
    assert target.exists()
    assert len(media.registry) == 0


def test_grab_one_frame_reports_engine_failure(fake_popen, tmp_path: Path) -> None:
    fake_popen.returncode_on_exit = 1
    fake_popen.stderr_text = b"Connection refused"
    media = MediaEngine()

    with pytest.raises(GrabFailed, match="Connection refused"):
        media.grab_one_frame("rtsp://cam/live", tmp_path / "frame.jpg")
    assert len(media.registry) == 0


def test_grab_one_frame_rejects_invalid_jpeg(
    fake_popen, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setattr(engine, "simplejpeg", _StubSimplejpeg(valid=False))

    target = tmp_path / "frame.jpg"

    with pytest.raises(GrabFailed, match="not a valid JPEG"):
        MediaEngine().grab_one_frame("rtsp://cam/live", target)
    assert not target.exists()


def test_grab_timeout_kills_process(fake_popen, tmp_path: Path) -> None:
    fake_popen.hang = True
    media = MediaEngine(grab_timeout=0.1)

    with pytest.raises(GrabFailed, match="timed out"):
        media.grab_one_frame("rtsp://cam/live", tmp_path / "frame.jpg")
    assert fake_popen.instances[-1].killed is True
    assert len(media.registry) == 0


def test_failed_grab_removes_partial_frame(fake_popen, tmp_path: Path) -> None:
    fake_popen.partial_output = True
    fake_popen.returncode_on_exit = 1
    target = tmp_path / "frame_00003.jpg"

    with pytest.raises(GrabFailed):
        MediaEngine().grab_one_frame("rtsp://cam/live", target)
    assert not target.exists()


def test_timed_out_grab_removes_partial_frame(fake_popen, tmp_path: Path) -> None:
    fake_popen.partial_output = True
    fake_popen.hang = True
    target = tmp_path / "frame_00003.jpg"

    with pytest.raises(GrabFailed):
        MediaEngine(grab_timeout=0.1).grab_one_frame("rtsp://cam/live", target)
    assert not target.exists()


def test_probe_timeout_raises_source_unreachable(fake_popen) -> None:
    fake_popen.hang = True
    media = MediaEngine()

    with pytest.raises(SourceUnreachable):
        media.probe_connectivity("rtsp://cam/live", timeout=0.5)
    process = fake_popen.instances[-1]
    assert process.killed is True
    assert process.command[-3:] == ["-f", "null", "-"]


def test_probe_failure_raises_source_unreachable(fake_popen) -> None:
    fake_popen.returncode_on_exit = 1

    with pytest.raises(SourceUnreachable):
        MediaEngine().probe_connectivity("rtsp://cam/live")


def test_assemble_video_uses_quality_crf(fake_popen, tmp_path: Path) -> None:
    fake_popen.write_output = False
    output = tmp_path / "out" / "timelapse.mp4"

    MediaEngine().assemble_video(tmp_path / "frame_%05d.jpg", output, 24, "high")

    command = fake_popen.instances[-1].command
    assert command[command.index("-framerate") + 1] == "24"
    assert command[command.index("-start_number") + 1] == "0"
    assert command[command.index("-c:v") + 1] == "libx264"
    assert command[command.index("-pix_fmt") + 1] == "yuv420p"
    assert command[command.index("-crf") + 1] == str(QualityTier.HIGH.crf)
    assert "-frames:v" not in command
    assert output.parent.is_dir()


def test_assemble_video_limits_frame_count(fake_popen, tmp_path: Path) -> None:
    fake_popen.write_output = False
    output = tmp_path / "timelapse.mp4"

    MediaEngine().assemble_video(tmp_path / "frame_%05d.jpg", output, 30, "medium", frame_count=7)

    command = fake_popen.instances[-1].command
    assert command[command.index("-frames:v") + 1] == "7"
    assert command.index("-frames:v") > command.index("-i")
    assert command[-2:] == ["-y", str(output)]


def test_assemble_video_failure(fake_popen, tmp_path: Path) -> None:
    fake_popen.returncode_on_exit = 1
    with pytest.raises(AssemblyFailed):
        MediaEngine().assemble_video(tmp_path / "frame_%05d.jpg", tmp_path / "out.mp4", 30, "medium")


def test_open_live_stream_command(fake_popen) -> None:
    media = MediaEngine()
    process = media.open_live_stream("rtsp://cam/live", PreviewSettings())

    try:
        command = fake_popen.instances[-1].command
        tail = command[command.index("-f") :]
        assert tail == ["-f", "mjpeg", "-q:v", "3", "-r", "5", "-vf", "scale=640:-1", "-"]
        assert len(media.registry) == 1
    finally:
        process.close()
    assert len(media.registry) == 0
    assert fake_popen.instances[-1].killed is True


def test_missing_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(engine.shutil, "which", lambda name: None)
    media = MediaEngine("definitely-not-ffmpeg")

    assert media.available() is False
    with pytest.raises(EngineUnavailable):
        media.open_live_stream("rtsp://cam/live")
    with pytest.raises(EngineError):
        media.probe_connectivity("rtsp://cam/live")


def test_registry_kill_all_terminates_real_process() -> None:
    registry = ProcessRegistry()
    process = EngineProcess(
        [sys.executable, "-c", "import time; time.sleep(30)"],
        registry=registry,
        label="sleeper",
    )
    try:
        assert len(registry) == 1
        assert process.running()
        assert registry.kill_all() == 1
    finally:
        process.close()

    assert len(registry) == 0
    assert process.returncode is not None
    process.close()


def test_engine_process_reads_stdout_until_eof() -> None:
    with EngineProcess(
        [sys.executable, "-c", "import sys; sys.stdout.buffer.write(b'abc')"],
        drain_stderr=True,
    ) as process:
        data = b""
        while True:
            chunk = process.read(4096)
            if not chunk:
                break
            data += chunk
    assert data == b"abc"
