"""Configuration management for LapseCam."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Mapping

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_S = 5
DEFAULT_OUTPUT_FPS = 30
DEFAULT_STREAM_URL = "rtsp://192.168.1.251/live"


class InvalidConfig(ValueError):
    """Raised when a capture configuration cannot be accepted."""


class QualityTier(str, Enum):
    """Output quality presets for the assembled time-lapse."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def crf(self) -> int:
        """Return the x264 constant rate factor (lower is better quality)."""

        return _QUALITY_CRF[self]

    @classmethod
    def parse(cls, value: Any) -> "QualityTier":
        if isinstance(value, QualityTier):
            return value
        if value is None:
            return cls.MEDIUM
        text = str(value).strip().lower()
        if not text:
            return cls.MEDIUM
        try:
            return cls(text)
        except ValueError:
            choices = ", ".join(tier.value for tier in cls)
            raise InvalidConfig(f"Unknown quality {value!r}; expected one of {choices}") from None


_QUALITY_CRF: dict[QualityTier, int] = {
    QualityTier.HIGH: 18,
    QualityTier.MEDIUM: 23,
    QualityTier.LOW: 28,
}


def _coerce_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise InvalidConfig(f"{name} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidConfig(f"{name} must be an integer") from None
    if isinstance(value, float) and number != value:
        raise InvalidConfig(f"{name} must be a whole number")
    return number


def _coerce_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise InvalidConfig(f"{name} must be a boolean")


@dataclass(frozen=True, slots=True)
class CaptureConfig:
    """Immutable settings for a single capture session."""

    source_url: str
    interval_s: int = DEFAULT_INTERVAL_S
    fps: int = DEFAULT_OUTPUT_FPS
    quality: QualityTier = QualityTier.MEDIUM
    cleanup_frames: bool = True

    def __post_init__(self) -> None:
        url = self.source_url.strip() if isinstance(self.source_url, str) else ""
        if not url:
            raise InvalidConfig("RTSP URL is required")
        interval = _coerce_int(self.interval_s, "Capture interval")
        if interval < 1:
            raise InvalidConfig("Capture interval must be at least 1 second")
        fps = _coerce_int(self.fps, "Frame rate")
        if fps <= 0:
            fps = DEFAULT_OUTPUT_FPS
        object.__setattr__(self, "source_url", url)
        object.__setattr__(self, "interval_s", interval)
        object.__setattr__(self, "fps", fps)
        object.__setattr__(self, "quality", QualityTier.parse(self.quality))
        object.__setattr__(self, "cleanup_frames", _coerce_bool(self.cleanup_frames, "cleanupFrames"))

    def to_dict(self) -> dict[str, object]:
        return {
            "rtspUrl": self.source_url,
            "interval": int(self.interval_s),
            "fps": int(self.fps),
            "quality": self.quality.value,
            "cleanupFrames": bool(self.cleanup_frames),
        }

    @classmethod
    def from_dict(
        cls,
        payload: Mapping[str, Any],
        *,
        defaults: "CaptureConfig | None" = None,
    ) -> "CaptureConfig":
        """Build a config from wire (``rtspUrl``) or field (``source_url``) keys."""

        def pick(*keys: str, fallback: Any) -> Any:
            for key in keys:
                value = payload.get(key)
                if value is not None:
                    return value
            return fallback

        base_url = defaults.source_url if defaults is not None else ""
        return cls(
            source_url=pick("rtspUrl", "source_url", "url", fallback=base_url),
            interval_s=pick(
                "interval",
                "interval_s",
                fallback=defaults.interval_s if defaults is not None else DEFAULT_INTERVAL_S,
            ),
            fps=pick("fps", fallback=defaults.fps if defaults is not None else DEFAULT_OUTPUT_FPS),
            quality=pick(
                "quality",
                fallback=defaults.quality if defaults is not None else QualityTier.MEDIUM,
            ),
            cleanup_frames=pick(
                "cleanupFrames",
                "cleanup_frames",
                fallback=defaults.cleanup_frames if defaults is not None else True,
            ),
        )


@dataclass(frozen=True, slots=True)
class PreviewSettings:
    """Transcoding parameters for the live MJPEG preview."""

    fps: int = 5
    width: int = 640
    jpeg_quality: int = 3

    def __post_init__(self) -> None:
        if self.fps < 1 or self.fps > 30:
            raise ValueError("Preview fps must be between 1 and 30")
        if self.width < 16:
            raise ValueError("Preview width must be at least 16 pixels")
        if self.jpeg_quality < 2 or self.jpeg_quality > 31:
            raise ValueError("Preview JPEG quality must be between 2 and 31")

    def to_dict(self) -> dict[str, int]:
        return {"fps": int(self.fps), "width": int(self.width), "jpeg_quality": int(self.jpeg_quality)}


@dataclass(frozen=True, slots=True)
class StoragePaths:
    """Filesystem locations used by capture sessions."""

    data_dir: Path
    frames_dir: Path
    output_dir: Path

    def __post_init__(self) -> None:
        for name in ("data_dir", "frames_dir", "output_dir"):
            object.__setattr__(self, name, Path(getattr(self, name)))

    @classmethod
    def from_env(cls, base: Path | str = Path("data")) -> "StoragePaths":
        data_dir = Path(os.environ.get("LAPSECAM_DATA_DIR", base))
        frames_dir = Path(os.environ.get("LAPSECAM_FRAMES_DIR", data_dir / "frames"))
        output_dir = Path(os.environ.get("LAPSECAM_OUTPUT_DIR", data_dir / "output"))
        return cls(data_dir=data_dir, frames_dir=frames_dir, output_dir=output_dir)

    def ensure(self) -> None:
        for path in (self.data_dir, self.frames_dir, self.output_dir):
            path.mkdir(parents=True, exist_ok=True)


def _parse_capture_defaults(value: Any) -> CaptureConfig | None:
    if not isinstance(value, Mapping):
        return None
    try:
        return CaptureConfig.from_dict(value)
    except InvalidConfig as exc:
        logger.warning("Ignoring stored capture defaults: %s", exc)
        return None


def _parse_preview_settings(value: Any, *, default: PreviewSettings) -> PreviewSettings:
    if not isinstance(value, Mapping):
        return default
    try:
        return PreviewSettings(
            fps=int(value.get("fps", default.fps)),
            width=int(value.get("width", default.width)),
            jpeg_quality=int(value.get("jpeg_quality", default.jpeg_quality)),
        )
    except (TypeError, ValueError) as exc:
        logger.warning("Ignoring stored preview settings: %s", exc)
        return default


class ConfigManager:
    """Persist capture defaults and preview settings as JSON."""

    def __init__(self, config_path: Path | str) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._capture: CaptureConfig | None = None
        self._preview = PreviewSettings()
        self._ensure_parent()
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unable to read configuration %s: %s", self._path, exc)
            return
        if not isinstance(payload, dict):
            return
        self._capture = _parse_capture_defaults(payload.get("capture"))
        self._preview = _parse_preview_settings(payload.get("preview"), default=PreviewSettings())

    def _save(self) -> None:
        payload: dict[str, object] = {"preview": self._preview.to_dict()}
        if self._capture is not None:
            payload["capture"] = self._capture.to_dict()
        self._path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")

    def get_capture_defaults(self) -> CaptureConfig | None:
        with self._lock:
            return self._capture

    def set_capture_defaults(self, config: CaptureConfig | Mapping[str, Any]) -> CaptureConfig:
        if not isinstance(config, CaptureConfig):
            config = CaptureConfig.from_dict(config)
        with self._lock:
            self._capture = config
            self._save()
        return config

    def get_preview_settings(self) -> PreviewSettings:
        with self._lock:
            return self._preview

    def set_preview_settings(self, data: Mapping[str, Any] | PreviewSettings) -> PreviewSettings:
        if isinstance(data, PreviewSettings):
            settings = data
        else:
            current = self.get_preview_settings()
            settings = PreviewSettings(
                fps=int(data.get("fps", current.fps)),
                width=int(data.get("width", current.width)),
                jpeg_quality=int(data.get("jpeg_quality", current.jpeg_quality)),
            )
        with self._lock:
            self._preview = settings
            self._save()
        return settings

    def get_stream_url(self) -> str:
        capture = self.get_capture_defaults()
        if capture is not None:
            return capture.source_url
        return DEFAULT_STREAM_URL


__all__ = [
    "CaptureConfig",
    "ConfigManager",
    "DEFAULT_INTERVAL_S",
    "DEFAULT_OUTPUT_FPS",
    "DEFAULT_STREAM_URL",
    "InvalidConfig",
    "PreviewSettings",
    "QualityTier",
    "StoragePaths",
]
