import os
from dataclasses import dataclass, field
from pathlib import Path

SENSITIVITY_MULTIPLIERS = {
    "low": 1.5,
    "medium": 1.0,
    "high": 0.6,
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _default_data_dir() -> str:
    home = Path.home()
    return str(home / "motion-guard-data")


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def _parse_sensitivity(value: str) -> str:
    level = value.strip().lower()
    if level not in SENSITIVITY_MULTIPLIERS:
        raise ValueError(f"Unknown sensitivity level: {value!r}")
    return level


def _parse_sources(value: str) -> dict[str, str]:
    """Parse ``CAM1=rtsp://a,CAM2=rtsp://b`` into an ordered mapping."""
    sources: dict[str, str] = {}
    for pair in value.split(","):
        pair = pair.strip()
        if not pair:
            continue
        camera_id, sep, uri = pair.partition("=")
        if not sep or not camera_id.strip() or not uri.strip():
            raise ValueError(f"Invalid camera source: {pair!r}")
        sources[camera_id.strip()] = uri.strip()
    return sources


@dataclass(frozen=True)
class MotionConfig:
    threshold: float = 15.0
    min_duration_ms: int = 300
    min_pixel_change_percent: float = 5.0
    sensitivity_level: str = "medium"
    ignore_shadows: bool = True
    ignore_lighting_changes: bool = True


@dataclass(frozen=True)
class AlarmConfig:
    duration_seconds: float = 10.0
    volume_level: int = 100
    enabled: bool = True


@dataclass(frozen=True)
class RecordingConfig:
    duration_seconds: float = 60.0
    reset_delay_seconds: float = 3.0
    extension: str = "mp4"


@dataclass(frozen=True)
class StorageConfig:
    data_dir: str = ""
    max_usage_percent: float = 90.0
    auto_cleanup: bool = True
    capacity_bytes: int = 32 * 1024**3
    index_file: str = "index.json"


@dataclass(frozen=True)
class CameraConfig:
    sources: dict[str, str] = field(default_factory=dict)
    frame_interval_seconds: float = 0.1


@dataclass(frozen=True)
class Config:
    motion: MotionConfig = field(default_factory=MotionConfig)
    alarm: AlarmConfig = field(default_factory=AlarmConfig)
    recording: RecordingConfig = field(default_factory=RecordingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    cameras: CameraConfig = field(default_factory=CameraConfig)
    log_level: str = "INFO"


def load_config() -> Config:
    """Load configuration from environment variables with sensible defaults."""
    env = os.environ

    motion = MotionConfig(
        threshold=float(env.get("MOTION_THRESHOLD", "15")),
        min_duration_ms=int(env.get("MOTION_MIN_DURATION_MS", "300")),
        min_pixel_change_percent=float(env.get("MOTION_MIN_PIXEL_CHANGE_PERCENT", "5")),
        sensitivity_level=_parse_sensitivity(env.get("MOTION_SENSITIVITY_LEVEL", "medium")),
        ignore_shadows=_parse_bool(env.get("MOTION_IGNORE_SHADOWS", "true")),
        ignore_lighting_changes=_parse_bool(env.get("MOTION_IGNORE_LIGHTING_CHANGES", "true")),
    )

    alarm = AlarmConfig(
        duration_seconds=float(env.get("ALARM_DURATION_SECONDS", "10")),
        volume_level=min(100, max(0, int(env.get("ALARM_VOLUME_LEVEL", "100")))),
        enabled=_parse_bool(env.get("ALARM_ENABLED", "true")),
    )

    recording = RecordingConfig(
        duration_seconds=float(env.get("RECORDING_DURATION_SECONDS", "60")),
        reset_delay_seconds=float(env.get("RECORDING_RESET_DELAY_SECONDS", "3")),
        extension=env.get("RECORDING_EXTENSION", "mp4").lstrip("."),
    )

    storage = StorageConfig(
        data_dir=env.get("STORAGE_DATA_DIR", _default_data_dir()),
        max_usage_percent=float(env.get("STORAGE_MAX_USAGE_PERCENT", "90")),
        auto_cleanup=_parse_bool(env.get("STORAGE_AUTO_CLEANUP", "true")),
        capacity_bytes=int(env.get("STORAGE_CAPACITY_BYTES", str(32 * 1024**3))),
        index_file=env.get("STORAGE_INDEX_FILE", "index.json"),
    )

    cameras = CameraConfig(
        sources=_parse_sources(env.get("CAMERA_SOURCES", "")),
        frame_interval_seconds=float(env.get("CAMERA_FRAME_INTERVAL_SECONDS", "0.1")),
    )

    return Config(
        motion=motion,
        alarm=alarm,
        recording=recording,
        storage=storage,
        cameras=cameras,
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
    )
