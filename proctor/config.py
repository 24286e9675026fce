from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict

from .models import Severity, ViolationType


@dataclass
class CameraConfig:
    enabled: bool = False
    index: int = 0
    width: int = 640
    height: int = 480
    fps: int = 30


@dataclass
class GazeThresholds:
    yaw_scale: float = 2.5
    yaw_extreme: float = 1.0
    yaw_moderate: float = 0.6
    eye_gaze: float = 0.7
    compensation_margin: float = 0.1
    look_up: float = 0.8
    look_down: float = 0.9
    blink: float = 0.5
    max_faces: int = 2
    min_detection_confidence: float = 0.5
    min_tracking_confidence: float = 0.5


@dataclass
class AudioConfig:
    enabled: bool = False
    threshold: float = 15.0
    sample_rate: int = 16000
    fft_size: int = 256
    sample_interval: float = 1.0 / 30
    min_decibels: float = -100.0
    max_decibels: float = -30.0
    smoothing: float = 0.8


@dataclass
class IdentityConfig:
    enabled: bool = False
    match_threshold: float = 0.75
    check_interval: float = 1.0
    compare_interval: float = 5.0
    no_signal_warn_after: int = 10


@dataclass
class LivenessConfig:
    timeout: float = 60.0


@dataclass
class ThrottleConfig:
    # Cooldowns are keyed by bucket; a type not listed in shared_buckets is its own bucket.
    cooldowns: Dict[str, float] = field(
        default_factory=lambda: {
            "AUDIO_DETECTED": 2.0,
            "FACE": 2.0,
            "LIVENESS_FAILURE": 5.0,
        }
    )
    shared_buckets: Dict[str, str] = field(
        default_factory=lambda: {
            "NO_FACE": "FACE",
            "MULTIPLE_FACES": "FACE",
            "LOOKING_AWAY": "FACE",
        }
    )


@dataclass
class ScoringConfig:
    base_score: float = 100.0
    deltas: Dict[str, float] = field(
        default_factory=lambda: {
            "critical": -10.0,
            "high": -7.0,
            "medium": -3.0,
            "low": -1.0,
        }
    )


DEFAULT_SEVERITIES: Dict[str, str] = {
    "TAB_SWITCH": "critical",
    "FULLSCREEN_EXIT": "critical",
    "AUDIO_DETECTED": "critical",
    "NO_FACE": "critical",
    "MULTIPLE_FACES": "critical",
    "LOOKING_AWAY": "medium",
    "USER_MISMATCH": "critical",
    "FOCUS_LOST": "high",
    "LIVENESS_FAILURE": "critical",
}


@dataclass
class ScreenConfig:
    required: bool = True
    capture_enabled: bool = False
    monitor: int = 1
    snapshot_interval: float = 5.0
    snapshot_dir: str = "artifacts/snapshots"
    snapshot_quality: int = 70


@dataclass
class StorageConfig:
    database_path: str = "artifacts/integrity_guard.db"
    write_retries: int = 1


@dataclass
class LoggingConfig:
    level: str = "INFO"


def _section(cls, data: Dict[str, Any]):
    defaults = cls()
    kwargs = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        current = getattr(defaults, f.name)
        if isinstance(current, bool):
            kwargs[f.name] = bool(value)
        elif isinstance(current, int):
            kwargs[f.name] = int(value)
        elif isinstance(current, float):
            kwargs[f.name] = float(value)
        elif isinstance(current, dict):
            merged = dict(current)
            merged.update(value or {})
            kwargs[f.name] = merged
        else:
            kwargs[f.name] = value
    return cls(**kwargs)


@dataclass
class MonitorSettings:
    camera: CameraConfig = field(default_factory=CameraConfig)
    gaze: GazeThresholds = field(default_factory=GazeThresholds)
    audio: AudioConfig = field(default_factory=AudioConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    liveness: LivenessConfig = field(default_factory=LivenessConfig)
    throttle: ThrottleConfig = field(default_factory=ThrottleConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    severities: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SEVERITIES))
    screen: ScreenConfig = field(default_factory=ScreenConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def severity_for(self, violation_type: ViolationType) -> Severity:
        return Severity(self.severities.get(violation_type.value, Severity.MEDIUM.value))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "MonitorSettings":
        severities = dict(DEFAULT_SEVERITIES)
        for key, value in (payload.get("severities") or {}).items():
            severities[ViolationType(key).value] = Severity(value).value

        return cls(
            camera=_section(CameraConfig, payload.get("camera") or {}),
            gaze=_section(GazeThresholds, payload.get("gaze") or {}),
            audio=_section(AudioConfig, payload.get("audio") or {}),
            identity=_section(IdentityConfig, payload.get("identity") or {}),
            liveness=_section(LivenessConfig, payload.get("liveness") or {}),
            throttle=_section(ThrottleConfig, payload.get("throttle") or {}),
            scoring=_section(ScoringConfig, payload.get("scoring") or {}),
            severities=severities,
            screen=_section(ScreenConfig, payload.get("screen") or {}),
            storage=_section(StorageConfig, payload.get("storage") or {}),
            logging=_section(LoggingConfig, payload.get("logging") or {}),
        )
