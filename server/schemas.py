from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from proctor.config import DEFAULT_SEVERITIES
from proctor.models import Severity, SignalKind, ViolationType


class CameraSchema(BaseModel):
    enabled: bool = False
    index: int = 0
    width: int = 640
    height: int = 480
    fps: int = 30


class GazeSchema(BaseModel):
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


class AudioSchema(BaseModel):
    enabled: bool = False
    threshold: float = 15.0
    sample_rate: int = 16000
    fft_size: int = 256
    sample_interval: float = 1.0 / 30
    min_decibels: float = -100.0
    max_decibels: float = -30.0
    smoothing: float = 0.8


class IdentitySchema(BaseModel):
    enabled: bool = False
    match_threshold: float = 0.75
    check_interval: float = 1.0
    compare_interval: float = 5.0
    no_signal_warn_after: int = 10


class LivenessSchema(BaseModel):
    timeout: float = 60.0


class ThrottleSchema(BaseModel):
    cooldowns: Dict[str, float] = {"AUDIO_DETECTED": 2.0, "FACE": 2.0, "LIVENESS_FAILURE": 5.0}
    shared_buckets: Dict[str, str] = {"NO_FACE": "FACE", "MULTIPLE_FACES": "FACE", "LOOKING_AWAY": "FACE"}


class ScoringSchema(BaseModel):
    base_score: float = 100.0
    deltas: Dict[str, float] = {"critical": -10.0, "high": -7.0, "medium": -3.0, "low": -1.0}


class ScreenSchema(BaseModel):
    required: bool = True
    capture_enabled: bool = False
    monitor: int = 1
    snapshot_interval: float = 5.0
    snapshot_dir: str = "artifacts/snapshots"
    snapshot_quality: int = 70


class StorageSchema(BaseModel):
    database_path: str = "artifacts/integrity_guard.db"
    write_retries: int = 1


class LoggingSchema(BaseModel):
    level: str = "INFO"


class SettingsSchema(BaseModel):
    camera: CameraSchema = CameraSchema()
    gaze: GazeSchema = GazeSchema()
    audio: AudioSchema = AudioSchema()
    identity: IdentitySchema = IdentitySchema()
    liveness: LivenessSchema = LivenessSchema()
    throttle: ThrottleSchema = ThrottleSchema()
    scoring: ScoringSchema = ScoringSchema()
    severities: Dict[ViolationType, Severity] = Field(
        default_factory=lambda: {ViolationType(k): Severity(v) for k, v in DEFAULT_SEVERITIES.items()}
    )
    screen: ScreenSchema = ScreenSchema()
    storage: StorageSchema = StorageSchema()
    logging: LoggingSchema = LoggingSchema()


class SessionCreate(BaseModel):
    exam_id: str
    user_id: str


class SessionSchema(BaseModel):
    id: str
    exam_id: str
    user_id: str
    started_at: float
    status: str
    ended_at: Optional[float] = None


class SessionStarted(BaseModel):
    session: SessionSchema
    collectors: List[str]
    warnings: List[str]
    screen_share_required: bool


class ViolationCreate(BaseModel):
    session_id: str
    type: ViolationType
    severity: Optional[Severity] = None
    metadata: Dict[str, Any] = {}


class ViolationSchema(BaseModel):
    id: Optional[int] = None
    session_id: str
    type: str
    severity: str
    timestamp: float
    metadata: Dict[str, Any] = {}


class ViolationReceipt(BaseModel):
    admitted: bool
    persisted: bool = False
    violation: Optional[ViolationSchema] = None


class CredibilitySchema(BaseModel):
    score: float
    base_score: float
    total_violations: int
    breakdown: Dict[str, float]


class SessionSummary(SessionSchema):
    violation_count: int
    credibility_score: float
    credibility_band: str
    latest_violation: Optional[ViolationSchema] = None


class SessionDetail(BaseModel):
    session: SessionSchema
    violations: List[ViolationSchema]
    credibility_score: float
    credibility_band: str
    violations_by_severity: Dict[str, int]
    total_violations: int
    unsaved_violations: int = 0


class SignalCreate(BaseModel):
    kind: SignalKind
    active: bool
    timestamp: Optional[float] = None


class SignalReceipt(BaseModel):
    admitted: List[ViolationSchema]
    screen_share_required: bool


class ReferencePhoto(BaseModel):
    image_base64: str


class ReferenceReceipt(BaseModel):
    registered: bool
    message: str
