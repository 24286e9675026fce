from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ViolationType(str, Enum):
    TAB_SWITCH = "TAB_SWITCH"
    FULLSCREEN_EXIT = "FULLSCREEN_EXIT"
    FOCUS_LOST = "FOCUS_LOST"
    AUDIO_DETECTED = "AUDIO_DETECTED"
    NO_FACE = "NO_FACE"
    MULTIPLE_FACES = "MULTIPLE_FACES"
    LOOKING_AWAY = "LOOKING_AWAY"
    USER_MISMATCH = "USER_MISMATCH"
    LIVENESS_FAILURE = "LIVENESS_FAILURE"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class GazeDirection(str, Enum):
    CENTER = "CENTER"
    LEFT = "LEFT"
    RIGHT = "RIGHT"
    UP = "UP"
    DOWN = "DOWN"


class SignalKind(str, Enum):
    VISIBILITY = "visibility"
    FOCUS = "focus"
    FULLSCREEN = "fullscreen"
    SCREEN_SHARE = "screen_share"


@dataclass
class Session:
    session_id: str
    exam_id: str
    user_id: str
    started_at: float
    status: SessionStatus = SessionStatus.IN_PROGRESS
    ended_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.session_id,
            "exam_id": self.exam_id,
            "user_id": self.user_id,
            "started_at": self.started_at,
            "status": self.status.value,
            "ended_at": self.ended_at,
        }


@dataclass(frozen=True)
class ViolationEvent:
    session_id: str
    type: ViolationType
    severity: Severity
    timestamp: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "type": self.type.value,
            "severity": self.severity.value,
            "timestamp": self.timestamp,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ViolationEvent":
        metadata = payload.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata) if metadata else {}
        return cls(
            session_id=str(payload["session_id"]),
            type=ViolationType(payload["type"]),
            severity=Severity(payload["severity"]),
            timestamp=float(payload["timestamp"]),
            metadata=metadata,
            id=payload.get("id"),
        )


@dataclass
class Detection:
    """A raw observation from a collector, before throttling."""

    type: ViolationType
    timestamp: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SignalMessage:
    kind: SignalKind
    active: bool
    timestamp: float


@dataclass
class GazeState:
    face_count: int
    is_looking_away: bool
    gaze_direction: GazeDirection = GazeDirection.CENTER
    is_multiple_faces: bool = False
    is_no_face: bool = False
    is_blinking: bool = False
    head_yaw: float = 0.0
    eye_gaze: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "face_count": self.face_count,
            "is_looking_away": self.is_looking_away,
            "gaze_direction": self.gaze_direction.value,
            "is_multiple_faces": self.is_multiple_faces,
            "is_no_face": self.is_no_face,
            "is_blinking": self.is_blinking,
            "head_yaw": self.head_yaw,
            "eye_gaze": self.eye_gaze,
        }
