"""
Exam-integrity detection and credibility-scoring engine.
"""

from .classifier import classify
from .config import MonitorSettings
from .models import Detection, GazeState, Session, SessionStatus, Severity, SignalMessage, ViolationEvent, ViolationType
from .scoring import CredibilityScore, score
from .session import MonitoringSession
from .sink import ViolationSink
from .throttle import Throttler

__all__ = [
    "classify",
    "CredibilityScore",
    "Detection",
    "GazeState",
    "MonitoringSession",
    "MonitorSettings",
    "score",
    "Session",
    "SessionStatus",
    "Severity",
    "SignalMessage",
    "Throttler",
    "ViolationEvent",
    "ViolationSink",
    "ViolationType",
]
