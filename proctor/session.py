"""
Monitoring session: the in_progress -> completed state machine that owns a
session's collectors and routes their detections through the throttler into
the violation sink.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from .audit import log_sensor_unavailable, log_session_end, log_session_start, log_violation
from .collectors import Collector
from .config import MonitorSettings
from .errors import SensorUnavailable, SessionStateError
from .models import Detection, Session, SessionStatus, Severity, SignalMessage, ViolationEvent
from .scheduler import Clock, SystemClock
from .scoring import CredibilityScore, score
from .sink import ViolationSink
from .throttle import Throttler

logger = logging.getLogger(__name__)


class MonitoringSession:
    def __init__(
        self,
        session: Session,
        collectors: List[Collector],
        throttler: Throttler,
        sink: ViolationSink,
        settings: Optional[MonitorSettings] = None,
        clock: Optional[Clock] = None,
    ):
        self.session = session
        self.collectors = list(collectors)
        self.throttler = throttler
        self.sink = sink
        self.settings = settings or MonitorSettings()
        self.clock = clock or SystemClock()

        self.events: List[ViolationEvent] = []
        self.warnings: List[str] = []
        self.active_collectors: List[Collector] = []
        self.final_score: Optional[CredibilityScore] = None
        self.listeners: List[Callable[[ViolationEvent], None]] = []
        self.last_write: Any = None
        self._started = False

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    def _sensor_warning(self, collector: Collector, exc: SensorUnavailable) -> None:
        self.warnings.append(str(exc))
        log_sensor_unavailable(self.session_id, collector.name, exc.reason or str(exc))

    async def start(self) -> None:
        """Start every collector; device and model setup runs off the event loop."""
        if self.session.status == SessionStatus.COMPLETED:
            raise SessionStateError(f"session {self.session_id} is completed and cannot restart")
        if self._started:
            return
        self._started = True
        self.throttler.reset(self.session_id)

        for collector in self.collectors:
            try:
                await collector.start_async(self.report)
            except SensorUnavailable as exc:
                self._sensor_warning(collector, exc)
                continue
            except Exception:
                self.warnings.append(f"{collector.name} failed to start")
                logger.exception("collector %s failed to start for %s", collector.name, self.session_id)
                continue
            if collector.degraded is not None:
                self._sensor_warning(collector, collector.degraded)
            self.active_collectors.append(collector)

        log_session_start(
            self.session_id,
            self.session.exam_id,
            self.session.user_id,
            [c.name for c in self.active_collectors],
        )

    def report(self, detection: Detection, severity: Optional[Severity] = None) -> Optional[ViolationEvent]:
        """Admit a detection through the throttler; returns the event or None when dropped."""
        if self.session.status != SessionStatus.IN_PROGRESS:
            return None
        if not self.throttler.admit(self.session_id, detection.type, detection.timestamp):
            return None

        event = ViolationEvent(
            session_id=self.session_id,
            type=detection.type,
            severity=severity or self.settings.severity_for(detection.type),
            timestamp=detection.timestamp,
            metadata=dict(detection.metadata),
        )
        self.events.append(event)
        log_violation(self.session_id, event.type.value, event.severity.value)
        self.last_write = self.sink.append(event)

        for listener in list(self.listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("violation listener failed")
        return event

    def signal(self, message: SignalMessage) -> List[ViolationEvent]:
        admitted = []
        for collector in self.active_collectors:
            if hasattr(collector, "push") and collector.accepts(message):
                event = collector.push(message)
                if event is not None:
                    admitted.append(event)
        return admitted

    def collector(self, name: str) -> Optional[Collector]:
        for collector in self.collectors:
            if collector.name == name:
                return collector
        return None

    @property
    def screen_share_required(self) -> bool:
        screen = self.collector("screen")
        return bool(screen is not None and getattr(screen, "reprompt_required", False))

    def _stop_collectors(self) -> None:
        for collector in self.collectors:
            try:
                collector.stop()
            except Exception:
                logger.exception("collector %s failed to stop cleanly", collector.name)
        self.active_collectors = []

    async def complete(self) -> CredibilityScore:
        if self.session.status == SessionStatus.COMPLETED:
            raise SessionStateError(f"session {self.session_id} is already completed")
        self.session.status = SessionStatus.COMPLETED
        self.session.ended_at = self.clock.now()
        try:
            self._stop_collectors()
        finally:
            await self.sink.flush()
            self.throttler.discard(self.session_id)

        violations = await self.sink.list_by_session(self.session_id)
        self.final_score = score(violations, self.settings.scoring)
        log_session_end(self.session_id, self.final_score.score, self.final_score.total_violations)
        return self.final_score

    def abort(self) -> None:
        """Release every collector without completing, e.g. on server shutdown."""
        self._stop_collectors()

    def credibility(self) -> CredibilityScore:
        if self.final_score is not None:
            return self.final_score
        return score(self.events, self.settings.scoring)

    def describe(self) -> Dict[str, Any]:
        return {
            "session": self.session.to_dict(),
            "collectors": [c.name for c in self.active_collectors],
            "warnings": list(self.warnings),
            "screen_share_required": self.screen_share_required,
        }
