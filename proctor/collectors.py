from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .classifier import classify
from .config import GazeThresholds, LivenessConfig
from .errors import SensorUnavailable
from .models import Detection, GazeState, SignalKind, SignalMessage, ViolationType
from .scheduler import Clock, Job, Scheduler, SystemClock

logger = logging.getLogger(__name__)

Emit = Callable[[Detection], Any]


class Collector:
    """
    A continuous signal source. Polled collectors set `interval` and are
    ticked by a scheduler; event-driven ones receive messages through `push`.
    """

    name = "collector"
    interval: Optional[float] = None

    def __init__(self, scheduler: Optional[Scheduler] = None, clock: Optional[Clock] = None):
        self.scheduler = scheduler
        self.clock = clock or (scheduler.clock if scheduler else SystemClock())
        self.running = False
        # set when the collector started with part of its sensor missing
        self.degraded: Optional[SensorUnavailable] = None
        self._emit: Optional[Emit] = None
        self._job: Optional[Job] = None

    def start(self, emit: Emit) -> None:
        if self.running:
            return
        self.open()
        self._activate(emit)

    async def start_async(self, emit: Emit) -> None:
        """Like `start`, with the device and model setup in `open()` run on a worker thread."""
        if self.running:
            return
        await asyncio.to_thread(self.open)
        self._activate(emit)

    def _activate(self, emit: Emit) -> None:
        self._emit = emit
        self.running = True
        if self.interval and self.scheduler is not None:
            self._job = self.scheduler.every(self.interval, self.tick, name=self.name)

    def stop(self) -> None:
        was_running = self.running
        self.running = False
        try:
            if self.scheduler is not None:
                self.scheduler.cancel(self._job)
            self._job = None
        finally:
            if was_running:
                self.close()

    def open(self) -> None:
        pass

    def close(self) -> None:
        pass

    def tick(self) -> Any:
        if self.running:
            return self.sample()
        return None

    def sample(self) -> Any:
        """One poll. Blocking work is returned as an awaitable for the scheduler to await."""
        return None

    def emit(self, violation_type: ViolationType, metadata: Optional[Dict[str, Any]] = None, timestamp: Optional[float] = None) -> Any:
        if self._emit is None or not self.running:
            return None
        detection = Detection(
            type=violation_type,
            timestamp=self.clock.now() if timestamp is None else timestamp,
            metadata=metadata or {},
        )
        return self._emit(detection)


@dataclass
class FaceFrame:
    face_landmarks: List[Any] = field(default_factory=list)
    face_blendshapes: List[Any] = field(default_factory=list)


class LivenessMonitor:
    """Flags a face that has not blinked for `timeout` seconds, then re-arms."""

    def __init__(self, config: Optional[LivenessConfig] = None):
        self.config = config or LivenessConfig()
        self.last_blink: Optional[float] = None

    def reset(self, now: float) -> None:
        self.last_blink = now

    def update(self, state: GazeState, now: float) -> bool:
        # blinking is only observable with exactly one face in frame
        if state.face_count != 1 or self.last_blink is None:
            self.last_blink = now
            return False
        if state.is_blinking:
            self.last_blink = now
            return False
        if now - self.last_blink >= self.config.timeout:
            self.last_blink = now
            return True
        return False


class GazeCollector(Collector):
    name = "gaze"

    def __init__(
        self,
        face_source: Any,
        thresholds: Optional[GazeThresholds] = None,
        liveness: Optional[LivenessMonitor] = None,
        scheduler: Optional[Scheduler] = None,
        fps: float = 30.0,
        clock: Optional[Clock] = None,
    ):
        super().__init__(scheduler, clock)
        self.face_source = face_source
        self.thresholds = thresholds or GazeThresholds()
        self.liveness = liveness or LivenessMonitor()
        self.interval = 1.0 / fps if fps else None
        self.last_state: Optional[GazeState] = None

    def open(self) -> None:
        if hasattr(self.face_source, "open"):
            self.face_source.open()
        self.liveness.reset(self.clock.now())

    def close(self) -> None:
        if hasattr(self.face_source, "close"):
            self.face_source.close()

    def sample(self) -> None:
        frame = self.face_source.detect()
        if frame is None:
            return
        self.process(frame)

    def process(self, frame: FaceFrame) -> GazeState:
        now = self.clock.now()
        state = classify(frame.face_landmarks, frame.face_blendshapes, self.thresholds)
        self.last_state = state

        if state.is_no_face:
            self.emit(ViolationType.NO_FACE, {"face_count": 0}, now)
        elif state.is_multiple_faces:
            self.emit(ViolationType.MULTIPLE_FACES, {"face_count": state.face_count}, now)
        elif state.is_looking_away:
            self.emit(
                ViolationType.LOOKING_AWAY,
                {"gaze_direction": state.gaze_direction.value, "head_yaw": round(state.head_yaw, 3)},
                now,
            )

        if self.liveness.update(state, now):
            self.emit(ViolationType.LIVENESS_FAILURE, {"timeout": self.liveness.config.timeout}, now)
        return state


_EDGE_TYPES = {
    SignalKind.VISIBILITY: ViolationType.TAB_SWITCH,
    SignalKind.FOCUS: ViolationType.FOCUS_LOST,
    SignalKind.FULLSCREEN: ViolationType.FULLSCREEN_EXIT,
}


class VisibilityCollector(Collector):
    """
    Edge-triggered tab, focus and fullscreen transitions. `active` on a message
    means visible / focused / fullscreen; only an active -> inactive edge emits.
    """

    name = "visibility"

    def __init__(self, clock: Optional[Clock] = None):
        super().__init__(None, clock)
        self.state: Dict[SignalKind, bool] = {kind: True for kind in _EDGE_TYPES}

    def open(self) -> None:
        self.state = {kind: True for kind in _EDGE_TYPES}

    def accepts(self, message: SignalMessage) -> bool:
        return message.kind in _EDGE_TYPES

    def push(self, message: SignalMessage) -> Any:
        if not self.running or not self.accepts(message):
            return None
        previous = self.state[message.kind]
        self.state[message.kind] = message.active
        if previous and not message.active:
            return self.emit(_EDGE_TYPES[message.kind], {"signal": message.kind.value}, message.timestamp)
        return None


class ScreenPresenceCollector(Collector):
    """
    Watches the mandatory screen-share stream. Stopping the share emits a
    FULLSCREEN_EXIT and raises `reprompt_required` until sharing resumes.
    With a capture source attached it also polls the stream and saves
    periodic snapshots. If the capture source cannot be opened the collector
    still runs on client screen-share signals alone, starting in the
    not-sharing state.
    """

    name = "screen"

    def __init__(
        self,
        session_id: str,
        source: Any = None,
        snapshots: Any = None,
        scheduler: Optional[Scheduler] = None,
        interval: float = 5.0,
        required: bool = True,
        clock: Optional[Clock] = None,
    ):
        super().__init__(scheduler, clock)
        self.session_id = session_id
        self.source = source
        self.snapshots = snapshots
        self.required = required
        self.interval = interval if source is not None else None
        self.sharing = True
        self.reprompt_required = False

    def open(self) -> None:
        if self.source is None:
            return
        try:
            self.source.open()
        except SensorUnavailable as exc:
            logger.warning("screen capture unavailable for %s, following client signals only", self.session_id)
            self.degraded = exc
            self.source = None
            self.interval = None
            self.sharing = False
            self.reprompt_required = self.required

    def close(self) -> None:
        try:
            if self.source is not None:
                self.source.close()
        finally:
            if self.snapshots is not None:
                self.snapshots.close()

    def accepts(self, message: SignalMessage) -> bool:
        return message.kind == SignalKind.SCREEN_SHARE

    def push(self, message: SignalMessage) -> Any:
        if not self.running or not self.accepts(message):
            return None
        return self._transition(message.active, message.timestamp)

    def _transition(self, active: bool, timestamp: float) -> Any:
        previous = self.sharing
        self.sharing = active
        if active:
            if not previous:
                logger.info("screen share resumed for %s", self.session_id)
            self.reprompt_required = False
            return None
        self.reprompt_required = self.required
        if previous:
            logger.warning("screen share stopped for %s", self.session_id)
            return self.emit(ViolationType.FULLSCREEN_EXIT, {"reason": "screen_share_stopped"}, timestamp)
        return None

    def sample(self) -> None:
        now = self.clock.now()
        if not self.source.is_active():
            self._transition(False, now)
            return
        if not self.sharing:
            self._transition(True, now)
        if self.snapshots is not None:
            self.snapshots.capture(self.session_id, self.source.grab, now)
