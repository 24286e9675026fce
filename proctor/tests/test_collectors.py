import asyncio
import threading
from types import SimpleNamespace

import numpy as np

from proctor.collectors import (
    FaceFrame,
    GazeCollector,
    LivenessMonitor,
    ScreenPresenceCollector,
    VisibilityCollector,
)
from proctor.config import LivenessConfig
from proctor.errors import SensorUnavailable
from proctor.models import GazeState, SignalKind, SignalMessage, ViolationType
from proctor.scheduler import ManualScheduler, VirtualClock


def _face(nose_x=0.5):
    points = [SimpleNamespace(x=0.5, y=0.5, z=0.0) for _ in range(478)]
    points[1] = SimpleNamespace(x=nose_x, y=0.5, z=0.0)
    points[234] = SimpleNamespace(x=0.4, y=0.5, z=0.0)
    points[454] = SimpleNamespace(x=0.6, y=0.5, z=0.0)
    return points


def _frame(faces=1, nose_x=0.5, blink=0.0):
    shapes = [{"categoryName": "eyeBlinkLeft", "score": blink}, {"categoryName": "eyeBlinkRight", "score": blink}]
    return FaceFrame([_face(nose_x) for _ in range(faces)], [shapes for _ in range(faces)])


class Recorder:
    def __init__(self):
        self.detections = []

    def __call__(self, detection):
        self.detections.append(detection)
        return detection

    @property
    def types(self):
        return [d.type for d in self.detections]


class FakeFaceSource:
    def __init__(self, frames=None):
        self.frames = list(frames or [])
        self.opened = False
        self.closed = False

    def open(self):
        self.opened = True

    def close(self):
        self.closed = True

    def detect(self):
        return self.frames.pop(0) if self.frames else None


def _gaze(clock, source=None, scheduler=None, timeout=60.0):
    collector = GazeCollector(
        source or FakeFaceSource(),
        liveness=LivenessMonitor(LivenessConfig(timeout=timeout)),
        scheduler=scheduler,
        clock=clock,
    )
    recorder = Recorder()
    collector.start(recorder)
    return collector, recorder


def test_gaze_detection_precedence():
    clock = VirtualClock(start=10.0)
    collector, recorder = _gaze(clock)

    collector.process(_frame(faces=0))
    collector.process(_frame(faces=2, nose_x=0.6))
    collector.process(_frame(nose_x=0.6))
    collector.process(_frame())

    assert recorder.types == [ViolationType.NO_FACE, ViolationType.MULTIPLE_FACES, ViolationType.LOOKING_AWAY]
    assert recorder.detections[0].metadata == {"face_count": 0}
    assert recorder.detections[1].metadata == {"face_count": 2}
    assert recorder.detections[2].metadata["gaze_direction"] == "RIGHT"
    assert recorder.detections[2].timestamp == 10.0
    assert not collector.last_state.is_looking_away


def test_gaze_polls_the_face_source_on_schedule():
    clock = VirtualClock()
    scheduler = ManualScheduler(clock)
    source = FakeFaceSource([_frame(faces=0), None, _frame()])
    collector, recorder = _gaze(clock, source, scheduler)
    assert source.opened

    scheduler.advance(0.1)
    assert recorder.types == [ViolationType.NO_FACE]

    collector.stop()
    assert source.closed
    scheduler.advance(1.0)
    assert recorder.types == [ViolationType.NO_FACE]


def test_stopped_collector_emits_nothing():
    collector, recorder = _gaze(VirtualClock())
    collector.stop()
    collector.process(_frame(faces=0))
    assert recorder.detections == []


def test_liveness_fires_after_timeout_then_rearms():
    clock = VirtualClock()
    collector, recorder = _gaze(clock, timeout=60.0)

    clock.advance(59.0)
    collector.process(_frame())
    assert ViolationType.LIVENESS_FAILURE not in recorder.types

    clock.advance(1.0)
    collector.process(_frame())
    assert recorder.types == [ViolationType.LIVENESS_FAILURE]

    clock.advance(1.0)
    collector.process(_frame())
    assert recorder.types == [ViolationType.LIVENESS_FAILURE]


def test_blinking_resets_liveness():
    monitor = LivenessMonitor(LivenessConfig(timeout=10.0))
    monitor.reset(0.0)
    steady = GazeState(face_count=1, is_looking_away=False)
    blinking = GazeState(face_count=1, is_looking_away=False, is_blinking=True)

    assert not monitor.update(steady, 9.0)
    assert not monitor.update(blinking, 9.5)
    assert not monitor.update(steady, 19.0)
    assert monitor.update(steady, 19.5)


def test_liveness_ignores_frames_without_a_single_face():
    monitor = LivenessMonitor(LivenessConfig(timeout=10.0))
    monitor.reset(0.0)
    assert not monitor.update(GazeState(face_count=0, is_looking_away=True, is_no_face=True), 30.0)
    assert not monitor.update(GazeState(face_count=1, is_looking_away=False), 35.0)


def _signal(kind, active, ts):
    return SignalMessage(kind=kind, active=active, timestamp=ts)


def test_tab_toggling_emits_on_each_hide():
    collector = VisibilityCollector(clock=VirtualClock())
    recorder = Recorder()
    collector.start(recorder)

    # document.hidden: true, false, true
    collector.push(_signal(SignalKind.VISIBILITY, False, 1.0))
    collector.push(_signal(SignalKind.VISIBILITY, True, 2.0))
    collector.push(_signal(SignalKind.VISIBILITY, False, 3.0))

    assert recorder.types == [ViolationType.TAB_SWITCH, ViolationType.TAB_SWITCH]
    assert [d.timestamp for d in recorder.detections] == [1.0, 3.0]


def test_visibility_only_fires_on_edges():
    collector = VisibilityCollector(clock=VirtualClock())
    recorder = Recorder()
    collector.start(recorder)

    assert collector.push(_signal(SignalKind.FOCUS, False, 1.0)).type == ViolationType.FOCUS_LOST
    assert collector.push(_signal(SignalKind.FOCUS, False, 1.5)) is None
    assert collector.push(_signal(SignalKind.FULLSCREEN, True, 2.0)) is None
    assert collector.push(_signal(SignalKind.FULLSCREEN, False, 3.0)).type == ViolationType.FULLSCREEN_EXIT
    assert collector.push(_signal(SignalKind.SCREEN_SHARE, False, 4.0)) is None
    assert len(recorder.detections) == 2


def test_screen_share_stop_requires_reprompt():
    collector = ScreenPresenceCollector("s1", clock=VirtualClock())
    recorder = Recorder()
    collector.start(recorder)
    assert not collector.reprompt_required

    detection = collector.push(_signal(SignalKind.SCREEN_SHARE, False, 5.0))
    assert detection.type == ViolationType.FULLSCREEN_EXIT
    assert detection.metadata == {"reason": "screen_share_stopped"}
    assert collector.reprompt_required

    assert collector.push(_signal(SignalKind.SCREEN_SHARE, False, 6.0)) is None
    collector.push(_signal(SignalKind.SCREEN_SHARE, True, 7.0))
    assert not collector.reprompt_required
    assert len(recorder.detections) == 1


class FakeScreen:
    def __init__(self):
        self.active = True
        self.opened = False
        self.closed = False

    def open(self):
        self.opened = True

    def close(self):
        self.closed = True

    def is_active(self):
        return self.active

    def grab(self):
        return np.zeros((4, 4, 3), dtype=np.uint8)


class FakeSnapshots:
    def __init__(self):
        self.saved = []
        self.closed = False

    def capture(self, session_id, grab, ts):
        if grab() is not None:
            self.saved.append((session_id, ts))

    def close(self):
        self.closed = True


def test_screen_capture_polls_and_snapshots():
    clock = VirtualClock()
    scheduler = ManualScheduler(clock)
    screen, snapshots = FakeScreen(), FakeSnapshots()
    collector = ScreenPresenceCollector("s1", screen, snapshots, scheduler, interval=5.0, clock=clock)
    recorder = Recorder()
    collector.start(recorder)
    assert screen.opened

    scheduler.advance(10.0)
    assert snapshots.saved == [("s1", 5.0), ("s1", 10.0)]

    screen.active = False
    scheduler.advance(5.0)
    assert recorder.types == [ViolationType.FULLSCREEN_EXIT]
    assert collector.reprompt_required

    screen.active = True
    scheduler.advance(5.0)
    assert not collector.reprompt_required
    assert snapshots.saved[-1] == ("s1", 20.0)

    collector.stop()
    assert screen.closed and snapshots.closed


def test_screen_source_failure_falls_back_to_signals():
    class DeniedScreen(FakeScreen):
        def open(self):
            raise SensorUnavailable("screen", "permission denied")

    scheduler = ManualScheduler()
    snapshots = FakeSnapshots()
    collector = ScreenPresenceCollector("s1", DeniedScreen(), snapshots, scheduler=scheduler)
    recorder = Recorder()
    collector.start(recorder)

    assert collector.running
    assert str(collector.degraded) == "screen unavailable: permission denied"
    assert collector.reprompt_required
    assert scheduler.jobs == {}

    assert collector.push(_signal(SignalKind.SCREEN_SHARE, True, 1.0)) is None
    assert not collector.reprompt_required
    assert collector.push(_signal(SignalKind.SCREEN_SHARE, False, 2.0)).type == ViolationType.FULLSCREEN_EXIT
    assert collector.reprompt_required
    assert snapshots.saved == []


def test_start_async_opens_on_a_worker_thread():
    class ThreadNoting(FakeFaceSource):
        def open(self):
            super().open()
            self.thread = threading.current_thread()

    source = ThreadNoting()
    collector = GazeCollector(source, clock=VirtualClock())
    asyncio.run(collector.start_async(Recorder()))

    assert collector.running
    assert source.opened
    assert source.thread is not threading.main_thread()
    collector.stop()
    assert source.closed
