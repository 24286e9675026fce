import asyncio

import pytest

from proctor.collectors import Collector, ScreenPresenceCollector, VisibilityCollector
from proctor.errors import PersistenceError, SensorUnavailable, SessionStateError
from proctor.models import Detection, Session, SessionStatus, Severity, SignalKind, SignalMessage, ViolationType
from proctor.scheduler import ManualScheduler, VirtualClock
from proctor.session import MonitoringSession
from proctor.sink import ViolationSink
from proctor.throttle import Throttler


class MissingCamera(Collector):
    name = "gaze"

    def open(self):
        raise SensorUnavailable("camera", "permission denied")


class DeniedScreen:
    def open(self):
        raise SensorUnavailable("screen", "permission denied")


class TrackingCollector(Collector):
    name = "tracking"

    def __init__(self):
        super().__init__()
        self.closed = False

    def close(self):
        self.closed = True


class BrokenStore:
    def insert_violation(self, event):
        raise PersistenceError("disk full")

    def violations(self, session_id):
        raise PersistenceError("disk full")


def _monitoring(collectors=None, sink=None, clock=None):
    clock = clock or VirtualClock(start=1000.0)
    session = Session(session_id="s1", exam_id="exam-1", user_id="u1", started_at=clock.now())
    if collectors is None:
        collectors = [VisibilityCollector(clock=clock), ScreenPresenceCollector("s1", clock=clock)]
    return MonitoringSession(session, collectors, Throttler(), sink or ViolationSink(), clock=clock)


def _detect(violation_type, ts, **metadata):
    return Detection(type=violation_type, timestamp=ts, metadata=metadata)


def test_unavailable_sensor_degrades_to_a_warning():
    tracking = TrackingCollector()
    monitoring = _monitoring([MissingCamera(), VisibilityCollector(), tracking])
    asyncio.run(monitoring.start())
    described = monitoring.describe()
    assert described["collectors"] == ["visibility", "tracking"]
    assert described["warnings"] == ["camera unavailable: permission denied"]
    assert described["session"]["status"] == "in_progress"


def test_denied_screen_capture_still_tracks_share_signals():
    clock = VirtualClock(start=1000.0)
    screen = ScreenPresenceCollector("s1", DeniedScreen(), scheduler=ManualScheduler(clock), clock=clock)

    async def run():
        monitoring = _monitoring([screen], clock=clock)
        await monitoring.start()
        described = monitoring.describe()
        monitoring.signal(SignalMessage(SignalKind.SCREEN_SHARE, True, 1001.0))
        return described, monitoring.screen_share_required

    described, required_after_share = asyncio.run(run())
    assert described["collectors"] == ["screen"]
    assert described["warnings"] == ["screen unavailable: permission denied"]
    assert described["screen_share_required"]
    assert not required_after_share


def test_audio_burst_records_one_violation():
    async def run():
        monitoring = _monitoring()
        await monitoring.start()
        admitted = [monitoring.report(_detect(ViolationType.AUDIO_DETECTED, 1000.0 + i * 0.1, level=40)) for i in range(10)]
        await monitoring.complete()
        return admitted, monitoring

    admitted, monitoring = asyncio.run(run())
    assert sum(1 for event in admitted if event is not None) == 1
    assert len(monitoring.events) == 1
    assert monitoring.events[0].severity == Severity.CRITICAL
    assert monitoring.final_score.total_violations == 1


def test_two_critical_one_high_scores_73():
    async def run():
        monitoring = _monitoring()
        await monitoring.start()
        monitoring.report(_detect(ViolationType.TAB_SWITCH, 1001.0))
        monitoring.report(_detect(ViolationType.FULLSCREEN_EXIT, 1002.0))
        monitoring.report(_detect(ViolationType.FOCUS_LOST, 1003.0))
        return await monitoring.complete(), monitoring

    result, monitoring = asyncio.run(run())
    assert result.score == pytest.approx(73.0)
    assert monitoring.credibility() is result
    assert monitoring.status == SessionStatus.COMPLETED
    assert monitoring.session.ended_at == 1000.0


def test_complete_twice_is_rejected():
    async def run():
        monitoring = _monitoring()
        await monitoring.start()
        await monitoring.complete()
        with pytest.raises(SessionStateError):
            await monitoring.complete()
        with pytest.raises(SessionStateError):
            await monitoring.start()
        return monitoring.report(_detect(ViolationType.TAB_SWITCH, 1005.0))

    assert asyncio.run(run()) is None


def test_complete_releases_collectors():
    tracking = TrackingCollector()

    async def run():
        monitoring = _monitoring([tracking])
        await monitoring.start()
        await monitoring.complete()
        return monitoring

    monitoring = asyncio.run(run())
    assert tracking.closed
    assert not tracking.running
    assert monitoring.active_collectors == []


def test_signals_route_to_collectors():
    async def run():
        monitoring = _monitoring()
        await monitoring.start()
        hidden = monitoring.signal(SignalMessage(SignalKind.VISIBILITY, False, 1001.0))
        visible = monitoring.signal(SignalMessage(SignalKind.VISIBILITY, True, 1002.0))
        share = monitoring.signal(SignalMessage(SignalKind.SCREEN_SHARE, False, 1003.0))
        required = monitoring.screen_share_required
        await monitoring.complete()
        return hidden, visible, share, required

    hidden, visible, share, required = asyncio.run(run())
    assert [e.type for e in hidden] == [ViolationType.TAB_SWITCH]
    assert visible == []
    assert [e.type for e in share] == [ViolationType.FULLSCREEN_EXIT]
    assert share[0].metadata == {"reason": "screen_share_stopped"}
    assert required


def test_store_failure_does_not_interrupt_the_exam():
    async def run():
        monitoring = _monitoring(sink=ViolationSink(BrokenStore()))
        await monitoring.start()
        event = monitoring.report(_detect(ViolationType.NO_FACE, 1001.0, face_count=0))
        record = await monitoring.last_write
        result = await monitoring.complete()
        return event, record, result, monitoring

    event, record, result, monitoring = asyncio.run(run())
    assert event is not None
    assert record is None
    assert monitoring.sink.unsaved("s1") == [event]
    assert result.score == pytest.approx(90.0)


def test_listeners_and_severity_override():
    seen = []

    async def run():
        monitoring = _monitoring()
        monitoring.listeners.append(seen.append)
        monitoring.listeners.append(lambda event: 1 / 0)
        await monitoring.start()
        event = monitoring.report(_detect(ViolationType.LOOKING_AWAY, 1001.0), Severity.LOW)
        await monitoring.complete()
        return event

    event = asyncio.run(run())
    assert event.severity == Severity.LOW
    assert seen == [event]
