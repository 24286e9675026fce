import pytest

from proctor.errors import PersistenceError, SessionNotFound
from proctor.models import Session, SessionStatus, Severity, ViolationEvent, ViolationType
from server.db import Database


def _session(session_id, user_id="u1", exam_id="exam-1", started_at=100.0):
    return Session(session_id=session_id, exam_id=exam_id, user_id=user_id, started_at=started_at)


def test_session_and_violation_roundtrip(tmp_path):
    db = Database(str(tmp_path / "test.db"))
    db.create_session(_session("s1"))

    stored = db.insert_violation(
        ViolationEvent(
            session_id="s1",
            type=ViolationType.LOOKING_AWAY,
            severity=Severity.MEDIUM,
            timestamp=105.0,
            metadata={"gaze_direction": "LEFT"},
        )
    )
    db.insert_violation(ViolationEvent("s1", ViolationType.TAB_SWITCH, Severity.CRITICAL, 101.0))
    assert stored["id"] is not None

    rows = db.violations("s1")
    assert [r["type"] for r in rows] == ["TAB_SWITCH", "LOOKING_AWAY"]
    assert rows[1]["metadata"] == {"gaze_direction": "LEFT"}
    assert rows[1]["timestamp"] == 105.0

    session = db.get_session("s1")
    assert session.status == SessionStatus.IN_PROGRESS
    assert db.get_session("missing") is None


def test_violation_for_unknown_session_fails(tmp_path):
    db = Database(str(tmp_path / "test.db"))
    with pytest.raises(PersistenceError):
        db.insert_violation(ViolationEvent("ghost", ViolationType.NO_FACE, Severity.CRITICAL, 1.0))


def test_complete_and_history(tmp_path):
    db = Database(str(tmp_path / "test.db"))
    db.create_session(_session("s1", started_at=100.0))
    db.create_session(_session("s2", started_at=200.0))
    db.create_session(_session("s3", user_id="u2", exam_id="exam-2", started_at=300.0))

    done = db.complete_session("s1", 150.0)
    assert done.status == SessionStatus.COMPLETED
    assert done.ended_at == 150.0

    # a second completion leaves the first end time alone
    assert db.complete_session("s1", 999.0).ended_at == 150.0
    with pytest.raises(SessionNotFound):
        db.complete_session("missing", 1.0)

    assert [s.session_id for s in db.list_sessions()] == ["s3", "s2", "s1"]
    assert [s.session_id for s in db.list_sessions(exam_id="exam-1")] == ["s2", "s1"]
    assert [s.session_id for s in db.list_sessions(status="completed")] == ["s1"]
    assert [s.session_id for s in db.user_history("u1")] == ["s1"]
    db.close()


def test_export_csv(tmp_path):
    db = Database(str(tmp_path / "test.db"))
    db.create_session(_session("s1"))
    db.insert_violation(ViolationEvent("s1", ViolationType.AUDIO_DETECTED, Severity.CRITICAL, 102.0, {"level": 42.5}))

    lines = b"".join(db.export_csv("s1")).decode().splitlines()
    assert lines[0] == "id,session_id,type,severity,timestamp,metadata"
    assert len(lines) == 2
    assert "AUDIO_DETECTED" in lines[1]
    assert "42.5" in lines[1]
