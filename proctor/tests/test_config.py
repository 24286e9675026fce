import pytest

from proctor.config import MonitorSettings
from proctor.models import Severity, ViolationType


def test_defaults():
    settings = MonitorSettings()
    assert settings.severity_for(ViolationType.LOOKING_AWAY) == Severity.MEDIUM
    assert settings.severity_for(ViolationType.FOCUS_LOST) == Severity.HIGH
    assert settings.severity_for(ViolationType.USER_MISMATCH) == Severity.CRITICAL
    assert settings.throttle.cooldowns["AUDIO_DETECTED"] == 2.0
    assert not settings.camera.enabled


def test_partial_sections_merge_with_defaults():
    settings = MonitorSettings.from_dict(
        {
            "gaze": {"yaw_extreme": "1.2"},
            "throttle": {"cooldowns": {"TAB_SWITCH": 1}},
            "severities": {"LOOKING_AWAY": "high"},
            "camera": {"enabled": True, "fps": 15},
        }
    )
    assert settings.gaze.yaw_extreme == 1.2
    assert settings.gaze.yaw_moderate == 0.6
    assert settings.throttle.cooldowns == {"AUDIO_DETECTED": 2.0, "FACE": 2.0, "LIVENESS_FAILURE": 5.0, "TAB_SWITCH": 1}
    assert settings.severity_for(ViolationType.LOOKING_AWAY) == Severity.HIGH
    assert settings.severity_for(ViolationType.NO_FACE) == Severity.CRITICAL
    assert settings.camera.enabled and settings.camera.fps == 15


def test_unknown_severity_is_rejected():
    with pytest.raises(ValueError):
        MonitorSettings.from_dict({"severities": {"LOOKING_AWAY": "severe"}})
    with pytest.raises(ValueError):
        MonitorSettings.from_dict({"severities": {"PHONE_DETECTED": "high"}})


def test_dict_form_reloads_unchanged():
    settings = MonitorSettings.from_dict({"audio": {"threshold": 20}})
    assert MonitorSettings.from_dict(settings.to_dict()) == settings
