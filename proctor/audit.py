"""
Proctoring audit log lines: one `[PROCTOR] session=... event=...` record per
lifecycle step, admitted violation or degraded collector.
"""

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("proctor.audit")


def log_proctor_event(
    session_id: str,
    event_type: str,
    details: Optional[Dict[str, Any]] = None,
    level: int = logging.INFO,
) -> None:
    message = f"[PROCTOR] session={session_id} event={event_type}"
    if details:
        message += " " + " ".join(f"{k}={v}" for k, v in details.items())
    logger.log(level, message)


def log_session_start(session_id: str, exam_id: str, user_id: str, collectors: list) -> None:
    log_proctor_event(
        session_id,
        "session_start",
        {"exam_id": exam_id, "user_id": user_id, "collectors": ",".join(collectors) or "none"},
    )


def log_session_end(session_id: str, score: float, total_violations: int) -> None:
    log_proctor_event(
        session_id,
        "session_end",
        {"score": score, "total_violations": total_violations},
    )


def log_violation(session_id: str, violation_type: str, severity: str) -> None:
    log_proctor_event(
        session_id,
        "violation",
        {"type": violation_type, "severity": severity},
        level=logging.WARNING if severity == "critical" else logging.INFO,
    )


def log_sensor_unavailable(session_id: str, collector: str, reason: str) -> None:
    log_proctor_event(
        session_id,
        "sensor_unavailable",
        {"collector": collector, "reason": reason},
        level=logging.WARNING,
    )


def log_write_dropped(session_id: str, violation_type: str, error: Exception) -> None:
    log_proctor_event(
        session_id,
        "violation_write_failed",
        {"type": violation_type, "error": repr(error)},
        level=logging.ERROR,
    )
