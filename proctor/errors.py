class ProctorError(Exception):
    """Base class for integrity-monitor errors."""


class SensorUnavailable(ProctorError):
    """A camera, microphone, screen source or model could not be opened."""

    def __init__(self, sensor: str, reason: str = ""):
        self.sensor = sensor
        self.reason = reason
        message = f"{sensor} unavailable"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class SessionStateError(ProctorError):
    """Illegal lifecycle transition, e.g. completing a completed session."""


class SessionNotFound(ProctorError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"session {session_id} not found")


class ConfigError(ProctorError):
    """A settings file that cannot be parsed or holds invalid values."""


class PersistenceError(ProctorError):
    """A violation or session write/read against the store failed."""
