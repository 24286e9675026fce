from __future__ import annotations

import logging
import threading
from typing import Dict, Optional, Tuple

from .config import ThrottleConfig
from .models import ViolationType

logger = logging.getLogger(__name__)


class Throttler:
    """
    Per-(session, bucket) rate limiter for violation admission.

    Types that share a bucket (no-face, multiple-faces, looking-away) share one
    cooldown window. A rejected detection is dropped, never queued.
    """

    def __init__(self, config: Optional[ThrottleConfig] = None):
        self.config = config or ThrottleConfig()
        self._last: Dict[Tuple[str, str], float] = {}
        self._lock = threading.Lock()

    def bucket(self, violation_type: ViolationType) -> str:
        return self.config.shared_buckets.get(violation_type.value, violation_type.value)

    def cooldown(self, violation_type: ViolationType) -> float:
        return float(self.config.cooldowns.get(self.bucket(violation_type), 0.0))

    def admit(self, session_id: str, violation_type: ViolationType, now: float) -> bool:
        cooldown = self.cooldown(violation_type)
        key = (session_id, self.bucket(violation_type))
        with self._lock:
            if cooldown > 0:
                last = self._last.get(key)
                if last is not None and now - last < cooldown:
                    logger.debug("dropped %s for %s (%.2fs into cooldown)", violation_type.value, session_id, now - last)
                    return False
            self._last[key] = now
        return True

    def reset(self, session_id: str) -> None:
        with self._lock:
            for key in [k for k in self._last if k[0] == session_id]:
                del self._last[key]

    def discard(self, session_id: str) -> None:
        self.reset(session_id)

    def update_config(self, config: ThrottleConfig) -> None:
        with self._lock:
            self.config = config
