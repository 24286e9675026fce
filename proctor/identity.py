from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Optional

import numpy as np

from .collectors import Collector
from .config import IdentityConfig
from .errors import SensorUnavailable
from .models import ViolationType
from .scheduler import Clock, Scheduler

logger = logging.getLogger(__name__)


def cosine_similarity(a: Optional[np.ndarray], b: Optional[np.ndarray]) -> float:
    """0.0 when either vector is missing or degenerate, which callers read as 'no signal'."""
    if a is None or b is None:
        return 0.0
    u = np.asarray(a, dtype=np.float64).reshape(-1)
    v = np.asarray(b, dtype=np.float64).reshape(-1)
    if u.shape != v.shape or u.size == 0:
        return 0.0
    denom = float(np.linalg.norm(u) * np.linalg.norm(v))
    if denom < 1e-12:
        return 0.0
    return float(np.dot(u, v) / denom)


class IdentityVerifier(Collector):
    """
    Compares the live camera frame with the registered reference photo.

    Ticks every `check_interval`, but embeds and compares at most once per
    `compare_interval`. A similarity of zero or below means the embedder
    produced nothing usable and is never reported as a mismatch.

    Embedding is blocking, so a due tick returns the comparison as a
    coroutine that runs the embedder on a worker thread. A reference image
    passed at construction is embedded in `open()`.
    """

    name = "identity"

    def __init__(
        self,
        embedder: Any,
        frame_source: Any,
        reference_image: Any = None,
        config: Optional[IdentityConfig] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(scheduler, clock)
        self.embedder = embedder
        self.frame_source = frame_source
        self.config = config or IdentityConfig()
        self.interval = self.config.check_interval
        self.reference_embedding: Optional[np.ndarray] = None
        self.last_compared: Optional[float] = None
        self.last_similarity: Optional[float] = None
        self.no_signal_streak = 0
        self.reference_image = reference_image

    def set_reference(self, image: Any) -> bool:
        self.reference_image = image
        try:
            self.reference_embedding = self.embedder.embed(image)
        except SensorUnavailable as exc:
            logger.warning("reference photo not embedded: %s", exc)
            self.reference_embedding = None
        if self.reference_embedding is None:
            logger.warning("reference photo produced no embedding; identity checks will report no signal")
            return False
        return True

    def open(self) -> None:
        if hasattr(self.embedder, "open"):
            self.embedder.open()
        if hasattr(self.frame_source, "open"):
            try:
                self.frame_source.open()
            except SensorUnavailable:
                if hasattr(self.embedder, "close"):
                    self.embedder.close()
                raise
        if self.reference_image is not None and self.reference_embedding is None:
            self.set_reference(self.reference_image)

    def close(self) -> None:
        try:
            if hasattr(self.frame_source, "close"):
                self.frame_source.close()
        finally:
            if hasattr(self.embedder, "close"):
                self.embedder.close()

    def sample(self) -> Optional[Awaitable[float]]:
        now = self.clock.now()
        if self.last_compared is not None and now - self.last_compared < self.config.compare_interval:
            return None
        frame = self.frame_source.latest()
        if frame is None:
            return None
        self.last_compared = now
        return self.compare(frame, now)

    async def compare(self, frame: Any, now: float) -> float:
        embedding = await asyncio.to_thread(self.embedder.embed, frame)
        return self.check(embedding, now)

    def check(self, embedding: Optional[np.ndarray], now: float) -> float:
        similarity = cosine_similarity(self.reference_embedding, embedding)
        self.last_similarity = similarity

        if similarity <= 0:
            self.no_signal_streak += 1
            if self.no_signal_streak == self.config.no_signal_warn_after:
                logger.warning("identity check produced no signal %d times in a row", self.no_signal_streak)
            return similarity

        self.no_signal_streak = 0
        if similarity < self.config.match_threshold:
            self.emit(ViolationType.USER_MISMATCH, {"similarity": round(similarity, 4)}, now)
        return similarity
