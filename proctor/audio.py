from __future__ import annotations

from typing import Any, Optional

import numpy as np

from .collectors import Collector
from .config import AudioConfig
from .models import ViolationType
from .scheduler import Clock, Scheduler


class SpectrumAnalyser:
    """
    Byte frequency spectrum in the style of a browser AnalyserNode: Blackman
    window, magnitude FFT, exponential smoothing between calls, then decibels
    mapped linearly from [min_decibels, max_decibels] onto 0..255.
    """

    def __init__(self, config: Optional[AudioConfig] = None):
        self.config = config or AudioConfig()
        self._smoothed: Optional[np.ndarray] = None
        self._window = np.blackman(self.config.fft_size)

    def reset(self) -> None:
        self._smoothed = None

    def byte_frequency_data(self, samples: np.ndarray) -> np.ndarray:
        size = self.config.fft_size
        block = np.asarray(samples, dtype=np.float64).reshape(-1)[-size:]
        if block.shape[0] < size:
            block = np.pad(block, (size - block.shape[0], 0))

        magnitude = np.abs(np.fft.rfft(block * self._window))[: size // 2] / size
        tau = self.config.smoothing
        if self._smoothed is None or tau <= 0:
            self._smoothed = magnitude
        else:
            self._smoothed = tau * self._smoothed + (1.0 - tau) * magnitude

        with np.errstate(divide="ignore"):
            decibels = 20.0 * np.log10(self._smoothed)
        span = self.config.max_decibels - self.config.min_decibels
        scaled = np.floor(255.0 / span * (decibels - self.config.min_decibels))
        return np.clip(np.nan_to_num(scaled, neginf=0.0), 0, 255).astype(np.uint8)

    def level(self, samples: np.ndarray) -> float:
        return float(self.byte_frequency_data(samples).mean())


class AudioLevelCollector(Collector):
    name = "audio"

    def __init__(
        self,
        source: Any,
        config: Optional[AudioConfig] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(scheduler, clock)
        self.source = source
        self.config = config or AudioConfig()
        self.analyser = SpectrumAnalyser(self.config)
        self.interval = self.config.sample_interval
        self.last_level = 0.0

    def open(self) -> None:
        self.analyser.reset()
        self.source.open()

    def close(self) -> None:
        self.source.close()

    def sample(self) -> None:
        samples = self.source.read(self.config.fft_size)
        if samples is None:
            return
        self.last_level = self.analyser.level(samples)
        if self.last_level > self.config.threshold:
            self.emit(ViolationType.AUDIO_DETECTED, {"level": round(self.last_level, 2)})
