"""
Media sources. Each is a scoped resource: `open()` acquires the device,
`close()` releases it, and the context-manager form guarantees release.
Blocking reads happen on capture threads or driver callbacks so collector
ticks only copy the latest buffer.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Deque, Optional, Tuple

import cv2
import numpy as np

from .config import AudioConfig, CameraConfig, ScreenConfig
from .errors import SensorUnavailable

logger = logging.getLogger(__name__)


class _Scoped:
    def open(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class CameraSource(_Scoped):
    """Shared webcam reader; reference counted so gaze and identity can share one device."""

    def __init__(self, config: CameraConfig):
        self.config = config
        self.capture: Optional[cv2.VideoCapture] = None
        self.running = False
        self.thread: Optional[threading.Thread] = None
        self.lock = threading.Lock()
        self._frame: Optional[np.ndarray] = None
        self._seq = 0
        self._users = 0

    def open(self) -> None:
        with self.lock:
            self._users += 1
            if self._users > 1:
                return
        capture = cv2.VideoCapture(self.config.index)
        if not capture.isOpened():
            capture.release()
            with self.lock:
                self._users -= 1
            raise SensorUnavailable("camera", f"device {self.config.index} could not be opened")
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.config.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.config.height)
        if self.config.fps:
            capture.set(cv2.CAP_PROP_FPS, self.config.fps)
        self.capture = capture
        self.running = True
        self.thread = threading.Thread(target=self._run, name="camera-capture", daemon=True)
        self.thread.start()

    def _run(self) -> None:
        while self.running and self.capture is not None:
            ok, frame = self.capture.read()
            if not ok or frame is None:
                time.sleep(0.05)
                continue
            with self.lock:
                self._frame = frame
                self._seq += 1

    def latest_with_seq(self) -> Tuple[Optional[np.ndarray], int]:
        with self.lock:
            return self._frame, self._seq

    def latest(self) -> Optional[np.ndarray]:
        return self.latest_with_seq()[0]

    def close(self) -> None:
        with self.lock:
            if self._users == 0:
                return
            self._users -= 1
            if self._users > 0:
                return
        self.running = False
        try:
            if self.thread:
                self.thread.join(timeout=2)
        finally:
            if self.capture is not None:
                self.capture.release()
            self.capture = None
            self.thread = None
            self._frame = None


class MicrophoneSource(_Scoped):
    def __init__(self, config: AudioConfig, max_blocks: int = 64):
        self.config = config
        self.stream: Any = None
        self.lock = threading.Lock()
        self._blocks: Deque[np.ndarray] = deque(maxlen=max_blocks)

    def open(self) -> None:
        try:
            import sounddevice as sd

            self.stream = sd.InputStream(
                channels=1,
                samplerate=self.config.sample_rate,
                blocksize=self.config.fft_size,
                callback=self._callback,
            )
            self.stream.start()
        except Exception as exc:
            self.stream = None
            raise SensorUnavailable("microphone", str(exc)) from exc

    def _callback(self, indata, frames, time_info, status) -> None:
        with self.lock:
            self._blocks.append(indata.copy().astype(np.float32).reshape(-1))

    def read(self, size: int) -> Optional[np.ndarray]:
        with self.lock:
            if not self._blocks:
                return None
            samples = np.concatenate(list(self._blocks))
        return samples[-size:]

    def close(self) -> None:
        stream, self.stream = self.stream, None
        if stream is not None:
            try:
                stream.stop()
            finally:
                stream.close()
        with self.lock:
            self._blocks.clear()


class ScreenSource(_Scoped):
    """mss screen grabs. The grab handle is bound to the thread that creates it, so `grab()` makes its own."""

    def __init__(self, config: ScreenConfig):
        self.config = config
        self.available = False
        self.grabber: Any = None

    def open(self) -> None:
        try:
            import mss

            with mss.mss() as check:
                if self.config.monitor >= len(check.monitors):
                    raise ValueError(f"monitor {self.config.monitor} not present")
        except Exception as exc:
            raise SensorUnavailable("screen", str(exc)) from exc
        self.available = True

    def is_active(self) -> bool:
        return self.available

    def grab(self) -> Optional[np.ndarray]:
        if not self.available:
            return None
        if self.grabber is None:
            import mss

            self.grabber = mss.mss()
        shot = self.grabber.grab(self.grabber.monitors[self.config.monitor])
        return cv2.cvtColor(np.array(shot), cv2.COLOR_BGRA2BGR)

    def close(self) -> None:
        self.available = False
        grabber, self.grabber = self.grabber, None
        if grabber is not None:
            grabber.close()


class SnapshotWriter:
    """Writes `<session>/screen_<ms>.jpg` and `<session>/latest.jpg` off the event loop."""

    def __init__(self, directory: str, quality: int = 70):
        self.directory = Path(directory)
        self.quality = quality
        self.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="snapshots")

    def capture(self, session_id: str, grab: Callable[[], Optional[np.ndarray]], timestamp: float):
        """Grab and write on the worker thread; the caller never waits on the screen."""
        return self.executor.submit(self._capture, session_id, grab, timestamp)

    def _capture(self, session_id: str, grab: Callable[[], Optional[np.ndarray]], timestamp: float) -> Optional[Path]:
        try:
            frame = grab()
        except Exception:
            logger.exception("screen grab failed for %s", session_id)
            return None
        if frame is None:
            return None
        return self._write(session_id, frame, timestamp)

    def _write(self, session_id: str, frame: np.ndarray, timestamp: float) -> Optional[Path]:
        folder = self.directory / session_id
        try:
            folder.mkdir(parents=True, exist_ok=True)
            ok, buf = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), self.quality])
            if not ok:
                logger.warning("snapshot encode failed for %s", session_id)
                return None
            path = folder / f"screen_{int(timestamp * 1000)}.jpg"
            path.write_bytes(buf.tobytes())
            (folder / "latest.jpg").write_bytes(buf.tobytes())
            return path
        except OSError:
            logger.exception("snapshot write failed for %s", session_id)
            return None

    def close(self) -> None:
        self.executor.shutdown(wait=False)


def decode_image(payload: bytes) -> Optional[np.ndarray]:
    array = np.frombuffer(payload, dtype=np.uint8)
    return cv2.imdecode(array, cv2.IMREAD_COLOR)
