from __future__ import annotations

import logging
import threading
import time
import urllib.request
from pathlib import Path
from typing import Any, Optional

import cv2
import mediapipe as mp
import numpy as np

from .collectors import FaceFrame
from .config import GazeThresholds
from .errors import SensorUnavailable

logger = logging.getLogger(__name__)

ARTIFACTS = Path(__file__).resolve().parent.parent / "artifacts"
LANDMARKER_URL = "https://storage.googleapis.com/mediapipe-models/face_landmarker/face_landmarker/float16/latest/face_landmarker.task"
LANDMARKER_PATH = ARTIFACTS / "face_landmarker.task"
EMBEDDER_URL = "https://storage.googleapis.com/mediapipe-models/image_embedder/mobilenet_v3_small/float32/latest/mobilenet_v3_small.tflite"
EMBEDDER_PATH = ARTIFACTS / "mobilenet_v3_small.tflite"


def _ensure_model(url: str, model_path: Path) -> None:
    if model_path.exists():
        return
    model_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info("downloading %s", model_path.name)
    urllib.request.urlretrieve(url, model_path)


def _to_mp_image(frame: np.ndarray) -> "mp.Image":
    rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
    return mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb)


class FaceLandmarkerSource:
    """
    Runs the MediaPipe face landmarker (with blendshapes) on its own thread
    over each new camera frame. `detect()` only hands over the newest result
    not yet delivered, so the frame tick never waits on inference.
    """

    def __init__(self, camera: Any, thresholds: Optional[GazeThresholds] = None, model_path: Path = LANDMARKER_PATH):
        self.camera = camera
        self.thresholds = thresholds or GazeThresholds()
        self.model_path = model_path
        self.landmarker = None
        self.running = False
        self.thread: Optional[threading.Thread] = None
        self.lock = threading.Lock()
        self._result: Optional[FaceFrame] = None
        self._result_seq = -1
        self._delivered_seq = -1

    def open(self) -> None:
        from mediapipe.tasks import python as mp_python
        from mediapipe.tasks.python import vision as mp_vision

        try:
            _ensure_model(LANDMARKER_URL, self.model_path)
            options = mp_vision.FaceLandmarkerOptions(
                base_options=mp_python.BaseOptions(model_asset_path=str(self.model_path)),
                output_face_blendshapes=True,
                output_facial_transformation_matrixes=False,
                num_faces=self.thresholds.max_faces,
                min_face_detection_confidence=self.thresholds.min_detection_confidence,
                min_tracking_confidence=self.thresholds.min_tracking_confidence,
                running_mode=mp_vision.RunningMode.IMAGE,
            )
            self.landmarker = mp_vision.FaceLandmarker.create_from_options(options)
        except Exception as exc:
            raise SensorUnavailable("face_landmarker", str(exc)) from exc
        try:
            self.camera.open()
        except SensorUnavailable:
            self.landmarker.close()
            self.landmarker = None
            raise
        self.running = True
        self.thread = threading.Thread(target=self._run, name="face-landmarker", daemon=True)
        self.thread.start()

    def _run(self) -> None:
        last_seq = -1
        while self.running:
            frame, seq = self.camera.latest_with_seq()
            if frame is None or seq == last_seq:
                time.sleep(0.005)
                continue
            last_seq = seq
            try:
                result = self.landmarker.detect(_to_mp_image(frame))
            except Exception:
                logger.exception("face landmarker failed on frame %d", seq)
                continue
            face_frame = FaceFrame(
                face_landmarks=list(result.face_landmarks or []),
                face_blendshapes=list(result.face_blendshapes or []),
            )
            with self.lock:
                self._result = face_frame
                self._result_seq = seq

    def detect(self) -> Optional[FaceFrame]:
        with self.lock:
            if self._result is None or self._result_seq == self._delivered_seq:
                return None
            self._delivered_seq = self._result_seq
            return self._result

    def close(self) -> None:
        self.running = False
        try:
            if self.thread:
                self.thread.join(timeout=2)
            if self.landmarker is not None:
                self.landmarker.close()
        finally:
            self.thread = None
            self.landmarker = None
            self._result = None
            self.camera.close()


class ImageEmbedderBackend:
    """
    MobileNetV3 image embeddings for the identity check; None when nothing can
    be embedded. Blocking: callers run it on a worker thread.
    """

    def __init__(self, model_path: Path = EMBEDDER_PATH):
        self.model_path = model_path
        self.embedder = None
        self.lock = threading.Lock()

    def open(self) -> None:
        with self.lock:
            self._open()

    def _open(self) -> None:
        if self.embedder is not None:
            return
        from mediapipe.tasks import python as mp_python
        from mediapipe.tasks.python import vision as mp_vision

        try:
            _ensure_model(EMBEDDER_URL, self.model_path)
            options = mp_vision.ImageEmbedderOptions(
                base_options=mp_python.BaseOptions(model_asset_path=str(self.model_path)),
                l2_normalize=True,
                running_mode=mp_vision.RunningMode.IMAGE,
            )
            self.embedder = mp_vision.ImageEmbedder.create_from_options(options)
        except Exception as exc:
            raise SensorUnavailable("image_embedder", str(exc)) from exc

    def embed(self, image: Optional[np.ndarray]) -> Optional[np.ndarray]:
        if image is None:
            return None
        with self.lock:
            self._open()
            result = self.embedder.embed(_to_mp_image(image))
        if not result.embeddings:
            return None
        return np.asarray(result.embeddings[0].embedding, dtype=np.float64)

    def close(self) -> None:
        with self.lock:
            if self.embedder is not None:
                self.embedder.close()
            self.embedder = None
