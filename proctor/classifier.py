"""
Per-frame gaze and attention classification.

Combines a head-yaw estimate from face-mesh geometry with the eye-direction
blendshapes. Head pose alone over-triggers when a candidate turns to read,
eye gaze alone misses sustained off-screen attention, so both are read
together with asymmetric, lenient thresholds.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

from .config import GazeThresholds
from .models import GazeDirection, GazeState

NOSE_TIP = 1
LEFT_CHEEK = 234
RIGHT_CHEEK = 454


def _iter_landmarks(face_landmarks: Any):
    return getattr(face_landmarks, "landmark", face_landmarks)


def _coord(point: Any, axis: str) -> float:
    if hasattr(point, axis):
        return float(getattr(point, axis))
    if isinstance(point, dict):
        return float(point[axis])
    return float(point["xyz".index(axis)])


def _blendshape_scores(categories: Any) -> Dict[str, float]:
    scores: Dict[str, float] = {}
    for category in getattr(categories, "categories", categories) or []:
        if isinstance(category, dict):
            name = category.get("categoryName") or category.get("category_name")
            score = category.get("score", 0.0)
        else:
            name = getattr(category, "category_name", None) or getattr(category, "categoryName", None)
            score = getattr(category, "score", 0.0)
        if name:
            scores[name] = float(score or 0.0)
    return scores


def head_yaw(face_landmarks: Any, scale: float = 2.5) -> float:
    """Signed yaw, about -1 (left) to 1 (right) for a 70 degree turn. 0 when landmarks are missing."""
    points = _iter_landmarks(face_landmarks)
    if points is None or len(points) <= RIGHT_CHEEK:
        return 0.0

    nose_x = _coord(points[NOSE_TIP], "x")
    left_x = _coord(points[LEFT_CHEEK], "x")
    right_x = _coord(points[RIGHT_CHEEK], "x")

    face_width = abs(right_x - left_x)
    if face_width < 1e-6:
        return 0.0
    center_x = (left_x + right_x) / 2.0
    return (nose_x - center_x) / face_width * scale


def eye_gaze(scores: Dict[str, float]) -> float:
    """Net horizontal eye direction in [-1, 1], positive is rightward."""
    left_net = scores.get("eyeLookInLeft", 0.0) - scores.get("eyeLookOutLeft", 0.0)
    right_net = scores.get("eyeLookOutRight", 0.0) - scores.get("eyeLookInRight", 0.0)
    return (left_net + right_net) / 2.0


def _direction(value: float) -> GazeDirection:
    return GazeDirection.RIGHT if value > 0 else GazeDirection.LEFT


def classify(
    face_landmarks: Sequence[Any],
    face_blendshapes: Optional[Sequence[Any]] = None,
    thresholds: Optional[GazeThresholds] = None,
) -> GazeState:
    t = thresholds or GazeThresholds()
    face_count = len(face_landmarks or [])

    if face_count == 0:
        return GazeState(face_count=0, is_looking_away=True, is_no_face=True)

    if face_count > 1:
        return GazeState(face_count=face_count, is_looking_away=True, is_multiple_faces=True)

    scores = _blendshape_scores(face_blendshapes[0]) if face_blendshapes else {}
    yaw = head_yaw(face_landmarks[0], t.yaw_scale)
    gaze = eye_gaze(scores)

    looking_away = False
    direction = GazeDirection.CENTER

    if abs(yaw) > t.yaw_extreme:
        looking_away = True
        direction = _direction(yaw)
    elif abs(yaw) > t.yaw_moderate:
        # eyes pulled back toward the screen compensate for the turn
        if yaw > 0 and gaze > t.compensation_margin:
            looking_away = True
            direction = GazeDirection.RIGHT
        elif yaw < 0 and gaze < -t.compensation_margin:
            looking_away = True
            direction = GazeDirection.LEFT
    elif abs(gaze) > t.eye_gaze:
        looking_away = True
        direction = _direction(gaze)

    if scores.get("eyeLookUpLeft", 0.0) > t.look_up:
        looking_away = True
        direction = GazeDirection.UP
    elif scores.get("eyeLookDownLeft", 0.0) > t.look_down:
        looking_away = True
        direction = GazeDirection.DOWN

    blink = (scores.get("eyeBlinkLeft", 0.0) + scores.get("eyeBlinkRight", 0.0)) / 2.0

    return GazeState(
        face_count=1,
        is_looking_away=looking_away,
        gaze_direction=direction,
        is_blinking=blink > t.blink,
        head_yaw=yaw,
        eye_gaze=gaze,
    )
