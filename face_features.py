import math
from collections import namedtuple

from avatar_config import (EYE_OPEN_K, MOUTH_OPEN_K, YAW_K, PITCH_K,
                           PITCH_REST_OFFSET)
from pose_state import PoseState, clamp

# FaceMesh indices: (left corner, top, top, right corner, bottom, bottom)
LEFT_EYE = (33, 160, 158, 133, 153, 144)
RIGHT_EYE = (263, 387, 385, 362, 380, 373)

MOUTH_INNER_TOP = 13
MOUTH_INNER_BOTTOM = 14
MOUTH_LEFT = 61
MOUTH_RIGHT = 291

NOSE_TIP = 1
FOREHEAD = 10
LEFT_EYE_OUTER = 33
RIGHT_EYE_OUTER = 263

Landmark = namedtuple("Landmark", "x y z")


class DegenerateGeometry(ValueError):
    pass


def _pick(landmarks, *indices):
    n = len(landmarks)
    pts = []
    for i in indices:
        if not 0 <= i < n:
            raise IndexError(f"landmark {i} out of range ({n} points)")
        pts.append(landmarks[i])
    return pts


def _dist(a, b):
    return math.hypot(a.x - b.x, a.y - b.y)


def _ratio(v, h):
    if not h:
        raise DegenerateGeometry("zero reference distance")
    r = v / h
    if not math.isfinite(r):
        raise DegenerateGeometry("non-finite ratio")
    return r


def eye_open_ratio(landmarks, indices, k=EYE_OPEN_K):
    """Openness of one eye in [0, 1]; 1.0 when the geometry is unusable."""
    try:
        left, top, right, bottom = _pick(landmarks, indices[0], indices[1], indices[3], indices[5])
        r = _ratio(_dist(top, bottom), _dist(left, right))
    except (IndexError, TypeError, AttributeError, DegenerateGeometry):
        return 1.0
    return clamp(r * k, 0.0, 1.0)


def mouth_open_ratio(landmarks, k=MOUTH_OPEN_K):
    """Openness of the inner lips in [0, 1]; 0.0 when the geometry is unusable."""
    try:
        top, bottom, left, right = _pick(landmarks, MOUTH_INNER_TOP, MOUTH_INNER_BOTTOM,
                                         MOUTH_LEFT, MOUTH_RIGHT)
        r = _ratio(_dist(top, bottom), _dist(left, right))
    except (IndexError, TypeError, AttributeError, DegenerateGeometry):
        return 0.0
    return clamp(r * k, 0.0, 1.0)


def head_rotation(landmarks, yaw_k=YAW_K, pitch_k=PITCH_K, pitch_rest=PITCH_REST_OFFSET):
    """
    Heuristic (rotation_x, rotation_y) in approximate degrees.

    Yaw is the nose tip's horizontal offset from the midpoint of the outer eye
    corners; pitch is the forehead-to-nose vertical offset minus its resting
    value. Neither is a calibrated Euler angle. Returns (0, 0) on bad input.
    """
    try:
        nose, forehead, l_eye, r_eye = _pick(landmarks, NOSE_TIP, FOREHEAD,
                                             LEFT_EYE_OUTER, RIGHT_EYE_OUTER)
        if not _dist(l_eye, r_eye):
            raise DegenerateGeometry("eye corners coincide")
        eye_cx = (l_eye.x + r_eye.x) / 2.0
        rot_x = ((forehead.y - nose.y) + pitch_rest) * pitch_k
        rot_y = (nose.x - eye_cx) * yaw_k
    except (IndexError, TypeError, AttributeError, DegenerateGeometry):
        return 0.0, 0.0
    if not (math.isfinite(rot_x) and math.isfinite(rot_y)):
        return 0.0, 0.0
    return rot_x, rot_y


def derive_pose(landmarks):
    rot_x, rot_y = head_rotation(landmarks)
    return PoseState(
        head_rotation_x=rot_x,
        head_rotation_y=rot_y,
        left_eye_open=eye_open_ratio(landmarks, LEFT_EYE),
        right_eye_open=eye_open_ratio(landmarks, RIGHT_EYE),
        mouth_open=mouth_open_ratio(landmarks),
    )
