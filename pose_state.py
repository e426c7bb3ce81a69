from dataclasses import dataclass, asdict

from avatar_config import (ROTATION_LIMIT, ROTATION_SMOOTHING, FEATURE_SMOOTHING,
                           BLINK_THRESHOLD, WINK_CLOSED_THRESHOLD, WINK_OPEN_THRESHOLD,
                           TALK_THRESHOLD)


def clamp(x, a, b):
    return a if x < a else (b if x > b else x)


def smooth(current, target, factor):
    return current + (target - current) * factor


@dataclass(frozen=True)
class PoseState:
    """Head pose and expression carried across frames. Replaced, never edited."""

    head_rotation_x: float = 0.0
    head_rotation_y: float = 0.0
    left_eye_open: float = 1.0
    right_eye_open: float = 1.0
    mouth_open: float = 0.0

    @property
    def eye_open(self):
        return (self.left_eye_open + self.right_eye_open) / 2.0

    def clamped(self, rotation_limit=ROTATION_LIMIT):
        return PoseState(
            head_rotation_x=clamp(self.head_rotation_x, -rotation_limit, rotation_limit),
            head_rotation_y=clamp(self.head_rotation_y, -rotation_limit, rotation_limit),
            left_eye_open=clamp(self.left_eye_open, 0.0, 1.0),
            right_eye_open=clamp(self.right_eye_open, 0.0, 1.0),
            mouth_open=clamp(self.mouth_open, 0.0, 1.0),
        )

    def as_dict(self):
        return asdict(self)


NEUTRAL_POSE = PoseState()


class PoseSmoother:
    def __init__(self, rotation_factor=ROTATION_SMOOTHING, feature_factor=FEATURE_SMOOTHING,
                 rotation_limit=ROTATION_LIMIT):
        for name, f in (("rotation_factor", rotation_factor), ("feature_factor", feature_factor)):
            if not 0.0 < f <= 1.0:
                raise ValueError(f"{name} must be in (0, 1], got {f}")
        if feature_factor < rotation_factor:
            raise ValueError("feature_factor must be >= rotation_factor "
                             f"(got {feature_factor} < {rotation_factor})")
        self.rotation_factor = rotation_factor
        self.feature_factor = feature_factor
        self.rotation_limit = rotation_limit

    def update(self, current: PoseState, target: PoseState) -> PoseState:
        target = target.clamped(self.rotation_limit)
        fr, ff = self.rotation_factor, self.feature_factor
        return PoseState(
            head_rotation_x=smooth(current.head_rotation_x, target.head_rotation_x, fr),
            head_rotation_y=smooth(current.head_rotation_y, target.head_rotation_y, fr),
            left_eye_open=smooth(current.left_eye_open, target.left_eye_open, ff),
            right_eye_open=smooth(current.right_eye_open, target.right_eye_open, ff),
            mouth_open=smooth(current.mouth_open, target.mouth_open, ff),
        ).clamped(self.rotation_limit)


def classify_expression(pose: PoseState) -> str:
    # blink > wink > talking > neutral
    if pose.eye_open < BLINK_THRESHOLD:
        return "blink"
    l, r = pose.left_eye_open, pose.right_eye_open
    if (l < WINK_CLOSED_THRESHOLD and r > WINK_OPEN_THRESHOLD) or \
       (r < WINK_CLOSED_THRESHOLD and l > WINK_OPEN_THRESHOLD):
        return "wink"
    if pose.mouth_open > TALK_THRESHOLD:
        return "talking"
    return "neutral"
