"""Shared fakes for the avatar studio tests."""

import time

import numpy as np

from face_features import Landmark
from landmark_provider import LandmarkProvider

N_LANDMARKS = 468


def make_face(eye_gap=0.03, right_eye_gap=None, mouth_gap=0.0, nose_dx=0.0, nose_dy=0.0):
    """Landmark set with a frontal face: eye width 0.06, mouth width 0.10."""
    pts = [Landmark(0.5, 0.5, 0.0)] * N_LANDMARKS

    def put(i, x, y):
        pts[i] = Landmark(x, y, 0.0)

    put(33, 0.40, 0.40)
    put(133, 0.46, 0.40)
    put(160, 0.43, 0.40 - eye_gap / 2)
    put(144, 0.43, 0.40 + eye_gap / 2)
    put(158, 0.44, 0.40 - eye_gap / 2)
    put(153, 0.44, 0.40 + eye_gap / 2)

    r = eye_gap if right_eye_gap is None else right_eye_gap
    put(263, 0.60, 0.40)
    put(362, 0.54, 0.40)
    put(387, 0.57, 0.40 - r / 2)
    put(373, 0.57, 0.40 + r / 2)
    put(385, 0.56, 0.40 - r / 2)
    put(380, 0.56, 0.40 + r / 2)

    put(61, 0.45, 0.65)
    put(291, 0.55, 0.65)
    put(13, 0.50, 0.65 - mouth_gap / 2)
    put(14, 0.50, 0.65 + mouth_gap / 2)

    put(1, 0.50 + nose_dx, 0.55 + nose_dy)
    put(10, 0.50, 0.35)
    return pts


class FakeProvider(LandmarkProvider):
    def __init__(self, default=None, error=None, init_error=None):
        self.default = default
        self.error = error
        self.init_error = init_error
        self.init_calls = 0
        self.detect_calls = 0
        self.disposed = False

    def init(self):
        self.init_calls += 1
        if self.init_error is not None:
            raise self.init_error

    def detect(self, frame_bgr):
        self.detect_calls += 1
        if self.error is not None:
            raise self.error
        return self.default

    def dispose(self):
        self.disposed = True


class FakeCamera:
    def __init__(self):
        self.released = False
        self.stalled = False
        self.reads = 0

    def read_new(self, timeout=0.5):
        if self.released or self.stalled:
            return False, None
        self.reads += 1
        time.sleep(0.002)
        return True, np.zeros((8, 8, 3), np.uint8)

    @property
    def active_tracks(self):
        return 0 if self.released else 1

    def release(self):
        self.released = True


class FakeOpener:
    def __init__(self, error=None):
        self.error = error
        self.calls = 0
        self.cameras = []

    def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        cam = FakeCamera()
        self.cameras.append(cam)
        return cam


class FakeClock:
    def __init__(self, t=100.0):
        self.t = t

    def __call__(self):
        return self.t

    def advance(self, dt):
        self.t += dt


def wait_for(pred, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.005)
    return pred()
