import threading
import time
from collections import deque
from enum import Enum

from avatar_config import NO_FACE_GRACE_SECONDS, RESET_POSE_ON_STOP, FRAME_WAIT_TIMEOUT
from camera_async import CameraError, open_camera
from face_features import derive_pose
from pose_state import NEUTRAL_POSE, PoseSmoother, classify_expression


class TrackingStatus(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    TRACKING = "tracking"
    NO_FACE = "no-face"
    ERROR = "error"


S = TrackingStatus

HISTORY_LEN = 32

TRANSITIONS = {
    S.IDLE: {S.INITIALIZING, S.ERROR},
    S.INITIALIZING: {S.TRACKING, S.ERROR, S.IDLE},
    S.TRACKING: {S.NO_FACE, S.ERROR, S.IDLE},
    S.NO_FACE: {S.TRACKING, S.ERROR, S.IDLE},
    S.ERROR: {S.INITIALIZING, S.IDLE},
}


class InvalidTransition(RuntimeError):
    pass


def is_valid_transition(src, dst):
    return src is dst or dst in TRANSITIONS[src]


class TrackingController:
    """
    Owns the camera, the detection loop and the tracking status.

    The pose is published by swapping in a new immutable PoseState, so the
    render thread can read `pose` at any time without locking. Status changes
    go through `_lock` so a late detection result cannot undo a stop().
    """

    def __init__(self, provider, camera_opener=open_camera, smoother=None,
                 clock=time.monotonic, grace_seconds=NO_FACE_GRACE_SECONDS,
                 reset_pose_on_stop=RESET_POSE_ON_STOP, frame_timeout=FRAME_WAIT_TIMEOUT):
        self._provider = provider
        self._open_camera = camera_opener
        self._smoother = smoother or PoseSmoother()
        self._clock = clock
        self._grace = grace_seconds
        self._reset_pose = reset_pose_on_stop
        self._frame_timeout = frame_timeout

        self._lock = threading.Lock()
        self._status = S.IDLE
        self._error = None
        self._pose = NEUTRAL_POSE
        self._camera = None
        self._thread = None
        self._running = False
        self._last_face_at = None

        self.dropped_frames = 0
        self.frames_processed = 0
        self.history = deque([S.IDLE], maxlen=HISTORY_LEN)

    @property
    def pose(self):
        return self._pose

    @property
    def status(self):
        return self._status

    @property
    def error(self):
        return self._error

    @property
    def running(self):
        return self._running

    @property
    def active_tracks(self):
        cam = self._camera
        return cam.active_tracks if cam is not None else 0

    def snapshot(self):
        pose = self._pose
        return {
            "status": self._status.value,
            "error": self._error,
            "pose": pose.as_dict(),
            "expression": classify_expression(pose),
            "frames": self.frames_processed,
            "dropped_frames": self.dropped_frames,
        }

    def _transition(self, dst):
        # caller holds _lock
        src = self._status
        if src is dst:
            return False
        if dst not in TRANSITIONS[src]:
            raise InvalidTransition(f"{src.value} -> {dst.value}")
        self._status = dst
        self.history.append(dst)
        print(f"[INFO] Tracking status: {src.value} -> {dst.value}")
        return True

    def _fail(self, message, camera=None):
        if camera is not None:
            camera.release()
        with self._lock:
            self._running = False
            self._error = message
            self._transition(S.ERROR)
        print(f"[ERROR] {message}")

    def start(self, secure_context=True, background=True):
        """Acquire the camera and model, then run the detection loop. Returns True on success."""
        with self._lock:
            if self._status in (S.INITIALIZING, S.TRACKING, S.NO_FACE):
                return False
            self._transition(S.INITIALIZING)
            self._error = None

        if not secure_context:
            self._fail(CameraError("SecurityError").message)
            return False

        camera = None
        try:
            camera = self._open_camera()
            self._provider.init()
        except CameraError as e:
            self._fail(e.message, camera)
            return False
        except Exception as e:
            self._fail(f"Face tracking failed to start: {e}", camera)
            return False

        with self._lock:
            if self._status is not S.INITIALIZING:
                # stopped while the camera was opening
                camera.release()
                return False
            self._camera = camera
            self._running = True
            self._last_face_at = self._clock()
            self.dropped_frames = 0

        if background:
            self._thread = threading.Thread(target=self._detection_loop, name="detection", daemon=True)
            self._thread.start()
        return True

    def process_frame(self, frame):
        """Run detection on one frame. Returns True when a face was found."""
        try:
            landmarks = self._provider.detect(frame)
        except Exception as e:
            self.dropped_frames += 1
            if self.dropped_frames == 1:
                print(f"[WARN] Dropping frames that fail detection: {e}")
            self._note_missing_face()
            return False

        now = self._clock()
        with self._lock:
            if not self._running:
                return False
            self.frames_processed += 1
            if landmarks is not None:
                self._last_face_at = now
                self._pose = self._smoother.update(self._pose, derive_pose(landmarks))
                if self._status in (S.INITIALIZING, S.NO_FACE):
                    self._transition(S.TRACKING)
                return True
            self._check_grace(now)
        return False

    def _check_grace(self, now):
        # caller holds _lock
        if self._status is S.TRACKING and now - self._last_face_at > self._grace:
            self._transition(S.NO_FACE)

    def _note_missing_face(self):
        now = self._clock()
        with self._lock:
            if self._running:
                self._check_grace(now)

    def step(self):
        camera = self._camera
        if camera is None or not self._running:
            return False
        ok, frame = camera.read_new(timeout=self._frame_timeout)
        if not ok or frame is None:
            self._note_missing_face()
            return False
        return self.process_frame(frame)

    def _detection_loop(self):
        while self._running:
            self.step()

    def stop(self):
        with self._lock:
            self._running = False
            camera, self._camera = self._camera, None
            thread, self._thread = self._thread, None
        if camera is not None:
            camera.release()
            print("[INFO] Camera released")
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        with self._lock:
            if self._reset_pose:
                self._pose = NEUTRAL_POSE
            self._transition(S.IDLE)

    def close(self):
        self.stop()
        self._provider.dispose()
