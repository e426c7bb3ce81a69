# Background camera reader for the tracking controller.
# Frames are read on a daemon thread so detection never waits on camera IO.

import os
import sys
import threading
import time

import cv2

from avatar_config import CAM_INDEX, W_CAP, H_CAP, CAP_FPS, H_MIRROR

CAMERA_ERROR_MESSAGES = {
    "NotAllowedError": "Camera access denied. Grant camera permission and start again.",
    "NotFoundError": "No camera found. Connect a camera and start again.",
    "NotReadableError": "Camera is busy or unreadable. Close other apps using it and start again.",
    "SecurityError": "Camera access requires a secure context (HTTPS or localhost).",
}
DEFAULT_CAMERA_ERROR = "Could not start the camera."


class CameraError(Exception):
    """Camera acquisition failure, named after the browser media error it mirrors."""

    def __init__(self, name, detail=None):
        self.name = name
        self.detail = detail
        self.message = CAMERA_ERROR_MESSAGES.get(name, DEFAULT_CAMERA_ERROR)
        super().__init__(f"{name}: {detail}" if detail else name)


class AsyncVideoCapture:
    """
    Async video capture - keeps the newest frame from a background thread.

    - read() returns the latest frame immediately
    - read_new() waits until a frame newer than the last one handed out arrives,
      which paces a consumer loop to the camera frame rate
    """

    def __init__(self, src=0, width=None, height=None, fps=None, mirror=False):
        """
        Args:
            src: camera index or device path
            width: capture width
            height: capture height
            fps: requested frame rate
            mirror: flip frames horizontally (selfie view)
        """
        self.cap = cv2.VideoCapture(src)
        if not self.cap.isOpened():
            self.cap.release()
            raise CameraError("NotFoundError", f"cannot open camera {src!r}")

        if width is not None:
            self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        if height is not None:
            self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        if fps is not None:
            self.cap.set(cv2.CAP_PROP_FPS, fps)
        self.mirror = mirror

        # First frame doubles as a busy-device check
        self.ret, self.frame = self.cap.read()
        if not self.ret:
            self.cap.release()
            raise CameraError("NotReadableError", f"camera {src!r} opened but returned no frame")
        if self.mirror:
            self.frame = cv2.flip(self.frame, 1)

        self.cond = threading.Condition()
        self.seq = 1
        self._last_seq = 0
        self.running = True

        self.thread = threading.Thread(target=self._reader, daemon=True)
        self.thread.start()

        self.read_count = 0
        self.last_read_time = time.time()

    def _reader(self):
        while self.running:
            ret, frame = self.cap.read()
            if ret:
                if self.mirror:
                    frame = cv2.flip(frame, 1)
                with self.cond:
                    self.ret = ret
                    self.frame = frame
                    self.seq += 1
                    self.read_count += 1
                    self.cond.notify_all()
            else:
                time.sleep(0.01)

    def read(self):
        with self.cond:
            return self.ret, self.frame.copy() if self.frame is not None else None

    def read_new(self, timeout=0.5):
        """Block until a frame newer than the previous read_new() result, or time out."""
        with self.cond:
            if not self.cond.wait_for(lambda: self.seq != self._last_seq or not self.running,
                                      timeout=timeout):
                return False, None
            if not self.running:
                return False, None
            self._last_seq = self.seq
            return self.ret, self.frame.copy()

    def isOpened(self):
        return self.running and self.cap.isOpened()

    @property
    def active_tracks(self):
        return 1 if self.isOpened() else 0

    def get(self, prop_id):
        return self.cap.get(prop_id)

    def set(self, prop_id, value):
        return self.cap.set(prop_id, value)

    def release(self):
        """Stop the reader thread and release the device right away."""
        if not self.running and not self.cap.isOpened():
            return
        self.running = False
        with self.cond:
            self.cond.notify_all()
        if self.thread.is_alive() and threading.current_thread() is not self.thread:
            self.thread.join(timeout=1.0)
        self.cap.release()

    def get_read_fps(self):
        now = time.time()
        dt = now - self.last_read_time
        if dt > 0:
            fps = self.read_count / dt
            self.read_count = 0
            self.last_read_time = now
            return fps
        return 0

    def __del__(self):
        if getattr(self, "thread", None) is not None:
            self.release()


def _check_device_access(src):
    # Only V4L2 exposes a device node we can inspect before opening
    if not sys.platform.startswith("linux") or not isinstance(src, int):
        return
    path = f"/dev/video{src}"
    if not os.path.exists(path):
        raise CameraError("NotFoundError", f"{path} does not exist")
    if not os.access(path, os.R_OK | os.W_OK):
        raise CameraError("NotAllowedError", f"no read/write permission on {path}")


def open_camera(src=CAM_INDEX, width=W_CAP, height=H_CAP, fps=CAP_FPS, mirror=H_MIRROR):
    _check_device_access(src)
    cam = AsyncVideoCapture(src=src, width=width, height=height, fps=fps, mirror=mirror)
    print(f"[INFO] Camera {src} opened at "
          f"{int(cam.get(cv2.CAP_PROP_FRAME_WIDTH))}x{int(cam.get(cv2.CAP_PROP_FRAME_HEIGHT))}")
    return cam


if __name__ == "__main__":
    print("=== Camera probe ===")
    try:
        cam = open_camera()
    except CameraError as e:
        print(f"[ERROR] {e.message} ({e})")
        sys.exit(1)
    time.sleep(1.0)
    print(f"  reader FPS: {cam.get_read_fps():.1f}")
    cam.release()
