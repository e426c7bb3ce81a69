import os
import threading

import cv2
import numpy as np

from avatar_config import (CANVAS_W, CANVAS_H, LEFT_EYE_ANCHOR, RIGHT_EYE_ANCHOR, EYE_AXES,
                           MOUTH_ANCHOR, MOUTH_AXES)


def read_rgba(path):
    img = cv2.imread(path, cv2.IMREAD_UNCHANGED)
    if img is None: raise FileNotFoundError(path)
    if img.dtype == np.uint16:
        img = (img >> 8).astype(np.uint8)
    elif img.dtype != np.uint8:
        img = cv2.convertScaleAbs(img)
    if img.ndim == 2:
        img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGRA)
    elif img.shape[2] == 3:
        a = np.full(img.shape[:2], 255, np.uint8)
        img = np.dstack([img, a])
    return img


def _px(pt, W, H):
    return int(round(pt[0] * W)), int(round(pt[1] * H))


def default_avatar(W=CANVAS_W, H=CANVAS_H):
    """Flat cartoon head whose eyes and mouth sit on the compositor's anchors."""
    img = np.zeros((H, W, 4), np.uint8)
    s = min(W, H)
    center = (W // 2, int(H * 0.52))
    cv2.ellipse(img, center, (int(s * 0.34), int(s * 0.42)), 0, 0, 360, (150, 190, 235, 255), -1, cv2.LINE_AA)
    cv2.ellipse(img, (W // 2, int(H * 0.22)), (int(s * 0.36), int(s * 0.16)), 0, 180, 360,
                (40, 45, 60, 255), -1, cv2.LINE_AA)
    ax = (int(EYE_AXES[0] * W), int(EYE_AXES[1] * H))
    for anchor in (LEFT_EYE_ANCHOR, RIGHT_EYE_ANCHOR):
        c = _px(anchor, W, H)
        cv2.ellipse(img, c, ax, 0, 0, 360, (255, 255, 255, 255), -1, cv2.LINE_AA)
        cv2.circle(img, c, max(2, ax[1] // 2 + 2), (50, 35, 25, 255), -1, cv2.LINE_AA)
    m = _px(MOUTH_ANCHOR, W, H)
    mw = int(MOUTH_AXES[0] * W)
    cv2.ellipse(img, m, (mw, max(2, mw // 4)), 0, 10, 170, (60, 60, 160, 255), 3, cv2.LINE_AA)
    return img


def _freeze(img):
    img = np.ascontiguousarray(img)
    img.setflags(write=False)
    return img


class AvatarImageLoader:
    """
    Holds the avatar bitmap for the session.

    `image` is None while a load is in flight; the compositor draws its
    placeholder until the new bitmap is published.
    """

    def __init__(self, size=(CANVAS_W, CANVAS_H)):
        self.size = size
        self.source = None
        self.error = None
        self._image = None
        self._lock = threading.Lock()
        self._thread = None
        self._gen = 0

    @property
    def image(self):
        return self._image

    @property
    def loading(self):
        return self._thread is not None and self._thread.is_alive()

    def load(self, path=None, _gen=None):
        if path:
            try:
                img = read_rgba(path)
                source = os.path.basename(path)
                error = None
            except FileNotFoundError as e:
                print(f"[ERROR] Avatar image not readable: {e}; using default avatar")
                img, source, error = default_avatar(*self.size), "default", f"cannot read {path}"
        else:
            img, source, error = default_avatar(*self.size), "default", None
        with self._lock:
            if _gen is not None and _gen != self._gen:
                # superseded by a newer load_async
                return self._image
            self._image = _freeze(img)
            self.source = source
            self.error = error
        print(f"[INFO] Avatar image ready ({source}, {img.shape[1]}x{img.shape[0]})")
        return self._image

    def load_async(self, path=None):
        with self._lock:
            self._image = None
            self._gen += 1
            gen = self._gen
        self._thread = threading.Thread(target=self.load, args=(path, gen), name="avatar-load", daemon=True)
        self._thread.start()
        return self._thread
