import math
import threading
import time
from collections import namedtuple

import cv2
import numpy as np

from avatar_config import (CANVAS_W, CANVAS_H, RENDER_FPS, JPEG_QUALITY, SHOW_HUD,
                           ROTATE_K, H_SHIFT_K, V_SHIFT_K, MAX_SHIFT_FRAC, SCALE_K, SCALE_REF,
                           WOBBLE_DEG, WOBBLE_PERIOD, EYE_CLOSED_THRESHOLD, MOUTH_OPEN_THRESHOLD,
                           EYE_TINT_ALPHA, MOUTH_TINT_ALPHA, LEFT_EYE_ANCHOR, RIGHT_EYE_ANCHOR,
                           EYE_AXES, MOUTH_ANCHOR, MOUTH_AXES)
from pose_state import classify_expression, clamp
from tracking_controller import TrackingStatus

PLACEHOLDER_BG = (46, 26, 26)      # #1a1a2e
PLACEHOLDER_FG = (136, 136, 136)
BORDER_COLOR = (0, 255, 0)
EYE_TINT = (30, 22, 22)
MOUTH_TINT = (40, 25, 120)

OverlayShape = namedtuple("OverlayShape", "kind center axes angle color alpha")


class AvatarCompositor:
    """
    Draws one avatar canvas from (image, pose, status).

    Expression cues are tinted ellipses laid over the still image rather
    than swapped sprites; their anchors move with the head transform.
    """

    def __init__(self, width=CANVAS_W, height=CANVAS_H, rotate_k=ROTATE_K,
                 h_shift_k=H_SHIFT_K, v_shift_k=V_SHIFT_K, max_shift_frac=MAX_SHIFT_FRAC,
                 scale_k=SCALE_K, scale_ref=SCALE_REF, wobble_deg=WOBBLE_DEG,
                 wobble_period=WOBBLE_PERIOD, eye_closed_threshold=EYE_CLOSED_THRESHOLD,
                 mouth_open_threshold=MOUTH_OPEN_THRESHOLD, show_hud=SHOW_HUD):
        self.width = width
        self.height = height
        self.rotate_k = rotate_k
        self.h_shift_k = h_shift_k
        self.v_shift_k = v_shift_k
        self.max_shift_frac = max_shift_frac
        self.scale_k = scale_k
        self.scale_ref = scale_ref
        self.wobble_deg = wobble_deg
        self.wobble_period = wobble_period
        self.eye_closed_threshold = eye_closed_threshold
        self.mouth_open_threshold = mouth_open_threshold
        self.show_hud = show_hud
        self._fit_src = None
        self._fit_img = None

    def placeholder(self, text="Loading avatar..."):
        W, H = self.width, self.height
        canvas = np.full((H, W, 3), PLACEHOLDER_BG, np.uint8)
        font, fs, th = cv2.FONT_HERSHEY_SIMPLEX, 0.7, 2
        (tw, tht), _ = cv2.getTextSize(text, font, fs, th)
        cv2.putText(canvas, text, ((W - tw) // 2, (H + tht) // 2), font, fs,
                    PLACEHOLDER_FG, th, cv2.LINE_AA)
        return canvas

    def _fit(self, image):
        if self._fit_src is image:
            return self._fit_img
        img = image
        if img.ndim == 2:
            img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGRA)
        elif img.shape[2] == 3:
            img = np.dstack([img, np.full(img.shape[:2], 255, np.uint8)])
        if img.shape[:2] != (self.height, self.width):
            img = cv2.resize(img, (self.width, self.height), interpolation=cv2.INTER_AREA)
        self._fit_src, self._fit_img = image, img
        return img

    def transform(self, pose, now=0.0):
        """2x3 affine taking avatar-image pixels to canvas pixels for this pose."""
        W, H = self.width, self.height
        yaw = pose.head_rotation_y
        pitch = pose.head_rotation_x

        angle = yaw * self.rotate_k
        if pose.mouth_open > self.mouth_open_threshold and self.wobble_period > 0:
            angle += math.sin(now / self.wobble_period) * self.wobble_deg
        scale = 1.0 + abs(yaw) / self.scale_ref * self.scale_k
        max_dx, max_dy = W * self.max_shift_frac, H * self.max_shift_frac
        shift = np.array([clamp(yaw * self.h_shift_k, -max_dx, max_dx),
                          clamp(pitch * self.v_shift_k, -max_dy, max_dy)], np.float32)

        theta = math.radians(angle)
        c, s = math.cos(theta), math.sin(theta)
        A = scale * np.array([[c, -s], [s, c]], np.float32)
        center = np.array([W / 2.0, H / 2.0], np.float32)

        # p' = center + A (p - center + shift)
        M = np.zeros((2, 3), np.float32)
        M[:, :2] = A
        M[:, 2] = center + A @ (shift - center)
        return M

    def _map(self, M, anchor):
        p = np.array([anchor[0] * self.width, anchor[1] * self.height], np.float32)
        q = M[:, :2] @ p + M[:, 2]
        return int(round(float(q[0]))), int(round(float(q[1])))

    def overlay_shapes(self, pose, M):
        W, H = self.width, self.height
        scale = math.hypot(float(M[0, 0]), float(M[1, 0]))
        angle = math.degrees(math.atan2(float(M[1, 0]), float(M[0, 0])))
        shapes = []

        if pose.eye_open < self.eye_closed_threshold:
            axes = (max(1, int(EYE_AXES[0] * W * scale * 1.15)), max(1, int(EYE_AXES[1] * H * scale * 1.3)))
            for kind, anchor, openness in (("left_eye", LEFT_EYE_ANCHOR, pose.left_eye_open),
                                           ("right_eye", RIGHT_EYE_ANCHOR, pose.right_eye_open)):
                closed = 1.0 - openness
                if closed > 0:
                    shapes.append(OverlayShape(kind, self._map(M, anchor), axes, angle,
                                               EYE_TINT, closed * EYE_TINT_ALPHA))

        if pose.mouth_open > self.mouth_open_threshold:
            o = pose.mouth_open
            axes = (max(1, int(MOUTH_AXES[0] * W * scale * (0.6 + 0.4 * o))),
                    max(1, int(MOUTH_AXES[1] * H * scale * o)))
            shapes.append(OverlayShape("mouth", self._map(M, MOUTH_ANCHOR), axes, angle,
                                       MOUTH_TINT, MOUTH_TINT_ALPHA))
        return shapes

    def draw(self, image, pose, status, now=None, fps=None):
        if image is None:
            return self.placeholder()
        W, H = self.width, self.height
        now = time.monotonic() if now is None else now

        canvas = np.zeros((H, W, 3), np.uint8)
        M = self.transform(pose, now)
        warped = cv2.warpAffine(self._fit(image), M, (W, H),
                                flags=cv2.INTER_LINEAR,
                                borderMode=cv2.BORDER_CONSTANT,
                                borderValue=(0, 0, 0, 0))
        bgr = warped[..., :3].astype(np.float32)
        alpha = warped[..., 3:4].astype(np.float32) / 255.0
        canvas = (canvas.astype(np.float32) * (1.0 - alpha) + bgr * alpha).astype(np.uint8)

        for shape in self.overlay_shapes(pose, M):
            layer = canvas.copy()
            cv2.ellipse(layer, shape.center, shape.axes, shape.angle, 0, 360,
                        shape.color, -1, cv2.LINE_AA)
            cv2.addWeighted(layer, shape.alpha, canvas, 1.0 - shape.alpha, 0, dst=canvas)

        if status == TrackingStatus.TRACKING:
            cv2.rectangle(canvas, (2, 2), (W - 3, H - 3), BORDER_COLOR, 3)

        if self.show_hud:
            label = TrackingStatus(status).value if status else "idle"
            cv2.putText(canvas, f"{label} / {classify_expression(pose)}", (10, H - 14),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255, 200, 0), 1, cv2.LINE_AA)
            if fps:
                cv2.putText(canvas, f"{fps:4.1f} FPS", (W - 90, 24),
                            cv2.FONT_HERSHEY_SIMPLEX, 0.5, (0, 255, 0), 1, cv2.LINE_AA)
        return canvas


class RenderLoop:
    """
    Redraws the canvas at a fixed display rate on its own thread.

    Only reads the controller's pose/status, so it keeps drawing the last
    known state when detection stalls. Each frame is JPEG-encoded for the
    MJPEG consumers and handed raw to the registered sinks (the recorder).
    """

    def __init__(self, compositor, controller, avatar, fps=RENDER_FPS,
                 jpeg_quality=JPEG_QUALITY, clock=time.monotonic):
        self.compositor = compositor
        self.controller = controller
        self.avatar = avatar
        self.period = 1.0 / fps
        self.jpeg_quality = jpeg_quality
        self._clock = clock
        self._cond = threading.Condition()
        self._jpeg = None
        self._ts = None
        self._seq = 0
        self._sinks = []
        self._running = False
        self._thread = None
        self.fps_ema = 0.0
        self.dropped_frames = 0

    @property
    def running(self):
        return self._running

    @property
    def latest_jpeg(self):
        with self._cond:
            return self._jpeg, self._ts

    def add_sink(self, sink):
        if sink not in self._sinks:
            self._sinks.append(sink)

    def remove_sink(self, sink):
        if sink in self._sinks:
            self._sinks.remove(sink)

    def render_once(self):
        frame = self.compositor.draw(self.avatar.image, self.controller.pose,
                                     self.controller.status, now=self._clock(), fps=self.fps_ema)
        ok, buf = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
        if ok:
            with self._cond:
                self._jpeg, self._ts = buf.tobytes(), time.time()
                self._seq += 1
                self._cond.notify_all()
        for sink in list(self._sinks):
            try:
                sink.write(frame)
            except Exception as e:
                print(f"[WARN] Detaching frame sink after write failure: {e}")
                self.remove_sink(sink)
        return frame

    def _run(self):
        t_prev = t_next = time.perf_counter()
        while self._running:
            try:
                self.render_once()
            except Exception as e:
                self.dropped_frames += 1
                if self.dropped_frames == 1:
                    print(f"[WARN] Dropping frames that fail to render: {e}")
            t = time.perf_counter()
            dt = t - t_prev
            t_prev = t
            if dt > 0:
                fps = 1.0 / dt
                self.fps_ema = fps if self.fps_ema == 0 else 0.9*self.fps_ema + 0.1*fps
            t_next += self.period
            delay = t_next - time.perf_counter()
            if delay > 0:
                time.sleep(delay)
            else:
                t_next = time.perf_counter()

    def start(self):
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._run, name="render", daemon=True)
        self._thread.start()
        print(f"[INFO] Render loop started at {1.0 / self.period:.0f} FPS")

    def stop(self):
        self._running = False
        with self._cond:
            self._cond.notify_all()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=1.0)
        self._thread = None

    def frames(self, timeout=1.0):
        """Yield each newly rendered JPEG until the loop stops."""
        last = self._seq
        while self._running:
            with self._cond:
                self._cond.wait_for(lambda: self._seq != last or not self._running, timeout=timeout)
                if self._seq == last:
                    continue
                last = self._seq
                jpeg = self._jpeg
            yield jpeg
