import os

HERE = os.path.dirname(os.path.abspath(__file__))


def env_bool(name, default="0"):
    return os.environ.get(name, default).strip().lower() in ("1","true","yes","on","y")

# Camera
CAM_INDEX = int(os.environ.get("CAM_INDEX", "0"))
W_CAP = int(os.environ.get("CAP_W", "480"))
H_CAP = int(os.environ.get("CAP_H", "360"))
CAP_FPS = int(os.environ.get("CAP_FPS", "30"))
H_MIRROR = env_bool("H_MIRROR", "1")
ALLOW_INSECURE = env_bool("ALLOW_INSECURE", "0")

# FaceMesh
REFINE_LANDMARKS = env_bool("REFINE_LANDMARKS", "1")
MIN_DETECTION_CONFIDENCE = float(os.environ.get("MIN_DETECTION_CONF", "0.4"))
MIN_TRACKING_CONFIDENCE = float(os.environ.get("MIN_TRACKING_CONF", "0.4"))

# Feature calibration. Tuned against a laptop webcam at arm's length.
EYE_OPEN_K = float(os.environ.get("EYE_OPEN_K", "4.5"))
MOUTH_OPEN_K = float(os.environ.get("MOUTH_OPEN_K", "5.0"))
YAW_K = float(os.environ.get("YAW_K", "400.0"))
PITCH_K = float(os.environ.get("PITCH_K", "300.0"))
PITCH_REST_OFFSET = float(os.environ.get("PITCH_REST_OFFSET", "0.20"))
ROTATION_LIMIT = float(os.environ.get("ROTATION_LIMIT", "45.0"))

# Smoothing (eyes/mouth must stay faster than rotation)
ROTATION_SMOOTHING = float(os.environ.get("ROTATION_SMOOTHING", "0.5"))
FEATURE_SMOOTHING = float(os.environ.get("FEATURE_SMOOTHING", "0.6"))

# Expression labels
BLINK_THRESHOLD = float(os.environ.get("BLINK_THRESHOLD", "0.4"))
WINK_CLOSED_THRESHOLD = float(os.environ.get("WINK_CLOSED_THRESHOLD", "0.5"))
WINK_OPEN_THRESHOLD = float(os.environ.get("WINK_OPEN_THRESHOLD", "0.6"))
TALK_THRESHOLD = float(os.environ.get("TALK_THRESHOLD", "0.2"))

# Tracking
NO_FACE_GRACE_SECONDS = float(os.environ.get("NO_FACE_GRACE", "2.0"))
RESET_POSE_ON_STOP = env_bool("RESET_POSE_ON_STOP", "1")
FRAME_WAIT_TIMEOUT = float(os.environ.get("FRAME_WAIT_TIMEOUT", "0.5"))

# Canvas / compositor
CANVAS_W = int(os.environ.get("CANVAS_W", "400"))
CANVAS_H = int(os.environ.get("CANVAS_H", "400"))
RENDER_FPS = float(os.environ.get("RENDER_FPS", "30"))
JPEG_QUALITY = int(os.environ.get("JPEG_QUALITY", "80"))
SHOW_HUD = env_bool("SHOW_HUD", "0")

ROTATE_K = float(os.environ.get("ROTATE_K", "1.0"))
H_SHIFT_K = float(os.environ.get("H_SHIFT_K", "2.0"))
V_SHIFT_K = float(os.environ.get("V_SHIFT_K", "1.5"))
MAX_SHIFT_FRAC = float(os.environ.get("MAX_SHIFT_FRAC", "0.15"))
SCALE_K = float(os.environ.get("SCALE_K", "0.08"))
SCALE_REF = float(os.environ.get("SCALE_REF", "40.0"))
WOBBLE_DEG = float(os.environ.get("WOBBLE_DEG", "2.0"))
WOBBLE_PERIOD = float(os.environ.get("WOBBLE_PERIOD", "0.15"))

EYE_CLOSED_THRESHOLD = float(os.environ.get("EYE_CLOSED_THRESHOLD", "0.5"))
MOUTH_OPEN_THRESHOLD = float(os.environ.get("MOUTH_OPEN_THRESHOLD", "0.2"))
EYE_TINT_ALPHA = float(os.environ.get("EYE_TINT_ALPHA", "0.85"))
MOUTH_TINT_ALPHA = float(os.environ.get("MOUTH_TINT_ALPHA", "0.85"))

# Avatar-relative anchors (fractions of the canvas)
LEFT_EYE_ANCHOR = (0.37, 0.42)
RIGHT_EYE_ANCHOR = (0.63, 0.42)
EYE_AXES = (0.085, 0.05)
MOUTH_ANCHOR = (0.50, 0.68)
MOUTH_AXES = (0.12, 0.09)

# Avatar image / uploads
AVATAR_IMAGE = os.environ.get("AVATAR_IMAGE", "")
UPLOAD_DIR = os.environ.get("UPLOAD_DIR", os.path.join(HERE, "uploads"))
ALLOWED_IMAGE_EXT = (".png", ".jpg", ".jpeg")

# Recording
RECORD_DIR = os.environ.get("RECORD_DIR", os.path.join(HERE, "recordings"))
RECORD_AUDIO = env_bool("RECORD_AUDIO", "1")
AUDIO_RATE = int(os.environ.get("AUDIO_RATE", "48000"))
FFMPEG_BIN = os.environ.get("FFMPEG_BIN", "ffmpeg")

# Server
HOST = os.environ.get("HOST", "127.0.0.1")
PORT = int(os.environ.get("PORT", "5000"))
