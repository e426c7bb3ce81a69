import os, time

from flask import Flask, Response, request, jsonify, send_from_directory
from werkzeug.utils import secure_filename

from avatar_config import (HERE, AVATAR_IMAGE, UPLOAD_DIR, ALLOWED_IMAGE_EXT, RECORD_DIR,
                           ALLOW_INSECURE, CAM_INDEX, W_CAP, H_CAP, CANVAS_W, CANVAS_H,
                           RENDER_FPS, NO_FACE_GRACE_SECONDS, RECORD_AUDIO, HOST, PORT)
from avatar_image import AvatarImageLoader
from compositor import AvatarCompositor, RenderLoop
from landmark_provider import MediaPipeLandmarkProvider
from recorder import CanvasRecorder
from tracking_controller import TrackingController, TrackingStatus

LOCAL_ADDRS = ("127.0.0.1", "::1")

controller = TrackingController(MediaPipeLandmarkProvider())
avatar = AvatarImageLoader()
compositor = AvatarCompositor()
renderer = RenderLoop(compositor, controller, avatar)
recorder = CanvasRecorder(fps=1.0 / renderer.period)

app = Flask(__name__, static_folder=None)


def _is_secure_context():
    return ALLOW_INSECURE or request.is_secure or request.remote_addr in LOCAL_ADDRS


def _ensure_rendering():
    if avatar.source is None and not avatar.loading and avatar.image is None:
        avatar.load_async(AVATAR_IMAGE or None)
    if not renderer.running:
        renderer.start()


def _state():
    snap = controller.snapshot()
    snap["avatar"] = {"source": avatar.source, "loaded": avatar.image is not None,
                      "error": avatar.error}
    snap["recording"] = recorder.recording
    return snap


def generate_stream():
    _ensure_rendering()
    for jpeg in renderer.frames():
        yield (b'--frame\r\nContent-Type: image/jpeg\r\n\r\n' + jpeg + b'\r\n')

@app.route("/")
def root():
    return send_from_directory(HERE, "avatar_studio.html")

@app.route("/stream.mjpg")
def stream_jpg():
    return Response(generate_stream(), mimetype="multipart/x-mixed-replace; boundary=frame")

@app.route("/snapshot")
def snapshot():
    last_jpeg, last_ts = renderer.latest_jpeg
    if last_jpeg is None: return "no frame yet", 503
    return Response(last_jpeg, headers={
        "Content-Type": "image/jpeg",
        "Content-Disposition": f'attachment; filename="avatar_{int(last_ts)}.jpg"'
    })

@app.route("/api/status")
def api_status():
    return jsonify(ok=True, state=_state())

@app.route("/api/start", methods=["POST"])
def api_start():
    _ensure_rendering()
    controller.start(secure_context=_is_secure_context())
    if controller.status is TrackingStatus.ERROR:
        return jsonify(ok=False, err=controller.error, state=_state()), 503
    return jsonify(ok=True, state=_state())

@app.route("/api/stop", methods=["POST"])
def api_stop():
    controller.stop()
    return jsonify(ok=True, state=_state())

@app.route("/api/avatar", methods=["POST"])
def api_avatar():
    f = request.files.get("image")
    if f is None or not f.filename:
        return jsonify(ok=False, err="image file required"), 400
    name = secure_filename(f.filename)
    if not name.lower().endswith(ALLOWED_IMAGE_EXT):
        return jsonify(ok=False, err="image must be png/jpg/jpeg"), 400
    os.makedirs(UPLOAD_DIR, exist_ok=True)
    path = os.path.join(UPLOAD_DIR, f"{int(time.time() * 1000)}-{name}")
    f.save(path)
    avatar.load_async(path)
    return jsonify(ok=True, file=os.path.basename(path))

@app.route("/api/avatar/reset", methods=["POST"])
def api_avatar_reset():
    avatar.load_async(AVATAR_IMAGE or None)
    return jsonify(ok=True)

@app.route("/api/record/start", methods=["POST"])
def api_record_start():
    if recorder.recording:
        return jsonify(ok=False, err="already recording"), 409
    _ensure_rendering()
    try:
        path = recorder.start()
    except RuntimeError as e:
        return jsonify(ok=False, err=str(e)), 500
    renderer.add_sink(recorder)
    return jsonify(ok=True, file=os.path.basename(path))

@app.route("/api/record/stop", methods=["POST"])
def api_record_stop():
    if not recorder.recording:
        return jsonify(ok=False, err="not recording"), 409
    renderer.remove_sink(recorder)
    out = recorder.stop()
    if out is None:
        # another request stopped it first
        return jsonify(ok=False, err="not recording"), 409
    name = os.path.basename(out)
    return jsonify(ok=True, file=name, url=f"/recordings/{name}")

@app.route("/recordings/<path:name>")
def recordings(name):
    return send_from_directory(RECORD_DIR, name, as_attachment=True)

if __name__ == "__main__":
    print("\n" + "="*70)
    print("Face-Tracked Avatar Studio")
    print("="*70)
    print("\n[INFO] Configuration:")
    print(f"  - Avatar image: {AVATAR_IMAGE or 'built-in default'}")
    print(f"  - Camera: {CAM_INDEX}, Resolution: {W_CAP}x{H_CAP}")
    print(f"  - Canvas: {CANVAS_W}x{CANVAS_H} @ {RENDER_FPS:.0f} FPS")
    print(f"  - No-face grace: {NO_FACE_GRACE_SECONDS:.1f}s")
    print(f"  - Record audio: {'Enabled' if RECORD_AUDIO else 'Disabled'}")
    print("="*70 + "\n")

    avatar.load_async(AVATAR_IMAGE or None)
    renderer.start()
    try:
        app.run(host=HOST, port=PORT, debug=False, threaded=True)
    finally:
        if recorder.recording:
            renderer.remove_sink(recorder)
            recorder.stop()
        renderer.stop()
        controller.close()
