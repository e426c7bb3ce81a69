import os
import queue
import shutil
import subprocess
import tempfile
import threading
import time

import cv2

from avatar_config import (CANVAS_W, CANVAS_H, RENDER_FPS, RECORD_DIR, RECORD_AUDIO, AUDIO_RATE,
                           FFMPEG_BIN)

# Preference order, best first: webm/vp9, webm/vp8, then whatever the local build can write
CODEC_CANDIDATES = (
    ("VP90", ".webm"),
    ("VP80", ".webm"),
    ("avc1", ".mp4"),
    ("mp4v", ".mp4"),
    ("MJPG", ".avi"),
)


def probe_codec(size, fps, candidates=CODEC_CANDIDATES, writer_factory=cv2.VideoWriter):
    tmp_dir = tempfile.mkdtemp(prefix="codec-probe-")
    try:
        for fourcc, ext in candidates:
            w = writer_factory(os.path.join(tmp_dir, "probe" + ext),
                               cv2.VideoWriter_fourcc(*fourcc), fps, size)
            ok = w.isOpened()
            w.release()
            if ok:
                return fourcc, ext
    finally:
        shutil.rmtree(tmp_dir, ignore_errors=True)
    raise RuntimeError("no usable video codec found in this OpenCV build")


def run_cmd(cmd):
    p = subprocess.run(cmd, capture_output=True, text=True)
    if p.returncode != 0:
        raise RuntimeError(f"Command failed ({p.returncode}): {' '.join(cmd)}\nSTDERR:\n{p.stderr}")


def build_mux_command(video_path, audio_path, out_path, ffmpeg=FFMPEG_BIN):
    if video_path.endswith(".webm"):
        vcodec = ["-c:v", "copy"]
    else:
        vcodec = ["-c:v", "libvpx-vp9", "-b:v", "0", "-crf", "32"]
    return [ffmpeg, "-y", "-loglevel", "error",
            "-i", video_path, "-i", audio_path,
            *vcodec, "-c:a", "libopus", "-shortest", out_path]


class MicrophoneCapture:
    """Mono microphone capture to a WAV file; callback blocks are written by a drain thread."""

    def __init__(self, samplerate=AUDIO_RATE, channels=1):
        self.samplerate = samplerate
        self.channels = channels
        self.path = None
        self._q = queue.Queue()
        self._stream = None
        self._writer = None
        self._stop = threading.Event()

    def _callback(self, indata, frames, time_info, status):
        self._q.put(indata.copy())

    def _drain(self, sf_file):
        with sf_file:
            while not self._stop.is_set() or not self._q.empty():
                try:
                    sf_file.write(self._q.get(timeout=0.1))
                except queue.Empty:
                    continue

    def start(self, path):
        import sounddevice as sd
        import soundfile as sf

        self.path = path
        self._stop.clear()
        sf_file = sf.SoundFile(path, mode="w", samplerate=self.samplerate,
                               channels=self.channels, subtype="PCM_16")
        self._writer = threading.Thread(target=self._drain, args=(sf_file,), name="mic-writer", daemon=True)
        self._writer.start()
        try:
            self._stream = sd.InputStream(samplerate=self.samplerate, channels=self.channels,
                                          dtype="float32", callback=self._callback)
            self._stream.start()
        except Exception:
            self._stop.set()
            self._writer.join(timeout=1.0)
            raise
        return path

    def stop(self):
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None
        self._stop.set()
        if self._writer is not None:
            self._writer.join(timeout=2.0)
            self._writer = None
        return self.path


class CanvasRecorder:
    """
    Records rendered avatar frames (fed by the render loop) to a video file.

    `fps` should match the render loop; frames arriving late are repeated so
    the file plays back in real time.

    With audio enabled the microphone is captured alongside and both are
    muxed into a webm with ffmpeg when the recording stops.
    """

    def __init__(self, out_dir=RECORD_DIR, fps=RENDER_FPS, size=(CANVAS_W, CANVAS_H),
                 audio=RECORD_AUDIO, writer_factory=cv2.VideoWriter,
                 mic_factory=MicrophoneCapture, mux=None, clock=time.time,
                 timer=time.monotonic):
        self.out_dir = out_dir
        self.fps = fps
        self.size = tuple(size)
        self.audio = audio
        self._writer_factory = writer_factory
        self._mic_factory = mic_factory
        self._mux = mux or (lambda v, a, o: run_cmd(build_mux_command(v, a, o)))
        self._clock = clock
        self._timer = timer
        self._t0 = None
        self._lock = threading.Lock()
        self._codec = None
        self._writer = None
        self._mic = None
        self._base = None
        self.video_path = None
        self.last_output = None
        self.frames_written = 0

    @property
    def recording(self):
        return self._writer is not None

    def start(self):
        with self._lock:
            if self._writer is not None:
                raise RuntimeError("already recording")
            os.makedirs(self.out_dir, exist_ok=True)
            if self._codec is None:
                self._codec = probe_codec(self.size, self.fps, writer_factory=self._writer_factory)
                print(f"[INFO] Recording codec: {self._codec[0]} ({self._codec[1]})")
            fourcc, ext = self._codec

            self._base = os.path.join(self.out_dir, f"avatar-recording-{int(self._clock() * 1000)}")
            video_path = self._base + ("-video" + ext if self.audio else ext)
            writer = self._writer_factory(video_path, cv2.VideoWriter_fourcc(*fourcc), self.fps, self.size)
            if not writer.isOpened():
                raise RuntimeError(f"cannot open video writer for {video_path}")

            mic = None
            if self.audio:
                mic = self._mic_factory()
                try:
                    mic.start(self._base + ".wav")
                except Exception as e:
                    print(f"[WARN] Microphone unavailable, recording video only: {e}")
                    mic = None

            self._writer, self._mic = writer, mic
            self.video_path = video_path
            self.frames_written = 0
            self._t0 = self._timer()
        print(f"[INFO] Recording started: {video_path}")
        return video_path

    def write(self, frame):
        with self._lock:
            if self._writer is None:
                return
            if (frame.shape[1], frame.shape[0]) != self.size:
                frame = cv2.resize(frame, self.size)
            # repeat the frame when the feed lags so playback keeps wall-clock speed
            due = int((self._timer() - self._t0) * self.fps) + 1
            for _ in range(max(1, due - self.frames_written)):
                self._writer.write(frame)
                self.frames_written += 1

    def stop(self):
        with self._lock:
            writer, mic = self._writer, self._mic
            self._writer, self._mic = None, None
        if writer is None:
            return None
        writer.release()

        out = self.video_path
        if mic is not None:
            audio_path = mic.stop()
            muxed = self._base + ".webm"
            try:
                self._mux(self.video_path, audio_path, muxed)
            except (RuntimeError, OSError) as e:
                print(f"[WARN] Could not mux audio, keeping video only: {e}")
            else:
                os.remove(self.video_path)
                os.remove(audio_path)
                out = muxed
        self.last_output = out
        print(f"[INFO] Recording saved: {out} ({self.frames_written} frames)")
        return out
