from abc import ABC, abstractmethod

import cv2

from avatar_config import REFINE_LANDMARKS, MIN_DETECTION_CONFIDENCE, MIN_TRACKING_CONFIDENCE


class LandmarkProvider(ABC):
    """Face landmark model used by the tracking controller."""

    @abstractmethod
    def init(self):
        """Load the model. Must be a no-op when already loaded."""

    @abstractmethod
    def detect(self, frame_bgr):
        """Return the landmark set of the first face in the frame, or None."""

    @abstractmethod
    def dispose(self):
        """Free model resources."""


class MediaPipeLandmarkProvider(LandmarkProvider):
    def __init__(self, refine_landmarks=REFINE_LANDMARKS,
                 min_detection_confidence=MIN_DETECTION_CONFIDENCE,
                 min_tracking_confidence=MIN_TRACKING_CONFIDENCE):
        self.refine_landmarks = refine_landmarks
        self.min_detection_confidence = min_detection_confidence
        self.min_tracking_confidence = min_tracking_confidence
        self._mesh = None

    @property
    def loaded(self):
        return self._mesh is not None

    def init(self):
        if self._mesh is not None:
            return
        # Imported here so the model only loads when tracking actually starts
        import mediapipe as mp
        self._mesh = mp.solutions.face_mesh.FaceMesh(
            max_num_faces=1, refine_landmarks=self.refine_landmarks,
            min_detection_confidence=self.min_detection_confidence,
            min_tracking_confidence=self.min_tracking_confidence)
        print("[INFO] FaceMesh model loaded")

    def detect(self, frame_bgr):
        if self._mesh is None:
            raise RuntimeError("landmark model not initialised; call init() first")
        res = self._mesh.process(cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB))
        if not res.multi_face_landmarks:
            return None
        return res.multi_face_landmarks[0].landmark

    def dispose(self):
        if self._mesh is not None:
            self._mesh.close()
            self._mesh = None
            print("[INFO] FaceMesh model released")
