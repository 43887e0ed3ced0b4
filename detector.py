"""
Face Detector and Camera Frame Source
=====================================

Collaborators of the /getResult endpoint.

    lazy    = LazyDetector(lambda: FaceDetector(DetectorConfig()))
    service = DetectionService(CameraFrameSource(0), timeout=10, device_wait=5)
    outcome = await service.run(lazy.get(), strategy)

Two detector backends share one interface, ``detect(frame) -> list[Rect]``:

    cascade — OpenCV Haar cascade (default, haarcascade_frontalface_default.xml)
    yolo    — Ultralytics YOLO weights, boxes converted to x/y/width/height

The camera is an exclusive resource.  ``DetectionService`` serializes
capture + detection + the response strategy behind one lock and bounds
the whole step with a timeout, because a camera read can hang.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, NamedTuple, Optional, Protocol, TypeVar

import cv2
import numpy as np

from errors import DeviceError, DeviceErrorKind, ModelError, ModelErrorKind

log = logging.getLogger("facedetect-api.detector")

T = TypeVar("T")


class Rect(NamedTuple):
    x: int
    y: int
    width: int
    height: int


# =====================================================================
#  CONFIGURATION
# =====================================================================

@dataclass
class DetectorConfig:

    # -- Paths --
    model_path: str = "haarcascade_frontalface_default.xml"
    backend: str = "cascade"

    # -- Haar cascade --
    scale_factor: float = 1.1
    min_neighbors: int = 3
    min_size: tuple = (0, 0)          # OpenCV default: no lower bound
    equalize_hist: bool = True

    # -- YOLO --
    imgsz: int = 640
    conf: float = 0.25
    iou: float = 0.7
    device: Optional[str] = None
    classes: Optional[list[int]] = field(default_factory=lambda: [0])


def _find_cascade(model_path: str) -> Path | None:
    """Locate a cascade file, falling back to the cascades bundled with OpenCV."""
    p = Path(model_path)
    if p.is_file():
        return p
    bundled = Path(cv2.data.haarcascades) / p.name
    if bundled.is_file():
        return bundled
    return None


# =====================================================================
#  DETECTOR
# =====================================================================

class FaceDetector:
    """Runs one detection backend over BGR frames."""

    def __init__(self, config: DetectorConfig | None = None):
        self.cfg = config or DetectorConfig()
        if self.cfg.backend not in ("cascade", "yolo"):
            raise ModelError(ModelErrorKind.LOAD_FAILED,
                             f"unknown detector backend '{self.cfg.backend}'")
        self._model: Any = None

    # Lazy-load the model (only load once)
    def _get_model(self):
        if self._model is None:
            if self.cfg.backend == "cascade":
                self._model = self._load_cascade()
            else:
                self._model = self._load_yolo()
        return self._model

    def _load_cascade(self) -> cv2.CascadeClassifier:
        path = _find_cascade(self.cfg.model_path)
        if path is None:
            raise ModelError(ModelErrorKind.NOT_FOUND, self.cfg.model_path)
        log.info("Loading face cascade from %s ...", path)
        cascade = cv2.CascadeClassifier(str(path))
        if cascade.empty():
            raise ModelError(ModelErrorKind.LOAD_FAILED, str(path))
        return cascade

    def _load_yolo(self):
        weights = Path(self.cfg.model_path)
        if not weights.exists():
            raise ModelError(ModelErrorKind.NOT_FOUND, self.cfg.model_path)
        log.info("Loading YOLO model from %s ...", weights)
        # Imported here: ultralytics pulls in torch, which the cascade
        # backend never needs.
        from ultralytics import YOLO
        return YOLO(str(weights))

    def warmup(self):
        """Pre-load the model so the first request is not slow."""
        self._get_model()
        return self

    def detect(self, frame: np.ndarray) -> list[Rect]:
        model = self._get_model()
        if self.cfg.backend == "cascade":
            return self._detect_cascade(model, frame)
        return self._detect_yolo(model, frame)

    def _detect_cascade(self, cascade, frame: np.ndarray) -> list[Rect]:
        gray = frame if frame.ndim == 2 else cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        if self.cfg.equalize_hist:
            gray = cv2.equalizeHist(gray)
        faces = cascade.detectMultiScale(
            gray,
            scaleFactor=self.cfg.scale_factor,
            minNeighbors=self.cfg.min_neighbors,
            minSize=self.cfg.min_size,
        )
        return [Rect(int(x), int(y), int(w), int(h)) for (x, y, w, h) in faces]

    def _detect_yolo(self, model, frame: np.ndarray) -> list[Rect]:
        cfg = self.cfg
        results = model(frame, imgsz=cfg.imgsz, conf=cfg.conf, iou=cfg.iou,
                        device=cfg.device, classes=cfg.classes, verbose=False)[0]
        if results.boxes is None:
            return []
        rects = []
        for x1, y1, x2, y2 in results.boxes.xyxy.cpu().numpy().tolist():
            rects.append(Rect(int(round(x1)), int(round(y1)),
                              int(round(x2 - x1)), int(round(y2 - y1))))
        return rects


class Detector(Protocol):
    def warmup(self) -> Any: ...
    def detect(self, frame: np.ndarray) -> list[Rect]: ...


class LazyDetector:
    """Owns one detector instance, created on first use.

    A failed load is not remembered; the next ``get`` tries again.
    """

    def __init__(self, factory: Callable[[], Detector]):
        self._factory = factory
        self._detector: Detector | None = None
        self._lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._detector is not None

    def get(self) -> Detector | ModelError:
        if self._detector is not None:
            return self._detector
        with self._lock:
            if self._detector is None:
                try:
                    detector = self._factory()
                    detector.warmup()
                except ModelError as e:
                    log.error("Face detector unavailable: %s", e)
                    return e
                except Exception as e:
                    log.error("Face detector failed to load: %s", e, exc_info=True)
                    return ModelError(ModelErrorKind.LOAD_FAILED, str(e))
                self._detector = detector
                log.info("Face detector ready")
        return self._detector


# =====================================================================
#  FRAME SOURCE
# =====================================================================

class FrameSource(Protocol):
    def capture(self) -> np.ndarray | DeviceError: ...


class CameraFrameSource:
    """Grabs a single still frame from a local camera per call."""

    def __init__(self, index: int = 0):
        self.index = index

    def capture(self) -> np.ndarray | DeviceError:
        cap = cv2.VideoCapture(self.index)
        try:
            if not cap.isOpened():
                return DeviceError(DeviceErrorKind.NOT_OPEN, f"device {self.index}")
            ok, frame = cap.read()
            if not ok or frame is None:
                return DeviceError(DeviceErrorKind.READ_FAILED, f"device {self.index}")
            return frame
        finally:
            cap.release()


# =====================================================================
#  DEVICE-GUARDED DETECTION
# =====================================================================

class DetectionService:
    """Capture → detect → strategy, one request at a time."""

    def __init__(self, frame_source: FrameSource, *, timeout: float, device_wait: float):
        self.frame_source = frame_source
        self.timeout = timeout
        self.device_wait = device_wait
        self._device_lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._device_lock.locked()

    def _run_locked(
        self,
        detector: Detector,
        strategy: Callable[[np.ndarray, list[Rect]], T],
    ) -> T | DeviceError:
        if not self._device_lock.acquire(timeout=self.device_wait):
            return DeviceError(DeviceErrorKind.BUSY,
                               f"still in use after {self.device_wait:g}s")
        try:
            frame = self.frame_source.capture()
            if isinstance(frame, DeviceError):
                log.error("Frame capture failed: %s", frame)
                return frame
            rects = detector.detect(frame)
            log.info("Detected %d face(s) in %dx%d frame",
                     len(rects), frame.shape[1], frame.shape[0])
            # The strategy runs under the lock too, so writes of the
            # annotated image never overlap.
            return strategy(frame, rects)
        finally:
            self._device_lock.release()

    async def run(
        self,
        detector: Detector,
        strategy: Callable[[np.ndarray, list[Rect]], T],
    ) -> T | DeviceError:
        """Run one guarded detection in a worker thread.

        On timeout the worker keeps the device lock until it actually
        returns, so a hung camera turns later requests into BUSY rather
        than letting them open the device concurrently.
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._run_locked, detector, strategy),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            log.error("Detection timed out after %.1fs", self.timeout)
            return DeviceError(DeviceErrorKind.TIMEOUT, f"no frame after {self.timeout:g}s")


def detector_factory(model_path: str, backend: str) -> Callable[[], FaceDetector]:
    """Return a zero-argument constructor for ``LazyDetector``."""
    def _make() -> FaceDetector:
        return FaceDetector(DetectorConfig(model_path=model_path, backend=backend))
    return _make
