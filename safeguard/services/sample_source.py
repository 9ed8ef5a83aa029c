"""Frame and sensor sample sources."""

import threading
from datetime import datetime
from typing import Optional, Sequence, Union

import cv2
import numpy as np

from .interfaces import SampleSourceInterface
from .error_handler import SourceUnavailable
from ..config.defaults import SYSTEM_CONSTANTS
from ..models.incident import FrameSample, SensorSample
from ..logging_config import get_logger

logger = get_logger("sample_source")


class CameraSampleSource(SampleSourceInterface):
    """Still frames from a camera index or a video file via OpenCV.

    Video files loop when they reach the end so a recorded clip can be
    monitored like a live feed.
    """

    def __init__(self, device: Union[int, str] = 0,
                 resolution: Optional[tuple] = None,
                 jpeg_quality: int = SYSTEM_CONSTANTS["JPEG_QUALITY"]):
        self.device = device
        self.resolution = resolution
        self.jpeg_quality = jpeg_quality
        self.capture = None
        self._lock = threading.Lock()
        self.frames_read = 0

    @property
    def is_file(self) -> bool:
        return isinstance(self.device, str) and not self.device.isdigit()

    def open(self) -> None:
        with self._lock:
            if self.capture is not None:
                return

            device = int(self.device) if isinstance(self.device, str) and self.device.isdigit() else self.device
            capture = cv2.VideoCapture(device)
            if not capture.isOpened():
                capture.release()
                raise SourceUnavailable(f"Could not open video source {self.device!r}")

            if self.resolution and not self.is_file:
                width, height = self.resolution
                capture.set(cv2.CAP_PROP_FRAME_WIDTH, width)
                capture.set(cv2.CAP_PROP_FRAME_HEIGHT, height)

            self.capture = capture

        logger.info(f"Video source opened: {self.device!r}")

    def get_sample(self) -> FrameSample:
        with self._lock:
            if self.capture is None:
                raise SourceUnavailable("No active video feed")

            ok, frame = self.capture.read()
            if not ok and self.is_file:
                # Rewind and loop the clip
                self.capture.set(cv2.CAP_PROP_POS_FRAMES, 0)
                ok, frame = self.capture.read()

            if not ok or frame is None:
                raise SourceUnavailable(f"Failed to read a frame from {self.device!r}")

            ok, buffer = cv2.imencode('.jpg', frame, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
            if not ok:
                raise SourceUnavailable("Failed to encode frame as JPEG")

            self.frames_read += 1

        height, width = frame.shape[:2]
        return FrameSample(data=buffer.tobytes(), width=width, height=height, mime_type="image/jpeg")

    def close(self) -> None:
        with self._lock:
            if self.capture is not None:
                self.capture.release()
                self.capture = None
        logger.info(f"Video source closed: {self.device!r}")

    def is_available(self) -> bool:
        return self.capture is not None and self.capture.isOpened()


class SensorFeedSampleSource(SampleSourceInterface):
    """Latest accelerometer/gyroscope reading pushed in by a collector.

    Readings older than ``max_age_seconds`` are treated as a dead feed.
    """

    def __init__(self, max_age_seconds: float = SYSTEM_CONSTANTS["MAX_SENSOR_AGE_SECONDS"]):
        self.max_age_seconds = max_age_seconds
        self._latest: Optional[SensorSample] = None
        self._lock = threading.Lock()
        self._open = False

    def open(self) -> None:
        self._open = True

    def update(self, accel: Sequence[float], gyro: Sequence[float],
               location: Optional[Sequence[float]] = None) -> SensorSample:
        """Store a new reading; each triple must hold exactly three numbers."""
        sample = SensorSample(
            accel=self._as_triple(accel, "accel"),
            gyro=self._as_triple(gyro, "gyro"),
            location=self._as_triple(location, "location") if location is not None else None
        )
        with self._lock:
            self._latest = sample
        return sample

    def get_sample(self) -> SensorSample:
        with self._lock:
            sample = self._latest

        if not self._open or sample is None:
            raise SourceUnavailable("No sensor feed is active")

        age = (datetime.now() - sample.captured_at).total_seconds()
        if age > self.max_age_seconds:
            raise SourceUnavailable(f"Latest sensor reading is {age:.1f}s old")

        return sample

    def close(self) -> None:
        self._open = False
        with self._lock:
            self._latest = None

    def is_available(self) -> bool:
        return self._open and self._latest is not None

    @staticmethod
    def _as_triple(values: Sequence[float], name: str) -> tuple:
        array = np.asarray(values, dtype=float)
        if array.shape != (3,) or not np.all(np.isfinite(array)):
            raise ValueError(f"{name} must be three finite numbers, got {values!r}")
        return tuple(array.tolist())
