"""Simple motion detector working on the low resolution stream."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Mapping

import numpy as np

from camstages.stage import CompletedRequest, PostProcessingStage, register_stage

logger = logging.getLogger(__name__)

RESULT_KEY = "motion_detect.result"


@dataclass
class MotionDetectConfig:
    """Motion detector settings; ROI dimensions are fractions of the lores image."""

    roi_x: float = 0.0
    roi_y: float = 0.0
    roi_width: float = 1.0
    roi_height: float = 1.0
    hskip: int = 1
    vskip: int = 1
    difference_m: float = 0.1
    difference_c: int = 10
    region_threshold: float = 0.005
    frame_period: int = 5
    verbose: bool = False

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> MotionDetectConfig:
        return cls(
            roi_x=float(params.get("roi_x", 0.0)),
            roi_y=float(params.get("roi_y", 0.0)),
            roi_width=float(params.get("roi_width", 1.0)),
            roi_height=float(params.get("roi_height", 1.0)),
            hskip=int(params.get("hskip", 1)),
            vskip=int(params.get("vskip", 1)),
            difference_m=float(params.get("difference_m", 0.1)),
            difference_c=int(params.get("difference_c", 10)),
            region_threshold=float(params.get("region_threshold", 0.005)),
            frame_period=int(params.get("frame_period", 5)),
            verbose=bool(int(params.get("verbose", 0))),
        )


def _to_unsigned(value: float) -> int:
    return max(0, int(value))


@register_stage("motion_detect")
class MotionDetectStage(PostProcessingStage):
    """Compares each lores frame with the previous one and reports motion."""

    name = "motion_detect"

    def __init__(self, app=None):
        super().__init__(app)
        self.config = MotionDetectConfig()
        self._active = False
        self._lores_stride = 0
        self._roi = (0, 0, 0, 0)
        self._region_threshold = 0
        self._previous = np.zeros((0, 0), dtype=np.uint8)
        self._first_time = True
        self._motion_detected = False
        self._lock = threading.Lock()

    @property
    def roi(self) -> tuple[int, int, int, int]:
        """Region of interest (x, y, width, height) in subsampled lores pixels."""
        return self._roi

    @property
    def region_threshold(self) -> int:
        """Number of changed pixels that counts as motion."""
        return self._region_threshold

    @property
    def motion_detected(self) -> bool:
        return self._motion_detected

    def read(self, params: Mapping[str, Any]) -> None:
        self.config = MotionDetectConfig.from_params(params)

    def configure(self) -> None:
        info = self.app.lores_stream if self.app is not None else None
        if info is None:
            self._active = False
            return
        cfg = self.config
        cfg.hskip = max(cfg.hskip, 1)
        cfg.vskip = max(cfg.vskip, 1)
        width = info.width // cfg.hskip
        height = info.height // cfg.vskip
        self._lores_stride = info.stride * cfg.vskip

        roi_x = _to_unsigned(cfg.roi_x * width)
        roi_y = _to_unsigned(cfg.roi_y * height)
        roi_width = _to_unsigned(cfg.roi_width * width)
        roi_height = _to_unsigned(cfg.roi_height * height)
        region_threshold = _to_unsigned(cfg.region_threshold * roi_width * roi_height)

        roi_x = min(roi_x, width)
        roi_y = min(roi_y, height)
        roi_width = min(roi_width, width - roi_x)
        roi_height = min(roi_height, height - roi_y)
        region_threshold = min(region_threshold, roi_width * roi_height)

        self._roi = (roi_x, roi_y, roi_width, roi_height)
        self._region_threshold = region_threshold
        if cfg.verbose:
            logger.info(
                "Lores: %dx%d roi: (%d,%d) %dx%d threshold: %d",
                width, height, roi_x, roi_y, roi_width, roi_height, region_threshold,
            )

        self._previous = np.zeros((roi_height, roi_width), dtype=np.uint8)
        self._first_time = True
        self._motion_detected = False
        self._active = True

    def _extract_roi(self, buffer) -> np.ndarray:
        data = np.frombuffer(buffer, dtype=np.uint8)
        x, y, w, h = self._roi
        hskip = self.config.hskip
        rows = (y + np.arange(h)) * self._lores_stride + x * hskip
        cols = np.arange(w) * hskip
        return data[rows[:, None] + cols[None, :]]

    def process(self, request: CompletedRequest) -> bool:
        if not self._active:
            return False
        cfg = self.config
        if cfg.frame_period and request.sequence % cfg.frame_period:
            return False

        new = self._extract_roi(request.buffers["lores"])

        with self._lock:
            if self._first_time:
                self._first_time = False
                self._previous = new.copy()
                request.post_process_metadata[RESULT_KEY] = self._motion_detected
                return False

            new_values = new.astype(np.int64)
            old_values = self._previous.astype(np.int64)
            self._previous = new.copy()
            changed = np.abs(new_values - old_values) > (
                cfg.difference_m * old_values + cfg.difference_c
            )
            regions = int(np.count_nonzero(changed))
            motion = bool(new_values.size) and regions >= self._region_threshold

            if cfg.verbose and motion != self._motion_detected:
                logger.info("Motion %s", "detected" if motion else "stopped")

            self._motion_detected = motion
            request.post_process_metadata[RESULT_KEY] = motion
        return False