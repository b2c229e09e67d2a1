"""Single person pose estimation on the low resolution stream."""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

import numpy as np

from camstages.stage import CameraContext, CompletedRequest, StreamInfo, register_stage
from camstages.tf_stage import ModelSource, TfStage

NAME = "pose_estimation_tf"
LOCATIONS_KEY = "pose_estimation.locations"
CONFIDENCES_KEY = "pose_estimation.confidences"
FEATURE_SIZE = 17
HEATMAP_DIMS = 9


def decode_pose(
    heatmaps, offsets, main_info: StreamInfo
) -> tuple[list[tuple[int, int]], list[float]]:
    """Find each keypoint's (x, y) location in the main image and its confidence."""
    cells = HEATMAP_DIMS * HEATMAP_DIMS
    hm = np.asarray(heatmaps, dtype=np.float32).reshape(-1)[: cells * FEATURE_SIZE]
    hm = hm.reshape(cells, FEATURE_SIZE)
    off = np.asarray(offsets, dtype=np.float32).reshape(-1)[: cells * 2 * FEATURE_SIZE]
    off = off.reshape(HEATMAP_DIMS, HEATMAP_DIMS, 2 * FEATURE_SIZE)

    # argmax picks the first maximum, as does a strict ">" scan.
    best = hm.argmax(axis=0)
    confidences = [float(hm[cell, i]) for i, cell in enumerate(best)]

    locations = []
    for i, cell in enumerate(best):
        y, x = divmod(int(cell), HEATMAP_DIMS)
        loc_y = int(
            (y * main_info.height) // (HEATMAP_DIMS - 1) + float(off[y, x, i])
        )
        loc_x = int(
            (x * main_info.width) // (HEATMAP_DIMS - 1) + float(off[y, x, i + FEATURE_SIZE])
        )
        locations.append((loc_x, loc_y))
    return locations, confidences


@register_stage(NAME)
class PoseEstimationTfStage(TfStage):
    """Estimates the locations of 17 body keypoints."""

    name = NAME

    def __init__(self, app: Optional[CameraContext] = None, model: Optional[ModelSource] = None):
        # The model expects 257x257 images.
        super().__init__(app, 257, 257, model)
        self.locations: list[tuple[int, int]] = []
        self.confidences: list[float] = []

    def read_extras(self, params: Mapping[str, Any]) -> None:
        shape = tuple(self.model.output_shapes[0])
        expected = (1, HEATMAP_DIMS, HEATMAP_DIMS, FEATURE_SIZE)
        # Causes might include loading the wrong model.
        if shape[:4] != expected:
            raise RuntimeError("PoseEstimationTfStage: Unexpected output dimensions")

    def check_configuration(self) -> None:
        if self.main_stream_info is None:
            raise RuntimeError("PoseEstimationTfStage: Main stream is required")

    def interpret_outputs(self, outputs: Sequence[np.ndarray]) -> None:
        self.locations, self.confidences = decode_pose(
            outputs[0], outputs[1], self.main_stream_info
        )

    def apply_results(self, request: CompletedRequest) -> None:
        request.post_process_metadata[LOCATIONS_KEY] = list(self.locations)
        request.post_process_metadata[CONFIDENCES_KEY] = list(self.confidences)