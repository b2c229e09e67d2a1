"""Image classification on the low resolution stream."""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Sequence

import numpy as np

from camstages.stage import CameraContext, CompletedRequest, register_stage
from camstages.tf_stage import ModelSource, TfConfig, TfStage

logger = logging.getLogger(__name__)

NAME = "object_classify_tf"
RESULTS_KEY = "object_classify.results"
ANNOTATE_KEY = "annotate.text"
LABEL_PADDING = 16
DEFAULT_LABELS_FILE = "/home/pi/models/labels.txt"


def _read_lines(path) -> list[str]:
    with open(path, encoding="utf-8", newline="") as f:
        lines = f.read().split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines


def _f32(value: float) -> float:
    return float(np.float32(value))


def read_padded_labels(path) -> tuple[list[str], int]:
    """Read a labels file, padded with empty labels to a multiple of 16.

    Returns the padded labels and the number of labels actually read.
    """
    try:
        labels = _read_lines(path)
    except OSError as exc:
        raise RuntimeError("ObjectClassifyTfStage: Failed to load labels file") from exc
    count = len(labels)
    labels.extend([""] * (-count % LABEL_PADDING))
    return labels, count


def top_results(
    prediction: Iterable[int],
    num_results: int,
    threshold_low: float,
    threshold_high: float,
    previous: Iterable[tuple[float, int]] = (),
) -> list[tuple[float, int]]:
    """Most likely (confidence, index) pairs in descending order.

    Scores below threshold_low are ignored; scores below threshold_high are
    only kept if their index was among the previous results.
    """
    low, high = _f32(threshold_low), _f32(threshold_high)
    previous_indices = {index for _, index in previous}
    heap: list[tuple[float, int]] = []
    values = np.asarray(prediction, dtype=np.uint8).reshape(-1).tolist()
    for i, value in enumerate(values):
        confidence = _f32(value / 255.0)
        if confidence < low:
            continue
        if confidence >= high or i in previous_indices:
            heapq.heappush(heap, (confidence, i))
            if len(heap) > num_results:
                heapq.heappop(heap)
    return sorted(heap, reverse=True)


def _short_label(label: str) -> str:
    start = label.find(":") + 1
    end = label.find(",")
    if end < start:
        return label[start:]
    return label[start:end]


def format_annotation(results: Iterable[tuple[str, float]]) -> str:
    """Annotation text listing the short label and confidence of each result."""
    parts = [f"{_short_label(label)} {confidence:.2g}" for label, confidence in results]
    return "Detected: " + ", ".join(parts)


@dataclass
class ObjectClassifyTfConfig(TfConfig):
    """Classifier settings."""

    number_of_results: int = 3
    top_n_results: int = 0
    threshold_high: float = 0.2
    threshold_low: float = 0.1
    display_labels: bool = True


@register_stage(NAME)
class ObjectClassifyTfStage(TfStage):
    """Classifies the lores image and reports the most likely labels."""

    name = NAME
    config_class = ObjectClassifyTfConfig

    def __init__(self, app: Optional[CameraContext] = None, model: Optional[ModelSource] = None):
        # The model expects 224x224 images.
        super().__init__(app, 224, 224, model)
        self.labels: list[str] = []
        self.label_count = 0
        self.output_results: list[tuple[str, float]] = []
        self._top_results: list[tuple[float, int]] = []

    def read_extras(self, params: Mapping[str, Any]) -> None:
        cfg = self.config
        cfg.number_of_results = int(params.get("number_of_results", 3))
        cfg.threshold_high = float(params.get("threshold_high", 0.2))
        cfg.threshold_low = float(params.get("threshold_low", 0.1))
        cfg.display_labels = bool(int(params.get("display_labels", 1)))

        self.labels, self.label_count = read_padded_labels(
            str(params.get("labels_file", DEFAULT_LABELS_FILE))
        )

        shape = tuple(self.model.output_shapes[0])
        # Causes might include the wrong model or the wrong labels file.
        if not shape or shape[-1] != self.label_count:
            raise RuntimeError("ObjectClassifyTfStage: Label count mismatch")

    def interpret_outputs(self, outputs: Sequence[np.ndarray]) -> None:
        output = np.asarray(outputs[0])
        size = output.shape[-1]
        prediction = output.reshape(-1)[:size]
        cfg = self.config
        self._top_results = top_results(
            prediction,
            cfg.number_of_results,
            cfg.threshold_low,
            cfg.threshold_high,
            self._top_results,
        )
        self.output_results = [(self.labels[index], conf) for conf, index in self._top_results]
        if cfg.verbose:
            for label, conf in self.output_results:
                logger.info("%s : %f", label, conf)

    def apply_results(self, request: CompletedRequest) -> None:
        request.post_process_metadata[RESULTS_KEY] = list(self.output_results)
        if self.config.display_labels:
            request.post_process_metadata[ANNOTATE_KEY] = format_annotation(self.output_results)