"""Base class for stages that run a neural network on the low resolution stream."""

from __future__ import annotations

import abc
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence, Union

import numpy as np

from camstages.stage import (
    CameraContext,
    CompletedRequest,
    PostProcessingStage,
    StreamInfo,
    execution_time,
    yuv420_to_rgb,
)

logger = logging.getLogger(__name__)


class TensorType(Enum):
    """Element type of a model's input tensor."""

    UINT8 = 1
    FLOAT32 = 4

    @property
    def itemsize(self) -> int:
        return self.value


class Model(abc.ABC):
    """An inference model taking one RGB input tensor."""

    num_threads: Optional[int] = None

    @property
    @abc.abstractmethod
    def input_type(self) -> TensorType:
        """Element type of the input tensor."""

    @property
    @abc.abstractmethod
    def input_bytes(self) -> int:
        """Size of the input tensor in bytes."""

    @property
    @abc.abstractmethod
    def output_shapes(self) -> Sequence[tuple[int, ...]]:
        """Shapes of the output tensors, in order."""

    def set_num_threads(self, num_threads: int) -> None:
        """Set the number of threads used for inference."""
        self.num_threads = num_threads

    @abc.abstractmethod
    def invoke(self, tensor: np.ndarray) -> Sequence[np.ndarray]:
        """Run the model on an input of shape (1, height, width, 3)."""


ModelSource = Union[Model, Callable[[str], Optional[Model]]]


@dataclass
class TfConfig:
    """Settings shared by all neural network stages."""

    number_of_threads: int = 3
    refresh_rate: int = 5
    model_file: str = ""
    verbose: bool = False
    normalisation_offset: float = 127.5
    normalisation_scale: float = 127.5


class TfStage(PostProcessingStage):
    """Runs a model asynchronously on the lores stream every refresh_rate frames.

    Derived stages implement read_extras, check_configuration,
    interpret_outputs and apply_results.
    """

    config_class: type[TfConfig] = TfConfig

    def __init__(
        self,
        app: Optional[CameraContext],
        tf_w: int,
        tf_h: int,
        model: Optional[ModelSource] = None,
    ):
        super().__init__(app)
        if tf_w <= 0 or tf_h <= 0:
            raise ValueError("TfStage: Bad TFLite input dimensions")
        self.tf_w = tf_w
        self.tf_h = tf_h
        self.config = self.config_class()
        self._model_source = model
        self.model: Optional[Model] = None
        self.lores_info: Optional[StreamInfo] = None
        self.main_stream_info: Optional[StreamInfo] = None
        self._future_lock = threading.Lock()
        self._output_lock = threading.Lock()
        self._future: Optional[Future] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lores_copy = b""

    def read(self, params: Mapping[str, Any]) -> None:
        cfg = self.config
        cfg.number_of_threads = int(params.get("number_of_threads", 2))
        cfg.refresh_rate = int(params.get("refresh_rate", 5))
        cfg.model_file = str(params.get("model_file", ""))
        cfg.verbose = bool(int(params.get("verbose", 0)))
        cfg.normalisation_offset = float(params.get("normalisation_offset", 127.5))
        cfg.normalisation_scale = float(params.get("normalisation_scale", 127.5))
        self._initialise()
        self.read_extras(params)

    def _initialise(self) -> None:
        source = self._model_source
        model = source if isinstance(source, Model) else (
            source(self.config.model_file) if source is not None else None
        )
        if model is None:
            raise RuntimeError("TfStage: Failed to load model")
        logger.info("TfStage: Loaded model %s", self.config.model_file)

        if self.config.number_of_threads != -1:
            model.set_num_threads(self.config.number_of_threads)

        if not isinstance(model.input_type, TensorType):
            raise RuntimeError("TfStage: Input tensor data type not supported")
        check = self.tf_w * self.tf_h * 3 * model.input_type.itemsize
        if check != model.input_bytes:
            raise RuntimeError("TfStage: Input tensor size mismatch")
        self.model = model

    def configure(self) -> None:
        app = self.app
        verbose = self.config.verbose
        self.lores_info = app.lores_stream if app is not None else None
        if self.lores_info is not None:
            if verbose:
                logger.info(
                    "TfStage: Low resolution stream is %dx%d",
                    self.lores_info.width, self.lores_info.height,
                )
            if self.tf_w > self.lores_info.width or self.tf_h > self.lores_info.height:
                logger.error("TfStage: WARNING: Low resolution image too small")
                self.lores_info = None
        elif verbose:
            logger.info("TfStage: no low resolution stream")

        self.main_stream_info = app.main_stream if app is not None else None
        if self.main_stream_info is not None:
            if verbose:
                logger.info(
                    "TfStage: Main stream is %dx%d",
                    self.main_stream_info.width, self.main_stream_info.height,
                )
        elif verbose:
            logger.info("TfStage: No main stream")

        self.check_configuration()

    def process(self, request: CompletedRequest) -> bool:
        if self.lores_info is None:
            return False

        with self._future_lock:
            rate = self.config.refresh_rate
            if (
                rate
                and request.sequence % rate == 0
                and (self._future is None or self._future.done())
            ):
                # Work on a private copy so the camera buffer can be recycled.
                self._lores_copy = bytes(request.buffers["lores"])
                if self._executor is None:
                    self._executor = ThreadPoolExecutor(
                        max_workers=1, thread_name_prefix="tf-inference"
                    )
                self._future = self._executor.submit(self._timed_inference)

        with self._output_lock:
            self.apply_results(request)
        return False

    def _timed_inference(self) -> None:
        time_taken = execution_time(self.run_inference)
        if self.config.verbose:
            logger.info("TfStage: Inference time: %.0f us", time_taken)

    def run_inference(self) -> None:
        """Convert the latest lores copy to RGB, run the model and interpret it."""
        if self.model is None or self.lores_info is None:
            raise RuntimeError("TfStage: not configured")
        tf_info = StreamInfo(width=self.tf_w, height=self.tf_h, stride=self.tf_w * 3)
        rgb = yuv420_to_rgb(self._lores_copy, self.lores_info, tf_info)
        rgb = rgb.reshape(1, self.tf_h, self.tf_w, 3)

        if self.model.input_type is TensorType.UINT8:
            tensor = rgb
        else:
            cfg = self.config
            tensor = (
                (rgb.astype(np.float32) - np.float32(cfg.normalisation_offset))
                / np.float32(cfg.normalisation_scale)
            ).astype(np.float32)

        try:
            outputs = self.model.invoke(tensor)
        except Exception as exc:
            raise RuntimeError("TfStage: Failed to invoke TFLite") from exc
        if outputs is None:
            raise RuntimeError("TfStage: Failed to invoke TFLite")

        with self._output_lock:
            self.interpret_outputs([np.asarray(o) for o in outputs])

    def stop(self) -> None:
        with self._future_lock:
            future = self._future
        if future is not None:
            exc = future.exception()
            if exc is not None:
                logger.error("TfStage: inference failed: %s", exc)
        super().stop()

    def teardown(self) -> None:
        self.stop()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def read_extras(self, params: Mapping[str, Any]) -> None:
        """Read stage-specific parameters; may also check the model."""

    def check_configuration(self) -> None:
        """Check the stream configuration, raising if unusable."""

    def interpret_outputs(self, outputs: Sequence[np.ndarray]) -> None:
        """Turn model outputs into results; runs on the inference thread."""

    def apply_results(self, request: CompletedRequest) -> None:
        """Attach the latest results to a request; runs synchronously."""