"""Post-processing stage base class, shared types, helpers and registry."""

from __future__ import annotations

import abc
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

import numpy as np


@dataclass
class StreamInfo:
    """Geometry and format of an image stream."""

    width: int = 0
    height: int = 0
    stride: int = 0
    pixel_format: str = "YUV420"
    colour_space: Optional[str] = None


@dataclass
class StreamConfiguration:
    """Configuration requested for a stream."""

    pixel_format: str = "YUV420"
    buffer_count: int = 0


@dataclass
class CompletedRequest:
    """A captured frame: buffers keyed by stream role ("main", "lores", "still")."""

    sequence: int = 0
    buffers: dict[str, bytearray] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    post_process_metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class CameraContext:
    """The streams and options a stage can see from the running application."""

    main_stream: Optional[StreamInfo] = None
    lores_stream: Optional[StreamInfo] = None
    still_stream: Optional[StreamInfo] = None
    options: Any = None
    camera_model: str = ""


class PostProcessingStage(abc.ABC):
    """Base class for stages that inspect or modify completed requests."""

    name: str = ""

    def __init__(self, app: Optional[CameraContext] = None):
        self.app = app
        self.running = False

    def read(self, params: Mapping[str, Any]) -> None:
        """Read the stage parameters."""

    def adjust_config(self, use_case: str, config: StreamConfiguration) -> None:
        """Adjust a stream configuration before the camera is configured."""

    def configure(self) -> None:
        """Called once the camera streams are known."""

    def start(self) -> None:
        """Called when the camera starts."""
        self.running = True

    @abc.abstractmethod
    def process(self, request: CompletedRequest) -> bool:
        """Process a request; return True if it is to be dropped."""

    def stop(self) -> None:
        """Called when the camera stops."""
        self.running = False

    def teardown(self) -> None:
        """Called when the camera configuration is released."""


def yuv420_to_rgb(src, src_info: StreamInfo, dst_info: StreamInfo) -> np.ndarray:
    """Convert a YUV420 image to packed RGB, cropping from the centre.

    Returns a flat uint8 array of dst_info.height * dst_info.stride bytes.
    """
    if src_info.width < dst_info.width or src_info.height < dst_info.height:
        raise ValueError("yuv420_to_rgb: destination larger than source")
    if dst_info.stride < dst_info.width * 3:
        raise ValueError("yuv420_to_rgb: destination stride too small")

    if isinstance(src, np.ndarray):
        data = src.astype(np.uint8, copy=False).reshape(-1)
    else:
        data = np.frombuffer(src, dtype=np.uint8)

    off_x = ((src_info.width - dst_info.width) // 2) & ~1
    off_y = ((src_info.height - dst_info.height) // 2) & ~1
    stride, height = src_info.stride, src_info.height
    y_size = height * stride
    uv_stride = stride // 2
    uv_size = (height // 2) * uv_stride

    y_plane = data[:y_size].reshape(height, stride)
    u_plane = data[y_size:y_size + uv_size].reshape(height // 2, uv_stride)
    v_plane = data[y_size + uv_size:y_size + 2 * uv_size].reshape(height // 2, uv_stride)

    rows = np.arange(dst_info.height) + off_y
    cols = np.arange(dst_info.width)
    chroma_rows = rows // 2
    chroma_cols = off_x // 2 + cols // 2

    y = y_plane[np.ix_(rows, cols + off_x)].astype(np.float64)
    u = u_plane[np.ix_(chroma_rows, chroma_cols)].astype(np.float64) - 128
    v = v_plane[np.ix_(chroma_rows, chroma_cols)].astype(np.float64) - 128

    r = np.trunc(y + 1.402 * v)
    g = np.trunc(y - 0.345 * u - 0.714 * v)
    b = np.trunc(y + 1.771 * u)
    rgb = np.clip(np.stack([r, g, b], axis=-1), 0, 255).astype(np.uint8)

    out = np.zeros((dst_info.height, dst_info.stride), dtype=np.uint8)
    out[:, : dst_info.width * 3] = rgb.reshape(dst_info.height, dst_info.width * 3)
    return out.reshape(-1)


def execution_time(f: Callable[..., Any], *args: Any, **kwargs: Any) -> float:
    """Run f and return the time it took, in microseconds."""
    t1 = time.perf_counter()
    f(*args, **kwargs)
    t2 = time.perf_counter()
    return (t2 - t1) * 1e6


StageFactory = Callable[[Optional[CameraContext]], PostProcessingStage]

_STAGES: dict[str, StageFactory] = {}


def register_stage(name: str) -> Callable[[StageFactory], StageFactory]:
    """Decorator registering a stage factory (usually the class) under name."""

    def decorator(factory: StageFactory) -> StageFactory:
        _STAGES[name] = factory
        return factory

    return decorator


def get_post_processing_stages() -> Mapping[str, StageFactory]:
    """Read-only view of the registered stages."""
    return MappingProxyType(_STAGES)


def create_stage(name: str, app: Optional[CameraContext] = None) -> PostProcessingStage:
    """Create a registered stage by name."""
    try:
        factory = _STAGES[name]
    except KeyError:
        raise KeyError(f"unknown post-processing stage {name!r}") from None
    return factory(app)