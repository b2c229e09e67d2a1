"""Preview windows that receive finished frames and hand their buffers back."""

from __future__ import annotations

import abc
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

import numpy as np

logger = logging.getLogger(__name__)

DoneCallback = Callable[[int], None]

DEFAULT_RGB_WIDTH = 512
DEFAULT_RGB_HEIGHT = 384

# Rows of (Y, V->R, U->G, V->G, U->B) coefficients and the Y offset.
_JPEG = (1.0, 1.402, -0.344, -0.714, 1.772, 0)
_SMPTE170M = (1.164, 1.596, -0.392, -0.813, 2.017, 16)
_REC709 = (1.164, 1.793, -0.213, -0.533, 2.112, 16)


@dataclass
class PreviewOptions:
    """Options that choose and place the preview window."""

    nopreview: bool = False
    qt_preview: bool = False
    fullscreen: bool = False
    preview_x: int = 0
    preview_y: int = 0
    preview_width: int = 0
    preview_height: int = 0


class Preview(abc.ABC):
    """A window showing frames; buffers are returned through the done callback."""

    def __init__(self, options: PreviewOptions):
        self.options = options
        self._done_callback: Optional[DoneCallback] = None
        self.last_fd: Optional[int] = None

    def set_done_callback(self, callback: DoneCallback) -> None:
        """Set the function called with a buffer's fd once it can be recycled."""
        self._done_callback = callback

    def _done(self, fd: int) -> None:
        if self._done_callback is not None:
            self._done_callback(fd)

    def set_info_text(self, text: str) -> None:
        """Show some status text, if the window supports it."""

    @abc.abstractmethod
    def show(self, fd: int, span, info) -> None:
        """Display a YUV420 buffer."""

    def reset(self) -> None:
        """Forget current buffers, ready to show new ones."""
        self.last_fd = None

    def quit(self) -> bool:
        """Whether the window has been shut down."""
        return False

    @abc.abstractmethod
    def max_image_size(self) -> tuple[int, int]:
        """Largest (width, height) allowed; zeroes mean no limit."""


class NullPreview(Preview):
    """Shows nothing and returns every buffer at once."""

    def __init__(self, options: PreviewOptions):
        super().__init__(options)
        logger.debug("Running without preview window")

    def show(self, fd: int, span, info) -> None:
        self.last_fd = fd
        self._done(fd)

    def max_image_size(self) -> tuple[int, int]:
        return 0, 0

    def set_info_text(self, text: str) -> None:
        logger.info("%s", text)


def _colour_coefficients(colour_space: Any) -> tuple:
    if colour_space is None:
        key = ""
    else:
        key = str(getattr(colour_space, "name", colour_space)).lower()
    if key == "smpte170m":
        return _SMPTE170M
    if key == "rec709":
        return _REC709
    if key != "sycc":
        logger.warning("RgbPreview: unexpected colour space %s", colour_space)
    return _JPEG


def resample_yuv420_to_rgb(span, info, width: int, height: int) -> np.ndarray:
    """Nearest-neighbour resample of a YUV420 image to an RGB array (height, width, 3).

    Adjacent output pixel pairs share their U and V samples.
    """
    if width <= 0 or height <= 0 or width % 2:
        raise ValueError("resample_yuv420_to_rgb: width must be even and sizes positive")
    coeff_y, coeff_vr, coeff_ug, coeff_vg, coeff_ub, offset_y = (
        _colour_coefficients(getattr(info, "colour_space", None))
    )
    data = np.frombuffer(span, dtype=np.uint8)
    stride, src_h = info.stride, info.height
    half_stride = stride >> 1

    x_step = (info.width << 16) // width
    y_step = (info.height << 16) // height
    rows = (np.arange(height, dtype=np.int64) * y_step) >> 16
    pos0 = (x_step >> 1) + np.arange(width // 2, dtype=np.int64) * 2 * x_step
    pos1 = pos0 + x_step

    y_base = (rows * stride)[:, None]
    u_base = (((4 * src_h + rows) >> 1) * half_stride)[:, None]
    v_base = (((5 * src_h + rows) >> 1) * half_stride)[:, None]

    y0 = data[y_base + (pos0 >> 16)[None, :]].astype(np.int64) - offset_y
    y1 = data[y_base + (pos1 >> 16)[None, :]].astype(np.int64) - offset_y
    u = data[u_base + (pos1 >> 17)[None, :]].astype(np.int64) - 128
    v = data[v_base + (pos1 >> 17)[None, :]].astype(np.int64) - 128

    cy, cvr, cug, cvg, cub = (np.float32(c) for c in (coeff_y, coeff_vr, coeff_ug, coeff_vg, coeff_ub))
    y0f, y1f = y0.astype(np.float32), y1.astype(np.float32)
    uf, vf = u.astype(np.float32), v.astype(np.float32)

    def channel(values: np.ndarray) -> np.ndarray:
        return np.clip(np.trunc(values).astype(np.int64), 0, 255).astype(np.uint8)

    out = np.empty((height, width, 3), dtype=np.uint8)
    for col, yf in ((0, y0f), (1, y1f)):
        out[:, col::2, 0] = channel(cy * yf + cvr * vf)
        out[:, col::2, 1] = channel(cy * yf + cug * uf + cvg * vf)
        out[:, col::2, 2] = channel(cy * yf + cub * uf)
    return out


class RgbPreview(Preview):
    """Keeps a small RGB rendering of the latest frame for display by the caller."""

    def __init__(self, options: PreviewOptions):
        super().__init__(options)
        width, height = options.preview_width, options.preview_height
        if width % 2 or height % 2:
            raise ValueError("RgbPreview: expect even dimensions")
        # This preview is expensive, so keep it small by default.
        if width == 0 or height == 0:
            width, height = DEFAULT_RGB_WIDTH, DEFAULT_RGB_HEIGHT
        self.width = width
        self.height = height
        self.position = (options.preview_x, options.preview_y)
        self.title = ""
        self.image = np.zeros((height, width, 3), dtype=np.uint8)
        self._lock = threading.Lock()
        self._closed = False
        logger.debug("Made RGB preview")

    def set_info_text(self, text: str) -> None:
        self.title = text

    def show(self, fd: int, span, info) -> None:
        rgb = resample_yuv420_to_rgb(span, info, self.width, self.height)
        with self._lock:
            self.image[...] = rgb
        self.last_fd = fd
        self._done(fd)

    def quit(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Mark the window as closed by the user."""
        self._closed = True

    def max_image_size(self) -> tuple[int, int]:
        return 0, 0


def make_preview(options: PreviewOptions) -> Preview:
    """Create the preview window the options ask for, falling back to none."""
    if options.nopreview:
        return NullPreview(options)
    if options.qt_preview:
        preview = RgbPreview(options)
        logger.info("Made RGB preview window")
        return preview
    logger.info("Preview window unavailable")
    return NullPreview(options)