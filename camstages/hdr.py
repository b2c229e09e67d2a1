"""HDR and dynamic range compression by accumulating and tonemapping YUV420 frames."""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional

import numpy as np

from camstages.histogram import Histogram
from camstages.pwl import Pwl
from camstages.stage import (
    CameraContext,
    CompletedRequest,
    PostProcessingStage,
    StreamConfiguration,
    StreamInfo,
    register_stage,
)

logger = logging.getLogger(__name__)

_MAX_FILENAME = 127


@dataclass
class LpFilterConfig:
    """Low pass filter settings."""

    strength: float = 0.0  # smaller values smooth more
    threshold: Pwl = field(default_factory=Pwl)  # pixel differences that get smoothed over


@dataclass
class TonemapPoint:
    """Where to move an inter-quantile mean of the histogram, with gain limits."""

    q: float
    width: float
    target: float
    max_up: float
    max_down: float

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> TonemapPoint:
        return cls(
            q=float(params["q"]),
            width=float(params["width"]),
            target=float(params["target"]),
            max_up=float(params["max_up"]),
            max_down=float(params["max_down"]),
        )


@dataclass
class GlobalTonemapConfig:
    """Global tone curve settings; strength 1 follows the targets, 0 ignores them."""

    points: list[TonemapPoint] = field(default_factory=list)
    strength: float = 1.0


@dataclass
class LocalTonemapConfig:
    """Gains applied to local contrast, and a colour saturation tweak."""

    pos_strength: Pwl = field(default_factory=Pwl)
    neg_strength: Pwl = field(default_factory=Pwl)
    colour_scale: float = 1.0


@dataclass
class HdrConfig:
    """Complete HDR stage configuration."""

    num_frames: int = 1
    lp_filter: LpFilterConfig = field(default_factory=LpFilterConfig)
    global_tonemap: GlobalTonemapConfig = field(default_factory=GlobalTonemapConfig)
    local_tonemap: LocalTonemapConfig = field(default_factory=LocalTonemapConfig)
    jpeg_filename: str = ""

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> HdrConfig:
        threshold = Pwl()
        threshold.read(params["lp_filter_threshold"])
        lp_filter = LpFilterConfig(strength=float(params["lp_filter_strength"]), threshold=threshold)

        global_tonemap = GlobalTonemapConfig(
            points=[TonemapPoint.from_params(p) for p in params["global_tonemap_points"]],
            strength=float(params["global_tonemap_strength"]),
        )

        pos_strength, neg_strength = Pwl(), Pwl()
        pos_strength.read(params["local_pos_strength"])
        neg_strength.read(params["local_neg_strength"])
        strength = float(params["local_tonemap_strength"])
        colour_scale = float(params["local_colour_scale"])

        # A strength of 1 gives the value in the function; a strength of 0 gives 1.
        local_tonemap = LocalTonemapConfig(colour_scale=colour_scale)
        pos_strength.map(
            lambda x, y: local_tonemap.pos_strength.append(x, y * strength + 1 - strength)
        )
        neg_strength.map(
            lambda x, y: local_tonemap.neg_strength.append(x, y * strength + 1 - strength)
        )

        return cls(
            num_frames=int(params["num_frames"]),
            lp_filter=lp_filter,
            global_tonemap=global_tonemap,
            local_tonemap=local_tonemap,
            jpeg_filename=str(params.get("jpeg_filename", "")),
        )


def _byte_view(buf) -> np.ndarray:
    return np.frombuffer(buf, dtype=np.uint8)


def _iir_pass(
    pixels: list[int],
    threshold: list[float],
    weights: list[float],
    strength: float,
    offsets: Iterable[int],
    neighbours: tuple[int, ...],
) -> tuple[list[float], list[float]]:
    """One direction of the edge-preserving IIR low pass filter."""
    values = [0.0] * len(pixels)
    weight_sums = [0.0] * len(pixels)
    num_weights = len(weights)
    for off in offsets:
        pixel = pixels[off]
        scale = 10 / threshold[pixel]
        ps = [int(values[off + d]) for d in neighbours]
        idxs = [int(abs(p - pixel) * scale) for p in ps]
        wts = [weights[i] if i < num_weights else 0.0 for i in idxs]
        pixel_wt_sum = pixel * strength + sum(w * p for w, p in zip(wts, ps))
        wt_sum = strength + sum(wts)
        values[off] = pixel_wt_sum / wt_sum
        weight_sums[off] = wt_sum
    return values, weight_sums


class HdrImage:
    """A 16-bit YUV420 accumulator image."""

    def __init__(self, width: int = 0, height: int = 0, num_pixels: int = 0):
        self.width = width
        self.height = height
        self.pixels = np.zeros(num_pixels, dtype=np.int16)
        self.dynamic_range = 0  # one more than the maximum pixel value

    def clear(self) -> None:
        self.pixels[:] = 0

    def accumulate(self, src, stride: int) -> None:
        """Add a YUV420 frame with the given stride to this image."""
        w, h = self.width, self.height
        data = _byte_view(src)
        stride2, width2 = stride // 2, w // 2
        y_plane = data[: stride * h].reshape(h, stride)[:, :w]
        uv_start = stride * h
        uv_plane = data[uv_start : uv_start + stride2 * h].reshape(h, stride2)[:, :width2]
        wh = w * h
        self.pixels[:wh] += y_plane.reshape(-1).astype(np.int16)
        self.pixels[wh : wh + width2 * h] += (uv_plane.astype(np.int16) - 128).reshape(-1)
        self.dynamic_range += 256

    def lp_filter(self, config: LpFilterConfig) -> HdrImage:
        """Return a smoothed, roughly edge-preserving copy of the Y plane."""
        w, h = self.width, self.height
        wh = w * h
        threshold = config.threshold.generate_lut()
        weights = [math.exp(-d * d / 100.0) for d in range(31)]
        size = 1
        pixels = self.pixels[:wh].astype(np.int64).tolist()

        fwd_offsets = (y * w + x for y in range(size, h) for x in range(size, w))
        fwd, fwd_sums = _iir_pass(
            pixels, threshold, weights, config.strength, fwd_offsets, (-w - 1, -w, -w + 1, -1)
        )
        rev_offsets = (
            y * w + x for y in range(h - 1 - size, -1, -1) for x in range(w - 1 - size, -1, -1)
        )
        rev, rev_sums = _iir_pass(
            pixels, threshold, weights, config.strength, rev_offsets, (w + 1, w, w - 1, 1)
        )

        fwd_a, fwd_s = np.asarray(fwd), np.asarray(fwd_sums)
        rev_a, rev_s = np.asarray(rev), np.asarray(rev_sums)
        num = fwd_a * fwd_s + rev_a * rev_s
        den = fwd_s + rev_s
        combined = np.divide(num, den, out=np.zeros(wh), where=den != 0)

        out = HdrImage(w, h, wh)
        out.dynamic_range = self.dynamic_range
        out.pixels[:] = np.trunc(combined).astype(np.int16)
        return out

    def calculate_histogram(self) -> Histogram:
        """Histogram of the Y plane with one bin per possible value."""
        y = self.pixels[: self.width * self.height].astype(np.int64)
        if y.size and (y.min() < 0 or y.max() >= self.dynamic_range):
            raise ValueError("HdrImage: pixel value outside the dynamic range")
        return Histogram(np.bincount(y, minlength=self.dynamic_range).tolist())

    def create_tonemap(self, config: GlobalTonemapConfig) -> Pwl:
        """Build the global tone curve from the configured quantile targets."""
        maxval = self.dynamic_range - 1
        histogram = self.calculate_histogram()
        tonemap = Pwl()
        tonemap.append(0, 0)
        for tp in config.points:
            iqm = histogram.inter_quantile_mean(tp.q - tp.width, tp.q + tp.width)
            target = tp.target * 4096
            target = min(max(target, iqm * tp.max_down), iqm * tp.max_up)
            target = min(max(target, 0.0), 4095.0)
            target = iqm + (target - iqm) * config.strength
            tonemap.append(iqm, target)
        tonemap.append(maxval, maxval)
        return tonemap

    def tonemap(self, lp: HdrImage, config: HdrConfig) -> None:
        """Tonemap the low pass image and add back the high pass detail."""
        w, h = self.width, self.height
        wh = w * h
        tonemap_lut = np.trunc(np.asarray(self.create_tonemap(config.global_tonemap).generate_lut()))
        tonemap_lut = tonemap_lut.astype(np.int64)
        pos_lut = np.asarray(config.local_tonemap.pos_strength.generate_lut())
        neg_lut = np.asarray(config.local_tonemap.neg_strength.generate_lut())
        colour_scale = config.local_tonemap.colour_scale
        maxval = self.dynamic_range - 1

        y = self.pixels[:wh].astype(np.int64)
        lp_y = lp.pixels[:wh].astype(np.int64)
        hp = y - lp_y
        strength = np.where(hp > 0, pos_lut[lp_y], neg_lut[lp_y])
        final = np.clip(tonemap_lut[lp_y] + np.trunc(strength * hp).astype(np.int64), 0, maxval)
        self.pixels[:wh] = final.astype(np.int16)

        final_sub = final.reshape(h, w)[::2, ::2]
        lp_sub = lp_y.reshape(h, w)[::2, ::2]
        f = (final_sub + 1) / (lp_sub + 1).astype(np.float64)
        # Values are non-linear so colours can come out slightly saturated.
        f = (f - 1) * colour_scale + 1

        rows = np.arange(0, h, 2)
        cols = np.arange(final_sub.shape[1])
        u_idx = wh + ((rows * w) // 4)[:, None] + cols[None, :]
        v_idx = u_idx + wh // 4
        self.pixels[u_idx] = np.trunc(self.pixels[u_idx] * f).astype(np.int16)
        self.pixels[v_idx] = np.trunc(self.pixels[v_idx] * f).astype(np.int16)

    def extract(self, dest, stride: int) -> None:
        """Write the image back out as 8-bit YUV420 with the given stride."""
        ratio = self.dynamic_range // 256
        if ratio == 0:
            raise ValueError("HdrImage: dynamic range too small to extract")
        w, h = self.width, self.height
        wh = w * h
        view = _byte_view(dest)

        y = np.clip(np.trunc(self.pixels[:wh] / ratio), 0, 255).astype(np.uint8)
        view[: stride * h].reshape(h, stride)[:, :w] = y.reshape(h, w)

        hw, hh, s = w // 2, h // 2, stride // 2
        u_src = self.pixels[wh : wh + hw * hh].reshape(hh, hw)
        v_start_src = wh + wh // 4
        v_src = self.pixels[v_start_src : v_start_src + hw * hh].reshape(hh, hw)
        u_start = stride * h
        v_start = u_start + stride * h // 4
        for src_plane, start in ((u_src, u_start), (v_src, v_start)):
            values = np.trunc(src_plane / ratio).astype(np.int64) + 128
            view[start : start + s * hh].reshape(hh, s)[:, :hw] = np.clip(values, 0, 255)

    def scale(self, factor: float) -> None:
        """Multiply every pixel and the dynamic range by factor."""
        self.pixels[:] = np.trunc(self.pixels * factor).astype(np.int16)
        self.dynamic_range = int(self.dynamic_range * factor)


FrameSaver = Callable[[bytes, StreamInfo, dict, str], None]


def _format_filename(pattern: str, frame_num: int) -> str:
    try:
        name = pattern % frame_num
    except TypeError:
        name = pattern
    return name[:_MAX_FILENAME]


@register_stage("hdr")
class HdrStage(PostProcessingStage):
    """Accumulates several still frames and writes out an HDR result."""

    name = "hdr"

    def __init__(self, app: Optional[CameraContext] = None, frame_saver: Optional[FrameSaver] = None):
        super().__init__(app)
        self.frame_saver = frame_saver
        self.config: Optional[HdrConfig] = None
        self._info: Optional[StreamInfo] = None
        self._frame_num = 0
        self._lock = threading.Lock()
        self._acc = HdrImage()
        self._lp = HdrImage()

    def read(self, params: Mapping[str, Any]) -> None:
        self.config = HdrConfig.from_params(params)

    def adjust_config(self, use_case: str, config: StreamConfiguration) -> None:
        # Several full resolution frames are captured quickly, which needs buffers.
        if use_case == "still" and config.buffer_count < 3:
            config.buffer_count = 3

    def configure(self) -> None:
        self._info = self.app.still_stream if self.app is not None else None
        if self._info is None:
            return
        if self._info.pixel_format != "YUV420":
            raise RuntimeError("HdrStage: only supports YUV420")
        w, h = self._info.width, self._info.height
        self._frame_num = 0
        self._acc = HdrImage(w, h, w * h * 3 // 2)
        self._acc.clear()
        self._lp = HdrImage(w, h, w * h)

    def process(self, request: CompletedRequest) -> bool:
        if self._info is None:
            return False
        if self.config is None:
            raise RuntimeError("HdrStage: parameters have not been read")
        config, info = self.config, self._info

        with self._lock:
            # Once the HDR frame is done, later frames pass through unmodified.
            if self._frame_num >= config.num_frames:
                return False

            buffer = request.buffers["still"]
            logger.debug("Accumulating frame %d", self._frame_num)
            self._acc.accumulate(buffer, info.stride)

            if config.jpeg_filename:
                filename = _format_filename(config.jpeg_filename, self._frame_num)
                if self.frame_saver is not None:
                    self.frame_saver(bytes(buffer), info, request.metadata, filename)
                else:
                    logger.warning("No still options - unable to save JPEG")

            self._frame_num += 1
            if self._frame_num < config.num_frames:
                return True

            logger.debug("Doing HDR processing...")
            self._acc.scale(16.0 / config.num_frames)
            self._lp = self._acc.lp_filter(config.lp_filter)
            self._acc.tonemap(self._lp, config)
            self._acc.extract(buffer, info.stride)
            logger.debug("HDR done!")
            return False