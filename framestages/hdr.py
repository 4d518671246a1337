"""HDR and dynamic range compression by accumulating several YUV420 frames."""

from __future__ import annotations

import bisect
import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from framestages.histogram import Histogram

log = logging.getLogger(__name__)

_EPS = 1e-6
_INT16_MIN = -32768
_INT16_MAX = 32767


def _as_bytes_array(frame) -> np.ndarray:
    if isinstance(frame, np.ndarray):
        return frame.astype(np.uint8, copy=False).ravel()
    return np.frombuffer(frame, dtype=np.uint8)


def _to_int16(values: np.ndarray) -> np.ndarray:
    return np.clip(np.trunc(values), _INT16_MIN, _INT16_MAX).astype(np.int16)


def _lookup(lut: np.ndarray, index: np.ndarray) -> np.ndarray:
    if lut.size == 0:
        raise ValueError("lookup table is empty")
    return lut[np.clip(index, 0, lut.size - 1)]


class ToneCurve:
    """Piecewise linear function defined by points with increasing x."""

    def __init__(self, points: Iterable[Tuple[float, float]] = ()):
        self.points: List[Tuple[float, float]] = []
        for x, y in points:
            self.append(x, y)

    def append(self, x: float, y: float) -> None:
        """Add a point; points not to the right of the last one are ignored."""
        if not self.points or self.points[-1][0] + _EPS < x:
            self.points.append((float(x), float(y)))

    @classmethod
    def from_list(cls, values: Sequence[float]) -> "ToneCurve":
        """Build a curve from a flat list of alternating x and y values."""
        values = [float(v) for v in values]
        if len(values) % 2:
            raise ValueError("tone curve needs an even number of values")
        return cls(zip(values[0::2], values[1::2]))

    def _eval(self, x: float) -> float:
        pts = self.points
        if not pts:
            raise ValueError("tone curve has no points")
        if len(pts) == 1:
            return pts[0][1]
        xs = [p[0] for p in pts]
        i = min(max(bisect.bisect_right(xs, x) - 1, 0), len(pts) - 2)
        (x0, y0), (x1, y1) = pts[i], pts[i + 1]
        return (x - x0) * (y1 - y0) / (x1 - x0) + y0

    def lut(self, as_int: bool = False) -> list:
        """Values of the curve at the integers 0 up to the end of its domain."""
        if not self.points:
            raise ValueError("tone curve has no points")
        start = int(self.points[0][0])
        end = int(self.points[-1][0]) + 1
        table: list = [0 if as_int else 0.0] * max(end, 0)
        for x in range(max(start, 0), end):
            value = self._eval(x)
            table[x] = int(value) if as_int else value
        return table


@dataclass
class TonemapPoint:
    """Target in the dynamic range for an inter-quantile mean of the histogram."""

    q: float
    width: float
    target: float
    max_up: float
    max_down: float

    @classmethod
    def from_dict(cls, params: Mapping[str, Any]) -> "TonemapPoint":
        return cls(
            q=float(params["q"]),
            width=float(params["width"]),
            target=float(params["target"]),
            max_up=float(params["max_up"]),
            max_down=float(params["max_down"]),
        )


@dataclass
class LpFilterConfig:
    strength: float
    threshold: ToneCurve


@dataclass
class GlobalTonemapConfig:
    points: List[TonemapPoint] = field(default_factory=list)
    strength: float = 1.0


@dataclass
class LocalTonemapConfig:
    pos_strength: ToneCurve
    neg_strength: ToneCurve
    colour_scale: float


@dataclass
class HdrConfig:
    num_frames: int
    lp_filter: LpFilterConfig
    global_tonemap: GlobalTonemapConfig
    local_tonemap: LocalTonemapConfig
    jpeg_filename: str = ""

    @classmethod
    def from_dict(cls, params: Mapping[str, Any]) -> "HdrConfig":
        num_frames = int(params["num_frames"])
        if num_frames < 0:
            raise ValueError("num_frames must not be negative")
        lp_filter = LpFilterConfig(
            strength=float(params["lp_filter_strength"]),
            threshold=ToneCurve.from_list(params["lp_filter_threshold"]),
        )
        global_tonemap = GlobalTonemapConfig(
            points=[TonemapPoint.from_dict(p) for p in params["global_tonemap_points"]],
            strength=float(params["global_tonemap_strength"]),
        )
        pos = ToneCurve.from_list(params["local_pos_strength"])
        neg = ToneCurve.from_list(params["local_neg_strength"])
        strength = float(params["local_tonemap_strength"])
        colour_scale = float(params["local_colour_scale"])

        # Strength 1 keeps the curve's value; strength 0 gives 1 everywhere.
        def blend(curve: ToneCurve) -> ToneCurve:
            return ToneCurve((x, y * strength + 1 - strength) for x, y in curve.points)

        local_tonemap = LocalTonemapConfig(blend(pos), blend(neg), colour_scale)
        return cls(
            num_frames=num_frames,
            lp_filter=lp_filter,
            global_tonemap=global_tonemap,
            local_tonemap=local_tonemap,
            jpeg_filename=str(params.get("jpeg_filename", "")),
        )


def _iir_step(pixel: int, neighbours, scale: float, strength: float, weights: List[float]):
    pixel_sum = pixel * strength
    wt_sum = strength
    for value in neighbours:
        p = int(value)
        d = abs(p - pixel)
        v = d * scale if d else 0.0
        wt = weights[int(v)] if v < len(weights) else 0.0
        pixel_sum += wt * p
        wt_sum += wt
    return pixel_sum / wt_sum, wt_sum


class HdrImage:
    """Accumulator image: Y plane followed by the U and V planes, as int16."""

    def __init__(self, width: int = 0, height: int = 0, num_pixels: int = 0):
        self.width = width
        self.height = height
        self.pixels = np.zeros(num_pixels, dtype=np.int16)
        self.dynamic_range = 0

    def clear(self) -> None:
        self.pixels[:] = 0

    def accumulate(self, frame, stride: int) -> None:
        """Add a YUV420 frame with the given Y stride to the accumulator."""
        data = _as_bytes_array(frame)
        w, h = self.width, self.height
        w2, s2 = w // 2, stride // 2
        n = w * h
        y_idx = np.arange(h)[:, None] * stride + np.arange(w)[None, :]
        c_idx = stride * h + np.arange(h)[:, None] * s2 + np.arange(w2)[None, :]
        if (y_idx.size and int(y_idx.max()) >= data.size) or (c_idx.size and int(c_idx.max()) >= data.size):
            raise ValueError("frame is too small for the image dimensions")
        self.pixels[:n] += data[y_idx].ravel().astype(np.int16)
        chroma = data[c_idx].ravel().astype(np.int16) - 128
        self.pixels[n:n + chroma.size] += chroma
        self.dynamic_range += 256

    def lp_filter(self, config: LpFilterConfig) -> "HdrImage":
        """Edge-preserving low pass of the Y plane from a forward and reverse IIR pass."""
        if config.strength <= 0:
            raise ValueError("low pass filter strength must be positive")
        w, h = self.width, self.height
        n = w * h
        src = self.pixels[:n].tolist()
        threshold = config.threshold.lut(False)
        if not threshold:
            raise ValueError("low pass threshold curve is empty")
        last = len(threshold) - 1
        weights = [math.exp(-d * d / 100.0) for d in range(31)]
        strength = config.strength

        def scale_for(pixel: int) -> float:
            t = threshold[min(max(pixel, 0), last)]
            return 10 / t if t > 0 else math.inf

        fwd = [0.0] * n
        fws = [0.0] * n
        for y in range(1, h):
            for x in range(1, w):
                off = y * w + x
                pixel = src[off]
                fwd[off], fws[off] = _iir_step(
                    pixel, (fwd[off - w - 1], fwd[off - w], fwd[off - w + 1], fwd[off - 1]),
                    scale_for(pixel), strength, weights,
                )

        rev = [0.0] * n
        rws = [0.0] * n
        for y in range(h - 2, -1, -1):
            for x in range(w - 2, -1, -1):
                off = y * w + x
                pixel = src[off]
                rev[off], rws[off] = _iir_step(
                    pixel, (rev[off + w + 1], rev[off + w], rev[off + w - 1], rev[off + 1]),
                    scale_for(pixel), strength, weights,
                )

        combined = []
        for fp, fw, rp, rw in zip(fwd, fws, rev, rws):
            total = fw + rw
            combined.append((fp * fw + rp * rw) / total if total else 0.0)

        out = HdrImage(w, h, n)
        out.dynamic_range = self.dynamic_range
        if n:
            out.pixels[:] = _to_int16(np.array(combined, dtype=np.float64))
        return out

    def histogram(self) -> Histogram:
        """Histogram of the Y plane over the full dynamic range."""
        if self.dynamic_range <= 0:
            raise ValueError("image has no dynamic range")
        n = self.width * self.height
        values = np.clip(self.pixels[:n].astype(np.int64), 0, self.dynamic_range - 1)
        return Histogram(np.bincount(values, minlength=self.dynamic_range).tolist())

    def create_tonemap(self, config: GlobalTonemapConfig) -> ToneCurve:
        """Global tone curve moving each configured quantile towards its target."""
        maxval = self.dynamic_range - 1
        hist = self.histogram()
        curve = ToneCurve()
        curve.append(0, 0)
        for tp in config.points:
            iqm = hist.inter_quantile_mean(tp.q - tp.width, tp.q + tp.width)
            target = tp.target * 4096
            target = min(max(target, iqm * tp.max_down), iqm * tp.max_up)
            target = min(max(target, 0.0), 4095.0)
            target = iqm + (target - iqm) * config.strength
            curve.append(iqm, target)
        curve.append(maxval, maxval)
        return curve

    def tonemap(self, lp: "HdrImage", config: HdrConfig) -> None:
        """Tone map the low pass image and add back the scaled high pass detail."""
        tonemap_lut = np.array(self.create_tonemap(config.global_tonemap).lut(True), dtype=np.int64)
        pos_lut = np.array(config.local_tonemap.pos_strength.lut(False), dtype=np.float64)
        neg_lut = np.array(config.local_tonemap.neg_strength.lut(False), dtype=np.float64)
        colour_scale = config.local_tonemap.colour_scale
        maxval = self.dynamic_range - 1
        w, h = self.width, self.height
        n = w * h

        y_lp = lp.pixels[:n].astype(np.int64)
        y_hp = self.pixels[:n].astype(np.int64) - y_lp
        mapped = _lookup(tonemap_lut, y_lp)
        strength = np.where(y_hp > 0, _lookup(pos_lut, y_lp), _lookup(neg_lut, y_lp))
        final = np.clip(mapped + np.trunc(strength * y_hp).astype(np.int64), 0, maxval)
        self.pixels[:n] = _to_int16(final)

        final2d = final.reshape(h, w)
        lp2d = y_lp.reshape(h, w)
        for y in range(0, h, 2):
            f = (final2d[y, 0::2] + 1) / (lp2d[y, 0::2] + 1).astype(np.float64)
            # Values are non-linear so colours can come out slightly saturated.
            f = (f - 1) * colour_scale + 1
            off_u = y * w // 4 + n
            off_v = off_u + n // 4
            for off in (off_u, off_v):
                segment = self.pixels[off:off + f.size]
                self.pixels[off:off + segment.size] = _to_int16(segment * f[:segment.size])

    def _extract_into(self, dest: np.ndarray, stride: int) -> None:
        ratio = self.dynamic_range // 256
        if ratio <= 0:
            raise ValueError("dynamic range must be at least 256 to extract an image")
        w, h = self.width, self.height
        if stride < w:
            raise ValueError("stride is smaller than the image width")
        n = w * h
        ratio = float(ratio)

        y_plane = np.trunc(self.pixels[:n].reshape(h, w) / ratio)
        y_idx = np.arange(h)[:, None] * stride + np.arange(w)[None, :]
        dest[y_idx] = np.clip(y_plane, 0, 255).astype(np.uint8)

        cw, ch, s = w // 2, h // 2, stride // 2
        m = cw * ch
        u = self.pixels[n:n + m].reshape(ch, cw)
        v = self.pixels[n + n // 4:n + n // 4 + m].reshape(ch, cw)
        base_u = stride * h
        base_v = base_u + stride * h // 4
        c_idx = np.arange(ch)[:, None] * s + np.arange(cw)[None, :]
        dest[base_u + c_idx] = np.clip(np.trunc(u / ratio) + 128, 0, 255).astype(np.uint8)
        dest[base_v + c_idx] = np.clip(np.trunc(v / ratio) + 128, 0, 255).astype(np.uint8)

    def _frame_size(self, stride: int) -> int:
        h = self.height
        needed = stride * h + stride * h // 4 + (stride // 2) * (h // 2)
        return max(stride * h * 3 // 2, needed)

    def extract(self, stride: int) -> bytes:
        """Return the image as an 8-bit YUV420 buffer with the given Y stride."""
        dest = np.zeros(self._frame_size(stride), dtype=np.uint8)
        self._extract_into(dest, stride)
        return dest.tobytes()

    def scale(self, factor: float) -> None:
        """Multiply every pixel and the dynamic range by ``factor``."""
        self.pixels = _to_int16(self.pixels * factor)
        self.dynamic_range = int(self.dynamic_range * factor)


class HdrAccumulator:
    """Collects ``num_frames`` frames and produces one HDR-processed frame."""

    def __init__(self, config: HdrConfig, width: int, height: int, stride: int):
        self.config = config
        self.width = width
        self.height = height
        self.stride = stride
        self.frame_size = stride * height * 3 // 2
        self.frame_num = 0
        self.acc = HdrImage(width, height, width * height * 3 // 2)
        self.lp = HdrImage(width, height, width * height)
        self._lock = threading.Lock()

    def process(self, frame) -> Optional[Any]:
        """Feed one frame.

        Returns None while frames are being accumulated (the frame is dropped),
        the HDR result as bytes once the last frame arrives, and the frame
        itself unchanged for any frame after that.
        """
        with self._lock:
            if self.frame_num >= self.config.num_frames:
                return frame

            data = _as_bytes_array(frame)
            if data.size < self.frame_size:
                raise ValueError("frame is smaller than the configured YUV420 size")

            log.debug("Accumulating frame %d", self.frame_num)
            self.acc.accumulate(data, self.stride)
            if self.config.jpeg_filename:
                log.info("No still options - unable to save JPEG")

            self.frame_num += 1
            if self.frame_num < self.config.num_frames:
                return None

            log.debug("Doing HDR processing...")
            self.acc.scale(16.0 / self.config.num_frames)
            self.lp = self.acc.lp_filter(self.config.lp_filter)
            self.acc.tonemap(self.lp, self.config)

            out = bytearray(data.tobytes())
            self.acc._extract_into(np.frombuffer(out, dtype=np.uint8), self.stride)
            log.debug("HDR done!")
            return bytes(out)