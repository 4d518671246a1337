"""Shared helpers for stages whose inference runs on the image sensor.

Covers input tensor de-normalisation, mapping of inference co-ordinates into
ISP output co-ordinates, the automatic inference region and the firmware
upload progress files.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from framestages.geometry import Rectangle, Size

log = logging.getLogger(__name__)

FULL_SENSOR_RESOLUTION = Rectangle(0, 0, 4056, 3040)

_NORM_SIGNED_SHIFT = 8
_NORM_MASK = 0x01FF


def _wrap(value: int, bits: int, signed: bool) -> int:
    value &= (1 << bits) - 1
    if signed and value >> (bits - 1):
        value -= 1 << bits
    return value


def _tdiv(a: int, b: int) -> int:
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


def conv_reg_signed(reg: int) -> int:
    """Interpret a normalisation register value as a 9-bit two's complement number."""
    reg = _wrap(int(reg), 16, True)
    if not (reg >> _NORM_SIGNED_SHIFT) & 1:
        return reg
    return _wrap(-((-reg) & _NORM_MASK), 16, True)


def _int_list(values: Iterable[Any], name: str) -> List[int]:
    result = [int(v) for v in values]
    if len(result) < 3:
        raise ValueError(f"{name} needs a value for each of the 3 colour channels")
    return result


@dataclass
class TensorNormalisation:
    """Settings for saving de-normalised input tensors to a file."""

    filename: str
    num_tensors: int = 1
    norm_val: List[int] = field(default_factory=lambda: [0, 0, 0, 0])
    norm_shift: List[int] = field(default_factory=lambda: [0, 0, 0, 0])
    div_val: List[int] = field(default_factory=lambda: [1, 1, 1, 1])
    div_shift: int = 0

    @classmethod
    def from_dict(cls, params: Mapping[str, Any]) -> "TensorNormalisation":
        """Build from the ``save_input_tensor`` section of a stage's parameters."""
        filename = str(params["filename"])
        norm_shift = [v & 0xFF for v in _int_list(params.get("norm_shift", [0, 0, 0, 0]), "norm_shift")]
        div_shift = int(params.get("div_shift", 0))
        if div_shift < 0:
            raise ValueError("div_shift must not be negative")
        num_tensors = int(params.get("num_tensors", 1))
        if num_tensors < 0:
            raise ValueError("num_tensors must not be negative")
        return cls(
            filename=filename,
            num_tensors=num_tensors,
            norm_val=_int_list(params.get("norm_val", [0, 0, 0, 0]), "norm_val"),
            norm_shift=norm_shift,
            div_val=[_wrap(v, 16, True) for v in _int_list(params.get("div_val", [1, 1, 1, 1]), "div_val")],
            div_shift=div_shift,
        )


def convert_input_tensor(data, norm: TensorNormalisation) -> bytes:
    """Undo the sensor's input normalisation on an interleaved RGB tensor."""
    raw = bytes(data)
    if not raw:
        return b""
    offsets = [conv_reg_signed(norm.norm_val[c]) for c in range(3)]
    shifts = [norm.norm_shift[c] & 0xFF for c in range(3)]
    divisors = [_wrap(int(norm.div_val[c]), 16, True) for c in range(3)]
    if any(d == 0 for d in divisors[: min(3, len(raw))]):
        raise ValueError("div_val must not be zero")
    out = bytearray()
    for i, byte in enumerate(raw):
        channel = i % 3
        sample = byte - 256 if byte >= 128 else byte
        sample = _wrap((sample << shifts[channel]) - offsets[channel], 16, True)
        numerator = _wrap(sample << norm.div_shift, 32, True)
        out.append(_tdiv(numerator, divisors[channel]) & 0xFF)
    return bytes(out)


def _round_half_away(value: float) -> int:
    magnitude = math.floor(abs(float(value)) + 0.5)
    return int(magnitude) if value >= 0 else -int(magnitude)


class InferenceMapper:
    """Maps normalised inference image co-ordinates to ISP output co-ordinates."""

    def __init__(
        self,
        isp_output_size: Size,
        sensor_output_size: Size,
        full_sensor_resolution: Rectangle = FULL_SENSOR_RESOLUTION,
    ):
        self.isp_output_size = isp_output_size
        self.sensor_output_size = sensor_output_size
        self.full_sensor_resolution = full_sensor_resolution

    def convert(self, coords: Sequence[float], scaler_crop: Rectangle) -> Rectangle:
        """Convert (x, y, width, height) fractions of the inference image.

        Returns an empty rectangle when ``coords`` does not hold four values.
        """
        full = self.full_sensor_resolution
        sensor_crop = scaler_crop.scaled_by(self.sensor_output_size, full.size())
        coords = list(coords)
        if len(coords) != 4:
            return Rectangle()
        if not sensor_crop.width or not sensor_crop.height:
            raise ValueError("scaler crop is empty on the sensor image")

        c = [np.float32(v) for v in coords]
        fw = np.float32(full.width - 1)
        fh = np.float32(full.height - 1)
        obj = Rectangle(
            _round_half_away(c[0] * fw),
            _round_half_away(c[1] * fh),
            max(_round_half_away(c[2] * fw), 0),
            max(_round_half_away(c[3] * fh), 0),
        )

        obj_sensor = obj.scaled_by(self.sensor_output_size, full.size())
        obj_bound = obj_sensor.bounded_to(sensor_crop)
        obj_translated = obj_bound.translated_by(-sensor_crop.top_left())
        obj_scaled = obj_translated.scaled_by(self.isp_output_size, sensor_crop.size())

        log.debug(
            "%s -> (sensor) %s -> (bound) %s -> (translate) %s -> (scaled) %s",
            obj, obj_sensor, obj_bound, obj_translated, obj_scaled,
        )
        return obj_scaled


def inference_roi_auto(width: int, height: int, full_resolution: Rectangle = FULL_SENSOR_RESOLUTION) -> Rectangle:
    """Largest centred region of the sensor with the aspect ratio width:height."""
    size = full_resolution.size().bounded_to_aspect_ratio(Size(width, height))
    roi = size.centered_to(full_resolution.center()).enclosed_in(full_resolution)
    return roi.bounded_to(full_resolution)


def _leading_unsigned(text: str) -> List[int]:
    values = []
    for token in text.split():
        if not token.isdigit():
            break
        values.append(int(token))
    return values


def parse_progress(fw_text: str, block_text: str) -> Optional[Tuple[int, int, bool]]:
    """Read the firmware upload progress files.

    ``fw_text`` holds the state, the bytes already sent and the total size;
    ``block_text`` the bytes of the chunk in flight. Returns
    (current bytes, total bytes, finished) while uploading, otherwise None.
    """
    progress = _leading_unsigned(fw_text)
    block = _leading_unsigned(block_text)
    block_progress = block[0] if block else 0
    if len(progress) != 3 or progress[0] != 2:
        return None
    current = progress[1] + block_progress
    total = progress[2]
    done = bool(total) and progress[1] == total
    return current, total, done