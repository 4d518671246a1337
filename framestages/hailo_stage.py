"""Helpers shared by stages that run inference on an external accelerator.

Covers a pool of reusable buffers, a queue of messages for a display thread,
mapping of inference co-ordinates into ISP output co-ordinates, choice of the
network file and repacking of RGB images.
"""

from __future__ import annotations

import math
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, List, Optional, Sequence

import numpy as np

from framestages.geometry import Rectangle, Size


class Allocator:
    """Pool of byte buffers that are handed out again once released."""

    @dataclass
    class _Entry:
        buffer: bytearray
        size: int
        free: bool

    def __init__(self) -> None:
        self._entries: List[Allocator._Entry] = []
        self._lock = threading.Lock()

    def allocate(self, size: int) -> bytearray:
        """Return a buffer of ``size`` bytes, reusing a released one of that size."""
        size = int(size)
        if size < 0:
            raise ValueError("buffer size must not be negative")
        with self._lock:
            for entry in self._entries:
                if entry.free and entry.size == size:
                    entry.free = False
                    return entry.buffer
            buffer = bytearray(size)
            self._entries.append(Allocator._Entry(buffer, size, False))
            return buffer

    def release(self, buffer: bytearray) -> None:
        """Give a buffer back to the pool; buffers not from this pool are ignored."""
        with self._lock:
            for entry in self._entries:
                if entry.buffer is buffer:
                    entry.free = True
                    return

    def reset(self) -> None:
        """Forget every buffer in the pool."""
        with self._lock:
            self._entries.clear()


class MsgType(Enum):
    DISPLAY = "display"
    QUIT = "quit"


@dataclass
class Msg:
    """A message for the display thread: an RGB image to show, or a request to quit."""

    type: MsgType
    payload: Optional[bytes] = None
    size: Size = field(default_factory=lambda: Size(0, 0))
    window_title: str = ""


class MessageQueue:
    """Thread-safe first-in first-out queue of messages."""

    def __init__(self) -> None:
        self._queue: Deque[Msg] = deque()
        self._cond = threading.Condition()

    def post(self, msg: Msg) -> None:
        """Append a message and wake one waiting reader."""
        with self._cond:
            self._queue.append(msg)
            self._cond.notify()

    def wait(self, timeout: Optional[float] = None) -> Msg:
        """Remove and return the oldest message, blocking until one arrives.

        Raises TimeoutError if ``timeout`` seconds pass with the queue empty.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: bool(self._queue), timeout):
                raise TimeoutError("no message arrived in time")
            return self._queue.popleft()

    def clear(self, title: Optional[str] = None) -> None:
        """Drop every message, or only those for the window ``title``."""
        with self._cond:
            if title is None:
                self._queue.clear()
            else:
                self._queue = deque(m for m in self._queue if m.window_title != title)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


def _round_half_away(value: float) -> int:
    magnitude = int(math.floor(abs(float(value)) + 0.5))
    return magnitude if value >= 0 else -magnitude


def convert_inference_coordinates(
    coords: Sequence[float], scaler_crops: Sequence[Rectangle], isp_output_size: Size
) -> Rectangle:
    """Convert (x, y, width, height) fractions of the inference image to ISP output co-ordinates.

    ``scaler_crops`` holds the main output crop then the low resolution crop.
    Returns an empty rectangle unless there are four co-ordinates and two crops.
    """
    coords = list(coords)
    scaler_crops = list(scaler_crops)
    if len(coords) != 4 or len(scaler_crops) != 2:
        return Rectangle()
    main_crop, low_crop = scaler_crops
    if not main_crop.width or not main_crop.height:
        raise ValueError("main scaler crop is empty")

    c = [np.float32(v) for v in coords]
    lw = np.float32(low_crop.width - 1)
    lh = np.float32(low_crop.height - 1)
    obj = Rectangle(
        _round_half_away(c[0] * lw),
        _round_half_away(c[1] * lh),
        max(_round_half_away(c[2] * lw), 0),
        max(_round_half_away(c[3] * lh), 0),
    )

    translated_low = obj.translated_by(low_crop.top_left())
    bounded = translated_low.bounded_to(main_crop)
    translated_main = bounded.translated_by(-main_crop.top_left())
    return translated_main.scaled_by(isp_output_size, main_crop.size())


def select_hef(is_hailo8: bool, hef_file: str, hef_file_8: str, hef_file_8l: str) -> str:
    """Choose the network file for the device architecture.

    The Hailo-8 specific file wins on that device, then the Hailo-8L file,
    then the generic one. Raises ValueError when none is set.
    """
    if is_hailo8 and hef_file_8:
        chosen = hef_file_8
    elif hef_file_8l:
        chosen = hef_file_8l
    else:
        chosen = hef_file
    if not chosen:
        raise ValueError("Unable to use a suitable HEF file.")
    return chosen


def pack_rgb(buffer, width: int, height: int, stride: int) -> bytes:
    """Copy a packed RGB image out of a buffer whose rows are ``stride`` bytes apart."""
    row = int(width) * 3
    if stride < row:
        raise ValueError("stride is smaller than a row of RGB pixels")
    data = bytes(buffer)
    if height and (height - 1) * stride + row > len(data):
        raise ValueError("buffer is too small for the image dimensions")
    return b"".join(data[y * stride:y * stride + row] for y in range(int(height)))


def swap_rb(image, width: int, height: int) -> bytes:
    """Swap the first and third byte of every pixel of a packed 3-byte image."""
    count = int(width) * int(height) * 3
    data = np.frombuffer(bytes(image), dtype=np.uint8)
    if data.size < count:
        raise ValueError("image is too small for the given dimensions")
    pixels = data[:count].reshape(-1, 3)
    swapped = pixels[:, ::-1].copy()
    return swapped.tobytes() + data[count:].tobytes()