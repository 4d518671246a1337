"""Image negation effect."""

from __future__ import annotations

_INVERT = bytes(range(255, -1, -1))


def negate(buffer) -> bytes:
    """Return the buffer with every bit inverted.

    The buffer length must be a multiple of four bytes, as image strides are.
    """
    data = bytes(buffer)
    if len(data) % 4:
        raise ValueError("buffer length must be a multiple of 4 bytes")
    return data.translate(_INVERT)