"""Integer points, sizes and rectangles used for sensor and image co-ordinates."""

from __future__ import annotations

from dataclasses import dataclass


def _tdiv(a: int, b: int) -> int:
    """Integer division truncating toward zero."""
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


@dataclass(frozen=True)
class Point:
    x: int = 0
    y: int = 0

    def __neg__(self) -> "Point":
        return Point(-self.x, -self.y)


@dataclass(frozen=True)
class Size:
    width: int = 0
    height: int = 0

    def bounded_to_aspect_ratio(self, ratio: "Size") -> "Size":
        """Largest size within this one that has the aspect ratio of ``ratio``."""
        if not ratio.width or not ratio.height:
            raise ValueError("aspect ratio must have a non-zero width and height")
        r1 = self.width * ratio.height
        r2 = ratio.width * self.height
        if r1 > r2:
            return Size(r2 // ratio.height, self.height)
        return Size(self.width, r1 // ratio.width)

    def centered_to(self, center: Point) -> "Rectangle":
        """Rectangle of this size centred on ``center``."""
        return Rectangle(center.x - self.width // 2, center.y - self.height // 2, self.width, self.height)


@dataclass(frozen=True)
class Rectangle:
    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0

    def top_left(self) -> Point:
        return Point(self.x, self.y)

    def size(self) -> Size:
        return Size(self.width, self.height)

    def center(self) -> Point:
        return Point(self.x + self.width // 2, self.y + self.height // 2)

    def scaled_by(self, numerator: Size, denominator: Size) -> "Rectangle":
        """Scale position and size by numerator / denominator."""
        return Rectangle(
            _tdiv(self.x * numerator.width, denominator.width),
            _tdiv(self.y * numerator.height, denominator.height),
            self.width * numerator.width // denominator.width,
            self.height * numerator.height // denominator.height,
        )

    def bounded_to(self, bound: "Rectangle") -> "Rectangle":
        """Intersection with ``bound``; empty if they do not overlap."""
        left = max(self.x, bound.x)
        top = max(self.y, bound.y)
        right = min(self.x + self.width, bound.x + bound.width)
        bottom = min(self.y + self.height, bound.y + bound.height)
        return Rectangle(left, top, max(right - left, 0), max(bottom - top, 0))

    def translated_by(self, point: Point) -> "Rectangle":
        return Rectangle(self.x + point.x, self.y + point.y, self.width, self.height)

    def enclosed_in(self, boundary: "Rectangle") -> "Rectangle":
        """Shrink and shift this rectangle until it lies within ``boundary``."""
        width = min(self.width, boundary.width)
        height = min(self.height, boundary.height)
        x = max(boundary.x, min(self.x, boundary.x + boundary.width - width))
        y = max(boundary.y, min(self.y, boundary.y + boundary.height - height))
        return Rectangle(x, y, width, height)