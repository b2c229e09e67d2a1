"""Piecewise linear functions."""

from __future__ import annotations

import math
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional, TextIO, Union

DEFAULT_EPS = 1e-6


@dataclass(frozen=True)
class Interval:
    """A closed interval [start, end]."""

    start: float
    end: float

    def contains(self, value: float) -> bool:
        return self.start <= value <= self.end

    def clip(self, value: float) -> float:
        if value < self.start:
            return self.start
        if value > self.end:
            return self.end
        return value

    def length(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class Point:
    """A 2D point or vector."""

    x: float = 0.0
    y: float = 0.0

    def __sub__(self, other: Point) -> Point:
        return Point(self.x - other.x, self.y - other.y)

    def __add__(self, other: Point) -> Point:
        return Point(self.x + other.x, self.y + other.y)

    def __mul__(self, factor: float) -> Point:
        return Point(self.x * factor, self.y * factor)

    def __truediv__(self, factor: float) -> Point:
        return Point(self.x / factor, self.y / factor)

    def dot(self, other: Point) -> float:
        return self.x * other.x + self.y * other.y

    def len2(self) -> float:
        return self.x * self.x + self.y * self.y

    def length(self) -> float:
        return math.sqrt(self.len2())


class PerpType(Enum):
    """Kind of closest point found by Pwl.invert."""

    NOT_FOUND = "not_found"
    START = "start"
    END = "end"
    VERTEX = "vertex"
    PERPENDICULAR = "perpendicular"


PointLike = Union[Point, tuple]


def _as_point(p: PointLike) -> Point:
    if isinstance(p, Point):
        return p
    x, y = p
    return Point(float(x), float(y))


class Pwl:
    """A piecewise linear function defined by control points with increasing x."""

    def __init__(self, points: Optional[Iterable[PointLike]] = None):
        self._points: list[Point] = [_as_point(p) for p in points or ()]

    @property
    def points(self) -> tuple[Point, ...]:
        return tuple(self._points)

    def __len__(self) -> int:
        return len(self._points)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Pwl):
            return NotImplemented
        return self._points == other._points

    def __repr__(self) -> str:
        return f"Pwl({self._points!r})"

    def read(self, params: Iterable) -> None:
        """Append control points from a flat sequence x0, y0, x1, y1, ..."""
        values = [float(v) for v in params]
        if len(values) % 2:
            raise ValueError("Pwl: odd number of values")
        for i, (x, y) in enumerate(zip(values[::2], values[1::2])):
            if i and x <= self._points[-1].x:
                raise ValueError("Pwl: x values must be strictly increasing")
            self._points.append(Point(x, y))
        if len(self._points) < 2:
            raise ValueError("Pwl: at least two points are required")

    def append(self, x: float, y: float, eps: float = DEFAULT_EPS) -> None:
        if not self._points or self._points[-1].x + eps < x:
            self._points.append(Point(x, y))

    def prepend(self, x: float, y: float, eps: float = DEFAULT_EPS) -> None:
        if not self._points or self._points[0].x - eps > x:
            self._points.insert(0, Point(x, y))

    def domain(self) -> Interval:
        return Interval(self._points[0].x, self._points[-1].x)

    def range(self) -> Interval:
        ys = [p.y for p in self._points]
        return Interval(min(ys), max(ys))

    def is_empty(self) -> bool:
        return not self._points

    def find_span(self, x: float, span: int) -> int:
        """Return the index of the span containing x, searching from span."""
        last_span = len(self._points) - 2
        span = max(0, min(last_span, span))
        while span < last_span and x >= self._points[span + 1].x:
            span += 1
        while span and x < self._points[span].x:
            span -= 1
        return span

    def _eval(self, x: float, span: Optional[int] = None) -> tuple[float, int]:
        guess = span if span is not None and span != -1 else len(self._points) // 2 - 1
        span = self.find_span(x, guess)
        p0, p1 = self._points[span], self._points[span + 1]
        return p0.y + (x - p0.x) * (p1.y - p0.y) / (p1.x - p0.x), span

    def eval(self, x: float, span: Optional[int] = None) -> float:
        """Evaluate at x, optionally starting the span search at span."""
        return self._eval(x, span)[0]

    def invert(
        self, xy: PointLike, span: int = -1, eps: float = DEFAULT_EPS
    ) -> tuple[PerpType, Optional[Point], int]:
        """Find the closest point to xy, searching spans after span.

        Returns the kind of point found, the point itself (None if nothing was
        found) and the span where the search stopped.
        """
        if span < -1:
            raise ValueError("Pwl.invert: span must be >= -1")
        xy = _as_point(xy)
        pts = self._points
        prev_off_end = False
        span += 1
        while span < len(pts) - 1:
            span_vec = pts[span + 1] - pts[span]
            t = (xy - pts[span]).dot(span_vec) / span_vec.len2()
            if t < -eps:
                if span == 0:
                    return PerpType.START, pts[span], span
                if prev_off_end:
                    return PerpType.VERTEX, pts[span], span
            elif t > 1 + eps:
                if span == len(pts) - 2:
                    return PerpType.END, pts[span + 1], span
                prev_off_end = True
            else:
                return PerpType.PERPENDICULAR, pts[span] + span_vec * t, span
            span += 1
        return PerpType.NOT_FOUND, None, span

    def compose(self, other: Pwl, eps: float = DEFAULT_EPS) -> Pwl:
        """Return the function applying self first and other after."""
        pts, ops = self._points, other._points
        this_x, this_y = pts[0].x, pts[0].y
        this_span = 0
        other_span = other.find_span(this_y, 0)
        result = Pwl([Point(this_x, other._eval(this_y, other_span)[0])])
        while this_span != len(pts) - 1:
            dx = pts[this_span + 1].x - pts[this_span].x
            dy = pts[this_span + 1].y - pts[this_span].y
            if (
                abs(dy) > eps
                and other_span + 1 < len(ops)
                and pts[this_span + 1].y >= ops[other_span + 1].x + eps
            ):
                this_x = pts[this_span].x + (ops[other_span + 1].x - pts[this_span].y) * dx / dy
                other_span += 1
                this_y = ops[other_span].x
            elif (
                abs(dy) > eps
                and other_span > 0
                and pts[this_span + 1].y <= ops[other_span - 1].x - eps
            ):
                this_x = pts[this_span].x + (ops[other_span + 1].x - pts[this_span].y) * dx / dy
                other_span -= 1
                this_y = ops[other_span].x
            else:
                this_span += 1
                this_x, this_y = pts[this_span].x, pts[this_span].y
            result.append(this_x, other._eval(this_y, other_span)[0], eps)
        return result

    def map(self, f: Callable[[float, float], None]) -> None:
        """Call f(x, y) for every control point."""
        for p in self._points:
            f(p.x, p.y)

    @staticmethod
    def map2(pwl0: Pwl, pwl1: Pwl, f: Callable[[float, float, float], None]) -> None:
        """Call f(x, y0, y1) wherever either function has a control point."""
        p0, p1 = pwl0._points, pwl1._points
        span0 = span1 = 0
        x = min(p0[0].x, p1[0].x)
        f(x, pwl0._eval(x, span0)[0], pwl1._eval(x, span1)[0])
        while span0 < len(p0) - 1 or span1 < len(p1) - 1:
            if span0 == len(p0) - 1:
                span1 += 1
                x = p1[span1].x
            elif span1 == len(p1) - 1:
                span0 += 1
                x = p0[span0].x
            elif p0[span0 + 1].x > p1[span1 + 1].x:
                span1 += 1
                x = p1[span1].x
            else:
                span0 += 1
                x = p0[span0].x
            f(x, pwl0._eval(x, span0)[0], pwl1._eval(x, span1)[0])

    @staticmethod
    def combine(
        pwl0: Pwl,
        pwl1: Pwl,
        f: Callable[[float, float, float], float],
        eps: float = DEFAULT_EPS,
    ) -> Pwl:
        """Build a function whose values are f(x, y0, y1) at every knot of either input."""
        result = Pwl()
        Pwl.map2(pwl0, pwl1, lambda x, y0, y1: result.append(x, f(x, y0, y1), eps))
        return result

    def match_domain(self, domain: Interval, clip: bool = True, eps: float = DEFAULT_EPS) -> None:
        """Extend the function to cover domain, either clipped or linearly."""
        value, _ = self._eval(self._points[0].x if clip else domain.start, 0)
        self.prepend(domain.start, value, eps)
        value, _ = self._eval(
            self._points[-1].x if clip else domain.end, len(self._points) - 2
        )
        self.append(domain.end, value, eps)

    def generate_lut(self) -> list[float]:
        """Values at integer x from 0 up to the end of the domain."""
        end = int(self.domain().end + 1)
        lut = []
        span = 0
        for x in range(end):
            value, span = self._eval(x, span)
            lut.append(value)
        return lut

    def __imul__(self, factor: float) -> Pwl:
        self._points = [Point(p.x, p.y * factor) for p in self._points]
        return self

    def debug(self, fp: Optional[TextIO] = None) -> None:
        out = fp if fp is not None else sys.stderr
        out.write("Pwl {\n")
        for p in self._points:
            out.write("\t(%g, %g)\n" % (p.x, p.y))
        out.write("}\n")