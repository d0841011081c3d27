"""
Time-series downsampling.

Reduces long range-query series to a bounded number of points while keeping
their visual shape, using Largest-Triangle-Three-Buckets (Steinarsson, 2013).
"""

from dataclasses import replace
from typing import List, Optional, Sequence, Tuple

from usage_sentinel.clients.results import MetricResult

Point = Tuple[int, Optional[str]]


def _numeric(value: Optional[str]) -> float:
    """Parse a sample value for area arithmetic; missing or bad values count as 0."""
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def downsample(points: Sequence[Point], max_points: int) -> Sequence[Point]:
    """Downsample an ordered series to at most ``max_points`` points.

    The first and last points are always kept. Interior points are split
    into ``max_points - 2`` buckets; from each bucket the point forming the
    largest triangle with the previously selected point and the mean of the
    next bucket is kept.

    Args:
        points: (timestamp, value) pairs ordered by timestamp, as returned
            by a range query
        max_points: Maximum number of points to retain

    Returns:
        The input itself when no reduction is needed, otherwise a new list
        of exactly ``max_points`` input points in original order
    """
    if not points:
        return []
    if max_points <= 0 or len(points) <= max_points:
        return points

    if max_points == 1:
        return [points[0]]
    if max_points == 2:
        return [points[0], points[-1]]

    bucket_count = max_points - 2
    interior = len(points) - 2
    last_index = len(points) - 1

    sampled: List[Point] = [points[0]]
    prev = 0

    for i in range(bucket_count):
        start = (i * interior) // bucket_count + 1
        end = ((i + 1) * interior) // bucket_count + 1

        # Anchor is the mean of the next bucket, or the final point alone
        if i + 1 < bucket_count:
            next_start = end
            next_end = ((i + 2) * interior) // bucket_count + 1
        else:
            next_start = last_index
            next_end = last_index + 1
        size = next_end - next_start
        avg_x = sum(points[j][0] for j in range(next_start, next_end)) / size
        avg_y = sum(_numeric(points[j][1]) for j in range(next_start, next_end)) / size

        prev_x = points[prev][0]
        prev_y = _numeric(points[prev][1])

        max_area = -1.0
        selected = start
        for j in range(start, end):
            x = points[j][0]
            y = _numeric(points[j][1])
            # Twice the triangle area; the factor doesn't change the argmax
            area = abs((prev_x - avg_x) * (y - prev_y) - (prev_x - x) * (avg_y - prev_y))
            if area > max_area:
                max_area = area
                selected = j

        sampled.append(points[selected])
        prev = selected

    sampled.append(points[last_index])
    return sampled


def downsample_series(result: MetricResult, max_points: int) -> MetricResult:
    """Apply :func:`downsample` to every series of a range-query result."""
    return replace(
        result,
        series=[replace(s, values=list(downsample(s.values, max_points))) for s in result.series]
    )
