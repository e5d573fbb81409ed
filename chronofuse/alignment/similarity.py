"""
Type-aware similarity between measurement values.

Shared by the DTW cost function and cross-sensor consistency scoring so
that alignment and fault detection judge agreement the same way.
"""

import math
from typing import Optional, Sequence

from chronofuse.measurement import (
    SCALAR_KINDS,
    VECTOR_KINDS,
    MeasurementValue,
    ValueKind,
    convert_temperature,
)

# Similarity assigned when two values cannot be compared
NEUTRAL_SIMILARITY = 0.5

# Temperature difference (degC) at which similarity reaches zero
TEMPERATURE_SCALE = 50.0


def scalar_similarity(a: float, b: float) -> float:
    """Normalized absolute-difference similarity in [0, 1]."""
    if not (math.isfinite(a) and math.isfinite(b)):
        return 0.0
    scale = max(abs(a), abs(b), 1.0)
    return 1.0 - min(abs(a - b) / scale, 1.0)


def wind_similarity(
    speed_a: float, direction_a: float, speed_b: float, direction_b: float
) -> float:
    """Average of speed similarity and circular direction similarity."""
    values = (speed_a, direction_a, speed_b, direction_b)
    if not all(math.isfinite(v) for v in values):
        return 0.0
    speed_sim = 1.0 - min(abs(speed_a - speed_b) / max(speed_a, speed_b, 1.0), 1.0)
    diff = abs(direction_a - direction_b) % 360.0
    direction_diff = min(diff, 360.0 - diff)
    direction_sim = 1.0 - direction_diff / 180.0
    return (speed_sim + direction_sim) / 2.0


def value_similarity(a: MeasurementValue, b: MeasurementValue) -> float:
    """
    Similarity of two measurement values in [0, 1].

    Args:
        a: First value
        b: Second value

    Returns:
        1.0 for identical values, 0.0 for maximal disagreement or non-finite
        components, 0.5 when the values are not comparable
    """
    if a.kind != b.kind:
        return NEUTRAL_SIMILARITY
    if not (a.components and b.components):
        return NEUTRAL_SIMILARITY

    kind = a.kind
    if kind in SCALAR_KINDS:
        if a.unit != b.unit:
            return NEUTRAL_SIMILARITY
        return scalar_similarity(a.components[0], b.components[0])

    if kind == ValueKind.TEMPERATURE:
        first = convert_temperature(a.components[0], a.unit, "celsius")
        second = convert_temperature(b.components[0], b.unit, "celsius")
        if not (math.isfinite(first) and math.isfinite(second)):
            return 0.0
        return 1.0 - min(abs(first - second) / TEMPERATURE_SCALE, 1.0)

    if kind == ValueKind.WIND_VECTOR:
        if len(a.components) < 2 or len(b.components) < 2:
            return NEUTRAL_SIMILARITY
        return wind_similarity(
            a.components[0], a.components[1], b.components[0], b.components[1]
        )

    if kind in VECTOR_KINDS or (kind == ValueKind.CUSTOM and a.labels == b.labels):
        if len(a.components) != len(b.components):
            return NEUTRAL_SIMILARITY
        scores = [scalar_similarity(x, y) for x, y in zip(a.components, b.components)]
        return sum(scores) / len(scores)

    return NEUTRAL_SIMILARITY


def series_consistency(
    first: Sequence[Optional[MeasurementValue]],
    second: Sequence[Optional[MeasurementValue]],
) -> Optional[float]:
    """
    Mean similarity over the slots both aligned series cover.

    Args:
        first: Values on a common timeline (None where absent)
        second: Values on the same timeline

    Returns:
        Consistency in [0, 1], or None when the series share no slot
    """
    scores = [
        value_similarity(a, b)
        for a, b in zip(first, second)
        if a is not None and b is not None
    ]
    if not scores:
        return None
    return sum(scores) / len(scores)
