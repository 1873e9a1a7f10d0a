"""
Canvas geometry for linked panoramas.

Canvas coordinates are fractions of the plan in [0, 1] with Y growing
downwards, so "north" on the plan is negative Y. Bearings are compass
degrees measured clockwise from north.
"""
import math


def to_finite_or(value, fallback=0.0):
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    return parsed if math.isfinite(parsed) else fallback


def position_of(photo):
    return (to_finite_or(photo.get("x_position")), to_finite_or(photo.get("y_position")))


def azimuth_degrees(source_pos, target_pos):
    """
    Bearing from source_pos to target_pos in [0, 360).
    Identical positions give 0 rather than an error.
    """
    dx = to_finite_or(target_pos[0]) - to_finite_or(source_pos[0])
    dy = to_finite_or(target_pos[1]) - to_finite_or(source_pos[1])
    if dx == 0 and dy == 0:
        return 0.0
    return normalize_degrees(math.degrees(math.atan2(dx, -dy)))


def azimuth_between(source, target):
    """Bearing between two records; 0 when either one is missing."""
    if not source or not target:
        return 0.0
    return azimuth_degrees(position_of(source), position_of(target))


def normalize_degrees(value):
    result = to_finite_or(value) % 360.0
    # -1e-15 % 360 rounds up to 360.0
    return 0.0 if result >= 360.0 else result


def normalize_offset_degrees(value):
    """Signed offset in (-180, 180]."""
    result = 180.0 - ((180.0 - to_finite_or(value)) % 360.0)
    return 180.0 if result <= -180.0 else result


def radians_to_degrees(value):
    return math.degrees(to_finite_or(value))
