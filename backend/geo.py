"""Great-circle distance and turn-by-turn progress tracking."""

import logging
import math
from typing import NamedTuple

from config import EARTH_RADIUS_M, STEP_PROXIMITY_M
from models import Coordinate, ManeuverStep

logger = logging.getLogger(__name__)


class StepProgress(NamedTuple):
    """Outcome of one progress check."""

    distance_to_next_maneuver: float | None
    next_index: int


def _check_coordinate(coord: Coordinate) -> None:
    if not (math.isfinite(coord.lat) and math.isfinite(coord.lng)):
        raise ValueError(f"Non-finite coordinate: {coord.lat}, {coord.lng}")
    if not -90.0 <= coord.lat <= 90.0 or not -180.0 <= coord.lng <= 180.0:
        raise ValueError(f"Coordinate out of range: {coord.lat}, {coord.lng}")


def haversine_m(a: Coordinate, b: Coordinate) -> float:
    """Returns the great-circle distance in metres between two points.

    Raises:
        ValueError: If either coordinate is NaN, infinite or out of range.
    """
    _check_coordinate(a)
    _check_coordinate(b)
    lat1_r, lat2_r = math.radians(a.lat), math.radians(b.lat)
    dlat = lat2_r - lat1_r
    dlng = math.radians(b.lng - a.lng)
    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def advance(
    position: Coordinate,
    steps: list[ManeuverStep],
    current_index: int,
    *,
    proximity_m: float = STEP_PROXIMITY_M,
) -> StepProgress:
    """Checks [position] against the current maneuver and moves on when close.

    The index moves forward by at most one per call, never past the last
    step and never backwards. An empty step list or an out-of-range index is
    a no-op: the index comes back unchanged with no distance.

    Raises:
        ValueError: On a malformed position. Callers must keep their index.
    """
    if not steps or not 0 <= current_index < len(steps):
        return StepProgress(None, current_index)

    distance = haversine_m(position, steps[current_index].location)
    if distance < proximity_m and current_index < len(steps) - 1:
        logger.info(
            "Completed step %d/%d (%.1fm from maneuver)",
            current_index + 1,
            len(steps),
            distance,
        )
        return StepProgress(distance, current_index + 1)
    return StepProgress(distance, current_index)


def format_distance(meters: float) -> str:
    """Formats a distance for maneuver display ("42m", "350m", "1.2km")."""
    if meters < 100:
        return f"{round(meters)}m"
    if meters < 1000:
        return f"{round(meters / 10) * 10}m"
    return f"{meters / 1000:.1f}km"


def format_duration(seconds: float) -> str:
    """Formats a duration as "7 min", "1h 5min" or "2h"."""
    minutes = round(seconds / 60)
    if minutes < 60:
        return f"{minutes} min"
    hours, remaining = divmod(minutes, 60)
    return f"{hours}h {remaining}min" if remaining else f"{hours}h"
