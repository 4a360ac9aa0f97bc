"""Elevation-adjusted distance used to pick among same-id repeaters.

The score is great-circle miles minus a bonus for antenna height, so a tall
repeater a little further away can beat a low one nearby. Scores can go
negative; they are only compared against each other.
"""

from __future__ import annotations

import math
from typing import Sequence

from meshmap.core.models import Repeater

# Earth radius in miles (for Haversine).
_EARTH_R_MILES = 3958.8

# Bigger than any valid score.
_SENTINEL_SCORE = 30000.0

DEFAULT_ELEVATION_FACTOR = 0.5


def haversine_miles(a: tuple[float, float], b: tuple[float, float]) -> float:
    """Great-circle distance in miles between two (lat, lon) points."""
    lat1, lon1 = a
    lat2, lon2 = b
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    h = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    return 2 * _EARTH_R_MILES * math.asin(math.sqrt(h))


def score(from_pos: tuple[float, float], repeater: Repeater,
          elevation_factor: float = DEFAULT_ELEVATION_FACTOR) -> float:
    elev = max(repeater.elevation_m or 0.0, 0.0)
    return haversine_miles(from_pos, repeater.pos) - elevation_factor * math.sqrt(elev)


def select_best(from_pos: tuple[float, float], candidates: Sequence[Repeater],
                elevation_factor: float = DEFAULT_ELEVATION_FACTOR) -> Repeater | None:
    """Return the candidate with the lowest score; first one wins ties."""
    if len(candidates) == 1:
        return candidates[0]

    best = None
    best_score = _SENTINEL_SCORE
    for r in candidates:
        s = score(from_pos, r, elevation_factor)
        if s < best_score:
            best_score = s
            best = r
    return best
