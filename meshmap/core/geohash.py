"""Geohash encoding for tiles and samples.

Thin wrapper over pygeohash. Coverage tiles use 6-character hashes, raw
samples are stored at 8 characters and belong to the tile named by their
first 6.
"""

from __future__ import annotations

import pygeohash as pgh

from meshmap.core.models import SAMPLE_PRECISION, TILE_PRECISION

_BASE32 = frozenset("0123456789bcdefghjkmnpqrstuvwxyz")

_DEGENERATE_BOX = (0.0, 0.0, 0.0, 0.0)


def is_valid(geohash: str) -> bool:
    return bool(geohash) and all(c in _BASE32 for c in geohash)


def encode(lat: float, lon: float, precision: int = SAMPLE_PRECISION) -> str:
    return pgh.encode(lat, lon, precision=precision)


def tile_key(geohash: str) -> str:
    return geohash[:TILE_PRECISION]


def decode_bbox(geohash: str) -> tuple[float, float, float, float]:
    """Return (min_lat, min_lon, max_lat, max_lon) of a geohash cell.

    Malformed hashes give a degenerate zero box instead of raising; callers
    that care validate with is_valid() first.
    """
    if not is_valid(geohash):
        return _DEGENERATE_BOX
    lat, lon, lat_err, lon_err = pgh.decode_exactly(geohash)
    return (lat - lat_err, lon - lon_err, lat + lat_err, lon + lon_err)


def decode_center(geohash: str) -> tuple[float, float]:
    min_lat, min_lon, max_lat, max_lon = decode_bbox(geohash)
    return ((min_lat + max_lat) / 2, (min_lon + max_lon) / 2)
