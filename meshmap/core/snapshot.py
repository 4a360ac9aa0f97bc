"""Snapshot export for the map.

Lots of data goes back in one response, so field names are short and
optional fields are left out: a missing ``snr`` means no reading, while
``snr: 0`` is a real zero reading. Timestamps are truncated to
``time_unit_ms``; consolidation always works on full precision.
"""

from __future__ import annotations

from typing import Iterable

from meshmap.core.models import (
    CoverageTile,
    ProximityEdge,
    RawSample,
    Repeater,
    RxCoverage,
    SenderRank,
)

DEFAULT_TIME_UNIT_MS = 1000


def truncate_time(ms: int, unit_ms: int = DEFAULT_TIME_UNIT_MS) -> int:
    return int(ms) // unit_ms


def from_truncated_time(value: int, unit_ms: int = DEFAULT_TIME_UNIT_MS) -> int:
    return int(value) * unit_ms


def _put_optional(item: dict, name: str, value) -> None:
    if value is None:
        return
    if isinstance(value, (list, tuple)) and not value:
        return
    item[name] = list(value) if isinstance(value, tuple) else value


def tile_summary(tile: CoverageTile, unit_ms: int = DEFAULT_TIME_UNIT_MS) -> dict:
    meta = tile.metadata
    item = {
        "id": tile.key,
        "obs": meta.observed,
        "hrd": meta.heard,
        "lost": meta.lost,
        "ut": truncate_time(meta.updated, unit_ms),
        "lht": truncate_time(meta.last_heard, unit_ms),
        "lot": truncate_time(meta.last_observed, unit_ms),
    }
    _put_optional(item, "rptr", meta.hit_repeaters)
    _put_optional(item, "snr", meta.snr)
    _put_optional(item, "rssi", meta.rssi)
    return item


def sample_summary(sample: RawSample, unit_ms: int = DEFAULT_TIME_UNIT_MS) -> dict:
    item = {
        "id": sample.precise_hash,
        "time": truncate_time(sample.timestamp, unit_ms),
        "obs": sample.observed,
    }
    _put_optional(item, "path", sample.heard_via)
    _put_optional(item, "snr", sample.snr)
    _put_optional(item, "rssi", sample.rssi)
    return item


def rx_summary(coverage: RxCoverage, unit_ms: int = DEFAULT_TIME_UNIT_MS) -> dict:
    item = {
        "id": coverage.hash,
        "time": truncate_time(coverage.time, unit_ms),
        "cnt": coverage.count,
    }
    _put_optional(item, "rptr", coverage.repeaters)
    _put_optional(item, "snr", coverage.snr)
    _put_optional(item, "rssi", coverage.rssi)
    return item


def sender_summary(sender: SenderRank) -> dict:
    return {"name": sender.name, "tiles": sender.tiles}


def repeater_summary(repeater: Repeater, unit_ms: int = DEFAULT_TIME_UNIT_MS) -> dict:
    return {
        "time": truncate_time(repeater.last_advert_time, unit_ms),
        "id": repeater.id,
        "name": repeater.name,
        "lat": repeater.lat,
        "lon": repeater.lon,
        "elev": round(repeater.elevation_m or 0),
    }


def edge_summary(edge: ProximityEdge) -> dict:
    return {
        "repeater": {
            "id": edge.repeater.id,
            "name": edge.repeater.name,
            "lat": edge.repeater.lat,
            "lon": edge.repeater.lon,
        },
        "tile": edge.tile_key,
        "pos": list(edge.tile_pos),
    }


def build_snapshot(tiles: Iterable[CoverageTile], samples: Iterable[RawSample],
                   repeaters: Iterable[Repeater],
                   unit_ms: int = DEFAULT_TIME_UNIT_MS) -> dict:
    return {
        "coverage": [tile_summary(t, unit_ms) for t in tiles],
        "samples": [sample_summary(s, unit_ms) for s in samples],
        "repeaters": [repeater_summary(r, unit_ms) for r in repeaters],
    }
