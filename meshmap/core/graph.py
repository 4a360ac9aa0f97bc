"""Proximity graph: links coverage tiles to the repeaters that served them.

Every repeater id a tile heard gets its own edge, to whichever physical
repeater with that id scores best from the tile's center. Ids with no
advertised repeater are skipped; repeaters come and go independently of the
samples that mention them.
"""

from __future__ import annotations

import copy
from typing import Iterable, Mapping

import structlog

from meshmap.core import geohash
from meshmap.core.distance import DEFAULT_ELEVATION_FACTOR, select_best
from meshmap.core.models import (
    CoverageTile,
    ProximityEdge,
    ProximityGraph,
    RawSample,
    Repeater,
    RxCoverage,
    max_defined,
)

log = structlog.get_logger()


def overlay_samples(tiles: Mapping[str, CoverageTile],
                    samples: Iterable[RawSample]) -> dict[str, CoverageTile]:
    """Fold not-yet-consolidated samples into copies of the stored tiles.

    Used for the on-demand snapshot, so a sample shows up on the map before
    the next consolidation run. The input tiles are left untouched.
    """
    result: dict[str, CoverageTile] = {}
    for key, tile in tiles.items():
        result[key] = CoverageTile(key=key, history=list(tile.history),
                                   metadata=copy.deepcopy(tile.metadata),
                                   version=tile.version)

    for s in samples:
        tile = result.get(s.tile_key)
        if tile is None:
            tile = CoverageTile(key=s.tile_key)
            result[s.tile_key] = tile

        meta = tile.metadata
        if s.observed:
            meta.observed += 1
            meta.last_observed = max(meta.last_observed, s.timestamp)
        if s.heard:
            meta.heard += 1
            meta.last_heard = max(meta.last_heard, s.timestamp)
        else:
            meta.lost += 1
        meta.updated = max(meta.updated, s.timestamp)
        meta.snr = max_defined(meta.snr, s.snr)
        meta.rssi = max_defined(meta.rssi, s.rssi)
        for r in s.heard_via:
            if r.lower() not in meta.hit_repeaters:
                meta.hit_repeaters.append(r.lower())

    return result


def _link(points: Iterable[tuple[str, Iterable[str]]], index: Mapping[str, list[Repeater]],
          elevation_factor: float) -> ProximityGraph:
    graph = ProximityGraph()
    hit: dict[Repeater, None] = {}
    unknown = 0

    for key, repeater_ids in points:
        pos = geohash.decode_center(key)
        for rid in repeater_ids:
            candidates = index.get(rid.lower())
            if not candidates:
                unknown += 1
                continue

            best = select_best(pos, candidates, elevation_factor)
            graph.edges.append(ProximityEdge(repeater=best, tile_key=key, tile_pos=pos))
            hit.setdefault(best, None)

    graph.hit_repeaters = list(hit)
    log.debug("graph_built", edges=len(graph.edges),
              hit_repeaters=len(graph.hit_repeaters), unknown_refs=unknown)
    return graph


def build_graph(tiles: Iterable[CoverageTile], index: Mapping[str, list[Repeater]],
                elevation_factor: float = DEFAULT_ELEVATION_FACTOR) -> ProximityGraph:
    return _link(((t.key, t.metadata.hit_repeaters) for t in tiles), index, elevation_factor)


def build_rx_graph(coverage: Iterable[RxCoverage], index: Mapping[str, list[Repeater]],
                   elevation_factor: float = DEFAULT_ELEVATION_FACTOR) -> ProximityGraph:
    """Same as build_graph, but from passive receptions at precise hashes.

    Edges start at the center of each reception's own hash rather than of
    its tile.
    """
    return _link(((c.hash, c.repeaters) for c in coverage), index, elevation_factor)
