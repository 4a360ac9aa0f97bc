"""Tests for the repeater index, proximity graph and top-repeater ranking."""

from __future__ import annotations

from meshmap.core import geohash
from meshmap.core.graph import build_graph, build_rx_graph, overlay_samples
from meshmap.core.models import CoverageTile, ProximityEdge, RxCoverage, TileMetadata
from meshmap.core.ranking import rank_repeaters
from meshmap.core.spatial_index import build_index

from factories import hashed_sample, make_repeater

TILE = "c23nb6"


def _tile(key: str, *repeaters: str) -> CoverageTile:
    return CoverageTile(key=key, metadata=TileMetadata(heard=1, hit_repeaters=list(repeaters)))


# --- Index ---

def test_index_keeps_every_install_in_order():
    a1 = make_repeater("aa", 47.0, -122.0)
    b = make_repeater("bb", 47.1, -122.1)
    a2 = make_repeater("AA", 47.0, -122.0, name="same spot, new box")
    index = build_index([a1, b, a2])
    assert index == {"aa": [a1, a2], "bb": [b]}


# --- Graph ---

def test_one_edge_per_referenced_id():
    lat, lon = geohash.decode_center(TILE)
    a = make_repeater("aa", lat + 0.01, lon)
    b = make_repeater("bb", lat - 0.01, lon)
    graph = build_graph([_tile(TILE, "aa", "bb")], build_index([a, b]))
    assert [(e.repeater, e.tile_key) for e in graph.edges] == [(a, TILE), (b, TILE)]
    assert graph.edges[0].tile_pos == (lat, lon)
    assert graph.hit_repeaters == [a, b]


def test_unknown_ids_skipped():
    lat, lon = geohash.decode_center(TILE)
    a = make_repeater("aa", lat, lon)
    graph = build_graph([_tile(TILE, "gone", "aa"), _tile("c23nb7", "never")], build_index([a]))
    assert len(graph.edges) == 1
    assert graph.edges[0].repeater is a


def test_best_install_chosen_per_tile():
    west = "c23nb6"
    lat_w, lon_w = geohash.decode_center(west)
    east = geohash.encode(lat_w, lon_w + 0.5, 6)
    lat_e, lon_e = geohash.decode_center(east)
    near_west = make_repeater("aa", lat_w, lon_w, name="west")
    near_east = make_repeater("aa", lat_e, lon_e, name="east")

    graph = build_graph([_tile(west, "aa"), _tile(east, "aa")],
                        build_index([near_west, near_east]), elevation_factor=0.0)
    assert [e.repeater.name for e in graph.edges] == ["west", "east"]
    assert graph.hit_repeaters == [near_west, near_east]


def test_hit_repeaters_deduplicated():
    lat, lon = geohash.decode_center(TILE)
    a = make_repeater("aa", lat, lon)
    graph = build_graph([_tile(TILE, "aa"), _tile("c23nb7", "aa")], build_index([a]))
    assert len(graph.edges) == 2
    assert graph.hit_repeaters == [a]


def test_overlay_adds_pending_samples_without_touching_stored():
    stored = _tile(TILE, "aa")
    stored.metadata.lost = 2
    tiles = {TILE: stored}
    samples = [
        hashed_sample(TILE + "k0", 500, path=("BB",)),
        hashed_sample("c23nb7k0", 600, observed=True),
        hashed_sample("c23nb7k1", 700),
    ]
    merged = overlay_samples(tiles, samples)

    assert stored.metadata.hit_repeaters == ["aa"]
    assert stored.metadata.heard == 1

    assert merged[TILE].metadata.hit_repeaters == ["aa", "bb"]
    assert merged[TILE].metadata.heard == 2
    assert merged[TILE].metadata.lost == 2

    new = merged["c23nb7"].metadata
    assert (new.observed, new.heard, new.lost) == (1, 1, 1)
    assert new.last_observed == 600
    assert new.updated == 700


# --- Ranking ---

def _edges(*pairs):
    return [ProximityEdge(repeater=r, tile_key=k, tile_pos=(0.0, 0.0)) for r, k in pairs]


def test_rank_by_edge_count():
    a = make_repeater("aa", 1, 1, name="Alpha")
    b = make_repeater("bb", 2, 2, name="Bravo")
    edges = _edges((a, "t1"), (b, "t1"), (b, "t2"), (b, "t3"), (a, "t4"))
    assert rank_repeaters(edges) == [("[bb] Bravo", 3), ("[aa] Alpha", 2)]


def test_rank_groups_by_id_and_name():
    a1 = make_repeater("aa", 1, 1, name="Hill")
    a2 = make_repeater("aa", 5, 5, name="Valley")
    a3 = make_repeater("aa", 9, 9, name="Hill")
    ranked = rank_repeaters(_edges((a1, "t1"), (a2, "t2"), (a3, "t3")))
    assert ranked == [("[aa] Hill", 2), ("[aa] Valley", 1)]


def test_rank_ties_keep_first_seen_order():
    reps = [make_repeater(f"{i:02x}", 0, 0) for i in range(4)]
    edges = _edges(*[(r, "t") for r in reversed(reps)])
    assert [rid for rid, _ in rank_repeaters(edges)] == [
        "[03] rptr-03", "[02] rptr-02", "[01] rptr-01", "[00] rptr-00",
    ]


def test_rank_truncates():
    reps = [make_repeater(f"{i:02x}", 0, 0) for i in range(60)]
    ranked = rank_repeaters(_edges(*[(r, "t") for r in reps]))
    assert len(ranked) == 50
    assert len(rank_repeaters(_edges(*[(r, "t") for r in reps]), top_n=5)) == 5


def test_rx_graph_starts_at_precise_hash():
    precise = geohash.encode(47.6062, -122.3321, 8)
    lat, lon = geohash.decode_center(precise)
    a = make_repeater("aa", lat + 0.01, lon)
    coverage = [
        RxCoverage(hash=precise, time=1, count=2, repeaters=("aa", "gone")),
        RxCoverage(hash=geohash.encode(47.7, -122.4, 8), time=2, count=1, repeaters=("aa",)),
    ]
    graph = build_rx_graph(coverage, build_index([a]))
    assert [e.tile_key for e in graph.edges] == [c.hash for c in coverage]
    assert graph.edges[0].tile_pos == (lat, lon)
    assert graph.hit_repeaters == [a]
