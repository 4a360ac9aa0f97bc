"""Tests for the consolidation job and the coverage reader."""

from __future__ import annotations

import asyncio

import pytest

from meshmap.core.errors import StoreError, TileConflictError
from meshmap.core.processor import DAY_MS, ConsolidationJob, CoverageReader
from meshmap.core.stats import EngineStats

from factories import hashed_sample, make_repeater

NOW = 30 * DAY_MS


class FlakyTiles:
    """Tile store wrapper that fails writes for chosen keys."""

    def __init__(self, inner, fail_keys=(), conflict_keys=()):
        self._inner = inner
        self._fail = set(fail_keys)
        self._conflict = set(conflict_keys)

    async def get_tile(self, key):
        return await self._inner.get_tile(key)

    async def put_tile(self, key, history, metadata, expected_version):
        if key in self._fail:
            raise StoreError("disk on fire")
        if key in self._conflict:
            raise TileConflictError(key, expected_version)
        return await self._inner.put_tile(key, history, metadata, expected_version)


class SlowTiles:
    """Tile store wrapper that records how many reads overlap."""

    def __init__(self, inner):
        self._inner = inner
        self.in_flight = 0
        self.peak = 0

    async def get_tile(self, key):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            return await self._inner.get_tile(key)
        finally:
            self.in_flight -= 1

    async def put_tile(self, key, history, metadata, expected_version):
        return await self._inner.put_tile(key, history, metadata, expected_version)


class BrokenSamples:
    async def list_samples(self, before=None, prefix=""):
        raise StoreError("unreachable")


async def _seed(storage, samples):
    for s in samples:
        await storage.add_sample(s)


async def test_run_merges_and_archives(storage):
    await _seed(storage, [
        hashed_sample("c23nb6aa", 1000, observed=True),
        hashed_sample("c23nb6ab", 2000, path=("R1",)),
        hashed_sample("c23nb7aa", 1500),
        hashed_sample("c23nb8aa", NOW - 1000),  # too recent
    ])
    stats = EngineStats()
    job = ConsolidationJob(storage, storage, stats)

    result = await job.run(now_ms=NOW)

    assert result.as_dict() == {
        "to_update": 2,
        "samples_to_update": 3,
        "merged_ok": 2,
        "merged_fail": 0,
        "merged_skip": 0,
    }
    tile = await storage.get_tile("c23nb6")
    assert len(tile.history) == 1
    assert (tile.metadata.observed, tile.metadata.heard, tile.metadata.lost) == (1, 2, 0)
    assert tile.metadata.updated == 2000
    assert tile.metadata.hit_repeaters == ["r1"]

    lost_tile = await storage.get_tile("c23nb7")
    assert lost_tile.metadata.lost == 1

    remaining = await storage.list_samples()
    assert [s.precise_hash for s in remaining] == ["c23nb8aa"]
    assert storage.count_archived() == 3
    assert stats.snapshot()["consolidation"]["tiles_merged"] == 2


async def test_second_run_appends_new_entry(storage):
    job = ConsolidationJob(storage, storage)
    await _seed(storage, [hashed_sample("c23nb6aa", 1000, path=("a",))])
    await job.run(now_ms=NOW)
    await _seed(storage, [hashed_sample("c23nb6aa", 5000, path=("b",))])
    await job.run(now_ms=NOW)

    tile = await storage.get_tile("c23nb6")
    assert [e.time for e in tile.history] == [1000, 5000]
    assert tile.metadata.hit_repeaters == ["a", "b"]
    assert tile.version == 2


async def test_reprocessing_handled_samples_is_noop(storage):
    """Samples that survive an interrupted archive must not count twice."""
    samples = [hashed_sample("c23nb6aa", 1000, observed=True)]
    job = ConsolidationJob(storage, storage)
    await _seed(storage, samples)
    await job.run(now_ms=NOW)
    before = await storage.get_tile("c23nb6")

    await _seed(storage, samples)
    result = await job.run(now_ms=NOW)

    after = await storage.get_tile("c23nb6")
    assert result.merged_ok == 1
    assert after.history == before.history
    assert after.metadata == before.metadata
    assert after.version == before.version
    assert await storage.list_samples() == []


async def test_cap_defers_remaining_tiles(storage):
    await _seed(storage, [hashed_sample(f"c23nb{c}aa", 1000 + i) for i, c in enumerate("0123456")])
    job = ConsolidationJob(storage, storage, max_tiles_per_run=4)

    result = await job.run(now_ms=NOW)
    assert (result.to_update, result.merged_ok, result.merged_skip) == (7, 4, 3)
    assert len(await storage.list_samples()) == 3

    result = await job.run(now_ms=NOW)
    assert (result.to_update, result.merged_ok, result.merged_skip) == (3, 3, 0)
    assert await storage.list_samples() == []


async def test_failed_tile_keeps_its_samples(storage):
    await _seed(storage, [
        hashed_sample("c23nb6aa", 1000),
        hashed_sample("c23nb7aa", 1000),
        hashed_sample("c23nb8aa", 1000),
    ])
    tiles = FlakyTiles(storage, fail_keys={"c23nb7"}, conflict_keys={"c23nb8"})
    job = ConsolidationJob(storage, tiles)

    result = await job.run(now_ms=NOW)

    assert (result.merged_ok, result.merged_fail, result.merged_skip) == (1, 2, 0)
    assert await storage.get_tile("c23nb7") is None
    assert sorted(s.tile_key for s in await storage.list_samples()) == ["c23nb7", "c23nb8"]


async def test_concurrent_writer_conflict_detected(storage):
    """A stale read loses the compare-and-swap instead of clobbering."""
    await _seed(storage, [hashed_sample("c23nb6aa", 1000)])
    await ConsolidationJob(storage, storage).run(now_ms=NOW)
    stale = await storage.get_tile("c23nb6")

    await _seed(storage, [hashed_sample("c23nb6aa", 2000)])
    await ConsolidationJob(storage, storage).run(now_ms=NOW)

    with pytest.raises(TileConflictError):
        await storage.put_tile("c23nb6", [], {}, stale.version)
    assert len((await storage.get_tile("c23nb6")).history) == 2


async def test_unreachable_sample_store_is_fatal(storage):
    stats = EngineStats()
    job = ConsolidationJob(BrokenSamples(), storage, stats)
    with pytest.raises(StoreError):
        await job.run(now_ms=NOW)
    assert stats.snapshot()["consolidation"]["runs_failed"] == 1


async def test_nonpositive_max_age_uses_default(storage):
    await _seed(storage, [hashed_sample("c23nb6aa", NOW - DAY_MS // 2)])
    job = ConsolidationJob(storage, storage, max_age_days=1.0)
    result = await job.run(now_ms=NOW, max_age_days=0)
    assert result.samples_to_update == 0

    result = await job.run(now_ms=NOW, max_age_days=0.25)
    assert result.samples_to_update == 1


async def test_reader_graph_and_snapshot(storage):
    await _seed(storage, [
        hashed_sample("c23nb6aa", 1000, path=("aa",)),
        hashed_sample("c23nb7aa", NOW, path=("aa", "zz")),
    ])
    await ConsolidationJob(storage, storage).run(now_ms=NOW)
    await storage.put_repeater(make_repeater("aa", 47.0, -122.0, name="Alpha"))

    reader = CoverageReader(storage, storage, storage, storage, storage, page_size=1)
    graph = await reader.graph()
    assert [e["tile"] for e in graph["edges"]] == ["c23nb6", "c23nb7"]
    assert graph["top_repeaters"] == [["[aa] Alpha", 2]]
    assert [r["id"] for r in graph["hit_repeaters"]] == ["aa"]

    snap = await reader.snapshot()
    assert [c["id"] for c in snap["coverage"]] == ["c23nb6"]
    assert [s["id"] for s in snap["samples"]] == ["c23nb7aa"]
    assert snap["repeaters"][0]["name"] == "Alpha"


async def test_merges_overlap_up_to_concurrency_limit(storage):
    await _seed(storage, [hashed_sample(f"c23nb{c}aa", 1000) for c in "0123456789"])
    tiles = SlowTiles(storage)
    job = ConsolidationJob(storage, tiles, merge_concurrency=3)

    result = await job.run(now_ms=NOW)

    assert result.merged_ok == 10
    assert tiles.peak == 3
