"""Consolidation job and coverage reader.

This is the core business logic. It depends on the SampleStore, TileStore
and RepeaterStore protocols, not concrete implementations.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

import structlog

from meshmap.core.aggregator import MAX_HISTORY, merge_tile
from meshmap.core.consolidator import consolidate_samples, group_by_tile
from meshmap.core.distance import DEFAULT_ELEVATION_FACTOR
from meshmap.core.graph import build_graph, build_rx_graph, overlay_samples
from meshmap.core.models import ConsolidationResult, CoverageTile, ProximityGraph, RawSample, Repeater
from meshmap.core.passive import aggregate_rx_samples
from meshmap.core.ranking import TOP_N, rank_repeaters
from meshmap.core.snapshot import (
    DEFAULT_TIME_UNIT_MS,
    build_snapshot,
    edge_summary,
    repeater_summary,
    rx_summary,
    sender_summary,
)
from meshmap.core.spatial_index import build_index

if TYPE_CHECKING:
    from meshmap.core.stats import EngineStats
    from meshmap.storage.base import RepeaterStore, RxSampleStore, SampleStore, SenderStore, TileStore

log = structlog.get_logger()

DAY_MS = 24 * 60 * 60 * 1000


class ConsolidationJob:
    """Folds aged raw samples into coverage tiles, then archives them.

    Runs of one job never overlap. Concurrent jobs in other processes are
    kept apart per tile by the tile store's compare-and-swap write: the
    loser counts the tile as failed and its samples wait for the next run.
    """

    def __init__(
        self,
        samples: SampleStore,
        tiles: TileStore,
        stats: EngineStats | None = None,
        *,
        max_age_days: float = 1.0,
        max_tiles_per_run: int = 500,
        max_history: int = MAX_HISTORY,
        merge_concurrency: int = 8,
    ) -> None:
        self._samples = samples
        self._tiles = tiles
        self._stats = stats
        self._max_age_days = max_age_days
        self._max_tiles = max_tiles_per_run
        self._max_history = max_history
        self._concurrency = max(1, merge_concurrency)
        self._lock = asyncio.Lock()

    async def run(self, now_ms: int | None = None,
                  max_age_days: float | None = None) -> ConsolidationResult:
        """Consolidate every sample older than ``max_age_days``.

        Per-tile failures are counted, never raised. Only a failure to list
        or archive samples aborts the run.
        """
        async with self._lock:
            started = time.monotonic()
            try:
                result = await self._run(now_ms, max_age_days)
            except Exception:
                if self._stats is not None:
                    self._stats.record_run_failed()
                raise
            if self._stats is not None:
                self._stats.record_run(result, time.monotonic() - started)
            return result

    async def _run(self, now_ms: int | None, max_age_days: float | None) -> ConsolidationResult:
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        if max_age_days is None or max_age_days <= 0:
            max_age_days = self._max_age_days
        before = now_ms - int(max_age_days * DAY_MS)

        samples = await self._samples.list_samples(before=before)
        groups = group_by_tile(samples)
        result = ConsolidationResult(to_update=len(groups), samples_to_update=len(samples))
        log.info("consolidation_started", samples=len(samples), tiles=len(groups),
                 before=before)

        # Bound the writes per run; the rest waits for the next one.
        keys = list(groups)[:self._max_tiles]
        semaphore = asyncio.Semaphore(self._concurrency)

        async def merge_one(key: str) -> bool:
            async with semaphore:
                try:
                    await self._merge(key, groups[key])
                    return True
                except Exception:
                    log.error("tile_merge_failed", tile=key, exc_info=True)
                    return False

        outcomes = await asyncio.gather(*(merge_one(k) for k in keys))
        merged = [k for k, ok in zip(keys, outcomes) if ok]

        result.merged_ok = len(merged)
        result.merged_fail = len(keys) - len(merged)
        result.merged_skip = len(groups) - len(keys)

        # Archive only once every merge is done, and only for merged tiles.
        if merged:
            to_archive = {k: groups[k] for k in merged}
            await self._samples.archive_and_delete(to_archive, archived_at=now_ms, before=before)
            if self._stats is not None:
                self._stats.record_samples_consolidated(sum(len(v) for v in to_archive.values()))

        log.info("consolidation_finished", **result.as_dict())
        return result

    async def _merge(self, key: str, samples: list[RawSample]) -> None:
        tile = await self._tiles.get_tile(key) or CoverageTile(key=key)

        uber = consolidate_samples(samples, tile.metadata.updated)
        if uber is None:
            log.debug("tile_already_consolidated", tile=key, samples=len(samples))
            return

        history, metadata = merge_tile(tile, uber, self._max_history)
        await self._tiles.put_tile(
            key,
            [e.to_record() for e in history],
            metadata.to_record(),
            tile.version,
        )
        log.debug("tile_merged", tile=key, samples=len(samples),
                  entries=len(history), heard=uber.heard, lost=uber.lost)


class CoverageReader:
    """Read-only views over the stores: map snapshot, proximity graphs and
    contributor ranking.

    Reads may see a slightly stale picture while a consolidation run is in
    progress; all views are display aids only.
    """

    def __init__(
        self,
        samples: SampleStore,
        tiles: TileStore,
        repeaters: RepeaterStore,
        rx_samples: RxSampleStore,
        senders: SenderStore,
        *,
        page_size: int = 1000,
    ) -> None:
        self._samples = samples
        self._tiles = tiles
        self._repeaters = repeaters
        self._rx_samples = rx_samples
        self._senders = senders
        self._page_size = page_size

    async def all_tiles(self) -> list[CoverageTile]:
        tiles: list[CoverageTile] = []
        cursor = None
        while True:
            page, cursor = await self._tiles.list_tiles(cursor=cursor, limit=self._page_size)
            tiles.extend(page)
            if cursor is None:
                return tiles

    async def all_repeaters(self) -> list[Repeater]:
        repeaters: list[Repeater] = []
        cursor = None
        while True:
            page, cursor = await self._repeaters.list_repeaters(cursor=cursor, limit=self._page_size)
            repeaters.extend(page)
            if cursor is None:
                return repeaters

    async def snapshot(self, time_unit_ms: int = DEFAULT_TIME_UNIT_MS) -> dict:
        tiles = await self.all_tiles()
        samples = await self._samples.list_samples()
        repeaters = await self.all_repeaters()
        return build_snapshot(tiles, samples, repeaters, time_unit_ms)

    async def graph(self, elevation_factor: float = DEFAULT_ELEVATION_FACTOR,
                    top_n: int = TOP_N, time_unit_ms: int = DEFAULT_TIME_UNIT_MS) -> dict:
        """Build the proximity graph from stored tiles plus pending samples."""
        tiles = await self.all_tiles()
        samples = await self._samples.list_samples()
        repeaters = await self.all_repeaters()

        merged = overlay_samples({t.key: t for t in tiles}, samples)
        graph = build_graph(merged.values(), build_index(repeaters), elevation_factor)
        return _graph_view(graph, top_n, time_unit_ms)

    async def rx_coverage(self, prefix: str = "",
                          time_unit_ms: int = DEFAULT_TIME_UNIT_MS) -> list[dict]:
        coverage = aggregate_rx_samples(await self._rx_samples.list_rx_samples(prefix))
        return [rx_summary(c, time_unit_ms) for c in coverage]

    async def rx_graph(self, elevation_factor: float = DEFAULT_ELEVATION_FACTOR,
                       top_n: int = TOP_N, time_unit_ms: int = DEFAULT_TIME_UNIT_MS) -> dict:
        """Proximity graph built straight from passive receptions."""
        coverage = aggregate_rx_samples(await self._rx_samples.list_rx_samples())
        repeaters = await self.all_repeaters()
        graph = build_rx_graph(coverage, build_index(repeaters), elevation_factor)
        return _graph_view(graph, top_n, time_unit_ms)

    async def top_senders(self, limit: int = TOP_N) -> list[dict]:
        return [sender_summary(s) for s in await self._senders.top_senders(limit)]


def _graph_view(graph: ProximityGraph, top_n: int, time_unit_ms: int) -> dict:
    return {
        "edges": [edge_summary(e) for e in graph.edges],
        "top_repeaters": [[rid, n] for rid, n in rank_repeaters(graph.edges, top_n)],
        "hit_repeaters": [repeater_summary(r, time_unit_ms) for r in graph.hit_repeaters],
    }
