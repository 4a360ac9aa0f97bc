"""Coverage consolidation, snapshot, proximity graph and contributor endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from meshmap.core import geohash

router = APIRouter(prefix="/api/v1")


@router.post("/consolidate")
async def consolidate(
    max_age: float | None = Query(default=None, description="Consolidate samples older than this many days"),
) -> JSONResponse:
    """Fold aged samples into coverage tiles and archive them.

    Meant to be called on a schedule. Tile failures are reported in the
    counts; the response is only an error if the sample store itself fails.
    """
    from meshmap.main import get_job

    result = await get_job().run(max_age_days=max_age)
    return JSONResponse(content=result.as_dict())


@router.get("/nodes")
async def get_nodes() -> JSONResponse:
    """Return coverage tiles, pending samples and repeaters for the map."""
    from meshmap.main import get_config, get_reader, get_stats

    data = await get_reader().snapshot(time_unit_ms=get_config().export.time_unit_ms)
    get_stats().record_snapshot()
    return JSONResponse(content=data)


@router.get("/graph")
async def get_graph() -> JSONResponse:
    """Return repeater-to-tile edges and the top repeaters by edge count."""
    from meshmap.main import get_config, get_reader, get_stats

    config = get_config()
    data = await get_reader().graph(
        elevation_factor=config.graph.elevation_factor,
        top_n=config.graph.top_repeaters,
        time_unit_ms=config.export.time_unit_ms,
    )
    get_stats().record_graph()
    return JSONResponse(content=data)


@router.get("/rx-samples")
async def get_rx_samples(p: str = Query(default="", max_length=12)) -> JSONResponse:
    """Passive receptions summarized per precise hash (``p`` filters by prefix)."""
    from meshmap.main import get_config, get_reader

    if p and not geohash.is_valid(p):
        return JSONResponse(status_code=422, content={"error": "invalid geohash prefix"})

    data = await get_reader().rx_coverage(prefix=p, time_unit_ms=get_config().export.time_unit_ms)
    return JSONResponse(content={"rx_samples": data})


@router.get("/rx-graph")
async def get_rx_graph() -> JSONResponse:
    """Proximity graph from passive receptions instead of coverage tiles."""
    from meshmap.main import get_config, get_reader, get_stats

    config = get_config()
    data = await get_reader().rx_graph(
        elevation_factor=config.graph.elevation_factor,
        top_n=config.graph.top_repeaters,
        time_unit_ms=config.export.time_unit_ms,
    )
    get_stats().record_graph()
    return JSONResponse(content=data)


@router.get("/senders")
async def get_senders() -> JSONResponse:
    """Top contributors by number of distinct tiles sampled."""
    from meshmap.main import get_config, get_reader

    senders = await get_reader().top_senders(limit=get_config().graph.top_senders)
    return JSONResponse(content={"senders": senders})
