"""Sample, passive reception and repeater ingestion endpoints.

This is the thin FastAPI adapter. It parses JSON bodies, converts them to
internal models, and hands them to the store.
"""

from __future__ import annotations

import json
import math
import time

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from meshmap.core import geohash
from meshmap.core.models import SAMPLE_PRECISION, RawSample, Repeater, RxSample, normalize_ids
from meshmap.core.processor import DAY_MS
from meshmap.core.snapshot import sample_summary

router = APIRouter(prefix="/api/v1")

# Advert times are epoch millis; anything past this is not a timestamp.
_MAX_TIME_MS = 10 ** 15


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"accepted": False, "error": message})


def _number(data: dict, name: str, default: float | None = None) -> float | None:
    """Read a finite number, or raise ValueError.

    JSON allows literals like ``1e999`` that parse to infinity; those are
    rejected so they can never reach a stored tile.
    """
    value = data.get(name)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"{name} must be a number")
    try:
        number = float(value)
    except (ValueError, OverflowError):
        raise ValueError(f"{name} must be a number") from None
    if not math.isfinite(number):
        raise ValueError(f"{name} must be finite")
    return number


def _parse_position(data: dict) -> tuple[float, float]:
    """Return (lat, lon) from a JSON body, or raise ValueError."""
    lat = _number(data, "lat")
    lon = _number(data, "lon")
    if lat is None or lon is None:
        raise ValueError("lat and lon are required numbers")
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        raise ValueError("lat/lon out of range")
    return lat, lon


def _parse_sample(data: dict, now_ms: int) -> RawSample:
    lat, lon = _parse_position(data)
    path = data.get("path") or []
    if not isinstance(path, list):
        raise ValueError("path must be a list of repeater ids")
    observed = data.get("observed")
    if observed is None:
        observed = False
    if not isinstance(observed, bool):
        raise ValueError("observed must be true or false")
    return RawSample(
        precise_hash=geohash.encode(lat, lon, SAMPLE_PRECISION),
        timestamp=now_ms,
        observed=observed,
        heard_via=normalize_ids(path),
        snr=_number(data, "snr"),
        rssi=_number(data, "rssi"),
    )


def _parse_sender(data: dict) -> str | None:
    sender = data.get("sender")
    if sender is None:
        return None
    if not isinstance(sender, str):
        raise ValueError("sender must be a string")
    return sender.strip() or None


def _parse_rx_sample(data: dict, now_ms: int) -> RxSample:
    lat, lon = _parse_position(data)
    repeater = data.get("repeater")
    if not isinstance(repeater, str) or not repeater.strip():
        raise ValueError("repeater id is required")
    return RxSample(
        precise_hash=geohash.encode(lat, lon, SAMPLE_PRECISION),
        repeater=repeater.strip().lower(),
        timestamp=now_ms,
        snr=_number(data, "snr"),
        rssi=_number(data, "rssi"),
    )


async def _read_json(request: Request) -> dict:
    body = json.loads(await request.body())
    if not isinstance(body, dict):
        raise ValueError("body must be a JSON object")
    return body


@router.post("/samples")
async def receive_sample(request: Request) -> JSONResponse:
    """Store one observation sent by a mesh client.

    An optional ``sender`` name is credited with the sample's tile, once per
    tile per UTC day.
    """
    from meshmap.main import get_stats, get_storage

    stats = get_stats()
    try:
        body = await _read_json(request)
    except (ValueError, UnicodeDecodeError):
        stats.record_rejected()
        return _error(400, "invalid JSON")

    now_ms = int(time.time() * 1000)
    try:
        sample = _parse_sample(body, now_ms)
        sender = _parse_sender(body)
    except ValueError as e:
        stats.record_rejected()
        return _error(422, str(e))

    storage = get_storage()
    await storage.add_sample(sample)
    if sender:
        await storage.add_sender(sample.tile_key, sender, now_ms - now_ms % DAY_MS)
    stats.record_sample()
    return JSONResponse(content={"accepted": True, "hash": sample.precise_hash})


@router.get("/samples")
async def list_samples(p: str = Query(default="", max_length=12)) -> JSONResponse:
    """Return pending raw samples whose geohash starts with ``p``."""
    from meshmap.main import get_config, get_storage

    if p and not geohash.is_valid(p):
        return _error(422, "invalid geohash prefix")

    unit_ms = get_config().export.time_unit_ms
    samples = await get_storage().list_samples(prefix=p)
    return JSONResponse(content={"samples": [sample_summary(s, unit_ms) for s in samples]})


@router.post("/rx-samples")
async def receive_rx_sample(request: Request) -> JSONResponse:
    """Store one repeater advert overheard by a listening client."""
    from meshmap.main import get_stats, get_storage

    stats = get_stats()
    try:
        body = await _read_json(request)
    except (ValueError, UnicodeDecodeError):
        stats.record_rejected()
        return _error(400, "invalid JSON")

    try:
        sample = _parse_rx_sample(body, int(time.time() * 1000))
    except ValueError as e:
        stats.record_rejected()
        return _error(422, str(e))

    await get_storage().add_rx_sample(sample)
    stats.record_rx_sample()
    return JSONResponse(content={"accepted": True, "hash": sample.precise_hash})


@router.post("/repeaters")
async def receive_repeater(request: Request) -> JSONResponse:
    """Record a repeater advert."""
    from meshmap.main import get_stats, get_storage

    try:
        body = await _read_json(request)
    except (ValueError, UnicodeDecodeError):
        return _error(400, "invalid JSON")

    try:
        lat, lon = _parse_position(body)
        rid = str(body["id"]).strip().lower()
        if not rid:
            raise ValueError("id is required")
        advert_time = _number(body, "time")
        if advert_time is not None and not 0 <= advert_time < _MAX_TIME_MS:
            raise ValueError("time out of range")
        repeater = Repeater(
            id=rid,
            name=str(body.get("name", ""))[:64],
            lat=lat,
            lon=lon,
            elevation_m=_number(body, "elev", 0.0),
            last_advert_time=int(advert_time or time.time() * 1000),
        )
    except KeyError:
        return _error(422, "id is required")
    except ValueError as e:
        return _error(422, str(e))

    await get_storage().put_repeater(repeater)
    get_stats().record_repeater()
    return JSONResponse(content={"accepted": True, "key": repeater.store_key})
