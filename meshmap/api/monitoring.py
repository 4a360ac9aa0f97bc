"""Health check and monitoring endpoints."""

from __future__ import annotations

import json
import shutil
from pathlib import Path

from fastapi import APIRouter

from meshmap.core.models import SAMPLE_PRECISION, TILE_PRECISION

router = APIRouter(prefix="/api/v1")

# Load build info once at import time.
_BUILD_INFO_PATH = Path(__file__).parent.parent / "build_info.json"
_BUILD_INFO: dict = {}
if _BUILD_INFO_PATH.exists():
    try:
        _BUILD_INFO = json.loads(_BUILD_INFO_PATH.read_text())
    except (json.JSONDecodeError, OSError):
        pass


@router.get("/health")
async def health() -> dict:
    """Basic health check."""
    from meshmap.main import get_config, get_stats

    stats = get_stats()
    config = get_config()

    db_dir = Path(config.storage.db_path).parent
    try:
        disk = shutil.disk_usage(db_dir if db_dir.exists() else ".")
        disk_free_gb = round(disk.free / (1024 ** 3), 1)
    except OSError:
        disk_free_gb = -1

    snapshot = stats.snapshot()
    result = {
        "status": "ok",
        "version": "0.1.0",
        "uptime_seconds": snapshot["uptime_seconds"],
        "last_consolidation_at": snapshot["consolidation"]["last_run_at"],
        "storage_errors": snapshot["storage_errors"],
        "disk_free_gb": disk_free_gb,
    }
    result.update(_BUILD_INFO)
    return result


@router.get("/stats")
async def stats() -> dict:
    """Ingestion, consolidation and read counters.

    The ``consolidation`` section carries totals across runs plus the
    counts returned by the most recent run.
    """
    from meshmap.main import get_stats

    return get_stats().snapshot()


@router.get("/config")
async def get_client_config() -> dict:
    """Parameters the map client needs to interpret the other endpoints."""
    from meshmap.main import get_config

    config = get_config()
    return {
        "tile_precision": TILE_PRECISION,
        "sample_precision": SAMPLE_PRECISION,
        "time_unit_ms": config.export.time_unit_ms,
        "max_history": config.consolidation.max_history,
        "top_repeaters": config.graph.top_repeaters,
        "elevation_factor": config.graph.elevation_factor,
    }
