"""MeshMap server: main entry point.

This is the only file that knows about concrete implementations.
It wires together the core, storage, and API layers.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from meshmap.api.coverage import router as coverage_router
from meshmap.api.monitoring import router as monitoring_router
from meshmap.api.samples import router as samples_router
from meshmap.config import AppConfig, load_config
from meshmap.core.errors import StoreError
from meshmap.core.processor import ConsolidationJob, CoverageReader
from meshmap.core.stats import EngineStats
from meshmap.storage.sqlite_storage import SqliteStorage

log = structlog.get_logger()

# Module-level singletons (set during startup)
_config: AppConfig | None = None
_stats: EngineStats | None = None
_storage: SqliteStorage | None = None
_job: ConsolidationJob | None = None
_reader: CoverageReader | None = None


def get_config() -> AppConfig:
    assert _config is not None, "Server not initialized"
    return _config


def get_stats() -> EngineStats:
    assert _stats is not None, "Server not initialized"
    return _stats


def get_storage() -> SqliteStorage:
    assert _storage is not None, "Server not initialized"
    return _storage


def get_job() -> ConsolidationJob:
    assert _job is not None, "Server not initialized"
    return _job


def get_reader() -> CoverageReader:
    assert _reader is not None, "Server not initialized"
    return _reader


def build_components(config: AppConfig) -> tuple[EngineStats, SqliteStorage, ConsolidationJob, CoverageReader]:
    """Create the stats, storage, job and reader for a config."""
    if config.storage.backend != "sqlite":
        raise ValueError(f"unsupported storage backend {config.storage.backend!r}")

    stats = EngineStats()
    storage = SqliteStorage(config.storage.db_path)
    job = ConsolidationJob(
        samples=storage,
        tiles=storage,
        stats=stats,
        max_age_days=config.consolidation.max_age_days,
        max_tiles_per_run=config.consolidation.max_tiles_per_run,
        max_history=config.consolidation.max_history,
        merge_concurrency=config.consolidation.merge_concurrency,
    )
    reader = CoverageReader(storage, storage, storage, storage, storage,
                            page_size=config.export.page_size)
    return stats, storage, job, reader


def _setup_logging(config: AppConfig) -> None:
    """Configure structlog based on the logging config."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if config.logging.format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.logging.level.upper()),
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global _config, _stats, _storage, _job, _reader

    _config = load_config()
    _setup_logging(_config)

    log.info("server_starting",
             env=_config.server.env,
             db_path=_config.storage.db_path,
             max_tiles_per_run=_config.consolidation.max_tiles_per_run,
             elevation_factor=_config.graph.elevation_factor)

    _stats, _storage, _job, _reader = build_components(_config)

    log.info("server_started",
             host=_config.server.host,
             port=_config.server.port)

    yield

    _storage.close()
    log.info("server_stopped")


app = FastAPI(
    title="MeshMap",
    description="Mesh radio coverage server",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    log.error("request_store_error", path=request.url.path, error=str(exc))
    if _stats is not None:
        _stats.record_storage_error()
    return JSONResponse(status_code=503, content={"error": "storage unavailable"})


app.include_router(samples_router)
app.include_router(coverage_router)
app.include_router(monitoring_router)
