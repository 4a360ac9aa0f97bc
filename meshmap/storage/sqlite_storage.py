"""SQLite storage implementation.

One database file holds all the stores:
- samples / sample_archive: raw samples awaiting consolidation, and the
  samples already folded into coverage
- coverage: one row per tile, history and metadata as JSON, plus a version
  column used for compare-and-swap writes
- repeaters: one row per advertised install, keyed ``id|lat|lon``
- rx_samples: passive receptions of repeater adverts
- senders: one row per (tile, sender, day)

Uses the built-in sqlite3 with asyncio.to_thread() so queries never run on
the event loop. The single connection is shared by the worker threads and
guarded by a lock; each method's statements (and its transaction) run
under one acquisition.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Mapping, Sequence, TypeVar

import structlog

from meshmap.core.aggregator import migrate_history
from meshmap.core.errors import StoreError, TileConflictError
from meshmap.core.models import (
    MAX_SENDER_LEN,
    CoverageTile,
    RawSample,
    Repeater,
    RxSample,
    SenderRank,
    TileMetadata,
)

log = structlog.get_logger()

T = TypeVar("T")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS samples (
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    hash      TEXT    NOT NULL,
    tile      TEXT    NOT NULL,
    time      INTEGER NOT NULL,
    rssi      REAL,
    snr       REAL,
    observed  INTEGER NOT NULL DEFAULT 0,
    repeaters TEXT    NOT NULL DEFAULT '[]'
);
CREATE INDEX IF NOT EXISTS samples_time ON samples (time);
CREATE INDEX IF NOT EXISTS samples_tile ON samples (tile, time);

CREATE TABLE IF NOT EXISTS sample_archive (
    id   INTEGER PRIMARY KEY AUTOINCREMENT,
    time INTEGER NOT NULL,
    data TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS coverage (
    key      TEXT    PRIMARY KEY,
    value    TEXT    NOT NULL,
    metadata TEXT    NOT NULL,
    version  INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS repeaters (
    key  TEXT PRIMARY KEY,
    id   TEXT NOT NULL,
    name TEXT NOT NULL,
    lat  REAL NOT NULL,
    lon  REAL NOT NULL,
    elev REAL NOT NULL DEFAULT 0,
    time INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS rx_samples (
    id       INTEGER PRIMARY KEY AUTOINCREMENT,
    hash     TEXT    NOT NULL,
    repeater TEXT    NOT NULL,
    time     INTEGER NOT NULL,
    rssi     REAL,
    snr      REAL
);
CREATE INDEX IF NOT EXISTS rx_samples_hash ON rx_samples (hash);

CREATE TABLE IF NOT EXISTS senders (
    hash TEXT    NOT NULL,
    name TEXT    NOT NULL,
    time INTEGER NOT NULL,
    PRIMARY KEY (hash, name, time)
);
"""


def sample_to_record(sample: RawSample) -> dict:
    return {
        "hash": sample.precise_hash,
        "time": sample.timestamp,
        "rssi": sample.rssi,
        "snr": sample.snr,
        "observed": sample.observed,
        "repeaters": list(sample.heard_via),
    }


def _row_to_sample(row: sqlite3.Row) -> RawSample:
    return RawSample(
        precise_hash=row["hash"],
        timestamp=row["time"],
        observed=bool(row["observed"]),
        heard_via=tuple(json.loads(row["repeaters"])),
        snr=row["snr"],
        rssi=row["rssi"],
    )


def _row_to_repeater(row: sqlite3.Row) -> Repeater:
    return Repeater(
        id=row["id"],
        name=row["name"],
        lat=row["lat"],
        lon=row["lon"],
        elevation_m=row["elev"],
        last_advert_time=row["time"],
    )


def _row_to_tile(key: str, row: sqlite3.Row) -> CoverageTile:
    try:
        raw_history = json.loads(row["value"])
        raw_metadata = json.loads(row["metadata"])
    except json.JSONDecodeError as e:
        raise StoreError(f"tile {key!r} is not valid JSON: {e}") from e
    if not isinstance(raw_history, list):
        raise StoreError(f"tile {key!r} history is not a list")
    return CoverageTile(
        key=key,
        history=migrate_history(raw_history, key),
        metadata=TileMetadata.from_record(raw_metadata),
        version=row["version"],
    )


class SqliteStorage:
    """Every store port, backed by one SQLite file."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _guard(self, op: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as e:
            log.error("store_operation_failed", op=op, db=self._db_path, error=str(e))
            raise StoreError(f"{op} failed: {e}") from e

    def _call(self, op: str, fn: Callable[[sqlite3.Connection], T]) -> T:
        with self._lock, self._guard(op):
            return fn(self._conn)

    async def _run(self, op: str, fn: Callable[[sqlite3.Connection], T]) -> T:
        return await asyncio.to_thread(self._call, op, fn)

    # --- Samples ---

    async def add_sample(self, sample: RawSample) -> None:
        def _insert(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute(
                    """
                    INSERT INTO samples (hash, tile, time, rssi, snr, observed, repeaters)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        sample.precise_hash,
                        sample.tile_key,
                        sample.timestamp,
                        sample.rssi,
                        sample.snr,
                        1 if sample.observed else 0,
                        json.dumps(list(sample.heard_via)),
                    ),
                )

        await self._run("add_sample", _insert)
        log.debug("sample_written", hash=sample.precise_hash, time=sample.timestamp)

    async def list_samples(self, before: int | None = None, prefix: str = "") -> list[RawSample]:
        sql = "SELECT * FROM samples WHERE hash LIKE ?"
        params: list = [f"{prefix}%"]
        if before is not None:
            sql += " AND time < ?"
            params.append(before)
        sql += " ORDER BY time, id"

        rows = await self._run("list_samples", lambda conn: conn.execute(sql, params).fetchall())
        return [_row_to_sample(r) for r in rows]

    async def archive_and_delete(
        self,
        samples_by_tile: Mapping[str, Sequence[RawSample]],
        archived_at: int,
        before: int,
    ) -> None:
        """Archive the given samples and delete them, all in one transaction."""
        def _archive(conn: sqlite3.Connection) -> int:
            archived = 0
            with conn:
                for tile, samples in samples_by_tile.items():
                    conn.executemany(
                        "INSERT INTO sample_archive (time, data) VALUES (?, ?)",
                        [(archived_at, json.dumps(sample_to_record(s))) for s in samples],
                    )
                    conn.execute(
                        "DELETE FROM samples WHERE tile = ? AND time < ?",
                        (tile, before),
                    )
                    archived += len(samples)
            return archived

        archived = await self._run("archive_and_delete", _archive)
        log.debug("samples_archived", tiles=len(samples_by_tile), samples=archived)

    def count_archived(self) -> int:
        return self._call(
            "count_archived",
            lambda conn: conn.execute("SELECT COUNT(*) FROM sample_archive").fetchone()[0],
        )

    # --- Coverage tiles ---

    async def get_tile(self, key: str) -> CoverageTile | None:
        row = await self._run("get_tile", lambda conn: conn.execute(
            "SELECT value, metadata, version FROM coverage WHERE key = ?", (key,),
        ).fetchone())
        if row is None:
            return None
        return _row_to_tile(key, row)

    async def put_tile(
        self,
        key: str,
        history: list[dict],
        metadata: dict,
        expected_version: int | None,
    ) -> int:
        """Replace a tile's history and metadata; returns the new version.

        Raises TileConflictError if the row's version is not
        ``expected_version`` (or, for None, if the row already exists).
        """
        value = json.dumps(history, separators=(",", ":"))
        meta = json.dumps(metadata, separators=(",", ":"))

        def _write(conn: sqlite3.Connection) -> int:
            with conn:
                if expected_version is None:
                    try:
                        conn.execute(
                            "INSERT INTO coverage (key, value, metadata, version) VALUES (?, ?, ?, 1)",
                            (key, value, meta),
                        )
                    except sqlite3.IntegrityError:
                        raise TileConflictError(key, expected_version) from None
                    return 1

                cur = conn.execute(
                    """
                    UPDATE coverage SET value = ?, metadata = ?, version = version + 1
                    WHERE key = ? AND version = ?
                    """,
                    (value, meta, key, expected_version),
                )
                if cur.rowcount == 0:
                    raise TileConflictError(key, expected_version)
                return expected_version + 1

        new_version = await self._run("put_tile", _write)
        log.debug("tile_written", tile=key, version=new_version, entries=len(history))
        return new_version

    async def list_tiles(
        self, cursor: str | None = None, limit: int = 1000,
    ) -> tuple[list[CoverageTile], str | None]:
        rows = await self._run("list_tiles", lambda conn: conn.execute(
            "SELECT key, value, metadata, version FROM coverage WHERE key > ? ORDER BY key LIMIT ?",
            (cursor or "", limit),
        ).fetchall())
        tiles = [_row_to_tile(r["key"], r) for r in rows]
        next_cursor = rows[-1]["key"] if len(rows) == limit else None
        return tiles, next_cursor

    # --- Repeaters ---

    async def put_repeater(self, repeater: Repeater) -> None:
        def _upsert(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute(
                    """
                    INSERT INTO repeaters (key, id, name, lat, lon, elev, time)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                      name = excluded.name,
                      elev = excluded.elev,
                      time = MAX(time, excluded.time)
                    """,
                    (
                        repeater.store_key,
                        repeater.id,
                        repeater.name,
                        repeater.lat,
                        repeater.lon,
                        repeater.elevation_m,
                        repeater.last_advert_time,
                    ),
                )

        await self._run("put_repeater", _upsert)
        log.debug("repeater_written", key=repeater.store_key)

    async def list_repeaters(
        self, cursor: str | None = None, limit: int = 1000,
    ) -> tuple[list[Repeater], str | None]:
        rows = await self._run("list_repeaters", lambda conn: conn.execute(
            "SELECT * FROM repeaters WHERE key > ? ORDER BY key LIMIT ?",
            (cursor or "", limit),
        ).fetchall())
        next_cursor = rows[-1]["key"] if len(rows) == limit else None
        return [_row_to_repeater(r) for r in rows], next_cursor

    # --- Passive receptions ---

    async def add_rx_sample(self, sample: RxSample) -> None:
        def _insert(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute(
                    "INSERT INTO rx_samples (hash, repeater, time, rssi, snr) VALUES (?, ?, ?, ?, ?)",
                    (sample.precise_hash, sample.repeater, sample.timestamp, sample.rssi, sample.snr),
                )

        await self._run("add_rx_sample", _insert)
        log.debug("rx_sample_written", hash=sample.precise_hash, repeater=sample.repeater)

    async def list_rx_samples(self, prefix: str = "") -> list[RxSample]:
        rows = await self._run("list_rx_samples", lambda conn: conn.execute(
            "SELECT * FROM rx_samples WHERE hash LIKE ? ORDER BY id", (f"{prefix}%",),
        ).fetchall())
        return [
            RxSample(
                precise_hash=r["hash"],
                repeater=r["repeater"],
                timestamp=r["time"],
                snr=r["snr"],
                rssi=r["rssi"],
            )
            for r in rows
        ]

    # --- Senders ---

    async def add_sender(self, tile_key: str, name: str, day_ms: int) -> None:
        """Credit ``name`` with ``tile_key`` for the day; repeats are ignored."""
        def _insert(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute(
                    "INSERT OR IGNORE INTO senders (hash, name, time) VALUES (?, ?, ?)",
                    (tile_key, name[:MAX_SENDER_LEN], day_ms),
                )

        await self._run("add_sender", _insert)

    async def top_senders(self, limit: int = 50) -> list[SenderRank]:
        """Senders by number of distinct tiles contributed, most first."""
        rows = await self._run("top_senders", lambda conn: conn.execute(
            """
            SELECT name, COUNT(DISTINCT hash) AS tiles FROM senders
            GROUP BY name ORDER BY tiles DESC, name LIMIT ?
            """,
            (limit,),
        ).fetchall())
        return [SenderRank(name=r["name"], tiles=r["tiles"]) for r in rows]
