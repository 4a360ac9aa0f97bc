"""Tile aggregation: merges an uber-sample into a tile's bounded history.

Stored history entries come in three shapes, one per schema generation:

- v0: ``{time, path}``. ``time`` may be a numeric string. Heard iff the
  path was non-empty.
- v1: ``{time, heard, lost, lastHeard, repeaters}``. No observed count.
- v2: the current shape (see UberSample.to_record), tagged ``"v": 2`` when
  written by this code.

Migration is a pure transform into UberSample; the stored dict is never
modified. Entries no rule can repair become MalformedEntry and are carried
along untouched but left out of the tile's metadata.
"""

from __future__ import annotations

from typing import Callable, Iterable

import structlog

from meshmap.core.errors import MalformedRecordError
from meshmap.core.models import (
    HISTORY_VERSION,
    CoverageTile,
    HistoryEntry,
    MalformedEntry,
    TileMetadata,
    UberSample,
    max_defined,
    normalize_ids,
)

log = structlog.get_logger()

# Only the N newest entries are kept so recent samples can still flip a tile.
MAX_HISTORY = 15


def schema_version(raw: dict) -> int:
    if "v" in raw:
        return raw["v"]
    if "heard" not in raw:
        return 0
    if "observed" not in raw:
        return 1
    return 2


def _require(raw: dict, *names: str) -> None:
    missing = [n for n in names if n not in raw or raw[n] is None]
    if missing:
        raise MalformedRecordError(f"missing fields: {', '.join(missing)}")


def _as_time(value) -> int:
    # An older writer stored time as a string.
    try:
        return int(float(value))
    except (TypeError, ValueError) as e:
        raise MalformedRecordError(f"bad time value {value!r}") from e


def _as_int(raw: dict, name: str) -> int:
    try:
        return int(raw[name])
    except (TypeError, ValueError) as e:
        raise MalformedRecordError(f"bad {name} value {raw[name]!r}") from e


def _as_ids(raw: dict, name: str) -> tuple[str, ...]:
    value = raw[name]
    if not isinstance(value, (list, tuple)):
        raise MalformedRecordError(f"{name} is not a list")
    return normalize_ids(value)


def _from_v0(raw: dict) -> UberSample:
    _require(raw, "time", "path")
    time = _as_time(raw["time"])
    path = _as_ids(raw, "path")
    heard = 1 if path else 0
    last_heard = time if heard else 0
    # Every heard entry of this era was also observed.
    return UberSample(
        time=time,
        observed=heard,
        heard=heard,
        lost=1 - heard,
        last_observed=last_heard,
        last_heard=last_heard,
        repeaters=path,
    )


def _from_v1(raw: dict) -> UberSample:
    _require(raw, "time", "heard", "lost", "lastHeard", "repeaters")
    heard = _as_int(raw, "heard")
    last_heard = _as_int(raw, "lastHeard")
    return UberSample(
        time=_as_time(raw["time"]),
        observed=heard,
        heard=heard,
        lost=_as_int(raw, "lost"),
        last_observed=last_heard,
        last_heard=last_heard,
        repeaters=_as_ids(raw, "repeaters"),
    )


def _from_v2(raw: dict) -> UberSample:
    _require(raw, "time", "observed", "heard", "lost", "repeaters")
    return UberSample(
        time=_as_time(raw["time"]),
        observed=_as_int(raw, "observed"),
        heard=_as_int(raw, "heard"),
        lost=_as_int(raw, "lost"),
        snr=raw.get("snr"),
        rssi=raw.get("rssi"),
        last_observed=int(raw.get("lastObserved") or 0),
        last_heard=int(raw.get("lastHeard") or 0),
        repeaters=_as_ids(raw, "repeaters"),
    )


_MIGRATIONS: dict[int, Callable[[dict], UberSample]] = {
    0: _from_v0,
    1: _from_v1,
    HISTORY_VERSION: _from_v2,
}


def migrate_entry(raw: dict) -> UberSample:
    """Convert one stored history entry of any known version to UberSample."""
    if not isinstance(raw, dict):
        raise MalformedRecordError(f"history entry is {type(raw).__name__}, not an object")
    version = schema_version(raw)
    migrate = _MIGRATIONS.get(version) if isinstance(version, int) else None
    if migrate is None:
        raise MalformedRecordError(f"unknown history version {version!r}")
    return migrate(raw)


def migrate_history(raw_entries: Iterable[dict], key: str = "") -> list[HistoryEntry]:
    history: list[HistoryEntry] = []
    for raw in raw_entries:
        try:
            history.append(migrate_entry(raw))
        except MalformedRecordError as e:
            log.warning("history_entry_malformed", tile=key, reason=str(e), entry=raw)
            history.append(MalformedEntry(raw=raw, reason=str(e)))
    return history


def compute_metadata(history: Iterable[HistoryEntry],
                     prev: TileMetadata | None = None) -> TileMetadata:
    """Sum/max the history into tile metadata.

    hit_repeaters and updated start from ``prev`` so neither ever shrinks,
    even after the entries that contributed to them are evicted.
    """
    prev = prev or TileMetadata()
    meta = TileMetadata(updated=prev.updated)
    repeaters = dict.fromkeys(prev.hit_repeaters)

    for entry in history:
        if isinstance(entry, MalformedEntry):
            continue
        meta.observed += entry.observed
        meta.heard += entry.heard
        meta.lost += entry.lost
        meta.snr = max_defined(meta.snr, entry.snr)
        meta.rssi = max_defined(meta.rssi, entry.rssi)
        meta.last_observed = max(meta.last_observed, entry.last_observed)
        meta.last_heard = max(meta.last_heard, entry.last_heard)
        meta.updated = max(meta.updated, entry.time)
        for r in entry.repeaters:
            repeaters.setdefault(r.lower(), None)

    meta.hit_repeaters = list(repeaters)
    return meta


def merge_tile(tile: CoverageTile, uber: UberSample,
               max_history: int = MAX_HISTORY) -> tuple[list[HistoryEntry], TileMetadata]:
    """Append ``uber`` to the tile's history and recompute its metadata.

    When the history grows past ``max_history`` the oldest entries by time
    are evicted, which is not necessarily the oldest by insertion.
    """
    history = list(tile.history)
    history.append(uber)

    if len(history) > max_history:
        history = sorted(history, key=lambda e: e.time)[-max_history:]

    metadata = compute_metadata(history, tile.metadata)
    metadata.updated = max(metadata.updated, uber.time)
    return history, metadata
