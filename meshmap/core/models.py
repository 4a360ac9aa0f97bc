"""MeshMap: core internal data models.

These are plain dataclasses with no framework dependencies.
Store rows and JSON bodies are converted to/from these at the boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# Tiles are 6-character geohashes; samples are stored at 8 characters.
TILE_PRECISION = 6
SAMPLE_PRECISION = 8

# History entries written by this version carry this tag.
HISTORY_VERSION = 2


def max_defined(a: float | None, b: float | None) -> float | None:
    """max() that treats None as "no value" rather than as smallest."""
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def normalize_ids(ids) -> tuple[str, ...]:
    """Lower-case and dedupe repeater ids, keeping first-seen order."""
    return tuple(dict.fromkeys(str(i).lower() for i in ids))


@dataclass(frozen=True)
class RawSample:
    precise_hash: str
    timestamp: int
    observed: bool = False
    heard_via: tuple[str, ...] = ()
    snr: float | None = None
    rssi: float | None = None

    @property
    def tile_key(self) -> str:
        return self.precise_hash[:TILE_PRECISION]

    @property
    def heard(self) -> bool:
        return self.observed or len(self.heard_via) > 0


@dataclass(frozen=True)
class UberSample:
    """One consolidation run's summary for a tile."""
    time: int
    observed: int = 0
    heard: int = 0
    lost: int = 0
    snr: float | None = None
    rssi: float | None = None
    last_observed: int = 0
    last_heard: int = 0
    repeaters: tuple[str, ...] = ()

    def to_record(self) -> dict:
        return {
            "v": HISTORY_VERSION,
            "time": self.time,
            "observed": self.observed,
            "heard": self.heard,
            "lost": self.lost,
            "snr": self.snr,
            "rssi": self.rssi,
            "lastObserved": self.last_observed,
            "lastHeard": self.last_heard,
            "repeaters": list(self.repeaters),
        }


@dataclass(frozen=True)
class MalformedEntry:
    """A stored history entry that could not be migrated.

    Kept verbatim so a later fix can still recover it, but never counted.
    """
    raw: dict
    reason: str

    time = 0

    def to_record(self) -> dict:
        return dict(self.raw)


HistoryEntry = UberSample | MalformedEntry


@dataclass
class TileMetadata:
    observed: int = 0
    heard: int = 0
    lost: int = 0
    snr: float | None = None
    rssi: float | None = None
    last_observed: int = 0
    last_heard: int = 0
    updated: int = 0
    hit_repeaters: list[str] = field(default_factory=list)

    @classmethod
    def from_record(cls, data: dict | None) -> TileMetadata:
        """Read stored metadata, filling fields older writers did not set."""
        data = data or {}
        heard = int(data.get("heard") or 0)
        last_heard = int(data.get("lastHeard") or 0) if heard else 0
        return cls(
            observed=int(data.get("observed", heard) or 0),
            heard=heard,
            lost=int(data.get("lost") or 0),
            snr=data.get("snr"),
            rssi=data.get("rssi"),
            last_observed=int(data.get("lastObserved", last_heard) or 0),
            last_heard=last_heard,
            updated=int(data.get("updated", last_heard) or 0),
            hit_repeaters=list(normalize_ids(data.get("hitRepeaters") or [])),
        )

    def to_record(self) -> dict:
        return {
            "observed": self.observed,
            "heard": self.heard,
            "lost": self.lost,
            "snr": self.snr,
            "rssi": self.rssi,
            "lastObserved": self.last_observed,
            "lastHeard": self.last_heard,
            "updated": self.updated,
            "hitRepeaters": list(self.hit_repeaters),
        }


@dataclass
class CoverageTile:
    key: str
    history: list[HistoryEntry] = field(default_factory=list)
    metadata: TileMetadata = field(default_factory=TileMetadata)
    # Compare-and-swap token of the stored row; None if never stored.
    version: int | None = None


@dataclass(frozen=True)
class Repeater:
    id: str
    name: str
    lat: float
    lon: float
    elevation_m: float = 0.0
    last_advert_time: int = 0

    @property
    def pos(self) -> tuple[float, float]:
        return (self.lat, self.lon)

    @property
    def store_key(self) -> str:
        return f"{self.id}|{self.lat:.4f}|{self.lon:.4f}"


@dataclass(frozen=True)
class RxSample:
    """A repeater advert received passively at a location."""
    precise_hash: str
    repeater: str
    timestamp: int
    snr: float | None = None
    rssi: float | None = None


@dataclass(frozen=True)
class RxCoverage:
    """All passive receptions at one precise hash."""
    hash: str
    time: int
    count: int
    snr: float | None = None
    rssi: float | None = None
    repeaters: tuple[str, ...] = ()


# Sender names are clipped before they are stored.
MAX_SENDER_LEN = 32


@dataclass(frozen=True)
class SenderRank:
    name: str
    tiles: int


@dataclass(frozen=True)
class ProximityEdge:
    repeater: Repeater
    tile_key: str
    tile_pos: tuple[float, float]


@dataclass
class ProximityGraph:
    edges: list[ProximityEdge] = field(default_factory=list)
    hit_repeaters: list[Repeater] = field(default_factory=list)


@dataclass
class ConsolidationResult:
    to_update: int = 0
    samples_to_update: int = 0
    merged_ok: int = 0
    merged_fail: int = 0
    merged_skip: int = 0

    def as_dict(self) -> dict:
        return {
            "to_update": self.to_update,
            "samples_to_update": self.samples_to_update,
            "merged_ok": self.merged_ok,
            "merged_fail": self.merged_fail,
            "merged_skip": self.merged_skip,
        }
