"""Storage interfaces (ports) for samples, coverage tiles and repeaters."""

from __future__ import annotations

from typing import Mapping, Protocol, Sequence, TYPE_CHECKING

if TYPE_CHECKING:
    from meshmap.core.models import CoverageTile, RawSample, Repeater, RxSample, SenderRank


class SampleStore(Protocol):
    """Port: raw samples waiting to be consolidated, plus their archive."""

    async def add_sample(self, sample: RawSample) -> None: ...

    async def list_samples(self, before: int | None = None, prefix: str = "") -> list[RawSample]: ...

    async def archive_and_delete(
        self,
        samples_by_tile: Mapping[str, Sequence[RawSample]],
        archived_at: int,
        before: int,
    ) -> None: ...


class TileStore(Protocol):
    """Port: coverage tiles, replaced whole under compare-and-swap."""

    async def get_tile(self, key: str) -> CoverageTile | None: ...

    async def put_tile(
        self,
        key: str,
        history: list[dict],
        metadata: dict,
        expected_version: int | None,
    ) -> int: ...

    async def list_tiles(
        self, cursor: str | None = None, limit: int = 1000,
    ) -> tuple[list[CoverageTile], str | None]: ...


class RepeaterStore(Protocol):
    """Port: repeater adverts. Read-only to the consolidation path."""

    async def put_repeater(self, repeater: Repeater) -> None: ...

    async def list_repeaters(
        self, cursor: str | None = None, limit: int = 1000,
    ) -> tuple[list[Repeater], str | None]: ...


class RxSampleStore(Protocol):
    """Port: passive receptions of repeater adverts."""

    async def add_rx_sample(self, sample: RxSample) -> None: ...

    async def list_rx_samples(self, prefix: str = "") -> list[RxSample]: ...


class SenderStore(Protocol):
    """Port: who contributed samples to which tile, once per day."""

    async def add_sender(self, tile_key: str, name: str, day_ms: int) -> None: ...

    async def top_senders(self, limit: int = 50) -> list[SenderRank]: ...
