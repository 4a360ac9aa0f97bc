"""Sample consolidation: folds a tile's backlog into one uber-sample.

A whole backlog becomes a single history entry per run, so a burst of spam
samples between two runs can only ever cost one history slot.
"""

from __future__ import annotations

from typing import Iterable

from meshmap.core.models import RawSample, UberSample, max_defined


def group_by_tile(samples: Iterable[RawSample]) -> dict[str, list[RawSample]]:
    """Bucket samples by tile key, keys in first-seen order."""
    groups: dict[str, list[RawSample]] = {}
    for s in samples:
        groups.setdefault(s.tile_key, []).append(s)
    return groups


def consolidate_samples(samples: Iterable[RawSample], cutoff_time: int) -> UberSample | None:
    """Merge samples newer than cutoff_time into one UberSample.

    Samples at or before the cutoff were handled by an earlier run and are
    ignored. Returns None when nothing is left, never an empty record.
    """
    time = 0
    observed = heard = lost = 0
    snr = rssi = None
    last_observed = last_heard = 0
    repeaters: dict[str, None] = {}

    for s in samples:
        if s.timestamp <= cutoff_time:
            continue

        time = max(time, s.timestamp)
        snr = max_defined(snr, s.snr)
        rssi = max_defined(rssi, s.rssi)

        if s.observed:
            observed += 1
            last_observed = max(last_observed, s.timestamp)

        if s.heard:
            heard += 1
            last_heard = max(last_heard, s.timestamp)
        else:
            lost += 1

        for r in s.heard_via:
            repeaters.setdefault(r.lower(), None)

    if heard + lost == 0:
        return None

    return UberSample(
        time=time,
        observed=observed,
        heard=heard,
        lost=lost,
        snr=snr,
        rssi=rssi,
        last_observed=last_observed,
        last_heard=last_heard,
        repeaters=tuple(repeaters),
    )
