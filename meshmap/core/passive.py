"""Passive coverage: repeater adverts overheard by listening clients.

Unlike regular samples these are never consolidated into tiles. They are
summarized per precise hash on read and linked to repeaters directly.
"""

from __future__ import annotations

from typing import Iterable

from meshmap.core.models import RxCoverage, RxSample


def _mean(values: list[float]) -> float | None:
    # Missing readings are left out, not counted as zero.
    if not values:
        return None
    return sum(values) / len(values)


def aggregate_rx_samples(samples: Iterable[RxSample]) -> list[RxCoverage]:
    """One RxCoverage per precise hash, in first-seen hash order.

    ``count`` is the number of receptions, snr/rssi are averages over the
    receptions that reported one, and ``repeaters`` lists each distinct
    (lower-cased) repeater id once.
    """
    groups: dict[str, list[RxSample]] = {}
    for s in samples:
        groups.setdefault(s.precise_hash, []).append(s)

    result = []
    for key, group in groups.items():
        result.append(RxCoverage(
            hash=key,
            time=max(s.timestamp for s in group),
            count=len(group),
            snr=_mean([s.snr for s in group if s.snr is not None]),
            rssi=_mean([s.rssi for s in group if s.rssi is not None]),
            repeaters=tuple(dict.fromkeys(s.repeater.lower() for s in group)),
        ))
    return result
