"""Top repeaters by number of graph edges."""

from __future__ import annotations

from typing import Iterable

from meshmap.core.models import ProximityEdge

TOP_N = 50


def rank_repeaters(edges: Iterable[ProximityEdge], top_n: int = TOP_N) -> list[tuple[str, int]]:
    """Return ``[("[id] name", edge_count), ...]``, most edges first.

    Grouping is by (id, name): two installs sharing an id but not a name are
    listed separately. Equal counts keep first-seen order.
    """
    counts: dict[tuple[str, str], int] = {}
    for e in edges:
        key = (e.repeater.id, e.repeater.name)
        counts[key] = counts.get(key, 0) + 1

    ranked = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)
    return [(f"[{rid}] {name}", n) for (rid, name), n in ranked[:top_n]]
