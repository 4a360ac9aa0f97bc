"""Repeater id -> physical repeater index.

Several physical installs can advertise the same logical id, so each id maps
to every matching repeater, in listing order.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable

from meshmap.core.models import Repeater


def build_index(repeaters: Iterable[Repeater]) -> dict[str, list[Repeater]]:
    index: dict[str, list[Repeater]] = defaultdict(list)
    for r in repeaters:
        index[r.id.lower()].append(r)
    return dict(index)
