"""Exceptions raised by the core and the storage adapters."""

from __future__ import annotations


class StoreError(Exception):
    """A sample, tile or repeater store operation failed."""


class TileConflictError(StoreError):
    """The stored tile changed since it was read (compare-and-swap miss)."""

    def __init__(self, key: str, expected_version: int | None) -> None:
        super().__init__(f"tile {key!r} changed since version {expected_version}")
        self.key = key
        self.expected_version = expected_version


class MalformedRecordError(ValueError):
    """A stored history entry is missing fields no migration rule can infer."""
