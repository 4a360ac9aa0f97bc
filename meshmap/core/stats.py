"""Engine statistics.

In-memory counters for ingestion, consolidation runs and snapshot builds.
No framework dependencies.
"""

from __future__ import annotations

import threading
import time

from meshmap.core.models import ConsolidationResult


class EngineStats:
    """Thread-safe counters exposed by the /stats endpoint."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started_at = time.time()

        # Ingestion
        self.samples_received: int = 0
        self.samples_rejected: int = 0
        self.repeaters_received: int = 0
        self.rx_samples_received: int = 0

        # Consolidation
        self.runs: int = 0
        self.runs_failed: int = 0
        self.tiles_merged: int = 0
        self.merge_failures: int = 0
        self.tiles_skipped: int = 0
        self.samples_consolidated: int = 0
        self.last_run_at: float | None = None
        self.last_run_seconds: float = 0.0
        self.last_result: dict | None = None

        # Reads
        self.snapshots_served: int = 0
        self.graphs_built: int = 0
        self.storage_errors: int = 0

    def record_sample(self) -> None:
        with self._lock:
            self.samples_received += 1

    def record_rejected(self, count: int = 1) -> None:
        with self._lock:
            self.samples_rejected += count

    def record_repeater(self) -> None:
        with self._lock:
            self.repeaters_received += 1

    def record_rx_sample(self) -> None:
        with self._lock:
            self.rx_samples_received += 1

    def record_run(self, result: ConsolidationResult, duration_s: float) -> None:
        with self._lock:
            self.runs += 1
            self.tiles_merged += result.merged_ok
            self.merge_failures += result.merged_fail
            self.tiles_skipped += result.merged_skip
            self.last_run_at = time.time()
            self.last_run_seconds = round(duration_s, 3)
            self.last_result = result.as_dict()

    def record_samples_consolidated(self, count: int) -> None:
        with self._lock:
            self.samples_consolidated += count

    def record_run_failed(self) -> None:
        with self._lock:
            self.runs_failed += 1

    def record_snapshot(self) -> None:
        with self._lock:
            self.snapshots_served += 1

    def record_graph(self) -> None:
        with self._lock:
            self.graphs_built += 1

    def record_storage_error(self) -> None:
        with self._lock:
            self.storage_errors += 1

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot of all stats."""
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._started_at, 1),
                "samples_received": self.samples_received,
                "samples_rejected": self.samples_rejected,
                "repeaters_received": self.repeaters_received,
                "rx_samples_received": self.rx_samples_received,
                "consolidation": {
                    "runs": self.runs,
                    "runs_failed": self.runs_failed,
                    "tiles_merged": self.tiles_merged,
                    "merge_failures": self.merge_failures,
                    "tiles_skipped": self.tiles_skipped,
                    "samples_consolidated": self.samples_consolidated,
                    "last_run_at": self.last_run_at,
                    "last_run_seconds": self.last_run_seconds,
                    "last_result": self.last_result,
                },
                "snapshots_served": self.snapshots_served,
                "graphs_built": self.graphs_built,
                "storage_errors": self.storage_errors,
            }
