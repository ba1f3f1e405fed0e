"""
Health file writer for the collector daemon.

Writes a JSON health file at a configurable path with:
- devices: per-device ISO timestamp of the last accepted sample.
- last_flush_ts: ISO timestamp of the most recent successful InfluxDB write.
- buffered_samples: Samples waiting in the sink buffer.
- dropped_batches: Batches dropped after exhausting write retries.

The file is rewritten on every state change, providing a simple liveness
signal that Docker HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-10-12: Track per-device sample timestamps and dropped batches
- 2026-10-06: Initial creation (STORY-010)

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path


class HealthWriter:
    """Writes collector health status to a JSON file.

    Each mutating method updates the in-memory state and immediately
    rewrites the health file so it always reflects the latest status.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._device_ts: dict[str, str] = {}
        self._last_flush_ts: str | None = None
        self._buffered_samples: int = 0
        self._dropped_batches: int = 0

    def record_sample(self, device_id: str) -> None:
        """Record an accepted sample for *device_id* and write health file."""
        self._device_ts[device_id] = datetime.now(tz=UTC).isoformat()
        self._write()

    def record_sink(
        self,
        *,
        buffered: int,
        dropped_batches: int,
        last_flush_ts: datetime | None,
    ) -> None:
        """Update the sink counters and write health file."""
        self._buffered_samples = buffered
        self._dropped_batches = dropped_batches
        if last_flush_ts is not None:
            self._last_flush_ts = last_flush_ts.isoformat()
        self._write()

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        data = {
            "devices": dict(self._device_ts),
            "last_flush_ts": self._last_flush_ts,
            "buffered_samples": self._buffered_samples,
            "dropped_batches": self._dropped_batches,
        }
        self.path.write_text(json.dumps(data))
