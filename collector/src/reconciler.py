"""
Reconciler that turns raw meter readings into incremental energy samples.

The plug reports two signals: an instantaneous power value and a cumulative
energy counter. Only the counter is monotone and minute-averaged, so energy
is derived from counter differences. Per device the reconciler remembers the
last accepted counter value, its epoch and the last accepted timestamp:

1. First reading of a device: store it as baseline, emit delta 0.
2. Timestamp not strictly newer than the last accepted one: duplicate or
   out-of-order retransmission, return ``None`` (skipped), state untouched.
3. Counter >= stored counter: delta is the difference.
4. Counter < stored counter (or the device-supplied epoch changed): the plug
   restarted. A new epoch begins and the delta is the raw counter value.

Reading timestamps are the server's request times at millisecond resolution,
the same resolution the sink writes, so two accepted samples never map to
the same stored point. The plug's own wall clock is not used here: it jumps
back at daylight saving changes.

State lives in memory only; after a process restart the first reading
re-baselines at delta 0.

CHANGELOG:
- 2026-10-19: Order readings by server request time
- 2026-10-08: Honour device-supplied counter_epoch as a reset indicator
- 2026-10-07: Initial creation (STORY-006)

TODO:
- None
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime

from collector.src.models import NormalizedSample, RawMeterReading

logger = logging.getLogger(__name__)


@dataclass
class ReconcilerState:
    """Last accepted counter position of one device.

    Attributes:
        counter: Last accepted energy counter value in Wh.
        epoch: Number of counter resets seen since the baseline.
        last_ts: Timestamp of the last accepted reading.
        device_epoch: Last device-supplied epoch indicator, if any.
    """

    counter: float
    epoch: int
    last_ts: datetime
    device_epoch: int | None = None


class SampleReconciler:
    """Per-device reconciliation of counter readings into energy deltas.

    Each device id maps to exactly one :class:`ReconcilerState`, mutated only
    by :meth:`reconcile` for that device. No state is shared across devices.
    """

    def __init__(self) -> None:
        self._states: dict[str, ReconcilerState] = {}

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._states

    def state_for(self, device_id: str) -> ReconcilerState | None:
        """Return a copy of the state for *device_id*, or None if unknown."""
        state = self._states.get(device_id)
        return replace(state) if state is not None else None

    def forget(self, device_id: str) -> None:
        """Drop the state of *device_id*; its next reading re-baselines."""
        self._states.pop(device_id, None)

    def reconcile(self, device_id: str, raw: RawMeterReading) -> NormalizedSample | None:
        """Reconcile one raw reading against the device's stored counter.

        Args:
            device_id: Key of the device's state.
            raw: The freshly fetched reading.

        Returns:
            A :class:`NormalizedSample`, or ``None`` if the reading is a
            duplicate or older than the last accepted one.
        """
        counter = raw.energy_total_wh
        state = self._states.get(device_id)

        if state is None:
            self._states[device_id] = ReconcilerState(
                counter=counter,
                epoch=0,
                last_ts=raw.timestamp,
                device_epoch=raw.counter_epoch,
            )
            logger.info(
                "%s: counter baseline established at %.3fWh", device_id, counter
            )
            return self._sample(device_id, raw, delta=0.0, epoch=0, reset=False)

        if raw.timestamp <= state.last_ts:
            logger.debug(
                "%s: skipping reading at %s (last accepted %s)",
                device_id,
                raw.timestamp.isoformat(),
                state.last_ts.isoformat(),
            )
            return None

        epoch_changed = (
            raw.counter_epoch is not None
            and state.device_epoch is not None
            and raw.counter_epoch != state.device_epoch
        )

        if counter < state.counter or epoch_changed:
            state.epoch += 1
            delta = counter
            reset = True
            logger.warning(
                "%s: counter reset detected (%.3fWh -> %.3fWh), starting epoch %d",
                device_id,
                state.counter,
                counter,
                state.epoch,
            )
        else:
            delta = counter - state.counter
            reset = False

        state.counter = counter
        state.last_ts = raw.timestamp
        if raw.counter_epoch is not None:
            state.device_epoch = raw.counter_epoch

        return self._sample(device_id, raw, delta=delta, epoch=state.epoch, reset=reset)

    @staticmethod
    def _sample(
        device_id: str,
        raw: RawMeterReading,
        *,
        delta: float,
        epoch: int,
        reset: bool,
    ) -> NormalizedSample:
        return NormalizedSample(
            device_id=device_id,
            host=raw.host,
            ts=raw.timestamp,
            power_w=raw.power_w,
            energy_delta_wh=delta,
            energy_total_wh=raw.energy_total_wh,
            last_minute_wh=raw.last_minute_wh,
            epoch=epoch,
            epoch_reset=reset,
        )
