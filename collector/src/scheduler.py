"""
Per-device poll scheduler.

Runs independent asyncio tasks per configured device:

- a counter loop (``poll-{name}``) running the fetch-reconcile-sink cycle;
- optionally a power loop (``power-{name}``) running the instantaneous
  power cycle at the device's ``instantaneous_interval_s``.

After each cycle a task sleeps until its next tick, waking early when
shutdown is requested. A cycle may return the delay until its next tick
itself (the counter cycle does, to land just after the plug's minute
update); otherwise ticks follow a fixed-rate grid. Devices never wait on
each other: a slow or failing device only delays its own task.

A loop's cycles never overlap. If a fixed-rate cycle overruns one or more
ticks, those ticks are dropped (and counted) and the schedule continues on
the initial grid.

Shutdown: :meth:`Scheduler.stop` sets the shared event, every task finishes
its in-flight cycle, and tasks still running after ``grace_period_s`` are
cancelled.

CHANGELOG:
- 2026-10-19: Separate power loop; cycles may return their next delay;
  record when shutdown started
- 2026-10-11: Count skipped ticks per device
- 2026-10-09: Initial creation (STORY-008)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from collections.abc import Awaitable, Callable, Iterable

from collector.src.models import DeviceConfig

logger = logging.getLogger(__name__)

Cycle = Callable[[DeviceConfig], Awaitable[float | None]]
IntervalFn = Callable[[DeviceConfig], float]

POWER_LOOP_SUFFIX = ":power"


def _default_interval(device: DeviceConfig) -> float:
    return device.poll_interval_s


class Scheduler:
    """Drives independent poll timers per device.

    Args:
        cycle: Coroutine function run once per counter tick. It may return
            the delay in seconds until its next tick, or None to keep the
            fixed-rate interval.
        interval_fn: Returns the counter tick interval in seconds for a
            device. Defaults to ``device.poll_interval_s``.
        power_cycle: Coroutine function run once per power tick, for devices
            with ``instantaneous_interval_s`` enabled. None disables all
            power loops.
        grace_period_s: How long in-flight cycles may run after shutdown
            is requested before they are cancelled.
        shutdown_event: Event shared with the rest of the pipeline. A new
            one is created when omitted.
    """

    def __init__(
        self,
        cycle: Cycle,
        *,
        interval_fn: IntervalFn | None = None,
        power_cycle: Cycle | None = None,
        grace_period_s: float = 10.0,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        self._cycle = cycle
        self._interval_fn = interval_fn or _default_interval
        self._power_cycle = power_cycle
        self._grace_period_s = grace_period_s
        self._shutdown_event = shutdown_event or asyncio.Event()
        self._shutdown_started_at: float | None = None
        self.skipped_ticks: dict[str, int] = {}

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    @property
    def shutdown_started_at(self) -> float | None:
        """Event loop time at which :meth:`run` saw the shutdown request."""
        return self._shutdown_started_at

    def stop(self) -> None:
        """Request shutdown; no new cycles are started afterwards."""
        self._shutdown_event.set()

    async def run(self, devices: Iterable[DeviceConfig]) -> None:
        """Poll every device on its own timers until :meth:`stop` is called.

        Args:
            devices: Devices to poll.
        """
        tasks: list[asyncio.Task[None]] = []
        for device in devices:
            tasks.append(
                asyncio.create_task(
                    self._poll_loop(device.name, device, self._cycle, self._interval_fn(device)),
                    name=f"poll-{device.name}",
                )
            )
            power_interval = device.instantaneous_interval
            if self._power_cycle is None or power_interval is None:
                logger.info("%s: instantaneous power polling disabled", device.name)
                continue
            tasks.append(
                asyncio.create_task(
                    self._poll_loop(
                        device.name + POWER_LOOP_SUFFIX,
                        device,
                        self._power_cycle,
                        power_interval,
                    ),
                    name=f"power-{device.name}",
                )
            )
        logger.info("%d poll loops started", len(tasks))
        try:
            await self._shutdown_event.wait()
            self._shutdown_started_at = asyncio.get_running_loop().time()
        finally:
            await self._finish(tasks)

    async def _finish(self, tasks: list[asyncio.Task[None]]) -> None:
        """Wait up to the grace period for poll loops, then cancel the rest."""
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=self._grace_period_s)
        if pending:
            logger.warning(
                "%d poll cycle(s) still running after %ss grace period, cancelling",
                len(pending),
                self._grace_period_s,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("All poll loops stopped")

    async def _poll_loop(
        self,
        key: str,
        device: DeviceConfig,
        cycle: Cycle,
        interval: float,
    ) -> None:
        loop = asyncio.get_running_loop()
        self.skipped_ticks.setdefault(key, 0)
        next_tick = loop.time()

        logger.info("%s: poll loop started (interval=%ss)", key, interval)
        while not self._shutdown_event.is_set():
            delay = await self._run_cycle(key, device, cycle)

            if delay is not None:
                next_tick = loop.time() + delay
            else:
                next_tick += interval
                now = loop.time()
                if now > next_tick:
                    missed = math.ceil((now - next_tick) / interval)
                    next_tick += missed * interval
                    self.skipped_ticks[key] += missed
                    logger.warning(
                        "%s: poll cycle overran its interval, skipping %d tick(s)",
                        key,
                        missed,
                    )

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=max(0.0, next_tick - loop.time()),
                )
        logger.info("%s: poll loop stopped", key)

    async def _run_cycle(self, key: str, device: DeviceConfig, cycle: Cycle) -> float | None:
        """Run one cycle; any error is logged and contained to this loop."""
        try:
            return await cycle(device)
        except Exception:
            logger.error("%s: poll cycle error", key, exc_info=True)
            return None
