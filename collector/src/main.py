"""
Collector daemon main loop for Shelly-plug-to-InfluxDB metering.

Wires the pipeline together and runs it until SIGTERM/SIGINT:

1. **Scheduler**: one counter loop per device, plus a power loop for
   devices with instantaneous polling enabled.
2. **Counter cycle**: DeviceClient fetches ``/meter/0``, the
   SampleReconciler turns the reading into an energy delta, and the sample
   is handed to the sink buffer. The next poll is timed to land just after
   the plug's next counter update.
3. **Power cycle**: the instantaneous power of a fresh reading goes to the
   sink as a PowerSample, without reconciliation.
4. **Sink loop**: InfluxSink flushes batches to InfluxDB when a batch fills
   up or the oldest sample gets too old.

Per-device failures (unreachable plug, unusable payload) are logged and
never leave their cycle. Only configuration errors are fatal: the process
exits with status 2 before any loop starts. On shutdown the loops stop
scheduling new cycles. In-flight cycles and the best-effort sink drain
share one grace period.

Structured JSON logging is used for all events.

CHANGELOG:
- 2026-10-19: Add power cycle; counter cycle returns its aligned delay;
  one shutdown deadline for scheduler and sink drain
- 2026-10-12: Update health file with sink counters after each cycle
- 2026-10-10: Exit with status 2 on ConfigError
- 2026-10-09: Initial creation (STORY-009)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from collector.src.client import seconds_until_counter_update
from collector.src.errors import ConfigError, DeviceUnreachable, ParseError
from collector.src.models import PowerSample
from collector.src.scheduler import Scheduler

if TYPE_CHECKING:
    from collector.src.client import DeviceClient
    from collector.src.config import CollectorSettings
    from collector.src.health import HealthWriter
    from collector.src.models import CollectorConfig, DeviceConfig
    from collector.src.reconciler import SampleReconciler
    from collector.src.sink import InfluxSink

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structured JSON logging for the collector daemon.

    Sets up the root logger with a JSON-formatted handler writing to stderr.

    Args:
        level: Root log level.
    """

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: CollectorSettings, config: CollectorConfig) -> None:
    """Log a config summary at startup, excluding secrets.

    Device passwords are never logged; the InfluxDB token is reduced to a
    fingerprint.
    """
    logger.info(
        "Collector starting with config: "
        "config_path=%s, log_level=%s, network_timeout_s=%s, "
        "influx_url=%s, influx_org=%s, influx_bucket=%s, measurement=%s, "
        "batch_size=%s, flush_interval_s=%s, write_max_attempts=%s, "
        "influx_token_masked=%s",
        settings.config_path,
        settings.log_level,
        config.network_timeout_s,
        config.influxdb2.url,
        config.influxdb2.org,
        config.influxdb2.bucket,
        config.influxdb2.measurement,
        config.batch_size,
        config.flush_interval_s,
        config.write_max_attempts,
        _masked_token(config.influxdb2.token),
    )
    for device in config.devices:
        logger.info(
            "Device %s: host=%s, poll_interval_s=%s, instantaneous=%s, auth=%s",
            device.name,
            device.host,
            device.poll_interval_s,
            device.instantaneous_interval or "disabled",
            "basic" if device.has_auth else "none",
        )


# ---------------------------------------------------------------------------
# Pipeline (composition root)
# ---------------------------------------------------------------------------


class Pipeline:
    """Scheduler -> DeviceClient -> SampleReconciler -> InfluxSink.

    Instantaneous power readings take a shorter path: DeviceClient ->
    InfluxSink, without counter reconciliation.

    Args:
        devices: Devices to poll.
        client: Fetches raw readings.
        reconciler: Owns the per-device counter state.
        sink: Buffers and writes samples.
        health: HealthWriter instance, or None to skip health writes.
        grace_period_s: Total time in-flight work and the final sink drain
            get after shutdown.
        shutdown_event: Event that stops the pipeline when set.
    """

    def __init__(
        self,
        *,
        devices: list[DeviceConfig],
        client: DeviceClient,
        reconciler: SampleReconciler,
        sink: InfluxSink,
        health: HealthWriter | None = None,
        grace_period_s: float = 10.0,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        self._devices = devices
        self._client = client
        self._reconciler = reconciler
        self._sink = sink
        self._health = health
        self._grace_period_s = grace_period_s
        self._shutdown_event = shutdown_event or asyncio.Event()
        self.scheduler = Scheduler(
            self.run_cycle,
            power_cycle=self.run_power_cycle,
            grace_period_s=grace_period_s,
            shutdown_event=self._shutdown_event,
        )

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    def stop(self) -> None:
        """Request a graceful shutdown."""
        self._shutdown_event.set()

    async def run_cycle(self, device: DeviceConfig) -> float | None:
        """Execute a single fetch-reconcile-accept cycle for *device*.

        Device failures are logged and end the cycle; the reconciler is
        only consulted for a successfully parsed reading.

        Returns:
            Seconds until just after the plug's next counter update when the
            plug reports its clock, otherwise None (fixed-rate polling).
        """
        try:
            raw = await self._client.fetch(device)
        except DeviceUnreachable as exc:
            logger.warning("Poll failed: %s", exc)
            return None
        except ParseError as exc:
            logger.warning("Poll skipped: %s", exc)
            return None

        next_delay = None
        if raw.device_time is not None:
            next_delay = seconds_until_counter_update(raw.device_time, device.poll_interval_s)

        sample = self._reconciler.reconcile(device.name, raw)
        if sample is None:
            return next_delay

        await self._sink.accept(sample)
        logger.debug(
            "%s instant=%.2fW delta=%.3fWh total=%.1fWh epoch=%d",
            device.name,
            sample.power_w,
            sample.energy_delta_wh,
            sample.energy_total_wh,
            sample.epoch,
        )
        self._update_health(device.name)
        return next_delay

    async def run_power_cycle(self, device: DeviceConfig) -> None:
        """Fetch *device* and hand its instantaneous power to the sink."""
        try:
            raw = await self._client.fetch(device)
        except DeviceUnreachable as exc:
            logger.warning("Power poll failed: %s", exc)
            return
        except ParseError as exc:
            logger.warning("Power poll skipped: %s", exc)
            return

        await self._sink.accept(
            PowerSample(
                device_id=device.name,
                host=raw.host,
                ts=raw.timestamp,
                power_w=raw.power_w,
            )
        )
        logger.debug("%s instant=%.2fW", device.name, raw.power_w)
        self._update_health(device.name)

    async def run(self) -> None:
        """Run scheduler and sink loop until shutdown, then drain the sink.

        The scheduler's grace period and the sink drain share one deadline
        of ``grace_period_s`` counted from the shutdown request.
        """
        logger.info("Starting %d devices and the sink loop", len(self._devices))
        await asyncio.gather(
            self.scheduler.run(self._devices),
            self._sink.run(self._shutdown_event),
        )

        remaining = self._grace_period_s
        started = self.scheduler.shutdown_started_at
        if started is not None:
            elapsed = asyncio.get_running_loop().time() - started
            remaining = max(0.0, self._grace_period_s - elapsed)

        logger.info(
            "Draining %d buffered samples before exit (%.1fs left)",
            self._sink.pending,
            remaining,
        )
        await self._sink.close(timeout_s=remaining)
        self._update_health(None)
        logger.info(
            "Shutdown complete (written=%d, dropped_batches=%d, dropped_samples=%d)",
            self._sink.written_samples,
            self._sink.dropped_batches,
            self._sink.dropped_samples,
        )

    def _update_health(self, device_id: str | None) -> None:
        if self._health is None:
            return
        try:
            if device_id is not None:
                self._health.record_sample(device_id)
            self._health.record_sink(
                buffered=self._sink.pending,
                dropped_batches=self._sink.dropped_batches,
                last_flush_ts=self._sink.last_flush_ts,
            )
        except OSError:
            logger.warning("Failed to write health file", exc_info=True)


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, build components, run the pipeline.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.

    Raises:
        ConfigError: If settings or the configuration file are invalid.
    """
    configure_logging()

    from collector.src.client import DeviceClient
    from collector.src.config import load_config, load_settings
    from collector.src.health import HealthWriter
    from collector.src.reconciler import SampleReconciler
    from collector.src.sink import InfluxSink

    settings = load_settings()
    configure_logging(settings.log_level_value)
    config = load_config(settings.config_path)
    log_config_summary(settings, config)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    sink = InfluxSink(
        config.influxdb2,
        batch_size=config.batch_size,
        flush_interval_s=config.flush_interval_s,
        max_attempts=config.write_max_attempts,
        max_buffered_samples=config.max_buffered_samples,
    )
    health = HealthWriter(settings.health_path) if settings.health_path else None

    async with DeviceClient(timeout_s=config.network_timeout_s) as client:
        pipeline = Pipeline(
            devices=config.devices,
            client=client,
            reconciler=SampleReconciler(),
            sink=sink,
            health=health,
            grace_period_s=settings.shutdown_grace_s,
            shutdown_event=shutdown_event,
        )
        await pipeline.run()


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event.

    Args:
        shutdown_event: The event to set for graceful shutdown.
    """
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the collector daemon."""
    try:
        asyncio.run(async_main())
    except ConfigError as exc:
        logger.critical("Fatal configuration error: %s", exc)
        sys.exit(2)


if __name__ == "__main__":
    main()
