"""
Async HTTP client for the Shelly Plug (S) meter endpoint.

Fetches ``http://{host}/meter/0`` for one device and parses the JSON answer
into a :class:`~collector.src.models.RawMeterReading`.  Failure handling:

- Timeouts, connection errors and HTTP 5xx are transient: retried with
  exponential backoff (capped at MAX_BACKOFF_S) up to ``max_attempts`` times
  within the same cycle, then raised as DeviceUnreachable.
- HTTP 4xx (bad credentials, wrong path) is DeviceUnreachable without retry.
- A malformed or self-reported invalid payload is a ParseError and is never
  retried within the cycle.

Readings are stamped with the server's UTC request time. The plug's own
clock is local wall time without a zone, and jumps at daylight saving
changes, so it is only used to time the next counter poll
(:func:`seconds_until_counter_update`).

The client has no side effects beyond the network call; reconciler state is
never touched here.

CHANGELOG:
- 2026-10-19: Stamp readings with server UTC time, keep the device clock
  for counter poll alignment only
- 2026-10-08: Treat is_valid=false as ParseError instead of retrying
- 2026-10-07: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import UTC, datetime

import httpx
from pydantic import BaseModel, Field, ValidationError

from collector.src.errors import DeviceUnreachable, ParseError
from collector.src.models import DeviceConfig, RawMeterReading

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_TIMEOUT_S: float = 5.0
"""Per-request timeout in seconds; must stay below every poll interval."""

DEFAULT_MAX_ATTEMPTS: int = 3
"""Attempts per poll cycle before the device is reported unreachable."""

BASE_BACKOFF_S: float = 0.5
"""Delay before the second attempt; doubles for every further attempt."""

MAX_BACKOFF_S: float = 4.0
"""Cap for the exponential backoff between attempts."""

COUNTER_UPDATE_SLACK_S: float = 10.0
"""Wait this long past the device's minute boundary for the counters to update."""

WATT_MINUTES_PER_WH: float = 60.0


def utc_now_ms() -> datetime:
    """Current UTC time truncated to milliseconds, the write precision."""
    now = datetime.now(tz=UTC)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def seconds_until_counter_update(
    device_time: datetime,
    poll_interval_s: float = 60.0,
    *,
    slack_s: float = COUNTER_UPDATE_SLACK_S,
) -> float:
    """Delay until just after the plug's next counter update.

    The counters roll over on the device's minute boundary. Intervals longer
    than a minute are rounded up to whole minutes so every poll still lands
    after a fresh update.

    Args:
        device_time: The plug's wall clock as reported with the last reading.
        poll_interval_s: Configured counter poll interval.
        slack_s: Margin after the boundary for clock offsets.
    """
    elapsed = device_time.second + device_time.microsecond / 1_000_000
    extra_minutes = max(0, math.ceil(poll_interval_s / 60.0) - 1)
    return 60.0 - elapsed + slack_s + extra_minutes * 60.0


# ---------------------------------------------------------------------------
# Wire format of /meter/0
# ---------------------------------------------------------------------------


class ShellyMeterResponse(BaseModel):
    """Answer of a Gen1 Shelly plug's ``/meter/0`` endpoint.

    Attributes:
        power: Current real AC power being drawn, in watts.
        is_valid: Whether power metering self-checks OK.
        timestamp: Local device time of the last counter update, as a UNIX
            timestamp with the device timezone applied. 0 if the clock is
            not set.
        counters: Energy for the last 3 round minutes, in watt-minutes.
        total: Energy consumed since the plug restarted, in watt-minutes.
    """

    power: float
    is_valid: bool
    timestamp: int = 0
    counters: list[float] = Field(default_factory=list)
    total: float = Field(ge=0)


def parse_meter_response(
    config: DeviceConfig,
    payload: bytes | str,
    *,
    fetched_at: datetime,
) -> RawMeterReading:
    """Parse a ``/meter/0`` JSON payload into a RawMeterReading.

    Counter values are converted from watt-minutes to Wh.  The reading is
    stamped with *fetched_at*; the device clock, when set, is kept as
    ``device_time``.

    Args:
        config: Device the payload came from.
        payload: Raw response body.
        fetched_at: UTC time the request was made.

    Raises:
        ParseError: On malformed JSON, missing fields, or a reading the
            device itself flags as invalid.
    """
    try:
        message = ShellyMeterResponse.model_validate_json(payload)
    except ValidationError as exc:
        raise ParseError(
            config.name,
            f"response does not match the /meter/0 grammar ({exc.error_count()} errors)",
        ) from exc

    if not message.is_valid:
        raise ParseError(config.name, "device reports its last measurement as invalid")

    device_time = None
    if message.timestamp > 0:
        device_time = datetime.fromtimestamp(message.timestamp, tz=UTC).replace(tzinfo=None)
        server_local = fetched_at.astimezone().replace(tzinfo=None)
        logger.debug(
            "%s reports local time %s, server local time is %s, offset is %.0fms",
            config.host,
            device_time.isoformat(),
            server_local.isoformat(),
            (device_time - server_local).total_seconds() * 1000,
        )

    last_minute_wh = message.counters[0] / WATT_MINUTES_PER_WH if message.counters else None

    return RawMeterReading(
        device_id=config.name,
        host=config.host,
        power_w=message.power,
        energy_total_wh=message.total / WATT_MINUTES_PER_WH,
        last_minute_wh=last_minute_wh,
        timestamp=fetched_at,
        device_time=device_time,
    )


# ---------------------------------------------------------------------------
# Client with in-cycle retry
# ---------------------------------------------------------------------------


class DeviceClient:
    """HTTP client fetching meter readings from Shelly plugs.

    One instance is shared by all devices; httpx pools connections per host.

    Args:
        timeout_s: Per-request timeout in seconds.
        max_attempts: Attempts per :meth:`fetch` before giving up.
        base_backoff_s: Delay before the second attempt.
        max_backoff_s: Upper bound of the delay between attempts.
        transport: Optional httpx transport (used by tests).
    """

    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_backoff_s: float = BASE_BACKOFF_S,
        max_backoff_s: float = MAX_BACKOFF_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._max_attempts = max_attempts
        self._base_backoff_s = base_backoff_s
        self._max_backoff_s = max_backoff_s
        self._client = httpx.AsyncClient(timeout=timeout_s, transport=transport)

    async def aclose(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    async def __aenter__(self) -> DeviceClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.aclose()

    def backoff_for(self, attempt: int) -> float:
        """Delay before *attempt* (1-based); the first attempt has none."""
        if attempt <= 1:
            return 0.0
        return min(self._base_backoff_s * (2 ** (attempt - 2)), self._max_backoff_s)

    async def fetch(self, config: DeviceConfig) -> RawMeterReading:
        """Fetch and parse the current meter state of one device.

        Returns:
            The parsed :class:`RawMeterReading`.

        Raises:
            DeviceUnreachable: Transient failures persisted through every
                attempt, or the device answered with HTTP 4xx.
            ParseError: The device answered with an unusable payload.
        """
        auth = httpx.BasicAuth(config.username, config.password) if config.has_auth else None
        last_reason = "no attempt made"

        for attempt in range(1, self._max_attempts + 1):
            delay = self.backoff_for(attempt)
            if delay > 0:
                logger.warning(
                    "%s: retrying in %.1fs (attempt %d/%d, last error: %s)",
                    config.name,
                    delay,
                    attempt,
                    self._max_attempts,
                    last_reason,
                )
                await asyncio.sleep(delay)

            fetched_at = utc_now_ms()
            try:
                response = await self._client.get(config.meter_url, auth=auth)
            except httpx.TimeoutException as exc:
                last_reason = f"timeout ({type(exc).__name__})"
                continue
            except httpx.TransportError as exc:
                last_reason = f"not connected ({exc})"
                continue

            if response.status_code >= 500:
                last_reason = f"HTTP {response.status_code} {response.reason_phrase}"
                continue
            if response.status_code >= 400:
                raise DeviceUnreachable(
                    config.name,
                    f"HTTP {response.status_code} {response.reason_phrase} (GET {config.meter_url})",
                )

            return parse_meter_response(config, response.content, fetched_at=fetched_at)

        raise DeviceUnreachable(
            config.name, f"{last_reason} after {self._max_attempts} attempts"
        )
