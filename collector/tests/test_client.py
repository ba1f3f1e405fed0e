"""
Tests for the Shelly meter HTTP client.

Verifies parsing of the /meter/0 payload, in-cycle retry of transient
failures (timeouts, connection errors, 5xx), no retry for 4xx and parse
errors, and basic auth. HTTP is simulated with httpx.MockTransport.

CHANGELOG:
- 2026-10-19: Cover server-side timestamps across a DST change and
  counter poll alignment
- 2026-10-07: Initial creation -- TDD tests written first (STORY-005)

TODO:
- None
"""

from __future__ import annotations

import base64
import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from collector.src.client import (
    DeviceClient,
    parse_meter_response,
    seconds_until_counter_update,
    utc_now_ms,
)
from collector.src.errors import DeviceUnreachable, ParseError
from collector.src.models import DeviceConfig
from collector.src.reconciler import SampleReconciler
from collector.tests.factories import BASE_TS, make_meter_payload

_FETCHED_AT = datetime(2026, 10, 14, 12, 0, 5, tzinfo=UTC)


def _client_with(handler, **kwargs) -> DeviceClient:
    """Build a DeviceClient whose requests go to *handler* without backoff."""
    kwargs.setdefault("base_backoff_s", 0.0)
    return DeviceClient(transport=httpx.MockTransport(handler), **kwargs)


class _Recorder:
    """MockTransport handler replaying a scripted list of outcomes."""

    def __init__(self, outcomes: list[object]) -> None:
        self._outcomes = list(outcomes)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, type) and issubclass(outcome, httpx.TransportError):
            raise outcome("simulated", request=request)
        if isinstance(outcome, int):
            return httpx.Response(outcome, text="error")
        return httpx.Response(200, json=outcome)


# ===========================================================================
# Payload parsing
# ===========================================================================


class TestParseMeterResponse:
    """parse_meter_response converts the Gen1 payload into a RawMeterReading."""

    def test_parses_power_and_counters(self, device: DeviceConfig) -> None:
        payload = json.dumps(make_meter_payload(power=42.5, total=6000.0))

        reading = parse_meter_response(device, payload, fetched_at=_FETCHED_AT)

        assert reading.device_id == "fridge"
        assert reading.host == "192.168.1.50"
        assert reading.power_w == 42.5
        assert reading.energy_total_wh == pytest.approx(100.0)
        assert reading.last_minute_wh == pytest.approx(2.0)

    def test_stamps_reading_with_request_time(self, device: DeviceConfig) -> None:
        payload = json.dumps(make_meter_payload())

        reading = parse_meter_response(device, payload, fetched_at=_FETCHED_AT)

        assert reading.timestamp == _FETCHED_AT
        assert reading.device_time == BASE_TS.replace(tzinfo=None)

    def test_missing_timestamp_leaves_device_time_unknown(
        self, device: DeviceConfig
    ) -> None:
        body = make_meter_payload()
        del body["timestamp"]

        reading = parse_meter_response(device, json.dumps(body), fetched_at=_FETCHED_AT)

        assert reading.timestamp == _FETCHED_AT
        assert reading.device_time is None

    def test_zero_timestamp_leaves_device_time_unknown(self, device: DeviceConfig) -> None:
        payload = json.dumps(make_meter_payload(timestamp=0))

        reading = parse_meter_response(device, payload, fetched_at=_FETCHED_AT)

        assert reading.device_time is None

    def test_empty_counters_gives_no_last_minute(self, device: DeviceConfig) -> None:
        payload = json.dumps(make_meter_payload(counters=[]))

        reading = parse_meter_response(device, payload, fetched_at=_FETCHED_AT)

        assert reading.last_minute_wh is None

    @pytest.mark.parametrize(
        "payload",
        [
            "not json",
            "{}",
            json.dumps({"power": 1.0, "is_valid": True}),
            json.dumps(make_meter_payload(total=-5.0)),
            json.dumps({**make_meter_payload(), "power": "lots"}),
        ],
    )
    def test_malformed_payload_raises_parse_error(
        self, device: DeviceConfig, payload: str
    ) -> None:
        with pytest.raises(ParseError) as exc_info:
            parse_meter_response(device, payload, fetched_at=_FETCHED_AT)
        assert exc_info.value.device_id == "fridge"

    def test_invalid_measurement_raises_parse_error(self, device: DeviceConfig) -> None:
        payload = json.dumps(make_meter_payload(is_valid=False))

        with pytest.raises(ParseError, match="invalid"):
            parse_meter_response(device, payload, fetched_at=_FETCHED_AT)


# ===========================================================================
# Fetch
# ===========================================================================


class TestFetchSuccess:
    """fetch() issues a GET to /meter/0 and returns the parsed reading."""

    @pytest.mark.asyncio
    async def test_fetch_gets_meter_endpoint(self, device: DeviceConfig) -> None:
        recorder = _Recorder([make_meter_payload()])
        async with _client_with(recorder) as client:
            reading = await client.fetch(device)

        assert reading.power_w == 42.5
        assert len(recorder.requests) == 1
        assert str(recorder.requests[0].url) == "http://192.168.1.50/meter/0"
        assert recorder.requests[0].method == "GET"

    @pytest.mark.asyncio
    async def test_fetch_without_credentials_sends_no_auth(
        self, device: DeviceConfig
    ) -> None:
        recorder = _Recorder([make_meter_payload()])
        async with _client_with(recorder) as client:
            await client.fetch(device)

        assert "authorization" not in recorder.requests[0].headers

    @pytest.mark.asyncio
    async def test_fetch_sends_basic_auth(self) -> None:
        device = DeviceConfig(name="p", host="10.0.0.9", username="admin", password="pw")
        recorder = _Recorder([make_meter_payload()])
        async with _client_with(recorder) as client:
            await client.fetch(device)

        expected = "Basic " + base64.b64encode(b"admin:pw").decode()
        assert recorder.requests[0].headers["authorization"] == expected


class TestFetchRetry:
    """Transient failures are retried within the cycle, others are not."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failure", [httpx.ConnectError, httpx.ReadTimeout, 503])
    async def test_transient_failure_then_success(
        self, device: DeviceConfig, failure: object
    ) -> None:
        recorder = _Recorder([failure, make_meter_payload()])
        async with _client_with(recorder, max_attempts=3) as client:
            reading = await client.fetch(device)

        assert reading.power_w == 42.5
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failure", [httpx.ConnectError, httpx.ConnectTimeout, 500])
    async def test_exhausted_retries_raise_unreachable(
        self, device: DeviceConfig, failure: object
    ) -> None:
        recorder = _Recorder([failure])
        async with _client_with(recorder, max_attempts=3) as client:
            with pytest.raises(DeviceUnreachable) as exc_info:
                await client.fetch(device)

        assert len(recorder.requests) == 3
        assert exc_info.value.device_id == "fridge"
        assert "after 3 attempts" in str(exc_info.value)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 404])
    async def test_client_error_is_not_retried(
        self, device: DeviceConfig, status: int
    ) -> None:
        recorder = _Recorder([status])
        async with _client_with(recorder, max_attempts=3) as client:
            with pytest.raises(DeviceUnreachable, match=str(status)):
                await client.fetch(device)

        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_parse_error_is_not_retried(self, device: DeviceConfig) -> None:
        recorder = _Recorder([{"unexpected": True}])
        async with _client_with(recorder, max_attempts=3) as client:
            with pytest.raises(ParseError):
                await client.fetch(device)

        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_backoff_sleeps_grow_exponentially(self, device: DeviceConfig) -> None:
        recorder = _Recorder([httpx.ConnectError])
        client = _client_with(
            recorder, max_attempts=4, base_backoff_s=0.5, max_backoff_s=1.5
        )
        with patch("collector.src.client.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(DeviceUnreachable):
                await client.fetch(device)
        await client.aclose()

        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0, 1.5]


class TestBackoffFor:
    """backoff_for() gives no delay before the first attempt and caps growth."""

    def test_schedule(self) -> None:
        client = DeviceClient(base_backoff_s=1.0, max_backoff_s=3.0)
        assert [client.backoff_for(n) for n in range(1, 6)] == [0.0, 1.0, 2.0, 3.0, 3.0]

    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError):
            DeviceClient(max_attempts=0)


class TestCounterAlignment:
    """seconds_until_counter_update() lands just after the device minute."""

    def test_waits_for_next_minute_plus_slack(self) -> None:
        device_time = datetime(2026, 10, 14, 12, 0, 20, 500000)

        assert seconds_until_counter_update(device_time) == pytest.approx(49.5)

    def test_reading_on_the_boundary_waits_a_full_minute(self) -> None:
        assert seconds_until_counter_update(datetime(2026, 10, 14, 12, 0)) == 70.0

    def test_longer_interval_rounds_up_to_whole_minutes(self) -> None:
        device_time = datetime(2026, 10, 14, 12, 0, 20, 500000)

        assert seconds_until_counter_update(device_time, 300.0) == pytest.approx(289.5)
        assert seconds_until_counter_update(device_time, 90.0) == pytest.approx(109.5)

    def test_shorter_interval_still_waits_for_the_update(self) -> None:
        device_time = datetime(2026, 10, 14, 12, 0, 20, 500000)

        assert seconds_until_counter_update(device_time, 30.0) == pytest.approx(49.5)

    def test_timestamps_have_millisecond_resolution(self) -> None:
        assert utc_now_ms().microsecond % 1000 == 0


class TestDaylightSavingChange:
    """Readings across the autumn clock change keep real time order."""

    def test_clock_going_back_loses_no_readings(self) -> None:
        # Plug set to Central European time; DST ends 2026-10-25 01:00 UTC
        device = DeviceConfig(name="heater", host="10.0.0.8")
        reconciler = SampleReconciler()
        change = datetime(2026, 10, 25, 1, 0, tzinfo=UTC)
        start = change - timedelta(minutes=35)

        samples = []
        for minute in range(70):
            real = start + timedelta(minutes=minute)
            wall_clock_offset_s = 7200 if real < change else 3600
            payload = json.dumps(
                make_meter_payload(
                    timestamp=int(real.timestamp()) + wall_clock_offset_s,
                    total=6000.0 + 60.0 * minute,
                )
            )
            reading = parse_meter_response(
                device, payload, fetched_at=real + timedelta(seconds=5)
            )
            samples.append(reconciler.reconcile("heater", reading))

        assert None not in samples
        timestamps = [s.ts for s in samples]
        assert timestamps == sorted(timestamps)
        assert timestamps[0] == start + timedelta(seconds=5)
        assert sum(s.energy_delta_wh for s in samples) == pytest.approx(69.0)
