"""
Pydantic models for device configuration, raw readings and samples.

DeviceConfig and InfluxConfig describe the static configuration loaded once at
startup. RawMeterReading is what the device client parses from one HTTP
response. NormalizedSample is what the reconciler emits for a counter poll;
PowerSample is an instantaneous power reading that bypasses the reconciler.
Both are written by the sink.

CHANGELOG:
- 2026-10-19: Replace utc_offset_s by server-side timestamps; keep the
  device clock only for poll alignment
- 2026-10-19: Add instantaneous_interval_s and PowerSample
- 2026-10-08: Add counter_epoch to RawMeterReading
- 2026-10-06: Initial creation (STORY-003)

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class DeviceConfig(BaseModel):
    """Configuration of one Shelly Plug (S) device.

    Attributes:
        name: Unique device identifier, used as the InfluxDB ``device_name``
            tag and as the reconciler key.
        host: Hostname or IP address of the plug.
        poll_interval_s: Seconds between counter polls. While the plug
            reports its clock, polls are aligned to just after its next
            counter update and the interval is rounded up to whole minutes.
        instantaneous_interval_s: Seconds between instantaneous power polls.
            A negative value disables them.
        username: HTTP basic auth user, if the plug has restricted login.
        password: HTTP basic auth password.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    host: str = Field(min_length=1)
    poll_interval_s: float = Field(default=60.0, gt=0)
    instantaneous_interval_s: float = -1.0
    username: str | None = None
    password: str | None = None

    @field_validator("instantaneous_interval_s")
    @classmethod
    def instantaneous_interval_not_zero(cls, v: float) -> float:
        if v == 0:
            raise ValueError("instantaneous_interval_s must be > 0, or negative to disable")
        return v

    @model_validator(mode="after")
    def _credentials_come_in_pairs(self) -> DeviceConfig:
        """Basic auth needs both a username and a password, or neither."""
        if (self.username is None) != (self.password is None):
            raise ValueError(
                f"device '{self.name}': username and password must be set together"
            )
        return self

    @property
    def meter_url(self) -> str:
        """URL of the plug's (only) meter endpoint."""
        return f"http://{self.host}/meter/0"

    @property
    def has_auth(self) -> bool:
        return self.username is not None

    @property
    def instantaneous_interval(self) -> float | None:
        """Instantaneous power poll interval, or None when disabled."""
        if self.instantaneous_interval_s < 0:
            return None
        return self.instantaneous_interval_s


class InfluxConfig(BaseModel):
    """Connection parameters of the InfluxDB 2 write endpoint."""

    model_config = ConfigDict(frozen=True)

    url: str
    org: str = Field(min_length=1)
    bucket: str = Field(min_length=1)
    token: str = Field(min_length=1)
    measurement: str = "shelly_plug"
    verify_tls: bool = True
    timeout_s: float = Field(default=10.0, gt=0)

    @field_validator("url")
    @classmethod
    def url_must_be_http(cls, v: str) -> str:
        """Accept only http(s) URLs and strip any trailing slash."""
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError(f"influxdb2.url must start with http:// or https:// (got '{v}')")
        return v.rstrip("/")

    @property
    def write_url(self) -> str:
        return f"{self.url}/api/v2/write"


class CollectorConfig(BaseModel):
    """Contents of the collector's JSON configuration file.

    Attributes:
        network_timeout_s: Per-request timeout for device HTTP calls. Must be
            shorter than every device's poll intervals.
        devices: Plugs to poll; names must be unique.
        influxdb2: Storage backend connection.
        batch_size: Maximum samples per InfluxDB write.
        flush_interval_s: Maximum age of a buffered sample before a flush.
        write_max_attempts: Write attempts per batch before it is dropped.
        max_buffered_samples: Hard cap on samples held in memory. Defaults to
            ten batches.
    """

    network_timeout_s: float = Field(default=5.0, gt=0)
    devices: list[DeviceConfig] = Field(min_length=1)
    influxdb2: InfluxConfig
    batch_size: int = Field(default=50, ge=1, le=5000)
    flush_interval_s: float = Field(default=10.0, gt=0)
    write_max_attempts: int = Field(default=4, ge=1, le=20)
    max_buffered_samples: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _check_devices(self) -> CollectorConfig:
        names = [d.name for d in self.devices]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"device names must be unique, duplicated: {duplicates}")
        for device in self.devices:
            intervals = {"poll_interval_s": device.poll_interval_s}
            if device.instantaneous_interval is not None:
                intervals["instantaneous_interval_s"] = device.instantaneous_interval
            for field, interval in intervals.items():
                if self.network_timeout_s >= interval:
                    raise ValueError(
                        f"network_timeout_s ({self.network_timeout_s}) must be shorter "
                        f"than {field} of device '{device.name}' ({interval})"
                    )
        return self

    @model_validator(mode="after")
    def _default_buffer_cap(self) -> CollectorConfig:
        if self.max_buffered_samples is None:
            self.max_buffered_samples = self.batch_size * 10
        elif self.max_buffered_samples < self.batch_size:
            raise ValueError("max_buffered_samples must be >= batch_size")
        return self


class RawMeterReading(BaseModel):
    """One parsed answer of a plug's ``/meter/0`` endpoint.

    Attributes:
        device_id: Name of the device that produced the reading.
        host: Host the reading was fetched from.
        power_w: Instantaneous real AC power in watts.
        energy_total_wh: Energy counter since the plug's last reboot, in Wh.
        last_minute_wh: Energy consumed during the last full minute, in Wh.
        timestamp: Server UTC time of the request, at millisecond resolution.
        device_time: The plug's own wall clock (naive, in whatever timezone
            the plug is set to), or None if its clock is not set. Only used
            to time the next counter poll.
        counter_epoch: Optional device-supplied reset indicator. A change of
            this value marks a new counter epoch.
    """

    model_config = ConfigDict(frozen=True)

    device_id: str
    host: str = ""
    power_w: float
    energy_total_wh: float = Field(ge=0)
    last_minute_wh: float | None = None
    timestamp: datetime
    device_time: datetime | None = None
    counter_epoch: int | None = None


class NormalizedSample(BaseModel):
    """A reconciled sample, ready to be written to InfluxDB.

    ``energy_delta_wh`` is never negative. When ``epoch_reset`` is True the
    device counter restarted and the delta is the new raw counter value.
    """

    model_config = ConfigDict(frozen=True)

    device_id: str
    host: str = ""
    ts: datetime
    power_w: float
    energy_delta_wh: float = Field(ge=0)
    energy_total_wh: float
    last_minute_wh: float | None = None
    epoch: int = 0
    epoch_reset: bool = False


class PowerSample(BaseModel):
    """An instantaneous power reading, written without counter reconciliation."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    host: str = ""
    ts: datetime
    power_w: float


Sample = NormalizedSample | PowerSample
