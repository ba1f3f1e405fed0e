"""
Error taxonomy for the collector daemon.

Per-device and per-batch failures (DeviceUnreachable, ParseError,
BackendUnreachable) are contained by the loops that raise them and only
logged. ConfigError is the only fatal error and aborts startup.

CHANGELOG:
- 2026-10-07: Add status_code to BackendUnreachable for rejection handling
- 2026-10-06: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations


class CollectorError(Exception):
    """Base class for all collector errors."""


class DeviceUnreachable(CollectorError):
    """A device could not be reached within the current poll cycle.

    Args:
        device_id: Name of the device that failed.
        reason: Human-readable description of the last failure.
    """

    def __init__(self, device_id: str, reason: str) -> None:
        super().__init__(f"{device_id} unreachable: {reason}")
        self.device_id = device_id
        self.reason = reason


class ParseError(CollectorError):
    """A device answered, but the payload was not a usable metering reading."""

    def __init__(self, device_id: str, reason: str) -> None:
        super().__init__(f"{device_id} returned an unusable reading: {reason}")
        self.device_id = device_id
        self.reason = reason


class BackendUnreachable(CollectorError):
    """The storage backend failed or rejected a write.

    Args:
        reason: Description of the failure.
        status_code: HTTP status of the response, or ``None`` for
            transport-level failures.
    """

    def __init__(self, reason: str, status_code: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        """Transport errors, 5xx and 429 are worth retrying; other 4xx are not."""
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code == 429


class ConfigError(CollectorError):
    """Startup configuration is missing or invalid."""
