"""
Batching InfluxDB 2 sink for counter and power samples.

Samples from every device are appended to one shared in-memory buffer. A batch
of up to ``batch_size`` samples is written as a single line-protocol request
to ``{url}/api/v2/write`` whenever the batch fills up or the oldest buffered
sample is older than ``flush_interval_s``, whichever comes first.

Failure handling:

- Transport errors, timeouts, HTTP 5xx and 429 are retried for the whole
  batch with exponential backoff (1s -> 2s -> 4s ..., capped).
- Other 4xx responses are rejections and are not retried.
- When the attempts are exhausted the batch is dropped and an error is logged;
  the next batch flushes normally. Loss is bounded to that one batch.
- The buffer is capped at ``max_buffered_samples``; overflow drops the oldest
  samples so a long backend outage cannot grow memory without bound.

Writes are idempotent at the backend: InfluxDB overwrites a point with the
same measurement, tag set and timestamp, so resending a batch is safe.

Operations:
- accept(sample): Buffer a sample (protected append).
- flush(): Write one batch, with retry.
- run(shutdown_event): Flush loop driven by batch size and buffer age.
- close(timeout_s): Best-effort drain, then close the HTTP client.

CHANGELOG:
- 2026-10-19: Write at millisecond precision; accept PowerSample; escape
  measurement names separately from tags
- 2026-10-11: Cap the buffer and count dropped samples
- 2026-10-10: Do not retry 4xx rejections other than 429
- 2026-10-08: Initial creation (STORY-007)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from datetime import UTC, datetime, timedelta

import httpx

from collector.src.errors import BackendUnreachable
from collector.src.models import InfluxConfig, NormalizedSample, Sample

logger = logging.getLogger(__name__)

_INITIAL_BACKOFF_S = 1.0
_DEFAULT_MAX_BACKOFF_S = 30.0
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Line protocol
# ---------------------------------------------------------------------------


def _escape_measurement(value: str) -> str:
    """Escape a measurement name (commas and spaces only)."""
    return value.replace(",", "\\,").replace(" ", "\\ ")


def _escape_key(value: str) -> str:
    """Escape a tag key, tag value or field key."""
    return (
        value.replace("\\", "\\\\")
        .replace(",", "\\,")
        .replace(" ", "\\ ")
        .replace("=", "\\=")
    )


def _format_float(value: float) -> str | None:
    if math.isnan(value) or math.isinf(value):
        return None
    return repr(float(value))


def _epoch_ms(ts: datetime) -> int:
    return (ts - _EPOCH) // timedelta(milliseconds=1)


def to_line_protocol(sample: Sample, measurement: str) -> str:
    """Render one sample as an InfluxDB line-protocol record.

    Tags are ``device_name`` and ``device_host``; the timestamp is in
    milliseconds, matching the ``precision=ms`` write parameter. A
    :class:`PowerSample` carries only the ``power_w`` field.
    """
    tags = {"device_name": sample.device_id}
    if sample.host:
        tags["device_host"] = sample.host
    tags_part = ",".join(f"{_escape_key(k)}={_escape_key(v)}" for k, v in tags.items())

    values: list[tuple[str, float | None]] = [("power_w", sample.power_w)]
    if isinstance(sample, NormalizedSample):
        values += [
            ("energy_delta_wh", sample.energy_delta_wh),
            ("energy_total_wh", sample.energy_total_wh),
            ("last_minute_wh", sample.last_minute_wh),
        ]

    fields: list[str] = []
    for key, value in values:
        if value is None:
            continue
        formatted = _format_float(value)
        if formatted is not None:
            fields.append(f"{key}={formatted}")
    if isinstance(sample, NormalizedSample):
        fields.append(f"epoch={sample.epoch}i")
        fields.append(f"epoch_reset={'true' if sample.epoch_reset else 'false'}")

    return (
        f"{_escape_measurement(measurement)},{tags_part} "
        f"{','.join(fields)} {_epoch_ms(sample.ts)}"
    )


# ---------------------------------------------------------------------------
# Sink
# ---------------------------------------------------------------------------


class InfluxSink:
    """Buffered, retrying writer for the InfluxDB 2 HTTP write API.

    Args:
        config: InfluxDB connection parameters.
        batch_size: Maximum samples per write request.
        flush_interval_s: Maximum age of a buffered sample before a flush.
        max_attempts: Write attempts per batch before it is dropped.
        max_buffered_samples: Cap on buffered samples. Defaults to ten
            batches.
        base_backoff_s: Delay before the second write attempt.
        max_backoff_s: Cap on the delay between attempts.
        transport: Optional httpx transport (used by tests).

    Usage::

        sink = InfluxSink(config.influxdb2, batch_size=50)
        await sink.accept(sample)
        await sink.flush()
        await sink.close(timeout_s=10)
    """

    def __init__(
        self,
        config: InfluxConfig,
        *,
        batch_size: int = 50,
        flush_interval_s: float = 10.0,
        max_attempts: int = 4,
        max_buffered_samples: int | None = None,
        base_backoff_s: float = _INITIAL_BACKOFF_S,
        max_backoff_s: float = _DEFAULT_MAX_BACKOFF_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._config = config
        self._batch_size = batch_size
        self._flush_interval_s = flush_interval_s
        self._max_attempts = max_attempts
        self._max_buffered = max_buffered_samples or batch_size * 10
        self._base_backoff_s = base_backoff_s
        self._max_backoff_s = max_backoff_s
        self._client = httpx.AsyncClient(
            timeout=config.timeout_s,
            verify=config.verify_tls,
            transport=transport,
        )

        # (monotonic accept time, sample), oldest first
        self._buffer: list[tuple[float, Sample]] = []
        self._lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._batch_ready = asyncio.Event()

        self.written_samples: int = 0
        self.dropped_batches: int = 0
        self.dropped_samples: int = 0
        self.last_flush_ts: datetime | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def pending(self) -> int:
        """Number of buffered, not yet written samples."""
        return len(self._buffer)

    @property
    def batch_size(self) -> int:
        return self._batch_size

    async def accept(self, sample: Sample) -> None:
        """Append *sample* to the shared buffer.

        Wakes the flush loop once a full batch is buffered. If the buffer
        exceeds its cap, the oldest samples are dropped.
        """
        async with self._lock:
            self._buffer.append((time.monotonic(), sample))
            overflow = len(self._buffer) - self._max_buffered
            if overflow > 0:
                del self._buffer[:overflow]
                self.dropped_samples += overflow
                logger.warning(
                    "Sink buffer full (%d samples), dropped %d oldest samples",
                    self._max_buffered,
                    overflow,
                )
            if len(self._buffer) >= self._batch_size:
                self._batch_ready.set()

    async def flush(self) -> bool:
        """Write the oldest batch of buffered samples.

        Only one write is in flight at a time. Samples accepted while a
        write is retrying stay buffered for the next batch.

        Returns:
            ``True`` if a batch was written. ``False`` if the buffer was
            empty or the batch was dropped after exhausting retries.
        """
        async with self._write_lock:
            async with self._lock:
                taken = self._buffer[: self._batch_size]
                del self._buffer[: len(taken)]
                if len(self._buffer) < self._batch_size:
                    self._batch_ready.clear()

            if not taken:
                logger.debug("Sink buffer empty, skipping flush.")
                return False

            batch = [sample for _, sample in taken]
            return await self._write_with_retry(batch)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Flush batches until *shutdown_event* is set.

        A flush happens as soon as a full batch is buffered, or when the
        oldest buffered sample reaches ``flush_interval_s`` of age. The
        final drain is left to :meth:`close`.
        """
        logger.info(
            "Sink loop started (batch_size=%d, flush_interval=%ss)",
            self._batch_size,
            self._flush_interval_s,
        )
        while not shutdown_event.is_set():
            await self._wait_for_work(shutdown_event, self._seconds_until_due())
            if shutdown_event.is_set():
                break
            while self._is_due():
                try:
                    await self.flush()
                except Exception:
                    logger.error("Sink flush error", exc_info=True)
                    break
        logger.info("Sink loop stopped")

    async def close(self, timeout_s: float | None = None) -> None:
        """Best-effort drain of every buffered batch, then close the client.

        Args:
            timeout_s: Upper bound for the drain; remaining samples are
                discarded and logged when it expires.
        """
        try:
            await asyncio.wait_for(self._drain(), timeout=timeout_s)
        except TimeoutError:
            logger.error(
                "Sink drain timed out after %ss, discarding %d buffered samples",
                timeout_s,
                self.pending,
            )
        finally:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _drain(self) -> None:
        while self.pending:
            await self.flush()

    def _is_due(self) -> bool:
        if not self._buffer:
            return False
        if len(self._buffer) >= self._batch_size:
            return True
        return time.monotonic() - self._buffer[0][0] >= self._flush_interval_s

    def _seconds_until_due(self) -> float:
        if not self._buffer:
            return self._flush_interval_s
        age = time.monotonic() - self._buffer[0][0]
        return max(0.0, self._flush_interval_s - age)

    async def _wait_for_work(self, shutdown_event: asyncio.Event, timeout: float) -> None:
        """Sleep until a batch is full, shutdown is requested, or *timeout*."""
        waiters = [
            asyncio.ensure_future(self._batch_ready.wait()),
            asyncio.ensure_future(shutdown_event.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

    def _backoff_for(self, attempt: int) -> float:
        """Delay before *attempt* (1-based); the first attempt has none."""
        if attempt <= 1:
            return 0.0
        return min(self._base_backoff_s * (2 ** (attempt - 2)), self._max_backoff_s)

    async def _write_with_retry(self, batch: list[Sample]) -> bool:
        body = "\n".join(to_line_protocol(s, self._config.measurement) for s in batch)
        last_error: BackendUnreachable | None = None
        attempts = 0

        for attempt in range(1, self._max_attempts + 1):
            attempts = attempt
            delay = self._backoff_for(attempt)
            if delay > 0:
                logger.warning(
                    "Write failed (%s), retrying batch of %d in %.1fs (attempt %d/%d)",
                    last_error,
                    len(batch),
                    delay,
                    attempt,
                    self._max_attempts,
                )
                await asyncio.sleep(delay)

            try:
                await self._write(body)
            except BackendUnreachable as exc:
                last_error = exc
                if not exc.retryable:
                    break
                continue

            self.written_samples += len(batch)
            self.last_flush_ts = datetime.now(tz=UTC)
            logger.info("Wrote %d samples to bucket %s.", len(batch), self._config.bucket)
            return True

        self.dropped_batches += 1
        self.dropped_samples += len(batch)
        logger.error(
            "Dropping batch of %d samples after %d attempt(s): %s",
            len(batch),
            attempts,
            last_error,
        )
        return False

    async def _write(self, body: str) -> None:
        """POST one line-protocol body; raise BackendUnreachable on failure."""
        try:
            response = await self._client.post(
                self._config.write_url,
                params={
                    "org": self._config.org,
                    "bucket": self._config.bucket,
                    "precision": "ms",
                },
                headers={
                    "Authorization": f"Token {self._config.token}",
                    "Content-Type": "text/plain; charset=utf-8",
                },
                content=body.encode("utf-8"),
            )
        except httpx.TimeoutException as exc:
            raise BackendUnreachable(f"timeout ({type(exc).__name__})") from exc
        except httpx.TransportError as exc:
            raise BackendUnreachable(f"network error ({exc})") from exc

        if response.status_code >= 300:
            raise BackendUnreachable(
                f"HTTP {response.status_code} {response.text.strip()[:200]}",
                status_code=response.status_code,
            )
