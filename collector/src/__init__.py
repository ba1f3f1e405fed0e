"""
Collector daemon package for Shelly-plug-to-InfluxDB metering.

Polls Shelly Plug (S) devices over HTTP, reconciles instantaneous power and
the device energy counter into one incremental series, and writes it to
InfluxDB 2 in batches.

CHANGELOG:
- 2026-10-06: Initial creation (STORY-001)

TODO:
- None
"""
