"""Decode smart-meter payloads, store meter readings and archive raw messages."""

__version__ = "0.1.0"

__all__ = [
    "archiver",
    "bigquery",
    "decoder",
    "iceservice",
    "messaging",
    "meter",
    "meterservice",
    "telemetry",
]