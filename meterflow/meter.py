"""Upstream messages and the meter readings built from them."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from .decoder import DecodedPayload
from .telemetry import MeterReading

DEVICE_TYPE = "XDevice"

_ZERO_TIME = "0001-01-01T00:00:00Z"
_TIME_PATTERN = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})"
)


def _parse_time(text: str) -> datetime | None:
    """Parse an RFC 3339 timestamp; the zero instant maps to None."""
    match = _TIME_PATTERN.fullmatch(text)
    if match is None:
        raise ValueError(f"invalid timestamp: {text!r}")
    year, month, day, hour, minute, second, fraction, zone = match.groups()
    if zone == "Z":
        offset = timedelta(0)
    else:
        sign = -1 if zone[0] == "-" else 1
        offset = sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6]))
    micros = int((fraction or "")[:6].ljust(6, "0"))
    naive = datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), micros
    )
    if offset == timedelta(0) and naive == datetime(1, 1, 1):
        return None
    return naive.replace(tzinfo=timezone(offset) if offset else timezone.utc)


def _format_time(value: datetime | None) -> str:
    """Format a timestamp as RFC 3339 with trailing fraction zeros removed."""
    if value is None:
        return _ZERO_TIME
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset() or timedelta(0)
    if not offset:
        return text + "Z"
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _string(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string")
    return value


def _time(data: dict[str, Any], key: str) -> datetime | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a timestamp string")
    return _parse_time(value)


@dataclass
class ConsumedUpstreamMessage:
    """A message from the ingestion service carrying one device's raw payload."""

    device_eui: str = ""
    raw_payload: str = ""
    original_mqtt_time: datetime | None = None
    lorawan_received_at: datetime | None = None
    ingestion_timestamp: datetime | None = None
    client_id: str = ""
    location_id: str = ""
    device_category: str = ""
    processing_error: str = ""

    @classmethod
    def from_json(cls, payload: bytes | str) -> ConsumedUpstreamMessage:
        """Parse a JSON message; raises ValueError when it is not a valid message."""
        try:
            data = json.loads(payload)
        except ValueError as exc:
            raise ValueError(f"invalid upstream message: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("invalid upstream message: expected a JSON object")
        return cls(
            device_eui=_string(data, "device_eui"),
            raw_payload=_string(data, "raw_payload"),
            original_mqtt_time=_time(data, "original_mqtt_time"),
            lorawan_received_at=_time(data, "lorawan_received_at"),
            ingestion_timestamp=_time(data, "ingestion_timestamp"),
            client_id=_string(data, "client_id"),
            location_id=_string(data, "location_id"),
            device_category=_string(data, "device_category"),
            processing_error=_string(data, "processing_error"),
        )

    def to_json(self) -> bytes:
        """Serialise to JSON; empty optional strings are left out."""
        data: dict[str, str] = {
            "device_eui": self.device_eui,
            "raw_payload": self.raw_payload,
            "original_mqtt_time": _format_time(self.original_mqtt_time),
            "lorawan_received_at": _format_time(self.lorawan_received_at),
            "ingestion_timestamp": _format_time(self.ingestion_timestamp),
        }
        optional = {
            "client_id": self.client_id,
            "location_id": self.location_id,
            "device_category": self.device_category,
            "processing_error": self.processing_error,
        }
        data.update((key, value) for key, value in optional.items() if value)
        return json.dumps(data, separators=(",", ":")).encode()


class DecodedDataInserter(Protocol):
    """Somewhere decoded meter readings are stored."""

    def insert(self, reading: MeterReading) -> None:
        """Store one reading, raising on failure."""
        ...

    def close(self) -> None:
        """Release resources held by the inserter."""
        ...


def new_meter_reading(
    upstream: ConsumedUpstreamMessage, decoded: DecodedPayload
) -> MeterReading:
    """Combine a decoded payload with the metadata of its upstream message."""
    return MeterReading(
        uid=decoded.uid,
        reading=decoded.reading,
        average_current=decoded.average_current,
        max_current=decoded.max_current,
        max_voltage=decoded.max_voltage,
        average_voltage=decoded.average_voltage,
        device_eui=upstream.device_eui,
        client_id=upstream.client_id,
        location_id=upstream.location_id,
        device_category=upstream.device_category,
        original_mqtt_time=upstream.original_mqtt_time,
        upstream_ingestion_timestamp=upstream.ingestion_timestamp,
        processed_timestamp=datetime.now(timezone.utc),
        device_type=DEVICE_TYPE,
    )