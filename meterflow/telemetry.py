"""Meter reading records and their BigQuery row form."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime

#: Column the meter readings table is partitioned on, by day.
PARTITION_FIELD = "original_mqtt_time"

_SCHEMA: tuple[tuple[str, str], ...] = (
    ("uid", "STRING"),
    ("reading", "FLOAT"),
    ("average_current", "FLOAT"),
    ("max_current", "FLOAT"),
    ("max_voltage", "FLOAT"),
    ("average_voltage", "FLOAT"),
    ("device_eui", "STRING"),
    ("client_id", "STRING"),
    ("location_id", "STRING"),
    ("device_category", "STRING"),
    ("original_mqtt_time", "TIMESTAMP"),
    ("upstream_ingestion_timestamp", "TIMESTAMP"),
    ("processed_timestamp", "TIMESTAMP"),
    ("device_type", "STRING"),
)

_FLOAT_COLUMNS = frozenset(name for name, kind in _SCHEMA if kind == "FLOAT")


@dataclass
class MeterReading:
    """A decoded meter reading enriched with device metadata."""

    uid: str = ""
    reading: float = 0.0
    average_current: float = 0.0
    max_current: float = 0.0
    max_voltage: float = 0.0
    average_voltage: float = 0.0
    device_eui: str = ""
    client_id: str = ""
    location_id: str = ""
    device_category: str = ""
    original_mqtt_time: datetime | None = None
    upstream_ingestion_timestamp: datetime | None = None
    processed_timestamp: datetime | None = None
    device_type: str = ""


@dataclass
class MeterReadingBQWrapper:
    """A meter reading shaped as one row of the BigQuery table."""

    uid: str = ""
    reading: float = 0.0
    average_current: float = 0.0
    max_current: float = 0.0
    max_voltage: float = 0.0
    average_voltage: float = 0.0
    device_eui: str = ""
    client_id: str = ""
    location_id: str = ""
    device_category: str = ""
    original_mqtt_time: datetime | None = None
    upstream_ingestion_timestamp: datetime | None = None
    processed_timestamp: datetime | None = None
    device_type: str = ""

    def save(self) -> tuple[dict[str, object], str]:
        """Return the row keyed by column name and its insert id (always empty)."""
        row: dict[str, object] = {
            field.name: getattr(self, field.name) for field in dataclasses.fields(self)
        }
        for name in _FLOAT_COLUMNS:
            row[name] = float(row[name])  # type: ignore[arg-type]
        return row, ""


def wrap_meter_reading_for_bq(reading: MeterReading) -> MeterReadingBQWrapper:
    """Copy a meter reading into its BigQuery row form; missing timestamps stay None."""
    return MeterReadingBQWrapper(
        **{
            field.name: getattr(reading, field.name)
            for field in dataclasses.fields(MeterReadingBQWrapper)
        }
    )


def meter_reading_schema() -> list[tuple[str, str]]:
    """Return the table schema as (column name, BigQuery type) pairs, in column order."""
    return list(_SCHEMA)