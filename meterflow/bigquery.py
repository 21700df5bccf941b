"""Streaming of meter readings into a BigQuery table."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Protocol, Sequence

from .telemetry import (
    PARTITION_FIELD,
    MeterReading,
    meter_reading_schema,
    wrap_meter_reading_for_bq,
)

_log = logging.getLogger(__name__)


class TableNotFoundError(LookupError):
    """Raised by a client when the requested table does not exist."""


class InsertError(Exception):
    """Raised when rows could not be inserted; row_errors holds (row index, messages)."""

    def __init__(
        self, message: str, row_errors: Sequence[tuple[int, Sequence[str]]] = ()
    ) -> None:
        super().__init__(message)
        self.row_errors = [(index, list(errors)) for index, errors in row_errors]


class BigQueryClient(Protocol):
    """The operations on a BigQuery project that the inserter needs."""

    project: str

    def table_metadata(self, dataset_id: str, table_id: str) -> list[tuple[str, str]]:
        """Return the table schema, raising TableNotFoundError if there is no table."""
        ...

    def create_table(
        self,
        dataset_id: str,
        table_id: str,
        schema: list[tuple[str, str]],
        partition_field: str,
    ) -> None:
        """Create a table partitioned by day on partition_field."""
        ...

    def insert_rows(
        self, dataset_id: str, table_id: str, rows: list[dict[str, object]]
    ) -> None:
        """Stream rows into the table, raising on failure."""
        ...


@dataclass
class BigQueryInserterConfig:
    """Where meter readings are written."""

    project_id: str
    dataset_id: str
    table_id: str
    credentials_file: str = ""


def load_bigquery_inserter_config() -> BigQueryInserterConfig:
    """Read the inserter settings from the environment."""
    config = BigQueryInserterConfig(
        project_id=os.environ.get("GCP_PROJECT_ID", ""),
        dataset_id=os.environ.get("BQ_DATASET_ID", ""),
        table_id=os.environ.get("BQ_TABLE_ID_METER_READINGS", ""),
        credentials_file=os.environ.get("GCP_BQ_CREDENTIALS_FILE", ""),
    )
    if not config.project_id:
        raise ValueError("GCP_PROJECT_ID environment variable not set for BigQuery config")
    if not config.dataset_id:
        raise ValueError("BQ_DATASET_ID environment variable not set for BigQuery config")
    if not config.table_id:
        raise ValueError(
            "BQ_TABLE_ID_METER_READINGS environment variable not set for BigQuery config"
        )
    return config


class BigQueryInserter:
    """Inserts meter readings into one table, creating it when it is missing.

    The client is owned by the caller; close() does not close it.
    """

    def __init__(self, client: BigQueryClient, config: BigQueryInserterConfig) -> None:
        if client is None:
            raise ValueError("bigquery client cannot be None")
        if config is None:
            raise ValueError("BigQueryInserterConfig cannot be None")
        if not config.dataset_id or not config.table_id:
            raise ValueError(
                "dataset_id and table_id must be provided in BigQueryInserterConfig"
            )

        project_id = getattr(client, "project", "") or ""
        if not project_id:
            if not config.project_id:
                raise ValueError("project ID could not be determined from client or config")
            project_id = config.project_id
            _log.warning("Using project id %s from config as the client has none", project_id)

        self.client = client
        self.project_id = project_id
        self.dataset_id = config.dataset_id
        self.table_id = config.table_id
        self.closed = False
        _log.info(
            "Initializing BigQueryInserter for %s.%s.%s",
            project_id,
            self.dataset_id,
            self.table_id,
        )
        self._ensure_table()

    def _ensure_table(self) -> None:
        name = f"{self.dataset_id}.{self.table_id}"
        try:
            schema = self.client.table_metadata(self.dataset_id, self.table_id)
        except TableNotFoundError:
            _log.warning("BigQuery table %s not found, creating it", name)
            try:
                self.client.create_table(
                    self.dataset_id, self.table_id, meter_reading_schema(), PARTITION_FIELD
                )
            except Exception as exc:
                raise RuntimeError(f"failed to create BigQuery table {name}: {exc}") from exc
            _log.info("BigQuery table %s created", name)
        except Exception as exc:
            raise RuntimeError(
                f"failed to get BigQuery table metadata for {name}: {exc}"
            ) from exc
        else:
            _log.info("BigQuery table %s loaded with %d columns", name, len(schema))

    def insert(self, reading: MeterReading) -> None:
        """Stream one reading into the table; failures are logged and re-raised."""
        wrapped = wrap_meter_reading_for_bq(reading)
        row, _ = wrapped.save()
        try:
            self.client.insert_rows(self.dataset_id, self.table_id, [row])
        except Exception as exc:
            _log.error(
                "Failed to insert row for uid %s, device %s: %s",
                wrapped.uid,
                wrapped.device_eui,
                exc,
            )
            if isinstance(exc, InsertError):
                for index, errors in exc.row_errors:
                    _log.error("BigQuery insert error for row %d: %s", index, errors)
            raise
        _log.debug("Inserted row for uid %s, device %s", wrapped.uid, wrapped.device_eui)

    def close(self) -> None:
        """Mark the inserter closed; the client's lifetime belongs to the caller."""
        self.closed = True
        _log.info(
            "BigQueryInserter for %s.%s closed; the client is managed externally",
            self.dataset_id,
            self.table_id,
        )