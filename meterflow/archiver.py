"""Batching of raw Pub/Sub messages into gzip-compressed JSON-lines objects."""

from __future__ import annotations

import dataclasses
import gzip
import json
import logging
import posixpath
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from .meter import ConsumedUpstreamMessage, _format_time, _parse_time

_log = logging.getLogger(__name__)

#: Processing error the ingestion service reports when it has no device metadata.
ORIGINAL_ERR_METADATA_NOT_FOUND = "device metadata not found"

DEFAULT_BATCH_SIZE_THRESHOLD = 100
DEFAULT_OBJECT_PREFIX = "raw-audit-logs/daily-aggregates"
DEADLETTER_LOCATION = "deadletter"


class MessageProcessingError(Exception):
    """Raised when a message cannot be processed for archival."""


class CombinedMessagePayload(ConsumedUpstreamMessage):
    """An enriched or unidentified device message as published upstream."""

    @classmethod
    def from_json(cls, payload: bytes | str) -> CombinedMessagePayload:
        """Parse a JSON message; raises ValueError when it is not a valid message."""
        return super().from_json(payload)

    def to_json(self) -> bytes:
        """Serialise to JSON; empty optional strings are left out."""
        return super().to_json()


class RawDataArchiver(Protocol):
    """Something that archives raw message payloads."""

    def archive(self, payload: bytes, path_timestamp: datetime) -> None:
        """Archive one payload, raising MessageProcessingError if it is unusable."""
        ...

    def stop(self) -> None:
        """Flush everything pending and wait for it to be stored."""
        ...


class ObjectWriter(Protocol):
    """A writer for one stored object; attributes are set before writing."""

    content_type: str
    content_encoding: str
    storage_class: str
    metadata: dict[str, str]

    def write(self, data: bytes) -> int:
        """Write data to the object."""
        ...

    def close(self) -> None:
        """Commit the object."""
        ...


class StorageClient(Protocol):
    """An object store."""

    def open_writer(self, bucket: str, object_name: str) -> ObjectWriter:
        """Return a writer for object_name in bucket."""
        ...


@dataclass
class GCSDataArchiverConfig:
    """Where and how batches are stored."""

    bucket_name: str
    object_prefix: str = ""
    batch_size_threshold: int = 0
    default_storage_class: str = ""


@dataclass
class RawDataForArchival:
    """One archived message as written to a JSON-lines object."""

    device_eui: str
    original_pubsub_payload: bytes
    archived_at: datetime
    message_timestamp_for_path: datetime | None = None

    def to_json(self) -> str:
        """Return the record as one compact JSON line, without the newline."""
        embedded = json.loads(self.original_pubsub_payload)
        record = {
            "device_eui": self.device_eui,
            "original_pubsub_payload": embedded,
            "archived_at": _format_time(self.archived_at),
        }
        return json.dumps(record, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_json(cls, line: bytes | str) -> RawDataForArchival:
        """Parse a line written by to_json."""
        data = json.loads(line)
        if not isinstance(data, dict):
            raise ValueError("archived record must be a JSON object")
        archived_at = _parse_time(data.get("archived_at") or "0001-01-01T00:00:00Z")
        return cls(
            device_eui=data.get("device_eui") or "",
            original_pubsub_payload=json.dumps(
                data.get("original_pubsub_payload"), separators=(",", ":")
            ).encode(),
            archived_at=archived_at or datetime.min.replace(tzinfo=timezone.utc),
        )


def _rfc3339_seconds(value: datetime) -> str:
    return _format_time(value.replace(microsecond=0))


class GCSDataArchiver:
    """Groups messages by day and location and uploads full batches in the background."""

    def __init__(self, client: StorageClient, config: GCSDataArchiverConfig) -> None:
        if client is None:
            raise ValueError("GCS client cannot be None")
        if not config.bucket_name:
            raise ValueError("GCS bucket name is required")
        if config.batch_size_threshold <= 0:
            config = dataclasses.replace(
                config, batch_size_threshold=DEFAULT_BATCH_SIZE_THRESHOLD
            )
        if not config.object_prefix:
            config = dataclasses.replace(config, object_prefix=DEFAULT_OBJECT_PREFIX)
        self.client = client
        self.config = config
        self._lock = threading.Lock()
        self._batches: dict[str, list[RawDataForArchival]] = {}
        self._uploads = threading.Condition()
        self._in_flight = 0

    def archive(self, payload: bytes, path_timestamp: datetime) -> None:
        """Add a message to its batch, uploading the batch once it is full."""
        try:
            message = CombinedMessagePayload.from_json(payload)
        except ValueError as exc:
            _log.error(
                "Cannot parse message %r, it will not be archived: %s", payload[:100], exc
            )
            raise MessageProcessingError(
                f"error processing message for archival: unmarshal error: {exc}"
            ) from exc

        if message.location_id and not message.processing_error:
            location = message.location_id
        else:
            location = DEADLETTER_LOCATION
            if message.processing_error:
                _log.info(
                    "Message from %s routed to deadletter: upstream error %r",
                    message.device_eui,
                    message.processing_error,
                )
            else:
                _log.warning(
                    "Message from %s has no location, routing to deadletter",
                    message.device_eui,
                )

        batch_key = (
            f"{path_timestamp.year}/{path_timestamp.month:02d}/"
            f"{path_timestamp.day:02d}/{location}"
        )
        record = RawDataForArchival(
            device_eui=message.device_eui,
            original_pubsub_payload=bytes(payload),
            archived_at=datetime.now(timezone.utc),
            message_timestamp_for_path=path_timestamp,
        )

        with self._lock:
            batch = self._batches.setdefault(batch_key, [])
            batch.append(record)
            full = len(batch) >= self.config.batch_size_threshold
            if full:
                del self._batches[batch_key]
        if full:
            self._flush(batch_key, batch)

    def pending_count(self, batch_key: str) -> int:
        """Return how many messages wait in the batch with this key."""
        with self._lock:
            return len(self._batches.get(batch_key, ()))

    def wait(self) -> None:
        """Block until every upload started so far has finished."""
        with self._uploads:
            self._uploads.wait_for(lambda: self._in_flight == 0)

    def stop(self) -> None:
        """Upload every pending batch and wait for all uploads to finish."""
        _log.info("Stopping archiver, flushing pending batches")
        with self._lock:
            batches, self._batches = self._batches, {}
        for batch_key, batch in batches.items():
            if batch:
                self._flush(batch_key, batch)
        self.wait()
        _log.info("All uploads completed, archiver stopped")

    def _flush(self, batch_key: str, batch: list[RawDataForArchival]) -> None:
        if not batch:
            return
        with self._uploads:
            self._in_flight += 1
        threading.Thread(
            target=self._run_upload, args=(batch_key, batch), daemon=True
        ).start()

    def _run_upload(self, batch_key: str, batch: list[RawDataForArchival]) -> None:
        try:
            self._upload(batch_key, batch)
        except Exception:
            _log.exception("Upload of batch %s failed", batch_key)
        finally:
            with self._uploads:
                self._in_flight -= 1
                self._uploads.notify_all()

    def _upload(self, batch_key: str, batch: list[RawDataForArchival]) -> None:
        object_name = posixpath.join(
            self.config.object_prefix, batch_key, f"{uuid.uuid4()}.jsonl.gz"
        )
        _log.info("Flushing %d messages to %s", len(batch), object_name)

        lines = []
        for record in batch:
            try:
                lines.append(record.to_json() + "\n")
            except ValueError as exc:
                _log.error(
                    "Failed to encode record from %s for batch %s: %s",
                    record.device_eui,
                    batch_key,
                    exc,
                )
        data = gzip.compress("".join(lines).encode("utf-8"))

        writer = self.client.open_writer(self.config.bucket_name, object_name)
        if self.config.default_storage_class:
            writer.storage_class = self.config.default_storage_class
        writer.content_type = "application/x-jsonlines"
        writer.content_encoding = "gzip"
        writer.metadata = {
            "batch_key": batch_key,
            "message_count": str(len(batch)),
            "first_message_eui": batch[0].device_eui,
            "first_message_ts_archived": _rfc3339_seconds(batch[0].archived_at),
            "last_message_ts_archived": _rfc3339_seconds(batch[-1].archived_at),
        }
        try:
            writer.write(data)
        except Exception as exc:
            _log.error("Failed to write object %s: %s", object_name, exc)
            try:
                writer.close()
            except Exception:
                pass
            return
        try:
            writer.close()
        except Exception as exc:
            _log.error("Failed to commit object %s: %s", object_name, exc)
            return
        _log.info("Uploaded batch to %s", object_name)