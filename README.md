# meterflow

`meterflow` is a small toolkit for the back end of a smart-meter telemetry
pipeline. Messages arrive from a message broker as JSON carrying a
hex-encoded device payload plus routing metadata. They are either decoded
into meter readings and stored in a warehouse table, or archived raw into
gzip-compressed, date-partitioned JSON-lines batches.

It has no runtime dependencies. Broker subscriptions, the warehouse and
object storage are reached through small interfaces (`typing.Protocol`
classes) that you supply, so the same code runs against real services,
emulators or in-memory fakes.

## Modules

| Module | Purpose |
| --- | --- |
| `meterflow.decoder` | `decode_payload` turns a 24-byte hex payload (4-byte UID followed by five big-endian 32-bit floats) into a frozen `DecodedPayload`; `encode_payload` does the reverse. Bad hex or a wrong length raises `PayloadDecodeError` (a `ValueError`). |
| `meterflow.telemetry` | `MeterReading`, the reading record; `MeterReadingBQWrapper` with `save()` returning a row keyed by snake_case column name; `wrap_meter_reading_for_bq`; `meter_reading_schema()` returning `(column, type)` pairs; `PARTITION_FIELD`. |
| `meterflow.meter` | `ConsumedUpstreamMessage` with `from_json` / `to_json`, `new_meter_reading` to combine upstream metadata with a decoded payload, and the `DecodedDataInserter` interface. |
| `meterflow.messaging` | `ConsumedMessage`, the `MessageConsumer` and `Subscription` interfaces, `PubSubConsumerConfig`, `load_pubsub_consumer_config` and `GooglePubSubConsumer`, which runs a `Subscription` on a background thread and places messages on a bounded queue. |
| `meterflow.bigquery` | `BigQueryInserter`, configured by `BigQueryInserterConfig` / `load_bigquery_inserter_config`, which creates the readings table when the client reports `TableNotFoundError` and streams rows through a `BigQueryClient`. `InsertError` carries per-row errors. |
| `meterflow.meterservice` | `ServiceConfig`, `load_service_config` and `ProcessingService`: worker threads that decode consumed messages, insert readings and ack or nack each message. |
| `meterflow.archiver` | `GCSDataArchiver`: batches raw messages by day and location (or `deadletter`) and writes each full batch as a gzip JSON-lines object through a `StorageClient`. Also `CombinedMessagePayload`, `RawDataForArchival`, `GCSDataArchiverConfig`, `MessageProcessingError` and the `RawDataArchiver`, `StorageClient` and `ObjectWriter` interfaces. |
| `meterflow.iceservice` | `ArchivalServiceConfig`, `load_archival_service_config` and `ArchivalService`, which reads an enriched and an unidentified stream and feeds both into a `RawDataArchiver`. |

## Decoding a payload

```python
from meterflow.decoder import decode_payload, PayloadDecodeError

try:
    decoded = decode_payload(raw_hex)
except PayloadDecodeError as exc:
    print("rejected:", exc)
```

`encode_payload(decoded)` produces the hex string again; it raises
`ValueError` if the UID does not encode to exactly 4 bytes.

## Building a reading

```python
from meterflow.meter import ConsumedUpstreamMessage, new_meter_reading

upstream = ConsumedUpstreamMessage.from_json(message_bytes)
reading = new_meter_reading(upstream, decode_payload(upstream.raw_payload))
```

`from_json` raises `ValueError` for input that is not a JSON object with the
expected field types. Timestamps are RFC 3339 strings; the zero instant
`0001-01-01T00:00:00Z` is read as `None`, and `None` is written back as that
zero instant. Every reading built by `new_meter_reading` has the device type
`"XDevice"` and a processed timestamp set to the current UTC time.

## Consuming messages

`GooglePubSubConsumer(config, subscription)` wraps any object with
`receive(stop_event, callback)` and `close()`. Call `start()` (optionally with
an event that, once set, stops consumption), read `ConsumedMessage` objects
from `messages()`, and call `stop()` to cancel, wait up to 30 seconds for the
receive loop and close the subscription. `stop()` is idempotent; `done()`
returns an event set once consumption has ended. A message that cannot be
queued before the consumer stops is nacked.

## Processing and archiving services

`ProcessingService` and `ArchivalService` can be built directly from a
config, the consumers and the sink, or with `from_env`, which reads the
subscription ids from the environment and calls the `subscribe` function you
pass, with a `PubSubConsumerConfig`, to open each `Subscription`. Call
`start()` to launch the workers and `stop()` to shut down: consumers are
stopped first, workers joined, and then the inserter is closed or the
archiver flushes every pending batch.

Messages are handled as follows:

* Processing: unparseable JSON or an undecodable payload is nacked; a message
  carrying an upstream processing error or an empty raw payload is acked and
  skipped; a failed insert is nacked; everything else is inserted and acked.
  `process_message` handles a single message directly.
* Archiving: a message is acked once the archiver accepts it and nacked if the
  archiver raises (for instance `MessageProcessingError` on invalid JSON).

## Archive layout

A message goes to its `location_id` batch when it has a location and no
processing error, and to `deadletter` otherwise. Batch keys are
`<year>/<month>/<day>/<location>`, taken from the path timestamp passed to
`archive`. When a batch reaches `batch_size_threshold` messages (default 100)
it is uploaded on a background thread as

`<object_prefix>/<batch key>/<uuid>.jsonl.gz`

with `object_prefix` defaulting to `raw-audit-logs/daily-aggregates`. Each
line is a `RawDataForArchival` record holding `device_eui`, the original
message embedded as JSON under `original_pubsub_payload`, and `archived_at`.
The object writer gets content type `application/x-jsonlines`, encoding
`gzip`, the configured storage class if any, and metadata `batch_key`,
`message_count`, `first_message_eui`, `first_message_ts_archived` and
`last_message_ts_archived`. `pending_count(batch_key)` reports waiting
messages, `wait()` blocks until started uploads finish, and `stop()` uploads
every remaining batch and waits.

## Environment variables

| Variable | Used by |
| --- | --- |
| `GCP_PROJECT_ID` | `load_pubsub_consumer_config` and `load_bigquery_inserter_config` (required) |
| `GCP_PUBSUB_CREDENTIALS_FILE` | `load_pubsub_consumer_config` (optional, stored in the config) |
| `BQ_DATASET_ID`, `BQ_TABLE_ID_METER_READINGS` | `load_bigquery_inserter_config` (required) |
| `GCP_BQ_CREDENTIALS_FILE` | `load_bigquery_inserter_config` (optional, stored in the config) |
| `PROCESSING_UPSTREAM_SUB_ENV_VAR` | names the variable holding the processing subscription id; defaults to `PUBSUB_SUBSCRIPTION_ID_XDEVICE_INPUT`, and the id falls back to `default-device-input-sub` |
| `ARCHIVAL_ENRICHED_SUB_ENV_VAR`, `ARCHIVAL_UNIDENTIFIED_SUB_ENV_VAR` | name the variables holding the archival subscription ids; default to `PUBSUB_SUBSCRIPTION_ID_ENRICHED` and `PUBSUB_SUBSCRIPTION_ID_UNIDENTIFIED`, both required |

Missing required values raise `ValueError` naming the variable.

## What the package does not do

* It contains no broker, warehouse or object-storage client. You provide the
  `Subscription`, `BigQueryClient` and `StorageClient` implementations; the
  credentials settings are only carried in the configs for them to use.
* It has no command-line program or long-running entry point; services are
  started and stopped from your own code.