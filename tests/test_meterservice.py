import json
import queue
import threading
from datetime import datetime, timezone

import pytest

from meterflow.decoder import DecodedPayload, encode_payload
from meterflow.messaging import ConsumedMessage, GooglePubSubConsumer
from meterflow.meter import ConsumedUpstreamMessage
from meterflow.meterservice import (
    ProcessingService,
    ServiceConfig,
    load_service_config,
)


class FakeConsumer:
    def __init__(self):
        self.inbox = queue.Queue()
        self.done_event = threading.Event()
        self.start_calls = 0
        self.stop_calls = 0

    def messages(self):
        return self.inbox

    def start(self, stop_event=None):
        self.start_calls += 1

    def stop(self):
        self.stop_calls += 1
        self.done_event.set()

    def done(self):
        return self.done_event


class FakeInserter:
    def __init__(self, error=None):
        self.error = error
        self.inserted = []
        self.closed = 0

    def insert(self, reading):
        if self.error is not None:
            raise self.error
        self.inserted.append(reading)

    def close(self):
        self.closed += 1


class FakeSubscription:
    def receive(self, stop, callback):
        stop.wait()

    def close(self):
        pass


class Outcome:
    def __init__(self):
        self.acked = threading.Event()
        self.nacked = threading.Event()

    def message(self, msg_id, payload):
        return ConsumedMessage(
            id=msg_id,
            payload=payload,
            publish_time=datetime.now(timezone.utc),
            ack=self.acked.set,
            nack=self.nacked.set,
        )


def _service(inserter=None):
    consumer = FakeConsumer()
    inserter = inserter if inserter is not None else FakeInserter()
    return ProcessingService(ServiceConfig(num_processing_workers=1), consumer, inserter), consumer, inserter


def _valid_payload():
    hex_payload = encode_payload(DecodedPayload("X001", 10.5, 1.1, 2.2, 220.0, 219.5))
    return ConsumedUpstreamMessage(
        device_eui="EUI_X001",
        raw_payload=hex_payload,
        original_mqtt_time=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        client_id="ClientX",
        location_id="LocationY",
        device_category="Sensor",
    ).to_json()


def test_load_service_config_defaults(monkeypatch):
    monkeypatch.delenv("PROCESSING_UPSTREAM_SUB_ENV_VAR", raising=False)
    cfg = load_service_config()
    assert cfg.upstream_subscription_env_var == "PUBSUB_SUBSCRIPTION_ID_XDEVICE_INPUT"
    assert cfg.num_processing_workers == 5


def test_load_service_config_override(monkeypatch):
    monkeypatch.setenv("PROCESSING_UPSTREAM_SUB_ENV_VAR", "MY_SUB_VAR")
    assert load_service_config().upstream_subscription_env_var == "MY_SUB_VAR"


def test_from_env_builds_pubsub_consumer(monkeypatch):
    monkeypatch.setenv("GCP_PROJECT_ID", "test-project-for-processing-service-ss")
    monkeypatch.setenv("TEST_SUB_PROCESSING_INPUT_SS", "test-subscription-ss")
    seen = []

    def subscribe(cfg):
        seen.append(cfg)
        return FakeSubscription()

    cfg = ServiceConfig("TEST_SUB_PROCESSING_INPUT_SS", 1)
    service = ProcessingService.from_env(cfg, FakeInserter(), subscribe)
    assert isinstance(service.consumer, GooglePubSubConsumer)
    assert service.consumer.config.subscription_id == "test-subscription-ss"
    assert service.consumer.config.project_id == "test-project-for-processing-service-ss"
    assert len(seen) == 1
    assert seen[0].subscription_id == "test-subscription-ss"


def test_from_env_uses_default_subscription(monkeypatch):
    monkeypatch.setenv("GCP_PROJECT_ID", "p")
    monkeypatch.delenv("UNSET_SUB_VAR_FOR_TEST", raising=False)
    service = ProcessingService.from_env(
        ServiceConfig("UNSET_SUB_VAR_FOR_TEST", 1), None, lambda cfg: FakeSubscription()
    )
    assert service.consumer.config.subscription_id == "default-device-input-sub"


def test_from_env_missing_project(monkeypatch):
    monkeypatch.delenv("GCP_PROJECT_ID", raising=False)
    monkeypatch.setenv("SOME_SUB_VAR", "sub")
    with pytest.raises(ValueError, match="failed to load device input consumer config"):
        ProcessingService.from_env(ServiceConfig("SOME_SUB_VAR", 1), None, lambda cfg: FakeSubscription())


def test_start_stop():
    service, consumer, inserter = _service()
    service.start()
    consumer.done_event.set()
    service.stop()
    assert consumer.start_calls == 1
    assert consumer.stop_calls == 1
    assert inserter.closed == 1


def test_successful_decode_and_insert_through_workers():
    service, consumer, inserter = _service()
    outcome = Outcome()
    service.start()
    consumer.inbox.put(outcome.message("msg1_proc_ok", _valid_payload()))
    assert outcome.acked.wait(3)
    consumer.done_event.set()
    service.stop()
    assert not outcome.nacked.is_set()
    assert len(inserter.inserted) == 1
    reading = inserter.inserted[0]
    assert reading.uid == "X001"
    assert reading.reading == 10.5
    assert reading.device_eui == "EUI_X001"
    assert reading.client_id == "ClientX"
    assert reading.device_type == "XDevice"
    assert inserter.closed == 1


def test_decode_error_nacks():
    service, _, inserter = _service()
    outcome = Outcome()
    payload = ConsumedUpstreamMessage(
        device_eui="EUI_X002_DEC_ERR", raw_payload="invalid-hex-payload"
    ).to_json()
    service.process_message(outcome.message("msg2_proc_dec_err", payload))
    assert outcome.nacked.is_set()
    assert not outcome.acked.is_set()
    assert inserter.inserted == []


def test_unmarshal_error_nacks():
    service, _, inserter = _service()
    outcome = Outcome()
    service.process_message(
        outcome.message("msg3_proc_unm_err", b"this is not a valid ConsumedUpstreamMessage JSON")
    )
    assert outcome.nacked.is_set()
    assert not outcome.acked.is_set()
    assert inserter.inserted == []


def test_upstream_error_acks_without_insert():
    service, _, inserter = _service()
    outcome = Outcome()
    payload = json.dumps(
        {"device_eui": "E1", "raw_payload": "00", "processing_error": "device metadata not found"}
    ).encode()
    service.process_message(outcome.message("m", payload))
    assert outcome.acked.is_set()
    assert inserter.inserted == []


def test_empty_raw_payload_acks_without_insert():
    service, _, inserter = _service()
    outcome = Outcome()
    service.process_message(outcome.message("m", b'{"device_eui":"E1"}'))
    assert outcome.acked.is_set()
    assert not outcome.nacked.is_set()
    assert inserter.inserted == []


def test_insert_failure_nacks():
    service, _, _ = _service(FakeInserter(error=RuntimeError("simulated inserter error")))
    outcome = Outcome()
    service.process_message(outcome.message("m", _valid_payload()))
    assert outcome.nacked.is_set()
    assert not outcome.acked.is_set()