"""The device processing service: consume, decode, store."""

from __future__ import annotations

import logging
import os
import queue
import threading
from dataclasses import dataclass
from typing import Callable

from .decoder import PayloadDecodeError, decode_payload
from .messaging import (
    ConsumedMessage,
    GooglePubSubConsumer,
    MessageConsumer,
    PubSubConsumerConfig,
    Subscription,
    load_pubsub_consumer_config,
)
from .meter import ConsumedUpstreamMessage, DecodedDataInserter, new_meter_reading

_log = logging.getLogger(__name__)

DEFAULT_SUBSCRIPTION_ID = "default-device-input-sub"
_POLL_INTERVAL = 0.05


@dataclass
class ServiceConfig:
    """Settings of the processing service."""

    upstream_subscription_env_var: str = "PUBSUB_SUBSCRIPTION_ID_XDEVICE_INPUT"
    num_processing_workers: int = 5


def load_service_config() -> ServiceConfig:
    """Build the service settings, honouring PROCESSING_UPSTREAM_SUB_ENV_VAR."""
    config = ServiceConfig()
    env_var = os.environ.get("PROCESSING_UPSTREAM_SUB_ENV_VAR", "")
    if env_var:
        config.upstream_subscription_env_var = env_var
    return config


class ProcessingService:
    """Consumes upstream messages, decodes device payloads and stores the readings."""

    def __init__(
        self,
        config: ServiceConfig,
        consumer: MessageConsumer,
        inserter: DecodedDataInserter | None,
    ) -> None:
        self.config = config
        self.consumer = consumer
        self.inserter = inserter
        self._shutdown = threading.Event()
        self._workers: list[threading.Thread] = []

    @classmethod
    def from_env(
        cls,
        config: ServiceConfig,
        inserter: DecodedDataInserter | None,
        subscribe: Callable[[PubSubConsumerConfig], Subscription],
    ) -> ProcessingService:
        """Build the service with a Pub/Sub consumer configured from the environment."""
        try:
            consumer_config = load_pubsub_consumer_config(
                config.upstream_subscription_env_var, DEFAULT_SUBSCRIPTION_ID
            )
        except ValueError as exc:
            raise ValueError(f"failed to load device input consumer config: {exc}") from exc
        try:
            subscription = subscribe(consumer_config)
        except Exception as exc:
            raise RuntimeError(
                f"failed to create device input message consumer: {exc}"
            ) from exc
        return cls(config, GooglePubSubConsumer(consumer_config, subscription), inserter)

    def start(self) -> None:
        """Start the consumer and the worker threads."""
        _log.info("Starting ProcessingService")
        try:
            self.consumer.start(self._shutdown)
        except Exception as exc:
            raise RuntimeError(f"failed to start message consumer: {exc}") from exc
        for worker_id in range(self.config.num_processing_workers):
            worker = threading.Thread(
                target=self._work, args=(worker_id,), name=f"processing-worker-{worker_id}"
            )
            worker.daemon = True
            worker.start()
            self._workers.append(worker)
        _log.info("ProcessingService started with %d workers", len(self._workers))

    def _work(self, worker_id: int) -> None:
        inbox = self.consumer.messages()
        done = self.consumer.done()
        while not self._shutdown.is_set():
            try:
                message = inbox.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if done.is_set() and inbox.empty():
                    _log.info("Consumer exhausted, worker %d exiting", worker_id)
                    return
                continue
            self.process_message(message)
        _log.info("Processing worker %d shutting down", worker_id)

    def process_message(self, message: ConsumedMessage) -> None:
        """Decode and store one message, then ack or nack it."""
        try:
            upstream = ConsumedUpstreamMessage.from_json(message.payload)
        except ValueError as exc:
            _log.error("Cannot parse message %s, nacking: %s", message.id, exc)
            message.nack()
            return

        if upstream.processing_error:
            _log.warning(
                "Message %s from %s carries upstream error %r, acking and skipping",
                message.id,
                upstream.device_eui,
                upstream.processing_error,
            )
            message.ack()
            return
        if not upstream.raw_payload:
            _log.warning(
                "Message %s from %s has an empty raw payload, acking and skipping",
                message.id,
                upstream.device_eui,
            )
            message.ack()
            return

        try:
            decoded = decode_payload(upstream.raw_payload)
        except PayloadDecodeError as exc:
            _log.error(
                "Failed to decode payload %r of message %s, nacking: %s",
                upstream.raw_payload,
                message.id,
                exc,
            )
            message.nack()
            return

        reading = new_meter_reading(upstream, decoded)
        try:
            if self.inserter is None:
                raise RuntimeError("no data inserter configured")
            self.inserter.insert(reading)
        except Exception as exc:
            _log.error("Failed to insert reading %s, nacking: %s", reading.uid, exc)
            message.nack()
        else:
            _log.debug("Reading %s from message %s inserted, acking", reading.uid, message.id)
            message.ack()

    def stop(self) -> None:
        """Stop consuming, wait for the workers and close the inserter."""
        _log.info("Stopping ProcessingService")
        self._shutdown.set()
        try:
            self.consumer.stop()
        except Exception:
            _log.exception("Error stopping message consumer")
        self.consumer.done().wait()
        for worker in self._workers:
            worker.join()
        self._workers.clear()
        if self.inserter is not None:
            try:
                self.inserter.close()
            except Exception:
                _log.exception("Error closing data inserter")
        _log.info("ProcessingService stopped")