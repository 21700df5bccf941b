"""The archival service: consume enriched and unidentified messages and archive them."""

from __future__ import annotations

import logging
import os
import queue
import threading
from dataclasses import dataclass
from typing import Callable

from .archiver import RawDataArchiver
from .messaging import (
    ConsumedMessage,
    GooglePubSubConsumer,
    MessageConsumer,
    PubSubConsumerConfig,
    Subscription,
    load_pubsub_consumer_config,
)

_log = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05


@dataclass
class ArchivalServiceConfig:
    """Settings of the archival service.

    The two subscription fields name the environment variables that hold the
    subscription ids, not the ids themselves.
    """

    enriched_messages_subscription_env_var: str = "PUBSUB_SUBSCRIPTION_ID_ENRICHED"
    unidentified_messages_subscription_env_var: str = "PUBSUB_SUBSCRIPTION_ID_UNIDENTIFIED"
    num_archival_workers: int = 5


def load_archival_service_config() -> ArchivalServiceConfig:
    """Build the service settings, honouring the ARCHIVAL_*_SUB_ENV_VAR overrides."""
    config = ArchivalServiceConfig()
    enriched = os.environ.get("ARCHIVAL_ENRICHED_SUB_ENV_VAR", "")
    if enriched:
        config.enriched_messages_subscription_env_var = enriched
    unidentified = os.environ.get("ARCHIVAL_UNIDENTIFIED_SUB_ENV_VAR", "")
    if unidentified:
        config.unidentified_messages_subscription_env_var = unidentified
    return config


def _consumer_from_env(
    env_var: str,
    kind: str,
    subscribe: Callable[[PubSubConsumerConfig], Subscription],
) -> GooglePubSubConsumer:
    try:
        consumer_config = load_pubsub_consumer_config(env_var)
    except ValueError as exc:
        raise ValueError(f"failed to load {kind} consumer config: {exc}") from exc
    try:
        subscription = subscribe(consumer_config)
    except Exception as exc:
        raise RuntimeError(f"failed to create {kind} message consumer: {exc}") from exc
    return GooglePubSubConsumer(consumer_config, subscription)


class ArchivalService:
    """Reads two message streams with a pool of workers and archives every message.

    A message is acked once archived and nacked when archiving fails.
    """

    def __init__(
        self,
        config: ArchivalServiceConfig,
        archiver: RawDataArchiver | None,
        enriched_consumer: MessageConsumer,
        unidentified_consumer: MessageConsumer,
    ) -> None:
        self.config = config
        self.archiver = archiver
        self.enriched_consumer = enriched_consumer
        self.unidentified_consumer = unidentified_consumer
        self._shutdown = threading.Event()
        self._workers: list[threading.Thread] = []

    @classmethod
    def from_env(
        cls,
        config: ArchivalServiceConfig,
        archiver: RawDataArchiver | None,
        subscribe: Callable[[PubSubConsumerConfig], Subscription],
    ) -> ArchivalService:
        """Build the service with Pub/Sub consumers configured from the environment."""
        enriched = _consumer_from_env(
            config.enriched_messages_subscription_env_var, "enriched", subscribe
        )
        try:
            unidentified = _consumer_from_env(
                config.unidentified_messages_subscription_env_var, "unidentified", subscribe
            )
        except Exception:
            enriched.stop()
            raise
        return cls(config, archiver, enriched, unidentified)

    def start(self) -> None:
        """Start both consumers and the archival workers."""
        _log.info("Starting ArchivalService")
        try:
            self.enriched_consumer.start(self._shutdown)
        except Exception as exc:
            raise RuntimeError(f"failed to start enriched message consumer: {exc}") from exc
        _log.info("Enriched message consumer started")
        try:
            self.unidentified_consumer.start(self._shutdown)
        except Exception as exc:
            self.enriched_consumer.stop()
            raise RuntimeError(
                f"failed to start unidentified message consumer: {exc}"
            ) from exc
        _log.info("Unidentified message consumer started")

        for worker_id in range(self.config.num_archival_workers):
            worker = threading.Thread(
                target=self._work, args=(worker_id,), name=f"archival-worker-{worker_id}"
            )
            worker.daemon = True
            worker.start()
            self._workers.append(worker)
        _log.info("ArchivalService started with %d workers", len(self._workers))

    def _work(self, worker_id: int) -> None:
        sources = (
            ("enriched", self.enriched_consumer.messages()),
            ("unidentified", self.unidentified_consumer.messages()),
        )
        _log.debug("Archival worker %d started", worker_id)
        while not self._shutdown.is_set():
            handled = False
            for source, inbox in sources:
                try:
                    message = inbox.get_nowait()
                except queue.Empty:
                    continue
                handled = True
                _log.debug(
                    "Worker %d processing message %s from %s", worker_id, message.id, source
                )
                self._archive(message)
            if not handled:
                self._shutdown.wait(_POLL_INTERVAL)
        _log.info("Archival worker %d shutting down", worker_id)

    def _archive(self, message: ConsumedMessage) -> None:
        try:
            if self.archiver is None:
                raise RuntimeError("no archiver configured")
            self.archiver.archive(message.payload, message.publish_time)
        except Exception as exc:
            _log.error("Failed to archive message %s, nacking: %s", message.id, exc)
            message.nack()
        else:
            _log.debug("Message %s archived, acking", message.id)
            message.ack()

    def stop(self) -> None:
        """Stop both consumers, wait for the workers, then flush the archiver."""
        _log.info("Stopping ArchivalService")
        self._shutdown.set()
        for name, consumer in (
            ("enriched", self.enriched_consumer),
            ("unidentified", self.unidentified_consumer),
        ):
            try:
                consumer.stop()
            except Exception:
                _log.exception("Error stopping %s consumer", name)
            consumer.done().wait()
            _log.info("%s message consumer stopped", name.capitalize())

        for worker in self._workers:
            worker.join()
        self._workers.clear()
        _log.info("All archival workers completed")

        if self.archiver is not None:
            try:
                self.archiver.stop()
            except Exception:
                _log.exception("Error stopping archiver")
        _log.info("ArchivalService stopped")