"""Message consumption from a Pub/Sub subscription."""

from __future__ import annotations

import logging
import os
import queue
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Protocol

_log = logging.getLogger(__name__)

#: Seconds stop() waits for the receive loop to finish.
STOP_TIMEOUT = 30.0
_POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class ConsumedMessage:
    """A message received from a broker, with its acknowledgement callbacks."""

    id: str
    payload: bytes
    publish_time: datetime
    ack: Callable[[], None]
    nack: Callable[[], None]


class MessageConsumer(Protocol):
    """A source of messages.

    messages() is read until done() is set and the queue is empty; then the
    consumer is exhausted.
    """

    def messages(self) -> queue.Queue[ConsumedMessage]:
        """Return the queue received messages are placed on."""
        ...

    def start(self, stop_event: threading.Event | None = None) -> None:
        """Begin consuming without blocking."""
        ...

    def stop(self) -> None:
        """Stop consuming and release the connection."""
        ...

    def done(self) -> threading.Event:
        """Return an event that is set once consumption has ended."""
        ...


class Subscription(Protocol):
    """A broker subscription that pushes messages to a callback."""

    def receive(
        self, stop: threading.Event, callback: Callable[[ConsumedMessage], None]
    ) -> None:
        """Deliver messages to callback until stop is set."""
        ...

    def close(self) -> None:
        """Close the underlying client."""
        ...


@dataclass
class PubSubConsumerConfig:
    """Settings for a Pub/Sub consumer."""

    project_id: str
    subscription_id: str
    credentials_file: str = ""
    max_outstanding_messages: int = 100
    num_receive_workers: int = 5


def load_pubsub_consumer_config(
    subscription_env_var: str, default_subscription_id: str = ""
) -> PubSubConsumerConfig:
    """Read consumer settings from the environment.

    The subscription id comes from the named variable, falling back to the default.
    """
    subscription_id = os.environ.get(subscription_env_var, "") or default_subscription_id
    if not subscription_id:
        raise ValueError(
            f"environment variable {subscription_env_var} for Pub/Sub subscription ID "
            "not set and no default provided"
        )
    project_id = os.environ.get("GCP_PROJECT_ID", "")
    if not project_id:
        raise ValueError("GCP_PROJECT_ID environment variable not set for Pub/Sub consumer")
    return PubSubConsumerConfig(
        project_id=project_id,
        subscription_id=subscription_id,
        credentials_file=os.environ.get("GCP_PUBSUB_CREDENTIALS_FILE", ""),
    )


class GooglePubSubConsumer:
    """Consumes a subscription on a background thread into a bounded queue."""

    def __init__(self, config: PubSubConsumerConfig, subscription: Subscription) -> None:
        self.config = config
        self.stop_timeout = STOP_TIMEOUT
        self._subscription = subscription
        self._queue: queue.Queue[ConsumedMessage] = queue.Queue(
            maxsize=max(config.max_outstanding_messages, 1)
        )
        self._cancel = threading.Event()
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._started = False
        self._stopped = False

    def messages(self) -> queue.Queue[ConsumedMessage]:
        return self._queue

    def done(self) -> threading.Event:
        return self._done

    def start(self, stop_event: threading.Event | None = None) -> None:
        """Start receiving; setting stop_event ends consumption as stop() would."""
        with self._lock:
            if self._started:
                raise RuntimeError("consumer already started")
            self._started = True
        _log.info("Starting consumption from subscription %s", self.config.subscription_id)
        threading.Thread(
            target=self._receive_loop,
            name=f"pubsub-receive-{self.config.subscription_id}",
            daemon=True,
        ).start()
        if stop_event is not None:
            threading.Thread(target=self._watch, args=(stop_event,), daemon=True).start()

    def stop(self) -> None:
        """Cancel receiving, wait for it to end and close the subscription. Idempotent."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            started = self._started
        _log.info("Stopping consumer for subscription %s", self.config.subscription_id)
        self._cancel.set()
        if not started:
            self._done.set()
        elif not self._done.wait(self.stop_timeout):
            _log.error("Timeout waiting for receive loop of %s to stop", self.config.subscription_id)
        try:
            self._subscription.close()
        except Exception:
            _log.exception("Error closing subscription %s", self.config.subscription_id)

    def _watch(self, outer: threading.Event) -> None:
        while not self._cancel.is_set() and not self._done.is_set():
            if outer.wait(_POLL_INTERVAL):
                self._cancel.set()

    def _receive_loop(self) -> None:
        try:
            self._subscription.receive(self._cancel, self._handle)
        except Exception:
            _log.exception("Receive on %s exited with error", self.config.subscription_id)
        finally:
            _log.info("Receive loop for %s stopped", self.config.subscription_id)
            self._done.set()

    def _handle(self, message: ConsumedMessage) -> None:
        _log.debug("Received message %s", message.id)
        while not self._cancel.is_set():
            try:
                self._queue.put(message, timeout=_POLL_INTERVAL)
                return
            except queue.Full:
                continue
        _log.warning("Consumer stopping, nacking message %s", message.id)
        message.nack()