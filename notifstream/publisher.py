"""
Notification events -> Kafka publisher

Summary
----------
Publishes `NotificationEvent`s onto per-channel topics with idempotent delivery and routing headers. Invalid events
are rejected before they reach the broker, so consumers only ever see events that passed channel validation

Kafka record format
----------
- Topic: `<NOTIFY_TOPIC_PREFIX>.<channel>` (default prefix: notifications)
- Key: event id (bytes) - partition-local ordering per event
- Value: compact UTF-8 JSON (`encode_event`)
- Headers:
    - notification_type = channel name
    - priority = priority level (1..5)
    - retry_count = retry_count carried by the event

Run
----------
`python -m notifstream.publisher` publishes a batch of fake events (PUBLISH_TOTAL, default 10) and flushes
"""
import logging
import os
import random
from typing import Optional

from confluent_kafka import Producer

from .config import BOOTSTRAP, CLIENT_ID, TOPIC_PREFIX, ConsumerSettings, configure_logging, producer_config
from .fake_events import make_events
from .models import ChannelType, NotificationEvent, encode_event, event_headers

log = logging.getLogger(__name__)

PUBLISH_TOTAL = int(os.getenv("PUBLISH_TOTAL", "10"))
PUBLISH_SEED = os.getenv("PUBLISH_SEED")


class InvalidNotificationError(ValueError):
    """The event failed channel validation and was not published"""


def create_producer(settings: Optional[ConsumerSettings] = None) -> Producer:
    """Idempotent producer (acks=all, bounded in-flight) for the configured cluster"""
    if settings is None:
        return Producer(producer_config(BOOTSTRAP, f"{CLIENT_ID}-publisher"))
    return Producer(producer_config(settings.bootstrap_servers, f"{settings.client_id}-publisher"))


def _delivery_cb(err, msg):
    """
    Kafka producer delivery callback

    Invoked from poll()/flush() once the broker acknowledged (or rejected) the record. Keep it lightweight
    """
    if err is not None:
        log.error(f"Delivery failed to {msg.topic()}[{msg.partition()}] -> {err}")
    else:
        log.debug(f"Delivered to {msg.topic()}[{msg.partition()}] offset {msg.offset()}")


class NotificationPublisher:
    def __init__(self, producer, topic_prefix: str = TOPIC_PREFIX):
        self.producer = producer
        self.topic_prefix = topic_prefix
        self.sent = 0

    def topic_for(self, channel) -> str:
        return f"{self.topic_prefix}.{ChannelType.parse(channel).value}"

    def publish(self, event: NotificationEvent) -> str:
        """
        Validate `event` and produce it to its channel topic

        Returns
        ----------
        str - the topic the event was produced to

        Raises
        ----------
        InvalidNotificationError - if `event.is_valid()` is False
        """
        if not event.is_valid():
            raise InvalidNotificationError(f"Invalid notification event: {event}")
        topic = self.topic_for(event.channel)
        self.publish_to_topic(event, topic)
        return topic

    def publish_to_topic(self, event: NotificationEvent, topic: str):
        """Produce without validation; used for replays and tests of poison handling"""
        kwargs = dict(
            key=event.id.encode("utf-8"),
            value=encode_event(event),
            headers=event_headers(event),
            on_delivery=_delivery_cb
        )
        try:
            self.producer.produce(topic, **kwargs)
        except BufferError:
            # Local queue full: serve delivery callbacks to make room, then try once more
            self.producer.poll(0.5)
            self.producer.produce(topic, **kwargs)
        self.producer.poll(0)
        self.sent += 1
        log.debug(f"Published notification {event.id} to {topic}")

    def flush(self, timeout: float = 10.0) -> int:
        remaining = self.producer.flush(timeout)
        if remaining:
            log.warning(f"{remaining} records still undelivered after flush")
        return remaining

    def close(self):
        log.info("Shutting down; flushing producer...")
        self.flush()


def run_debug(total: int = PUBLISH_TOTAL, seed: Optional[int] = None) -> int:
    """Publish `total` fake events across every channel; returns the number published"""
    rng = random.Random(seed)
    publisher = NotificationPublisher(create_producer())
    try:
        for event in make_events(total, rng=rng):
            try:
                topic = publisher.publish(event)
                log.info(f"Published {event} -> {topic}")
            except InvalidNotificationError as e:
                log.warning(str(e))
    finally:
        publisher.close()

    log.info(f"Debug batch produced count = {publisher.sent}")
    return publisher.sent


if __name__ == "__main__":
    configure_logging()
    log.info(f"Using bootstrap.servers={BOOTSTRAP}")
    run_debug(PUBLISH_TOTAL, int(PUBLISH_SEED) if PUBLISH_SEED else None)
