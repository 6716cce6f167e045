"""
Dead-letter routing for events that exhausted their retries

Dead-letter topics are named `<original-topic><suffix>` (e.g. notifications.email.dlq) and created with one
partition and replication factor 1. Records keep the original event so they can be inspected and replayed
"""
import logging
from typing import Optional

from confluent_kafka import Producer

from .config import producer_config
from .models import NotificationEvent, encode_event, event_headers

log = logging.getLogger(__name__)

DLQ_PARTITIONS = 1
DLQ_REPLICATION_FACTOR = 1


def _delivery_cb(err, msg):
    """
    DLQ producer delivery callback

    Behavior and notes
    ----------
    - Runs on whichever thread calls poll()/flush() on the producer. Keep work lightweight (logging, counters)
    - Do not raise exceptions here; unhandled errors are ignored by the client
    """
    if err is not None:
        log.error(f"DLQ delivery failed to {msg.topic()}[{msg.partition()}] -> {err}")
    else:
        log.debug(f"DLQ delivered to {msg.topic()}[{msg.partition()}] offset={msg.offset()}")


def create_dlq_producer(bootstrap_servers: str, client_id: str) -> Producer:
    return Producer(producer_config(bootstrap_servers, f"{client_id}-dlq"))


class DeadLetterPublisher:
    """
    Publishes the original event to its dead-letter topic

    What gets sent
    ----------
    Key: event id
    Value: the event, re-encoded with `encode_event` (same format as the source topic)
    Headers: notification_type, priority, retry_count plus
        - error: final error string (utf-8)
        - attempts: number of delivery attempts made
        - source_topic: topic the event was consumed from
    """

    def __init__(self, producer, suffix: str = ".dlq"):
        self.producer = producer
        self.suffix = suffix
        self.published = 0

    def topic_for(self, source_topic: str) -> str:
        return f"{source_topic}{self.suffix}"

    def publish(self, event: NotificationEvent, source_topic: str, error: Optional[BaseException] = None,
                attempts: int = 0) -> bool:
        """
        Produce `event` to the dead-letter topic of `source_topic`

        A failure here is logged and swallowed: the caller acknowledges the original message regardless, to avoid
        a poison-message loop

        Returns
        ----------
        bool - True if the record was handed to the producer
        """
        topic = self.topic_for(source_topic)
        headers = event_headers(event) + [
            ("error", str(error or "").encode("utf-8", errors="ignore")),
            ("attempts", str(attempts).encode()),
            ("source_topic", source_topic.encode("utf-8")),
        ]
        try:
            self.producer.produce(
                topic,
                key=event.id.encode("utf-8"),
                value=encode_event(event),
                headers=headers,
                on_delivery=_delivery_cb
            )
            self.producer.poll(0)
        except Exception as e:
            log.error(f"Failed to send notification {event.id} to DLQ {topic}: {e}")
            return False

        self.published += 1
        log.info(f"Sent failed notification {event.id} to DLQ: {topic}")
        return True

    def flush(self, timeout: float = 10.0) -> int:
        """Wait for outstanding DLQ deliveries; returns the number still in the queue"""
        remaining = self.producer.flush(timeout)
        if remaining:
            log.warning(f"{remaining} DLQ records still undelivered after flush")
        return remaining
