"""
notifstream - Kafka-backed multi-channel notification delivery

Publish `NotificationEvent`s with `NotificationPublisher`; consume and deliver them with `NotificationConsumer`
(at-least-once, bounded retries, optional dead-letter topics, lifecycle hooks)
"""
from .ack import Acknowledgment, AcknowledgmentLedger, PartitionOffset
from .config import AckMode, ConfigError, ConsumerSettings, ThreadingMode
from .consumer import ConsumerWorker, MessageResult, NotificationConsumer
from .coordinator import CommitError, OffsetCoordinator
from .dlq import DeadLetterPublisher
from .hooks import HookDispatcher, NotificationHooks
from .models import (
    ChannelType, DiscordPayload, EmailPayload, EventDecodeError, NotificationEvent, Priority, PushPayload,
    SlackPayload, SmsPayload, UnknownChannelError, WebhookPayload, decode_event, encode_event
)
from .publisher import InvalidNotificationError, NotificationPublisher
from .registry import DeliveryOutcome, HandlerRegistry
from .retry import DeliveryReport, RetryEngine, RetryInterrupted
from .topics import TopicManager

__version__ = "1.0.0"
