"""
Startup-time topic administration

Creates `<prefix>.<channel>` notification topics and their dead-letter companions when they are missing. Run once
before the consumers subscribe; nothing here is on the message path
"""
import logging
from typing import Iterable, List, Optional

from confluent_kafka import KafkaError, KafkaException
from confluent_kafka.admin import AdminClient, NewTopic

from .config import admin_config
from .dlq import DLQ_PARTITIONS, DLQ_REPLICATION_FACTOR
from .models import ChannelType, UnknownChannelError

log = logging.getLogger(__name__)

TOPIC_CONFIG = {
    "retention.ms": "604800000",                                                    # 7 days
    "compression.type": "lz4",
    "min.insync.replicas": "1",
}


class TopicSetupError(RuntimeError):
    """Topic creation failed for a reason other than the topic already existing"""


def _already_exists(exc: BaseException) -> bool:
    if not isinstance(exc, KafkaException) or not exc.args:
        return False
    err = exc.args[0]
    return isinstance(err, KafkaError) and err.code() == KafkaError.TOPIC_ALREADY_EXISTS


class TopicManager:
    """
    Thin wrapper over `confluent_kafka.admin.AdminClient`

    Parameters
    ----------
    admin: AdminClient - anything exposing list_topics(timeout=) and create_topics([...])
    topic_prefix: str - e.g. "notifications" -> notifications.email, notifications.sms, ...
    partitions / replication_factor: defaults for notification topics
    """

    def __init__(self, admin, topic_prefix: str, partitions: int = 3, replication_factor: int = 1,
                 timeout: float = 30.0):
        self.admin = admin
        self.topic_prefix = topic_prefix
        self.partitions = partitions
        self.replication_factor = replication_factor
        self.timeout = timeout

    @classmethod
    def from_bootstrap(cls, bootstrap_servers: str, topic_prefix: str, **kwargs) -> "TopicManager":
        return cls(AdminClient(admin_config(bootstrap_servers)), topic_prefix, **kwargs)

    def topic_name(self, channel) -> str:
        return f"{self.topic_prefix}.{ChannelType.parse(channel).value}"

    def existing_topics(self) -> set:
        metadata = self.admin.list_topics(timeout=self.timeout)
        return set(metadata.topics)

    def ensure_topic(self, name: str, partitions: Optional[int] = None,
                     replication_factor: Optional[int] = None) -> bool:
        """
        Create `name` unless it already exists

        Returns
        ----------
        bool - True if the topic was created by this call

        Raises
        ----------
        TopicSetupError - creation failed for any reason other than "already exists"
        """
        if name in self.existing_topics():
            log.debug(f"Topic {name} already exists")
            return False

        partitions = partitions or self.partitions
        replication_factor = replication_factor or self.replication_factor
        topic = NewTopic(name, num_partitions=partitions, replication_factor=replication_factor, config=dict(TOPIC_CONFIG))
        futures = self.admin.create_topics([topic])
        for topic_name, future in futures.items():
            try:
                future.result()
            except Exception as e:
                if _already_exists(e):
                    # Created concurrently by another instance
                    log.debug(f"Topic {topic_name} already exists")
                    return False
                raise TopicSetupError(f"Failed to create topic {topic_name}: {e}") from e

        log.info(f"Created Kafka topic: {name} with {partitions} partitions")
        return True

    def ensure_notification_topics(self, channels: Iterable = (), dlq_suffix: Optional[str] = None) -> List[str]:
        """
        Ensure one topic per channel (all channels when `channels` is empty), plus `<topic><dlq_suffix>` for each
        when `dlq_suffix` is given

        Unknown channel names are logged and skipped. A topic that cannot be created (bad replication factor, missing
        ACLs, ...) is logged as a warning and skipped; the remaining topics are still ensured

        Returns
        ----------
        List[str] - the notification topic names that are now present
        """
        names = []
        for channel in (channels or list(ChannelType)):
            try:
                names.append(self.topic_name(channel))
            except UnknownChannelError:
                log.warning(f"Skipping unknown notification channel: {channel!r}")

        present = []
        for name in names:
            if self._try_ensure(name):
                present.append(name)
            if dlq_suffix:
                self._try_ensure(f"{name}{dlq_suffix}", DLQ_PARTITIONS, DLQ_REPLICATION_FACTOR)
        return present

    def _try_ensure(self, name: str, partitions: Optional[int] = None,
                    replication_factor: Optional[int] = None) -> bool:
        try:
            self.ensure_topic(name, partitions, replication_factor)
            return True
        except (TopicSetupError, KafkaException) as e:
            log.warning(f"Skipping topic {name}: {e}")
            return False
