"""
Runtime configuration for the notification pipeline

Every knob is read from the environment with a sensible default, so the consumer and publisher can run with
`python -m notifstream.consumer` and a handful of exports. `ConsumerSettings` groups them for code that wants to
build a pipeline programmatically (tests, embedding applications)

Environment
----------
- KAFKA_BOOTSTRAP         | Broker address list (default: localhost:9092)
- KAFKA_GROUP_ID          | Consumer group id (default: notifstream.consumer.v1)
- CLIENT_ID               | librdkafka client.id (default: notifstream/1.0)
- NOTIFY_TOPIC_PREFIX     | Prefix for per-channel topics (default: notifications)
- NOTIFY_CHANNELS         | Comma separated channel names to consume; empty means all
- NOTIFY_CONCURRENCY      | Number of consumer connections / poll loops (default: 3)
- NOTIFY_MAX_POOL_SIZE    | Delivery executor size (default: 10)
- NOTIFY_THREADING_MODE   | single_threaded | thread_pool | elastic (default: thread_pool)
- NOTIFY_ACK_MODE         | auto | manual | manual_immediate (default: manual)
- POLL_TIMEOUT_S          | consume() timeout in seconds (default: 1.0)
- MAX_POLL_RECORDS        | Max messages per consume() batch (default: 500)
- AUTO_OFFSET_RESET       | earliest | latest (default: earliest)
- MAX_PROCESS_RETRIES     | Retries after the first attempt (default: 3)
- RETRY_DELAY_S           | Fixed delay between attempts (default: 5.0)
- DLQ_ENABLED             | Route exhausted events to `<topic><suffix>` (default: false)
- DLQ_TOPIC_SUFFIX        | Dead-letter topic suffix (default: .dlq)
- SHUTDOWN_GRACE_S        | Window given to in-flight deliveries on stop (default: 1.0)
- NOTIFY_CREATE_TOPICS    | Create missing notification / DLQ topics on startup (default: false)
- NOTIFY_TOPIC_PARTITIONS | Partitions for created notification topics (default: 3)
- NOTIFY_TOPIC_REPLICATION| Replication factor for created notification topics (default: 1)
- SLACK_WEBHOOK_URL       | Default Slack incoming webhook for the reference handler
- DISCORD_WEBHOOK_URL     | Default Discord webhook for the reference handler
- NOTIFY_LOG_ONLY_CHANNELS| Channels whose deliveries are only logged, for development (default: none)
- LOG_LEVEL               | INFO | DEBUG | WARNING | ERROR (default: INFO)
"""
import os
import logging
from enum import Enum
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Optional, Tuple


# ---------- Config ----------
BOOTSTRAP = os.getenv("KAFKA_BOOTSTRAP", "localhost:9092")
GROUP_ID = os.getenv("KAFKA_GROUP_ID", "notifstream.consumer.v1")
CLIENT_ID = os.getenv("CLIENT_ID", "notifstream/1.0")
TOPIC_PREFIX = os.getenv("NOTIFY_TOPIC_PREFIX", "notifications")
CHANNELS = os.getenv("NOTIFY_CHANNELS", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s %(threadName)s %(message)s"

# Threading and acknowledgment
CONCURRENCY = os.getenv("NOTIFY_CONCURRENCY", "3")
MAX_POOL_SIZE = os.getenv("NOTIFY_MAX_POOL_SIZE", "10")
THREADING_MODE = os.getenv("NOTIFY_THREADING_MODE", "thread_pool")
ACK_MODE = os.getenv("NOTIFY_ACK_MODE", "manual")

# Polling
POLL_TIMEOUT_S = os.getenv("POLL_TIMEOUT_S", "1.0")
MAX_POLL_RECORDS = os.getenv("MAX_POLL_RECORDS", "500")
AUTO_OFFSET_RESET = os.getenv("AUTO_OFFSET_RESET", "earliest")                # earliest / latest
SESSION_TIMEOUT_MS = os.getenv("SESSION_TIMEOUT_MS", "45000")
MAX_POLL_INTERVAL = os.getenv("MAX_POLL_INTERVAL", "60000")

# Retries and DLQ
MAX_PROCESS_RETRIES = os.getenv("MAX_PROCESS_RETRIES", "3")
RETRY_DELAY_S = os.getenv("RETRY_DELAY_S", "5.0")
DLQ_ENABLED = os.getenv("DLQ_ENABLED", "false")
DLQ_TOPIC_SUFFIX = os.getenv("DLQ_TOPIC_SUFFIX", ".dlq")
SHUTDOWN_GRACE_S = os.getenv("SHUTDOWN_GRACE_S", "1.0")

# Topic setup and reference handlers
CREATE_TOPICS = os.getenv("NOTIFY_CREATE_TOPICS", "false")                    # ensure topics on startup
TOPIC_PARTITIONS = os.getenv("NOTIFY_TOPIC_PARTITIONS", "3")
TOPIC_REPLICATION = os.getenv("NOTIFY_TOPIC_REPLICATION", "1")
SLACK_WEBHOOK_URL = os.getenv("SLACK_WEBHOOK_URL")
DISCORD_WEBHOOK_URL = os.getenv("DISCORD_WEBHOOK_URL")
LOG_ONLY_CHANNELS = os.getenv("NOTIFY_LOG_ONLY_CHANNELS", "")                # opt-in logging stand-ins

# Security
SASL_MECHANISM = os.getenv("SASL_MECHANISM")                                  # e.g. "PLAIN", "SCRAM-SHA-512"
SASL_USERNAME = os.getenv("SASL_USERNAME")
SASL_PASSWORD = os.getenv("SASL_PASSWORD")
SSL_CA_LOCATION = os.getenv("SSL_CA_LOCATION")                                # path to CA bundle

OFFSET_RESET_POLICIES = ("earliest", "latest")

log = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when a setting cannot be parsed or is out of range"""


class AckMode(str, Enum):
    """
    Acknowledgment discipline

    - AUTO: librdkafka auto-commits; the pipeline keeps no bookkeeping
    - MANUAL: delivery tasks queue acknowledgments; the poll thread commits them asynchronously in batches
    - MANUAL_IMMEDIATE: delivery tasks commit synchronously through the owning connection, one commit at a time
    """
    AUTO = "auto"
    MANUAL = "manual"
    MANUAL_IMMEDIATE = "manual_immediate"


class ThreadingMode(str, Enum):
    """How delivery tasks are scheduled. Purely a throughput knob, never a correctness one"""
    SINGLE_THREADED = "single_threaded"
    THREAD_POOL = "thread_pool"
    ELASTIC = "elastic"


def parse_enum(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        choices = ", ".join(m.value for m in enum_cls)
        raise ConfigError(f"Invalid {enum_cls.__name__} {value!r}; expected one of: {choices}")


def parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _parse_number(name: str, value, kind):
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a {kind.__name__}, got {value!r}")


def parse_channels(raw: Optional[str]) -> Tuple[str, ...]:
    """
    Split a comma separated channel list; names are kept as given (lower-cased)

    Unknown names are not rejected here. Topic resolution logs and skips them so one typo does not take the
    whole consumer down
    """
    if not raw:
        return ()
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class ConsumerSettings:
    """
    Settings for one `NotificationConsumer`

    Fields mirror the environment variables documented at module level. Durations are seconds (floats)
    """
    bootstrap_servers: str = BOOTSTRAP
    group_id: str = GROUP_ID
    client_id: str = CLIENT_ID
    topic_prefix: str = TOPIC_PREFIX
    channels: Tuple[str, ...] = field(default_factory=lambda: parse_channels(CHANNELS))
    concurrency: int = 3
    max_pool_size: int = 10
    threading_mode: ThreadingMode = ThreadingMode.THREAD_POOL
    ack_mode: AckMode = AckMode.MANUAL
    poll_timeout: float = 1.0
    max_poll_records: int = 500
    auto_offset_reset: str = "earliest"
    max_retries: int = 3
    retry_delay: float = 5.0
    dlq_enabled: bool = False
    dlq_suffix: str = ".dlq"
    shutdown_grace: float = 1.0
    session_timeout_ms: int = 45000
    max_poll_interval_ms: int = 60000

    @classmethod
    def from_env(cls, **overrides) -> "ConsumerSettings":
        """
        Build settings from the environment variables captured at import time

        Parameters
        ----------
        overrides - Keyword arguments replacing individual fields (handy in tests and scripts)

        Raises
        ----------
        ConfigError - if a value cannot be parsed or fails validation
        """
        settings = cls(
            bootstrap_servers=BOOTSTRAP,
            group_id=GROUP_ID,
            client_id=CLIENT_ID,
            topic_prefix=TOPIC_PREFIX,
            channels=parse_channels(CHANNELS),
            concurrency=_parse_number("NOTIFY_CONCURRENCY", CONCURRENCY, int),
            max_pool_size=_parse_number("NOTIFY_MAX_POOL_SIZE", MAX_POOL_SIZE, int),
            threading_mode=parse_enum(ThreadingMode, THREADING_MODE),
            ack_mode=parse_enum(AckMode, ACK_MODE),
            poll_timeout=_parse_number("POLL_TIMEOUT_S", POLL_TIMEOUT_S, float),
            max_poll_records=_parse_number("MAX_POLL_RECORDS", MAX_POLL_RECORDS, int),
            auto_offset_reset=AUTO_OFFSET_RESET.strip().lower(),
            max_retries=_parse_number("MAX_PROCESS_RETRIES", MAX_PROCESS_RETRIES, int),
            retry_delay=_parse_number("RETRY_DELAY_S", RETRY_DELAY_S, float),
            dlq_enabled=parse_bool(DLQ_ENABLED),
            dlq_suffix=DLQ_TOPIC_SUFFIX,
            shutdown_grace=_parse_number("SHUTDOWN_GRACE_S", SHUTDOWN_GRACE_S, float),
            session_timeout_ms=_parse_number("SESSION_TIMEOUT_MS", SESSION_TIMEOUT_MS, int),
            max_poll_interval_ms=_parse_number("MAX_POLL_INTERVAL", MAX_POLL_INTERVAL, int),
        )
        if overrides:
            settings = settings.with_overrides(**overrides)
        return settings.validate()

    def with_overrides(self, **overrides) -> "ConsumerSettings":
        if "ack_mode" in overrides:
            overrides["ack_mode"] = parse_enum(AckMode, overrides["ack_mode"])
        if "threading_mode" in overrides:
            overrides["threading_mode"] = parse_enum(ThreadingMode, overrides["threading_mode"])
        if isinstance(overrides.get("channels"), str):
            overrides["channels"] = parse_channels(overrides["channels"])
        return replace(self, **overrides)

    def validate(self) -> "ConsumerSettings":
        """Return self if every field is in range, otherwise raise `ConfigError`"""
        if not self.group_id:
            raise ConfigError("group_id is required")
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.max_pool_size < 1:
            raise ConfigError(f"max_pool_size must be >= 1, got {self.max_pool_size}")
        if self.max_poll_records < 1:
            raise ConfigError(f"max_poll_records must be >= 1, got {self.max_poll_records}")
        if self.poll_timeout <= 0:
            raise ConfigError(f"poll_timeout must be > 0, got {self.poll_timeout}")
        if self.max_retries < 0:
            raise ConfigError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_delay < 0:
            raise ConfigError(f"retry_delay must be >= 0, got {self.retry_delay}")
        if self.shutdown_grace < 0:
            raise ConfigError(f"shutdown_grace must be >= 0, got {self.shutdown_grace}")
        if self.auto_offset_reset not in OFFSET_RESET_POLICIES:
            raise ConfigError(f"auto_offset_reset must be one of {OFFSET_RESET_POLICIES}, got {self.auto_offset_reset!r}")
        if self.dlq_enabled and not self.dlq_suffix:
            raise ConfigError("dlq_suffix must be non-empty when the DLQ is enabled")
        return self


# ---------- librdkafka config builders ----------
def _error_cb(err):
    log.error(f"Kafka client error: {err}")


def _security_config() -> Dict[str, Any]:
    config: Dict[str, Any] = {}
    if SASL_MECHANISM and SASL_USERNAME and SASL_PASSWORD:
        config.update({
            "security.protocol": "SASL_SSL",
            "sasl.mechanisms": SASL_MECHANISM,
            "sasl.username": SASL_USERNAME,
            "sasl.password": SASL_PASSWORD
        })

    if SSL_CA_LOCATION:
        config["ssl.ca.location"] = SSL_CA_LOCATION
    return config


def consumer_config(settings: ConsumerSettings, index: int = 0,
                    on_commit: Optional[Callable] = None) -> Dict[str, Any]:
    """
    Build the librdkafka configuration for consumer connection `index`

    Key settings
    ----------
    - enable.auto.commit - only in AUTO mode; MANUAL and MANUAL_IMMEDIATE commit explicitly
    - partition.assignment.strategy='cooperative-sticky' - minimizes stop-the-world rebalances
    - on_commit - receives results of asynchronous commits issued by the poll thread
    """
    config = {
        "bootstrap.servers": settings.bootstrap_servers,
        "group.id": settings.group_id,
        "client.id": f"{settings.client_id}-{index}",
        "enable.auto.commit": settings.ack_mode is AckMode.AUTO,
        "auto.offset.reset": settings.auto_offset_reset,
        "partition.assignment.strategy": "cooperative-sticky",
        "session.timeout.ms": settings.session_timeout_ms,
        "max.poll.interval.ms": settings.max_poll_interval_ms,
        "socket.keepalive.enable": True,
        "error_cb": _error_cb,
    }
    if settings.ack_mode is AckMode.AUTO:
        config["auto.commit.interval.ms"] = 5000
    if on_commit is not None:
        config["on_commit"] = on_commit

    config.update(_security_config())
    return config


def producer_config(bootstrap_servers: str, client_id: str) -> Dict[str, Any]:
    """Idempotent producer configuration shared by the publisher and the DLQ"""
    config = {
        "bootstrap.servers": bootstrap_servers,
        "acks": "all",
        "enable.idempotence": True,
        "retries": 2_147_483_647,
        "max.in.flight.requests.per.connection": 5,
        "compression.type": "snappy",
        "batch.size": 32 * 1024,
        "linger.ms": 20,
        "client.id": client_id,
        "error_cb": _error_cb,
    }
    config.update(_security_config())
    return config


def admin_config(bootstrap_servers: str) -> Dict[str, Any]:
    config = {
        "bootstrap.servers": bootstrap_servers,
        "socket.timeout.ms": 30000,
    }
    config.update(_security_config())
    return config


def configure_logging(level: str = LOG_LEVEL):
    """Root logging setup used by the `__main__` entrypoints only"""
    logging.basicConfig(level=level, format=LOG_FORMAT)
