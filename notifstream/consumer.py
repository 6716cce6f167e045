"""
Kafka -> notification delivery consumer

Summary
----------
Runs K poll loops (one Kafka connection each) against the per-channel notification topics. Every polled message is
handed to a shared delivery executor, decoded, gated by the before-send hook, delivered through the channel's
handler with bounded retries, optionally dead-lettered, and finally acknowledged. Offsets are committed only after
acknowledgment (at-least-once)

Threads
----------
- notifstream-consumer-N: owns connection N; the only thread that polls it or drains its acknowledgment ledger
- delivery threads (executor): run `process_message`; reach the connection only through the ledger (MANUAL) or the
  coordinator's locked immediate commit (MANUAL_IMMEDIATE)

Shutdown
----------
1. The stop event is set: poll loops exit after their current consume() call; pending retry delays return early
2. Each poll loop waits up to the grace period for its in-flight deliveries, commits what was acknowledged
   (synchronously) and closes its own connection
3. The pool joins the poll loops, shuts the executor down without waiting (queued tasks are cancelled) and flushes
   the DLQ producer
Anything not acknowledged by then is redelivered after restart or rebalance
"""
import logging
import signal
import threading
import time
from concurrent.futures import Future, wait
from enum import Enum
from typing import Callable, List, Optional, Set

from confluent_kafka import Consumer, KafkaError, TopicPartition

from .ack import AcknowledgmentLedger, create_acknowledgment
from .config import (
    BOOTSTRAP, CREATE_TOPICS, LOG_ONLY_CHANNELS, TOPIC_PARTITIONS, TOPIC_REPLICATION, AckMode, ConfigError,
    ConsumerSettings, configure_logging, consumer_config, parse_bool, parse_channels
)
from .coordinator import OffsetCoordinator, on_commit
from .dlq import DeadLetterPublisher, create_dlq_producer
from .executor import create_executor
from .handlers import default_registry
from .hooks import HookDispatcher, NotificationHooks
from .models import ChannelType, EventDecodeError, UnknownChannelError, decode_event
from .registry import HandlerRegistry
from .retry import RetryEngine, RetryInterrupted
from .topics import TopicManager

log = logging.getLogger(__name__)

STATS_LOG_INTERVAL_S = 10


class MessageResult(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"                    # permanently failed (dead-lettered when enabled)
    SKIPPED = "skipped"                  # vetoed by before_send
    DECODE_ERROR = "decode_error"
    INTERRUPTED = "interrupted"          # shutdown during a retry delay; left unacknowledged
    ERROR = "error"                      # unexpected exception in the pipeline


class ConsumerWorker(threading.Thread):
    """
    One poll loop bound to one Kafka connection

    Loop (while the stop event is clear)
    ----------
    1. MANUAL mode: drain the acknowledgment ledger and commit asynchronously (non-blocking)
    2. consume() a batch of up to `max_poll_records` messages, waiting at most `poll_timeout`
    3. Submit each message to the shared executor and track its future

    Failure semantics
    ----------
    - Errors in (1) or (3) are logged and the loop continues
    - An exception raised by consume() itself ends this worker only; the other poll loops keep running
    """

    def __init__(self, index: int, consumer, coordinator: OffsetCoordinator, ledger: AcknowledgmentLedger,
                 pipeline: "NotificationConsumer", topics: List[str]):
        super().__init__(name=f"notifstream-consumer-{index}", daemon=True)
        self.index = index
        self.consumer = consumer
        self.coordinator = coordinator
        self.ledger = ledger
        self.pipeline = pipeline
        self.settings = pipeline.settings
        self.topics = topics

        self.grace_period = self.settings.shutdown_grace
        self.failure: Optional[BaseException] = None
        self.dispatched = 0
        self._in_flight: Set[Future] = set()
        self._in_flight_lock = threading.Lock()

    # ---------- Rebalance lifecycle ----------
    def on_assign(self, consumer, partitions: List[TopicPartition]):
        log.info(f"[{self.name}] Partitions assigned: {[(p.topic, p.partition, p.offset) for p in partitions]}")
        self.coordinator.assign(partitions)
        consumer.incremental_assign(partitions)

    def on_revoke(self, consumer, partitions: List[TopicPartition]):
        """
        Commit what was acknowledged so far before the partitions move to another member, then stop committing
        them. Deliveries still in flight for these partitions may complete later; their acknowledgments are dropped and
        the next owner will see those messages again
        """
        log.info(f"[{self.name}] Partitions revoked: {[(p.topic, p.partition) for p in partitions]}")
        if self.settings.ack_mode is AckMode.MANUAL:
            try:
                committed = self.coordinator.flush()
                if committed:
                    log.info(f"[{self.name}] Committed on revoke: {[(tp.topic, tp.partition, tp.offset) for tp in committed]}")
            except Exception as e:
                log.error(f"[{self.name}] Commit on revoke failed: {e}")
        self.coordinator.forget(partitions)
        consumer.incremental_unassign(partitions)

    # ---------- In-flight tracking ----------
    def in_flight(self) -> int:
        with self._in_flight_lock:
            return len(self._in_flight)

    def _track(self, future: Future):
        with self._in_flight_lock:
            self._in_flight.add(future)
        future.add_done_callback(self._untrack)

    def _untrack(self, future: Future):
        with self._in_flight_lock:
            self._in_flight.discard(future)
        if not future.cancelled() and future.exception() is not None:
            log.error(f"[{self.name}] Delivery task failed: {future.exception()!r}")

    # ---------- Main loop ----------
    def run(self):
        stop_event = self.pipeline.stop_event
        last_log = time.time()
        log.info(f"[{self.name}] Starting poll loop on {self.topics}")

        try:
            self.consumer.subscribe(self.topics, on_assign=self.on_assign, on_revoke=self.on_revoke)

            while not stop_event.is_set():
                if self.settings.ack_mode is AckMode.MANUAL:
                    try:
                        self.coordinator.drain_and_commit()
                    except Exception as e:
                        log.error(f"[{self.name}] Commit of acknowledged offsets failed: {e}")

                try:
                    messages = self.consumer.consume(num_messages=self.settings.max_poll_records,
                                                     timeout=self.settings.poll_timeout)
                except Exception as e:
                    log.exception(f"[{self.name}] Poll failed; stopping this worker: {e}")
                    self.failure = e
                    break

                for msg in messages or []:
                    try:
                        self._dispatch(msg)
                    except Exception as e:
                        log.error(f"[{self.name}] Failed to dispatch message: {e}")

                now = time.time()
                if now - last_log >= STATS_LOG_INTERVAL_S:
                    log.info(f"[{self.name}] dispatched={self.dispatched} in_flight={self.in_flight()} pending_acks={self.ledger.pending()}")
                    last_log = now
        except Exception as e:
            log.exception(f"[{self.name}] Poll loop crashed: {e}")
            self.failure = e
        finally:
            self._shutdown()

    def _dispatch(self, msg):
        if msg is None:
            return
        err = msg.error()
        if err is not None:
            if err.code() == KafkaError._PARTITION_EOF:
                return
            log.error(f"[{self.name}] Consume error: {err}")
            return

        future = self.pipeline.executor.submit(self.pipeline.process_message, msg, self.ledger, self.coordinator)
        self._track(future)
        self.dispatched += 1

    def _shutdown(self):
        log.info(f"[{self.name}] Shutting down; waiting for in-flight deliveries + final commit...")
        with self._in_flight_lock:
            pending = list(self._in_flight)
        if pending:
            _, not_done = wait(pending, timeout=self.grace_period)
            if not_done:
                log.warning(f"[{self.name}] {len(not_done)} deliveries still running after {self.grace_period}s grace period")

        if self.settings.ack_mode is AckMode.MANUAL:
            try:
                self.coordinator.flush()
            except Exception as e:
                log.error(f"[{self.name}] Final commit failed: {e}")

        try:
            self.coordinator.close()
        except Exception as e:
            log.error(f"[{self.name}] Closing consumer failed: {e}")


class NotificationConsumer:
    """
    Worker pool: K poll loops, one shared delivery executor, one retry engine

    Parameters
    ----------
    settings: ConsumerSettings - validated on start()
    registry: HandlerRegistry - channel -> delivery handler; immutable, built by the caller
    hooks: NotificationHooks | None - optional lifecycle callbacks
    consumer_factory: Callable[[dict], Consumer] - builds one connection from a librdkafka config (default:
        confluent_kafka.Consumer)
    dlq_producer: Producer | None - used when `settings.dlq_enabled`; created on start() if not given
    topic_manager: TopicManager | None - when given, notification (and DLQ) topics are ensured on start()
    """

    def __init__(self, settings: ConsumerSettings, registry: HandlerRegistry,
                 hooks: Optional[NotificationHooks] = None, consumer_factory: Optional[Callable] = None,
                 dlq_producer=None, topic_manager: Optional[TopicManager] = None):
        self.settings = settings
        self.registry = registry
        self.dispatcher = HookDispatcher(hooks)
        self.consumer_factory = consumer_factory or Consumer
        self.dlq_producer = dlq_producer
        self.topic_manager = topic_manager

        self.stop_event = threading.Event()
        self.workers: List[ConsumerWorker] = []
        self.executor = None
        self.dead_letters: Optional[DeadLetterPublisher] = None
        if settings.dlq_enabled and dlq_producer is not None:
            self.dead_letters = DeadLetterPublisher(dlq_producer, settings.dlq_suffix)
        self.retry_engine = RetryEngine(
            registry,
            self.dispatcher,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay,
            stop_event=self.stop_event,
            dead_letters=self.dead_letters
        )

        self._lifecycle_lock = threading.Lock()
        self._running = False
        self._shutdown_requested = threading.Event()

    def is_running(self) -> bool:
        return self._running

    def subscription_topics(self) -> List[str]:
        """`<prefix>.<channel>` for each configured channel (all channels when none are configured)"""
        topics = []
        for name in (self.settings.channels or [c.value for c in ChannelType]):
            try:
                topics.append(f"{self.settings.topic_prefix}.{ChannelType.parse(name).value}")
            except UnknownChannelError:
                log.warning(f"Skipping unknown notification channel: {name!r}")
        return topics

    # ---------- Lifecycle ----------
    def start(self):
        """
        Create K connections and start one poll loop per connection; a no-op if already running

        Raises
        ----------
        ConfigError - invalid settings, or no known channel to subscribe to
        """
        with self._lifecycle_lock:
            if self._running:
                log.warning("Consumer already running")
                return

            settings = self.settings.validate()
            topics = self.subscription_topics()
            if not topics:
                raise ConfigError(f"No known notification channels in {settings.channels}")

            if self.topic_manager is not None:
                self.topic_manager.ensure_notification_topics(
                    settings.channels, settings.dlq_suffix if settings.dlq_enabled else None
                )

            self.stop_event.clear()
            self.executor = create_executor(settings.threading_mode, settings.max_pool_size)

            if settings.dlq_enabled and self.dead_letters is None:
                if self.dlq_producer is None:
                    self.dlq_producer = create_dlq_producer(settings.bootstrap_servers, settings.client_id)
                self.dead_letters = DeadLetterPublisher(self.dlq_producer, settings.dlq_suffix)
                self.retry_engine.dead_letters = self.dead_letters

            commit_cb = None if settings.ack_mode is AckMode.AUTO else on_commit
            self.workers = []
            for index in range(settings.concurrency):
                ledger = AcknowledgmentLedger()
                connection = self.consumer_factory(consumer_config(settings, index, on_commit=commit_cb))
                coordinator = OffsetCoordinator(connection, ledger, name=f"consumer-{index}")
                self.workers.append(ConsumerWorker(index, connection, coordinator, ledger, self, topics))

            for worker in self.workers:
                worker.start()

            self._running = True
            log.info(
                f"Started {settings.concurrency} consumer(s) for {topics} "
                f"ack_mode={settings.ack_mode.value} threading={settings.threading_mode.value} "
                f"max_retries={settings.max_retries} dlq={'on' if settings.dlq_enabled else 'off'}"
            )

    def stop(self, grace_period: Optional[float] = None):
        """Stop every poll loop, close the connections and release the executor; a no-op if not running"""
        with self._lifecycle_lock:
            if not self._running:
                return
            self._running = False

            grace = self.settings.shutdown_grace if grace_period is None else grace_period
            log.info("Stopping notification consumers...")
            for worker in self.workers:
                worker.grace_period = grace
            self.stop_event.set()

            for worker in self.workers:
                worker.join(timeout=self.settings.poll_timeout + grace)
                if worker.is_alive():
                    log.warning(f"{worker.name} did not stop within {self.settings.poll_timeout + grace}s")

            self.executor.shutdown(wait=False, cancel_futures=True)

            if self.dead_letters is not None:
                self.dead_letters.flush()
            log.info("Notification consumers stopped")

    # ---------- Delivery task ----------
    def process_message(self, msg, ledger: AcknowledgmentLedger, coordinator: OffsetCoordinator) -> MessageResult:
        """
        Full pipeline for one polled message; runs on an executor thread

        decode -> ack handle -> before_send -> retry engine (-> on_retry / on_permanent_failure / DLQ)
        -> after_send -> acknowledge

        Poison messages (decode errors) are logged and acknowledged without firing hooks. Unexpected errors are
        logged and the message is still acknowledged. Only an interrupted retry delay leaves it unacknowledged
        """
        ack = create_acknowledgment(self.settings.ack_mode, msg, ledger, coordinator)

        try:
            event = decode_event(msg.value())
        except EventDecodeError as e:
            log.error(f"Failed to deserialize notification at {ack.describe()}: {e}")
            self._acknowledge(ack)
            return MessageResult.DECODE_ERROR
        except Exception as e:
            log.exception(f"Unexpected error deserializing notification at {ack.describe()}: {e}")
            self._acknowledge(ack)
            return MessageResult.DECODE_ERROR

        try:
            if not self.dispatcher.before_send(event, ack):
                log.info(f"Notification {event.id} skipped by before_send hook")
                self._acknowledge(ack)
                return MessageResult.SKIPPED

            report = self.retry_engine.deliver(event, ack, source_topic=msg.topic())
            self.dispatcher.after_send(event, report.succeeded, report.error, ack)
            self._acknowledge(ack)
        except RetryInterrupted as e:
            log.warning(f"{e}; leaving {ack.describe()} unacknowledged for redelivery")
            return MessageResult.INTERRUPTED
        except Exception as e:
            log.exception(f"Unexpected error processing notification {event.id}: {e}")
            self._acknowledge(ack)
            return MessageResult.ERROR

        if report.succeeded:
            log.debug(f"Successfully processed notification {event.id}")
            return MessageResult.DELIVERED
        return MessageResult.FAILED

    def _acknowledge(self, ack):
        try:
            ack.acknowledge()
        except Exception as e:
            log.error(f"Failed to commit offset for {ack.describe()}: {e}")

    # ---------- Blocking entrypoint ----------
    def _signal(self, *_):
        log.info("Signal received; shutting down...")
        self._shutdown_requested.set()

    def run(self):
        """Start, block until SIGINT/SIGTERM (or every poll loop has died), then stop"""
        signal.signal(signal.SIGINT, self._signal)
        signal.signal(signal.SIGTERM, self._signal)

        self.start()
        try:
            while not self._shutdown_requested.wait(1.0):
                if not any(w.is_alive() for w in self.workers):
                    log.error("All poll loops have stopped; exiting")
                    break
        finally:
            self.stop()


def build_consumer(settings: Optional[ConsumerSettings] = None, hooks: Optional[NotificationHooks] = None,
                   registry: Optional[HandlerRegistry] = None) -> NotificationConsumer:
    """Wire a consumer from the environment: reference handlers, optional topic setup"""
    settings = settings or ConsumerSettings.from_env()
    topic_manager = None
    if parse_bool(CREATE_TOPICS):
        topic_manager = TopicManager.from_bootstrap(
            settings.bootstrap_servers,
            settings.topic_prefix,
            partitions=int(TOPIC_PARTITIONS),
            replication_factor=int(TOPIC_REPLICATION)
        )
    return NotificationConsumer(
        settings,
        registry or default_registry(settings.max_pool_size, parse_channels(LOG_ONLY_CHANNELS)),
        hooks=hooks,
        topic_manager=topic_manager
    )


# ---------- Entrypoint ----------
if __name__ == "__main__":
    configure_logging()
    log.info(f"Using bootstrap.servers={BOOTSTRAP}")
    build_consumer().run()
