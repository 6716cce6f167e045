import logging
import time
from concurrent.futures import Future

import pytest
from confluent_kafka import KafkaError, KafkaException, TopicPartition

from notifstream.ack import AcknowledgmentLedger, create_acknowledgment
from notifstream.config import AckMode, ConfigError, ThreadingMode
from notifstream.consumer import ConsumerWorker, NotificationConsumer
from notifstream.coordinator import OffsetCoordinator
from notifstream.fake_events import make_event
from notifstream.models import ChannelType
from notifstream.registry import HandlerRegistry
from notifstream.topics import TopicManager
from tests.fakes import (
    ConsumerFactory, FakeAdmin, FakeConsumer, FakeMessage, FakeProducer, RecordingHandler, RecordingHooks,
    eof_message, wait_for
)


def email_messages(message_for, count, partitions=2):
    events = [make_event(ChannelType.EMAIL) for _ in range(count)]
    return [message_for(event, offset=i, partition=i % partitions) for i, event in enumerate(events)]


@pytest.fixture
def running():
    started = []

    def _track(consumer):
        started.append(consumer)
        return consumer

    yield _track
    for consumer in started:
        consumer.stop(grace_period=0.5)


def test_manual_mode_commits_max_acked_offset_plus_one(settings, message_for, running):
    msgs = email_messages(message_for, 5)
    connection = FakeConsumer(batches=[msgs[:3], [eof_message()], msgs[3:]])
    factory = ConsumerFactory(connection)
    handler = RecordingHandler(None)
    consumer = running(NotificationConsumer(settings, HandlerRegistry({ChannelType.EMAIL: handler}),
                                            consumer_factory=factory))

    consumer.start()
    assert consumer.is_running()
    assert wait_for(lambda: len(handler.calls) == 5)
    assert wait_for(lambda: connection.committed_offsets() == {
        ("notifications.email", 0): 5,
        ("notifications.email", 1): 4,
    })

    consumer.stop()
    assert not consumer.is_running()
    assert connection.closed
    assert connection.subscribed == [f"notifications.{c.value}" for c in ChannelType]
    assert factory.configs[0]["enable.auto.commit"] is False
    assert factory.configs[0]["client.id"] == "notifstream-test-0"
    assert "on_commit" in factory.configs[0]


def test_poll_exception_stops_only_that_worker(settings, message_for, running):
    broken = FakeConsumer(batches=[RuntimeError("broker connection lost")])
    healthy = FakeConsumer(batches=[email_messages(message_for, 2)])
    handler = RecordingHandler(None)
    consumer = running(NotificationConsumer(settings.with_overrides(concurrency=2),
                                            HandlerRegistry({ChannelType.EMAIL: handler}),
                                            consumer_factory=ConsumerFactory(broken, healthy)))

    consumer.start()
    assert wait_for(lambda: not consumer.workers[0].is_alive())
    assert wait_for(lambda: len(handler.calls) == 2)

    assert isinstance(consumer.workers[0].failure, RuntimeError)
    assert broken.closed
    assert consumer.workers[1].is_alive()
    assert not healthy.closed

    consumer.stop()
    assert healthy.closed


def test_each_worker_owns_its_own_connection(settings, running):
    factory = ConsumerFactory()
    consumer = running(NotificationConsumer(settings.with_overrides(concurrency=3),
                                            HandlerRegistry({ChannelType.EMAIL: RecordingHandler(None)}),
                                            consumer_factory=factory))

    consumer.start()
    consumer.start()

    assert len(factory.configs) == 3
    assert [c["client.id"] for c in factory.configs] == ["notifstream-test-0", "notifstream-test-1", "notifstream-test-2"]
    assert len({id(w.coordinator) for w in consumer.workers}) == 3
    assert [w.name for w in consumer.workers] == [f"notifstream-consumer-{i}" for i in range(3)]

    consumer.stop()
    consumer.stop()
    assert all(c.closed for c in factory.consumers)


def test_auto_mode_never_commits_manually(settings, message_for, running):
    connection = FakeConsumer(batches=[email_messages(message_for, 3)])
    factory = ConsumerFactory(connection)
    handler = RecordingHandler(None)
    consumer = running(NotificationConsumer(settings.with_overrides(ack_mode=AckMode.AUTO),
                                            HandlerRegistry({ChannelType.EMAIL: handler}),
                                            consumer_factory=factory))

    consumer.start()
    assert wait_for(lambda: len(handler.calls) == 3)
    consumer.stop()

    assert connection.commits == []
    assert factory.configs[0]["enable.auto.commit"] is True
    assert "on_commit" not in factory.configs[0]


def test_manual_immediate_commits_synchronously(settings, message_for, running):
    connection = FakeConsumer(batches=[email_messages(message_for, 4, partitions=1)])
    handler = RecordingHandler(None)
    consumer = running(NotificationConsumer(settings.with_overrides(ack_mode="manual_immediate"),
                                            HandlerRegistry({ChannelType.EMAIL: handler}),
                                            consumer_factory=ConsumerFactory(connection)))

    consumer.start()
    assert wait_for(lambda: connection.committed_offsets() == {("notifications.email", 0): 4})
    consumer.stop()

    assert all(asynchronous is False for *_, asynchronous in connection.commits)


@pytest.mark.parametrize("mode", list(ThreadingMode))
def test_every_threading_mode_delivers_and_commits(settings, message_for, running, mode):
    connection = FakeConsumer(batches=[email_messages(message_for, 6, partitions=1)])
    handler = RecordingHandler(None)
    consumer = running(NotificationConsumer(settings.with_overrides(threading_mode=mode),
                                            HandlerRegistry({ChannelType.EMAIL: handler}),
                                            consumer_factory=ConsumerFactory(connection)))

    consumer.start()
    assert wait_for(lambda: len(handler.calls) == 6)
    consumer.stop()

    assert connection.committed_offsets() == {("notifications.email", 0): 6}


def test_stop_interrupts_retry_delay_and_leaves_message_unacknowledged(settings, message_for, running):
    connection = FakeConsumer(batches=[email_messages(message_for, 1)])
    handler = RecordingHandler(RuntimeError("smtp timeout"))
    hooks = RecordingHooks()
    consumer = running(NotificationConsumer(settings.with_overrides(retry_delay=30.0),
                                            HandlerRegistry({ChannelType.EMAIL: handler}),
                                            hooks=hooks.hooks,
                                            consumer_factory=ConsumerFactory(connection)))

    consumer.start()
    assert wait_for(lambda: len(hooks.retries) == 1)

    started = time.time()
    consumer.stop(grace_period=2.0)

    assert time.time() - started < 5.0
    assert hooks.failures == []
    assert hooks.after == []
    assert connection.commits == []
    assert connection.closed


def test_dead_letters_and_topics_are_set_up_on_start(settings, message_for, running):
    producer = FakeProducer()
    admin = FakeAdmin(existing={"notifications.email"})
    handler = RecordingHandler(RuntimeError("gateway down"))
    connection = FakeConsumer(batches=[email_messages(message_for, 1)])
    consumer = running(NotificationConsumer(
        settings.with_overrides(channels="email,sms", dlq_enabled=True, max_retries=1),
        HandlerRegistry({ChannelType.EMAIL: handler}),
        consumer_factory=ConsumerFactory(connection),
        dlq_producer=producer,
        topic_manager=TopicManager(admin, "notifications"),
    ))

    consumer.start()
    assert wait_for(lambda: len(producer.produced) == 1)
    assert wait_for(lambda: connection.committed_offsets() == {("notifications.email", 0): 1})
    consumer.stop()

    assert connection.subscribed == ["notifications.email", "notifications.sms"]
    assert sorted(t.topic for t in admin.created) == [
        "notifications.email.dlq", "notifications.sms", "notifications.sms.dlq"
    ]
    assert producer.produced[0]["topic"] == "notifications.email.dlq"
    assert producer.flushes >= 1


def test_start_continues_when_a_topic_cannot_be_created(settings, message_for, running):
    bad_replication = KafkaException(KafkaError(KafkaError.INVALID_REPLICATION_FACTOR))
    admin = FakeAdmin(create_errors={"notifications.sms": bad_replication})
    handler = RecordingHandler(None)
    connection = FakeConsumer(batches=[email_messages(message_for, 1)])
    consumer = running(NotificationConsumer(
        settings.with_overrides(channels="email,sms"),
        HandlerRegistry({ChannelType.EMAIL: handler}),
        consumer_factory=ConsumerFactory(connection),
        topic_manager=TopicManager(admin, "notifications"),
    ))

    consumer.start()
    assert consumer.is_running()
    assert wait_for(lambda: connection.committed_offsets() == {("notifications.email", 0): 1})
    consumer.stop()

    assert [t.topic for t in admin.created] == ["notifications.email"]
    assert connection.subscribed == ["notifications.email", "notifications.sms"]


def test_subscription_skips_unknown_channels(settings):
    registry = HandlerRegistry()

    consumer = NotificationConsumer(settings.with_overrides(channels="email, fax ,SMS"), registry)
    assert consumer.subscription_topics() == ["notifications.email", "notifications.sms"]

    only_unknown = NotificationConsumer(settings.with_overrides(channels="fax,pigeon"), registry,
                                        consumer_factory=ConsumerFactory())
    with pytest.raises(ConfigError):
        only_unknown.start()
    assert not only_unknown.is_running()


def test_invalid_settings_fail_on_start(settings):
    consumer = NotificationConsumer(settings.with_overrides(concurrency=0), HandlerRegistry(),
                                    consumer_factory=ConsumerFactory())

    with pytest.raises(ConfigError):
        consumer.start()


def test_revoke_commits_acknowledged_offsets_and_forgets_watermarks(settings):
    connection = FakeConsumer()
    ledger = AcknowledgmentLedger()
    coordinator = OffsetCoordinator(connection, ledger, name="consumer-0")
    pipeline = NotificationConsumer(settings, HandlerRegistry())
    worker = ConsumerWorker(0, connection, coordinator, ledger, pipeline, ["notifications.email"])
    partitions = [TopicPartition("notifications.email", 0), TopicPartition("notifications.email", 1)]

    worker.on_assign(connection, partitions)
    ledger.enqueue("notifications.email", 0, 4)
    ledger.enqueue("notifications.email", 1, 9)
    worker.on_revoke(connection, partitions)

    assert sorted(connection.commits) == [("notifications.email", 0, 5, False), ("notifications.email", 1, 10, False)]
    assert coordinator.committed() == {}
    assert connection.assigned == partitions
    assert connection.unassigned == partitions


def test_in_flight_acknowledgment_after_revoke_is_not_committed(settings):
    connection = FakeConsumer()
    ledger = AcknowledgmentLedger()
    coordinator = OffsetCoordinator(connection, ledger, name="consumer-0")
    pipeline = NotificationConsumer(settings, HandlerRegistry())
    worker = ConsumerWorker(0, connection, coordinator, ledger, pipeline, ["notifications.email"])
    partitions = [TopicPartition("notifications.email", 0)]

    worker.on_assign(connection, partitions)
    ledger.enqueue("notifications.email", 0, 49)
    late = create_acknowledgment(AckMode.MANUAL, FakeMessage("notifications.email", 0, 9), ledger, coordinator)
    worker.on_revoke(connection, partitions)
    late.acknowledge()
    worker.on_assign(connection, partitions)

    assert coordinator.drain_and_commit() == []
    assert connection.commits == [("notifications.email", 0, 50, False)]


def test_failed_delivery_task_is_logged(settings, caplog):
    connection = FakeConsumer()
    ledger = AcknowledgmentLedger()
    coordinator = OffsetCoordinator(connection, ledger, name="consumer-0")
    worker = ConsumerWorker(0, connection, coordinator, ledger, NotificationConsumer(settings, HandlerRegistry()),
                            ["notifications.email"])
    future = Future()
    worker._track(future)

    with caplog.at_level(logging.ERROR, logger="notifstream.consumer"):
        future.set_exception(RecursionError("maximum recursion depth exceeded"))

    assert worker.in_flight() == 0
    assert "Delivery task failed" in caplog.text
