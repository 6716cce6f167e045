import sys
from pathlib import Path

import pytest

project_root = Path(__file__).resolve().parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from notifstream.config import ConsumerSettings  # noqa: E402
from notifstream.fake_events import make_event  # noqa: E402
from notifstream.models import ChannelType, encode_event  # noqa: E402
from tests.fakes import FakeMessage  # noqa: E402


@pytest.fixture
def settings():
    return ConsumerSettings(
        bootstrap_servers="localhost:9092",
        group_id="notifstream.test",
        client_id="notifstream-test",
        topic_prefix="notifications",
        channels=(),
        concurrency=1,
        max_pool_size=4,
        poll_timeout=0.05,
        max_retries=3,
        retry_delay=0.0,
        shutdown_grace=2.0,
    )


@pytest.fixture
def email_event():
    return make_event(ChannelType.EMAIL)


@pytest.fixture
def message_for():
    """Build a FakeMessage carrying an encoded event"""

    def _build(event, offset: int = 0, partition: int = 0, topic: str = None):
        topic = topic or f"notifications.{event.channel.value}"
        return FakeMessage(topic, partition, offset, value=encode_event(event), key=event.id.encode("utf-8"))

    return _build
