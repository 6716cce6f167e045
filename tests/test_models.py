import json
import random

import pytest

from notifstream.fake_events import FUZZ_STRATEGIES, fuzz_event, make_event
from notifstream.models import (
    ChannelType, DiscordPayload, EmailPayload, EventDecodeError, NotificationEvent, Priority, PushPayload,
    SlackPayload, SmsPayload, UnknownChannelError, WebhookPayload, decode_event, encode_event, event_headers,
    event_to_dict
)


@pytest.mark.parametrize("channel, recipient, payload, valid", [
    ("email", "ana@example.com", EmailPayload(subject="Hi", body="Body"), True),
    ("email", "ana@example.com", EmailPayload(subject="Hi", html_body="<p>Body</p>"), True),
    ("email", "not-an-email", EmailPayload(subject="Hi", body="Body"), False),
    ("email", "ana@example.com", EmailPayload(subject="  ", body="Body"), False),
    ("email", "ana@example.com", EmailPayload(subject="Hi"), False),
    ("sms", "+40712345678", SmsPayload(message="Code 1234"), True),
    ("sms", "0712-345-678", SmsPayload(message="Code 1234"), False),
    ("sms", "+40712345678", SmsPayload(message="x" * 1601), False),
    ("push", "token-abc", PushPayload(title="Hello"), True),
    ("push", "", PushPayload(title="Hello", device_token="tok"), True),
    ("push", "token-abc", PushPayload(), False),
    ("slack", "#ops", SlackPayload(text="deploy done"), True),
    ("slack", "", SlackPayload(text="deploy done", channel="#ops"), True),
    ("slack", "#ops", SlackPayload(blocks=[{"type": "section"}]), True),
    ("slack", "#ops", SlackPayload(), False),
    ("discord", "ops", DiscordPayload(text="hello"), True),
    ("discord", "ops", DiscordPayload(text="x" * 2001), False),
    ("discord", "ops", DiscordPayload(text=""), False),
    ("webhook", "", WebhookPayload(url="https://hooks.example.com/x"), True),
    ("webhook", "https://hooks.example.com/x", WebhookPayload(method="patch"), True),
    ("webhook", "", WebhookPayload(url="ftp://hooks.example.com/x"), False),
    ("webhook", "", WebhookPayload(url="https://hooks.example.com/x", method="TRACE"), False),
])
def test_payload_validation_per_channel(channel, recipient, payload, valid):
    event = NotificationEvent.create(channel, recipient, payload)

    assert event.is_valid() is valid


def test_payload_must_match_channel_tag():
    event = NotificationEvent.create("sms", "+40712345678", EmailPayload(subject="Hi", body="Body"))

    assert not event.is_valid()


def test_content_dispatches_on_channel():
    email = NotificationEvent.create("email", "a@b.io", EmailPayload(subject="s", body="plain", html_body="<b>x</b>"))
    push = NotificationEvent.create("push", "tok", PushPayload(title="Title", body="Body"))

    assert email.content() == "<b>x</b>"
    assert push.content() == "Title: Body"


def test_channel_and_priority_parsing():
    assert ChannelType.parse(" Slack ") is ChannelType.SLACK
    with pytest.raises(UnknownChannelError):
        ChannelType.parse("fax")

    assert Priority.parse("urgent") is Priority.URGENT
    assert Priority.parse(5) is Priority.CRITICAL
    assert Priority.parse("2") is Priority.NORMAL
    assert Priority.LOW < Priority.HIGH


def test_encoded_event_decodes_to_the_same_event():
    event = make_event(ChannelType.WEBHOOK, priority=Priority.HIGH, metadata={"tenant": "acme"})

    decoded = decode_event(encode_event(event))

    assert decoded == event
    assert json.loads(encode_event(event))["priority"] == "HIGH"


def test_headers_carry_type_priority_and_retry_count():
    event = make_event(ChannelType.SMS, priority=Priority.URGENT, retry_count=2)

    assert event_headers(event) == [
        ("notification_type", b"sms"),
        ("priority", b"4"),
        ("retry_count", b"2"),
    ]


@pytest.mark.parametrize("raw", [
    None,
    b"",
    b"{not json",
    b"[1, 2]",
    b'{"channel": "email", "payload": {}}',
    b'{"id": "1", "channel": "fax", "payload": {}}',
    b'{"id": "1", "channel": "email", "payload": {"subject": "x", "colour": "red"}}',
    b'{"id": "1", "channel": "email", "priority": "MEGA", "payload": {}}',
    b'{"id": "1", "channel": "email", "scheduled_at": "yesterday", "payload": {}}',
    b'{"id": "1", "channel": "email", "metadata": [1], "payload": {}}',
])
def test_malformed_values_raise_decode_error(raw):
    with pytest.raises(EventDecodeError):
        decode_event(raw)


def test_deeply_nested_value_is_a_decode_error():
    with pytest.raises(EventDecodeError):
        decode_event(b"[" * 100000 + b"]" * 100000)


def test_non_finite_counters_are_decode_errors():
    with pytest.raises(EventDecodeError):
        decode_event(b'{"id": "1", "channel": "email", "retry_count": 1e400, "payload": {}}')


def test_fuzzed_events_never_decode():
    rng = random.Random(7)
    for _ in range(50):
        good = event_to_dict(make_event(rng=rng))
        bad = fuzz_event(good, strategies=FUZZ_STRATEGIES, n_mutations=rng.randint(1, 3), rng=rng)
        with pytest.raises(EventDecodeError):
            decode_event(json.dumps(bad, default=str).encode("utf-8"))
