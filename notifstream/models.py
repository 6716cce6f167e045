"""
Notification event model and wire codec

An event is a tagged union: the `channel` tag selects which payload dataclass travels with it, and validation /
content extraction dispatch on that tag. The JSON wire format is compact UTF-8 with the payload nested under
"payload"

Kafka record format
----------
- Topic: `<prefix>.<channel>` (e.g. notifications.email)
- Key: event id (bytes)
- Value: `encode_event(event)`
- Headers: notification_type, priority (level), retry_count
"""
from __future__ import annotations

import re
import json
import uuid
from enum import Enum, IntEnum
from dataclasses import dataclass, field, asdict, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Type

EMAIL_RE = re.compile(r"^[A-Za-z0-9+_.-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
PHONE_RE = re.compile(r"^\+?[1-9]\d{1,14}$")
URL_RE = re.compile(r"^https?://[^\s/$.?#].[^\s]*$", re.IGNORECASE)

SMS_MAX_LENGTH = 1600
DISCORD_MAX_LENGTH = 2000
HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")


class UnknownChannelError(ValueError):
    """Raised when a channel name does not match any `ChannelType`"""


class EventDecodeError(ValueError):
    """Raised when a record value cannot be turned back into a `NotificationEvent`"""


class ChannelType(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    SLACK = "slack"            # chat webhook A
    DISCORD = "discord"        # chat webhook B
    WEBHOOK = "webhook"        # generic HTTP webhook

    @classmethod
    def parse(cls, value) -> "ChannelType":
        if isinstance(value, cls):
            return value
        name = str(value or "").strip().lower()
        for member in cls:
            if member.value == name:
                return member
        raise UnknownChannelError(f"Unknown channel type: {value!r}")


class Priority(IntEnum):
    """Ordered priority; informational only, it never changes scheduling"""
    LOW = 1
    NORMAL = 2
    HIGH = 3
    URGENT = 4
    CRITICAL = 5

    @classmethod
    def parse(cls, value) -> "Priority":
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        text = str(value).strip()
        if text.isdigit():
            return cls(int(text))
        try:
            return cls[text.upper()]
        except KeyError:
            raise ValueError(f"Unknown priority: {value!r}")


def _blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


# ---------- Channel payloads ----------
@dataclass
class EmailPayload:
    subject: str = ""
    body: Optional[str] = None
    html_body: Optional[str] = None
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    attachments: List[str] = field(default_factory=list)
    from_email: Optional[str] = None
    from_name: Optional[str] = None

    def validate(self, recipient: str) -> bool:
        return (
            not _blank(recipient)
            and bool(EMAIL_RE.match(recipient))
            and not _blank(self.subject)
            and (self.body is not None or self.html_body is not None)
        )

    def content(self) -> str:
        return self.html_body if self.html_body is not None else (self.body or "")


@dataclass
class SmsPayload:
    message: str = ""
    country_code: Optional[str] = None
    provider: Optional[str] = None                 # e.g. "twilio", "aws-sns"

    def validate(self, recipient: str) -> bool:
        return (
            not _blank(recipient)
            and bool(PHONE_RE.match(recipient))
            and not _blank(self.message)
            and len(self.message) <= SMS_MAX_LENGTH
        )

    def content(self) -> str:
        return self.message


@dataclass
class PushPayload:
    title: Optional[str] = None
    body: Optional[str] = None
    device_token: Optional[str] = None
    platform: Optional[str] = None                 # ios / android / web
    icon: Optional[str] = None
    badge: Optional[int] = None
    sound: Optional[str] = None
    click_action: Optional[str] = None
    data: Dict[str, str] = field(default_factory=dict)
    collapse_key: Optional[str] = None
    ttl: Optional[int] = None                      # seconds

    def validate(self, recipient: str) -> bool:
        token = self.device_token or recipient
        return not _blank(token) and not (_blank(self.title) and _blank(self.body))

    def content(self) -> str:
        if self.title and self.body:
            return f"{self.title}: {self.body}"
        return self.title or self.body or ""


@dataclass
class SlackPayload:
    text: Optional[str] = None
    channel: Optional[str] = None
    username: Optional[str] = None
    icon_emoji: Optional[str] = None
    icon_url: Optional[str] = None
    webhook_url: Optional[str] = None
    thread_ts: Optional[str] = None
    blocks: List[Dict[str, Any]] = field(default_factory=list)
    attachments: List[Dict[str, Any]] = field(default_factory=list)

    def validate(self, recipient: str) -> bool:
        target = self.channel or recipient
        return not _blank(target) and (not _blank(self.text) or bool(self.blocks))

    def content(self) -> str:
        return self.text or ""


@dataclass
class DiscordPayload:
    text: str = ""
    username: Optional[str] = None
    avatar_url: Optional[str] = None
    tts: bool = False
    embeds: List[Dict[str, Any]] = field(default_factory=list)
    webhook_url: Optional[str] = None
    channel_id: Optional[str] = None

    def validate(self, recipient: str) -> bool:
        return not _blank(self.text) and len(self.text) <= DISCORD_MAX_LENGTH

    def content(self) -> str:
        return self.text


@dataclass
class WebhookPayload:
    url: str = ""
    method: str = "POST"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Dict[str, Any] = field(default_factory=dict)
    content_type: str = "application/json"
    timeout: Optional[int] = 30                    # seconds; null falls back to the handler default

    def validate(self, recipient: str) -> bool:
        url = self.url or recipient
        return (
            not _blank(url)
            and bool(URL_RE.match(url))
            and self.method.upper() in HTTP_METHODS
        )

    def content(self) -> str:
        return json.dumps(self.body, separators=(",", ":"), ensure_ascii=False) if self.body else ""


PAYLOAD_TYPES: Dict[ChannelType, Type] = {
    ChannelType.EMAIL: EmailPayload,
    ChannelType.SMS: SmsPayload,
    ChannelType.PUSH: PushPayload,
    ChannelType.SLACK: SlackPayload,
    ChannelType.DISCORD: DiscordPayload,
    ChannelType.WEBHOOK: WebhookPayload,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class NotificationEvent:
    """
    A single notification to deliver

    Fields
    ----------
    id: str - Unique identity; also the Kafka record key
    channel: ChannelType - Tag selecting the payload variant and the delivery handler
    recipient: str - Address in the channel's own format (e-mail, phone number, device token, channel, URL)
    payload: one of the `PAYLOAD_TYPES` dataclasses, matching `channel`
    priority: Priority - Informational only
    retry_count: int - Carried in headers for downstream filtering
    max_retries: int - Carried as data for producers and hooks; retries are bounded by the consumer settings
    scheduled_at: datetime - Timezone-aware
    metadata: Dict[str, Any] - Free-form
    """
    id: str
    channel: ChannelType
    recipient: str
    payload: Any
    priority: Priority = Priority.NORMAL
    retry_count: int = 0
    max_retries: int = 3
    scheduled_at: datetime = field(default_factory=_now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, channel, recipient: str, payload, **kwargs) -> "NotificationEvent":
        return cls(id=str(uuid.uuid4()), channel=ChannelType.parse(channel), recipient=recipient,
                   payload=payload, **kwargs)

    def is_valid(self) -> bool:
        expected = PAYLOAD_TYPES.get(self.channel)
        if expected is None or not isinstance(self.payload, expected):
            return False
        return self.payload.validate(self.recipient)

    def content(self) -> str:
        return self.payload.content()

    def __str__(self) -> str:
        return f"NotificationEvent(id={self.id!r}, channel={self.channel.value}, recipient={self.recipient!r}, priority={self.priority.name})"


# ---------- Codec ----------
def event_to_dict(event: NotificationEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "channel": event.channel.value,
        "recipient": event.recipient,
        "priority": event.priority.name,
        "retry_count": event.retry_count,
        "max_retries": event.max_retries,
        "scheduled_at": event.scheduled_at.isoformat() if event.scheduled_at else None,
        "metadata": event.metadata,
        "payload": asdict(event.payload),
    }


def encode_event(event: NotificationEvent) -> bytes:
    return json.dumps(event_to_dict(event), separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


def _parse_scheduled_at(raw) -> datetime:
    if raw is None:
        return _now()
    dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _build_payload(channel: ChannelType, raw) -> Any:
    if not isinstance(raw, dict):
        raise EventDecodeError(f"payload for {channel.value} is not an object")
    payload_cls = PAYLOAD_TYPES[channel]
    known = {f.name for f in fields(payload_cls)}
    unknown = set(raw) - known
    if unknown:
        raise EventDecodeError(f"unexpected {channel.value} payload fields: {sorted(unknown)}")
    return payload_cls(**raw)


def event_from_dict(data: Dict[str, Any]) -> NotificationEvent:
    if not isinstance(data, dict):
        raise EventDecodeError("Payload is not an object")

    event_id = str(data.get("id") or "").strip()
    if not event_id:
        raise EventDecodeError("Missing required field: id")

    try:
        channel = ChannelType.parse(data.get("channel"))
        priority = Priority.parse(data.get("priority", Priority.NORMAL))
        scheduled_at = _parse_scheduled_at(data.get("scheduled_at"))
        retry_count = int(data.get("retry_count", 0))
        max_retries = int(data.get("max_retries", 3))
    except (TypeError, ValueError, OverflowError) as e:
        raise EventDecodeError(str(e)) from e

    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise EventDecodeError("metadata is not an object")

    return NotificationEvent(
        id=event_id,
        channel=channel,
        recipient=str(data.get("recipient") or ""),
        payload=_build_payload(channel, data.get("payload") or {}),
        priority=priority,
        retry_count=retry_count,
        max_retries=max_retries,
        scheduled_at=scheduled_at,
        metadata=metadata,
    )


def decode_event(raw: Optional[bytes]) -> NotificationEvent:
    """
    Strict decode of a record value

    Raises
    ----------
    EventDecodeError - on empty values, invalid JSON or a shape that does not match the model. Callers treat this
    as a poison message: it is logged and acknowledged, never retried
    """
    if raw is None or raw == b"":
        raise EventDecodeError("Empty record value")
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise EventDecodeError(f"Invalid JSON: {e}") from e
    except RecursionError as e:
        raise EventDecodeError("Invalid JSON: nested too deeply") from e
    try:
        return event_from_dict(data)
    except EventDecodeError:
        raise
    except (TypeError, ValueError, OverflowError, RecursionError) as e:
        raise EventDecodeError(f"Invalid event shape: {e}") from e


def event_headers(event: NotificationEvent) -> List[Tuple[str, bytes]]:
    """Headers carried alongside the value so consumers can filter without deserializing"""
    return [
        ("notification_type", event.channel.value.encode("utf-8")),
        ("priority", str(int(event.priority)).encode()),
        ("retry_count", str(event.retry_count).encode()),
    ]
